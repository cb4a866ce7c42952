"""
Nonlinear refinement of the global model (IRLS / Gauss-Newton).

All constraint kinds contribute residual blocks: point displacements,
point-to-polyline distances for lines, boundary Chamfer distances for areas,
ellipse-normalized displacements for directional pins and one-sided
penalties for relations. Coordinates are Hartley-normalized before solving
so that translation and linear parameters are on comparable scales.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from affine import Affine
from scipy.linalg import LinAlgError, cho_factor, cho_solve, lstsq
from shapely.geometry import Polygon

from constraints import (
    Anchor,
    Area,
    ChangeMask,
    Directional,
    Line,
    PointPair,
    Relational,
    source_location,
)
from defaults import (
    DEFAULT_AREA_SAMPLES,
    DEFAULT_LINE_SAMPLES,
    DEFAULT_REFINE_MAX_ITERATIONS,
    DEFAULT_REFINE_TOLERANCE,
    DEFAULT_RIDGE,
    DEFAULT_ROBUST_LOSS,
    DEFAULT_ROBUST_SCALE,
)
from errors import DidNotConverge, InvalidConstraint
from ransac import similarity_from_params
from transformations import AffineTransform

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Geometry helpers (shared with metrics and the local warp solver)
# ---------------------------------------------------------------------------

def sample_polyline(points, num_samples: int) -> np.ndarray:
    """Evenly spaced samples along a polyline, endpoints included."""
    pts = np.asarray(points, dtype=np.float64)
    seg = np.linalg.norm(np.diff(pts, axis=0), axis=1)
    cum = np.concatenate([[0.0], np.cumsum(seg)])
    t = np.linspace(0.0, cum[-1], max(num_samples, 2))
    return np.column_stack([np.interp(t, cum, pts[:, 0]), np.interp(t, cum, pts[:, 1])])


def sample_ring(points, num_samples: int) -> np.ndarray:
    """Evenly spaced samples along a polygon boundary."""
    ring = Polygon(points).exterior
    ts = np.linspace(0.0, 1.0, max(num_samples, 3), endpoint=False)
    return np.array([[p.x, p.y] for p in (ring.interpolate(t, normalized=True) for t in ts)])


def closed_ring(points) -> np.ndarray:
    pts = np.asarray(points, dtype=np.float64)
    if not np.array_equal(pts[0], pts[-1]):
        pts = np.vstack([pts, pts[:1]])
    return pts


def closest_points_on_polyline(points: np.ndarray, verts: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Nearest point on a polyline for each query point.

    Returns:
        (closest (m, 2), distance (m,), unit normal (m, 2)); the normal points
        from the polyline towards the query, or is the segment normal when the
        query lies on the polyline.
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    a = verts[:-1]
    ab = verts[1:] - a
    denom = np.sum(ab * ab, axis=1)
    ap = points[:, None, :] - a[None, :, :]
    safe = np.where(denom > 0, denom, 1.0)
    t = np.where(denom > 0, np.sum(ap * ab[None, :, :], axis=2) / safe, 0.0)
    t = np.clip(t, 0.0, 1.0)
    proj = a[None, :, :] + t[..., None] * ab[None, :, :]
    dist_all = np.linalg.norm(points[:, None, :] - proj, axis=2)
    seg = np.argmin(dist_all, axis=1)
    rows = np.arange(len(points))
    closest = proj[rows, seg]
    dist = dist_all[rows, seg]

    normals = np.zeros_like(points)
    off = dist > 1e-12
    normals[off] = (points[off] - closest[off]) / dist[off, None]
    on = ~off
    if np.any(on):
        seg_vec = ab[seg[on]]
        length = np.linalg.norm(seg_vec, axis=1)
        length = np.where(length > 0, length, 1.0)
        normals[on] = np.column_stack([-seg_vec[:, 1], seg_vec[:, 0]]) / length[:, None]
    return closest, dist, normals


# ---------------------------------------------------------------------------
# Model parameterizations
# ---------------------------------------------------------------------------

class _SimilarityParams:
    """p = [a, b, tx, ty]: x' = a x - b y + tx, y' = b x + a y + ty."""
    size = 4

    @staticmethod
    def from_affine(aff: Affine) -> np.ndarray:
        return np.array([(aff.a + aff.e) / 2.0, (aff.d - aff.b) / 2.0, aff.c, aff.f])

    @staticmethod
    def to_affine(p: np.ndarray) -> Affine:
        a, b, tx, ty = p
        return Affine(a, -b, tx, b, a, ty)

    @staticmethod
    def apply(p: np.ndarray, pts: np.ndarray) -> np.ndarray:
        a, b, tx, ty = p
        return np.column_stack([a * pts[:, 0] - b * pts[:, 1] + tx, b * pts[:, 0] + a * pts[:, 1] + ty])

    @staticmethod
    def jacobian(pts: np.ndarray) -> np.ndarray:
        n = len(pts)
        J = np.zeros((n, 2, 4))
        J[:, 0, 0] = pts[:, 0]
        J[:, 0, 1] = -pts[:, 1]
        J[:, 0, 2] = 1.0
        J[:, 1, 0] = pts[:, 1]
        J[:, 1, 1] = pts[:, 0]
        J[:, 1, 3] = 1.0
        return J


class _AffineParams:
    """p = [a, b, c, d, e, f]: x' = a x + b y + c, y' = d x + e y + f."""
    size = 6

    @staticmethod
    def from_affine(aff: Affine) -> np.ndarray:
        return np.array(aff[:6], dtype=np.float64)

    @staticmethod
    def to_affine(p: np.ndarray) -> Affine:
        return Affine(*p.tolist())

    @staticmethod
    def apply(p: np.ndarray, pts: np.ndarray) -> np.ndarray:
        a, b, c, d, e, f = p
        return np.column_stack([a * pts[:, 0] + b * pts[:, 1] + c, d * pts[:, 0] + e * pts[:, 1] + f])

    @staticmethod
    def jacobian(pts: np.ndarray) -> np.ndarray:
        n = len(pts)
        J = np.zeros((n, 2, 6))
        J[:, 0, 0] = pts[:, 0]
        J[:, 0, 1] = pts[:, 1]
        J[:, 0, 2] = 1.0
        J[:, 1, 3] = pts[:, 0]
        J[:, 1, 4] = pts[:, 1]
        J[:, 1, 5] = 1.0
        return J


def _hartley(points: np.ndarray) -> Affine:
    """Translate to the centroid and scale to mean distance sqrt(2)."""
    centroid = points.mean(axis=0)
    mean_dist = float(np.mean(np.linalg.norm(points - centroid, axis=1)))
    s = math.sqrt(2.0) / mean_dist if mean_dist > 1e-12 else 1.0
    return Affine.scale(s) * Affine.translation(-centroid[0], -centroid[1])


def _apply_affine(aff: Affine, pts) -> np.ndarray:
    pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
    return np.column_stack([aff.a * pts[:, 0] + aff.b * pts[:, 1] + aff.c,
                            aff.d * pts[:, 0] + aff.e * pts[:, 1] + aff.f])


# ---------------------------------------------------------------------------
# Robust losses
# ---------------------------------------------------------------------------

def robust_weight(magnitude: float, loss: str, scale: float) -> float:
    """IRLS weight for a normalized residual magnitude u = magnitude / scale."""
    u = magnitude / scale if scale > 0 else 0.0
    if loss == 'huber':
        return 1.0 if u <= 1.0 else 1.0 / u
    if loss == 'tukey':
        return (1.0 - u * u) ** 2 if u < 1.0 else 0.0
    raise ValueError(f"Unknown robust loss: {loss}")


# ---------------------------------------------------------------------------
# Residual blocks
# ---------------------------------------------------------------------------

@dataclass
class _Block:
    constraint_id: int
    kind: str
    weight: float
    data: Dict
    robust: bool = True


@dataclass
class RefineResult:
    """Outcome of a refinement run."""
    model: object
    iterations: int
    converged: bool
    cost: float
    robust_weights: Dict[int, float] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


class Refiner:
    """
    Iteratively reweighted Gauss-Newton refiner for a similarity or affine model.

    Args:
        method: 'similarity' or 'affine'
        loss: 'huber' or 'tukey'
        scale: Robust loss scale in reference pixels
        tolerance: Stop when the (normalized) update norm falls below this
        max_iterations: Iteration cap
        ridge: Relative ridge added to the normal equations
    """

    def __init__(self, method: str = 'affine', loss: str = DEFAULT_ROBUST_LOSS,
                 scale: float = DEFAULT_ROBUST_SCALE, tolerance: float = DEFAULT_REFINE_TOLERANCE,
                 max_iterations: int = DEFAULT_REFINE_MAX_ITERATIONS, ridge: float = DEFAULT_RIDGE,
                 line_samples: int = DEFAULT_LINE_SAMPLES, area_samples: int = DEFAULT_AREA_SAMPLES):
        if method == 'similarity':
            self.params = _SimilarityParams
        elif method == 'affine':
            self.params = _AffineParams
        else:
            raise ValueError(f"Unknown transform type: {method}")
        if loss not in ('huber', 'tukey'):
            raise ValueError(f"Unknown robust loss: {loss}")
        self.method = method
        self.loss = loss
        self.scale = scale
        self.tolerance = tolerance
        self.max_iterations = max_iterations
        self.ridge = ridge
        self.line_samples = line_samples
        self.area_samples = area_samples

    # -- preparation -------------------------------------------------------

    def _prepare(self, constraints: Sequence, excluded: set) -> Tuple[List[_Block], Affine, Affine]:
        by_id = {c.id: c for c in constraints}
        src_all, dst_all = [], []
        for c in constraints:
            if c.id in excluded:
                continue
            if isinstance(c, PointPair):
                src_all.append(c.src)
                dst_all.append(c.dst)
            elif isinstance(c, Directional):
                src_all.append(c.src)
                dst_all.append(c.point)
            elif isinstance(c, Line):
                src_all.extend(c.src_points)
                dst_all.extend(c.dst_points)
            elif isinstance(c, Area):
                src_all.extend(c.src_polygon)
                dst_all.extend(c.dst_polygon)
        if not src_all:
            return [], Affine.identity(), Affine.identity()
        ns = _hartley(np.asarray(src_all, dtype=np.float64))
        nd = _hartley(np.asarray(dst_all, dtype=np.float64))
        dscale = nd.a

        blocks = []
        for c in sorted(constraints, key=lambda item: item.id):
            if c.id in excluded:
                continue
            if isinstance(c, PointPair):
                blocks.append(_Block(c.id, 'point', c.weight, {
                    'src': _apply_affine(ns, c.src), 'dst': _apply_affine(nd, c.dst)[0]}))
            elif isinstance(c, Line):
                samples = sample_polyline(c.src_points, self.line_samples)
                blocks.append(_Block(c.id, 'line', c.weight, {
                    'src': _apply_affine(ns, samples),
                    'verts': _apply_affine(nd, c.dst_points)}))
            elif isinstance(c, Area):
                samples = sample_ring(c.src_polygon, self.area_samples)
                blocks.append(_Block(c.id, 'area', c.weight, {
                    'src': _apply_affine(ns, samples),
                    'verts': _apply_affine(nd, closed_ring(c.dst_polygon))}))
            elif isinstance(c, Directional):
                major, minor = c.semi_axes
                ca, sa = math.cos(c.axis_angle), math.sin(c.axis_angle)
                blocks.append(_Block(c.id, 'directional', c.weight, {
                    'src': _apply_affine(ns, c.src), 'dst': _apply_affine(nd, c.point)[0],
                    'axes': np.array([[ca, sa], [-sa, ca]]),
                    'semi': np.array([major * dscale, minor * dscale])}))
            elif isinstance(c, Relational):
                a, b = by_id.get(c.a_id), by_id.get(c.b_id)
                if a is None or b is None:
                    logger.warning(f"Skipping relation {c.id}: referenced constraint was deleted")
                    continue
                if a.id in excluded or b.id in excluded:
                    continue
                if source_location(a) is None or source_location(b) is None:
                    raise InvalidConstraint(f"Relation {c.id} targets a constraint with no position")
                blocks.append(_Block(c.id, 'relational', c.weight, {
                    'a': _apply_affine(ns, source_location(a)),
                    'b': _apply_affine(ns, source_location(b)),
                    'relation': c.kind, 'param': c.param * dscale}, robust=False))
            elif isinstance(c, (Anchor, ChangeMask)):
                continue
            else:
                raise InvalidConstraint(f"Unknown constraint type: {type(c).__name__}")
        return blocks, ns, nd

    # -- residuals ---------------------------------------------------------

    def _evaluate(self, block: _Block, p: np.ndarray) -> Tuple[np.ndarray, np.ndarray, float]:
        """Residual vector, Jacobian and pixel-like magnitude (normalized units)."""
        P = self.params
        d = block.data
        if block.kind == 'point':
            r = (P.apply(p, d['src'])[0] - d['dst'])
            J = P.jacobian(d['src'])[0]
            return r, J, float(np.linalg.norm(r))
        if block.kind in ('line', 'area'):
            pred = P.apply(p, d['src'])
            _, dist, normals = closest_points_on_polyline(pred, d['verts'])
            Jp = P.jacobian(d['src'])
            J = np.einsum('mi,mik->mk', normals, Jp)
            return dist, J, float(np.mean(dist))
        if block.kind == 'directional':
            delta = P.apply(p, d['src'])[0] - d['dst']
            proj = d['axes'] @ delta
            r = proj / d['semi']
            J = (d['axes'] / d['semi'][:, None]) @ P.jacobian(d['src'])[0]
            return r, J, float(np.linalg.norm(r)) * float(np.mean(d['semi']))
        if block.kind == 'relational':
            return self._relational(block, p) + (0.0,)
        raise ValueError(f"Unknown residual block kind: {block.kind}")

    def _relational(self, block: _Block, p: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        P = self.params
        d = block.data
        pa = P.apply(p, d['a'])[0]
        pb = P.apply(p, d['b'])[0]
        Jab = P.jacobian(d['a'])[0] - P.jacobian(d['b'])[0]
        zero = (np.zeros(1), np.zeros((1, P.size)))
        relation = d['relation']
        if relation in ('max_distance', 'min_distance'):
            diff = pa - pb
            dist = float(np.linalg.norm(diff))
            if dist <= 1e-12:
                if relation == 'min_distance' and d['param'] > 0:
                    return np.array([d['param']]), np.zeros((1, P.size))
                return zero
            u = diff / dist
            if relation == 'max_distance':
                violation = dist - d['param']
                if violation <= 0:
                    return zero
                return np.array([violation]), (u @ Jab)[None, :]
            violation = d['param'] - dist
            if violation <= 0:
                return zero
            return np.array([violation]), (-(u @ Jab))[None, :]
        axis = 0 if relation == 'left_of' else 1
        violation = pa[axis] + d['param'] - pb[axis]
        if violation <= 0:
            return zero
        return np.array([violation]), Jab[axis][None, :]

    # -- solve -------------------------------------------------------------

    def _assemble(self, blocks: List[_Block], p: np.ndarray, scale: float):
        k = self.params.size
        H = np.zeros((k, k))
        g = np.zeros(k)
        cost_terms = []
        weights = {}
        for block in blocks:
            r, J, magnitude = self._evaluate(block, p)
            rho = robust_weight(magnitude, self.loss, scale) if block.robust else 1.0
            w = block.weight * rho
            weights[block.constraint_id] = rho
            H += w * (J.T @ J)
            g += w * (J.T @ r)
            cost_terms.append(w * float(r @ r))
        return H, g, math.fsum(cost_terms), weights

    def _solve_step(self, H: np.ndarray, g: np.ndarray) -> np.ndarray:
        k = len(g)
        ridge = self.ridge * max(float(np.trace(H)) / k, 1e-12)
        A = H + ridge * np.eye(k)
        try:
            return -cho_solve(cho_factor(A), g)
        except LinAlgError:
            logger.debug("Normal equations not positive definite, falling back to least squares")
            return -lstsq(A, g)[0]

    def refine(self, initial_model, constraints: Sequence,
               excluded_ids: Optional[Sequence[int]] = None) -> RefineResult:
        """
        Refine a global model against every constraint.

        Args:
            initial_model: SimilarityTransform or AffineTransform from RANSAC
            constraints: Full constraint list (any order)
            excluded_ids: Ids left out of refinement (e.g. inside a ChangeMask)

        Returns:
            RefineResult; when the iteration cap is reached the best-so-far
            model is returned with a DidNotConverge warning
        """
        excluded = set(excluded_ids or [])
        blocks, ns, nd = self._prepare(constraints, excluded)
        if not blocks:
            return RefineResult(initial_model, 0, True, 0.0)

        P = self.params
        p = P.from_affine(nd * initial_model.as_affine() * ~ns)
        scale = self.scale * nd.a

        best_p, best_cost = p.copy(), math.inf
        prev_cost = None
        increases = 0
        step = 1.0
        converged = False
        iteration = 0
        weights = {}
        for iteration in range(1, self.max_iterations + 1):
            H, g, cost, weights = self._assemble(blocks, p, scale)
            if cost < best_cost:
                best_p, best_cost = p.copy(), cost
            if prev_cost is not None and cost > prev_cost:
                increases += 1
                if increases >= 2:
                    step *= 0.5
                    increases = 0
                    logger.debug(f"  Cost rose twice in a row, halving step to {step}")
                    p = best_p.copy()
                    prev_cost = None
                    continue
            else:
                increases = 0
            prev_cost = cost

            delta = step * self._solve_step(H, g)
            p = p + delta
            if np.linalg.norm(delta) < self.tolerance:
                converged = True
                break

        warnings = []
        if converged:
            _, _, final_cost, weights = self._assemble(blocks, p, scale)
            if final_cost > best_cost:
                p, final_cost = best_p, best_cost
        else:
            _, _, cost, last_weights = self._assemble(blocks, p, scale)
            if cost < best_cost:
                best_p, best_cost, weights = p.copy(), cost, last_weights
            p, final_cost = best_p, best_cost
            warnings.append(DidNotConverge.__name__)
            logger.warning(f"  Refinement did not converge in {self.max_iterations} iterations; "
                           f"returning best-so-far model (cost {best_cost:.6g})")

        world = ~nd * P.to_affine(p) * ns
        if self.method == 'similarity':
            model = similarity_from_params(world.a, world.d, world.c, world.f)
        else:
            model = AffineTransform.from_affine(world)
        logger.info(f"  Refinement ({self.method}, {self.loss}): {iteration} iterations, "
                    f"converged={converged}, cost={final_cost:.6g}")
        return RefineResult(model=model, iterations=iteration, converged=converged,
                            cost=final_cost / (nd.a ** 2), robust_weights=weights, warnings=warnings)
