"""
Local warp solvers layered on top of the global model.

Both solvers work in reference pixel space: the residual field is the
displacement still needed after the global model, and anchor regions are
held at zero displacement inside the same linear system.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
import shapely
from scipy import linalg, sparse
from scipy.sparse.linalg import lsqr
from scipy.spatial import cKDTree
from scipy.spatial.distance import pdist
from shapely.geometry import Point as ShapelyPoint
from shapely.geometry import Polygon, box

from constraints import Anchor, Area, Directional, Line, PointPair, masked_ids
from defaults import (
    DEFAULT_ANCHOR_MAX_SAMPLES,
    DEFAULT_ANCHOR_REFINE_ROUNDS,
    DEFAULT_ANCHOR_SPACING,
    DEFAULT_ANCHOR_TOLERANCE,
    DEFAULT_AREA_SAMPLES,
    DEFAULT_FFD_GRID_SIZE,
    DEFAULT_LINE_SAMPLES,
    DEFAULT_MAX_CONDITION_NUMBER,
    DEFAULT_MIN_CONTROL_SEPARATION,
    DEFAULT_TPS_LAMBDA,
    DEFAULT_TPS_MAX_CONTROL_POINTS,
    LOCAL_MODELS,
)
from errors import AnchorViolation, DegenerateControlPoints, InsufficientConstraints
from refinement import closed_ring, closest_points_on_polyline, sample_polyline, sample_ring
from transformations import FreeFormDeformation, ThinPlateSplineTransform, tps_kernel

logger = logging.getLogger(__name__)

# violating check points added per anchor refinement round
ANCHOR_REFINE_BATCH = 64


@dataclass
class ResidualField:
    """Reference-space positions after the global model and their remaining displacement."""
    points: np.ndarray
    displacements: np.ndarray
    weights: np.ndarray
    ids: List[int]

    def __len__(self):
        return len(self.points)


def compute_residual_field(global_stack, constraints: Sequence,
                           line_samples: int = DEFAULT_LINE_SAMPLES,
                           area_samples: int = DEFAULT_AREA_SAMPLES) -> ResidualField:
    """
    Sample the displacement left over by the global model.

    Point pairs and directional pins contribute one sample each; lines and
    areas contribute densified source samples paired with their nearest
    point on the reference geometry. Constraints inside a ChangeMask are
    skipped.
    """
    excluded = set(masked_ids(constraints))
    points, disps, weights, ids = [], [], [], []
    for c in sorted(constraints, key=lambda item: item.id):
        if c.id in excluded:
            continue
        if isinstance(c, (PointPair, Directional)):
            target = c.dst if isinstance(c, PointPair) else c.point
            pred = global_stack.evaluate_many(c.src)
            points.append(pred)
            disps.append(np.asarray(target, dtype=np.float64).reshape(1, 2) - pred)
            weights.append([c.weight])
            ids.append(c.id)
        elif isinstance(c, (Line, Area)):
            if isinstance(c, Line):
                samples = sample_polyline(c.src_points, line_samples)
                verts = np.asarray(c.dst_points, dtype=np.float64)
            else:
                samples = sample_ring(c.src_polygon, area_samples)
                verts = closed_ring(c.dst_polygon)
            pred = global_stack.evaluate_many(samples)
            closest, _, _ = closest_points_on_polyline(pred, verts)
            points.append(pred)
            disps.append(closest - pred)
            # spread the constraint weight over its samples
            weights.append([c.weight / len(pred)] * len(pred))
            ids.extend([c.id] * len(pred))
    if not points:
        return ResidualField(np.zeros((0, 2)), np.zeros((0, 2)), np.zeros(0), [])
    return ResidualField(np.vstack(points), np.vstack(disps),
                         np.concatenate([np.asarray(w, dtype=np.float64) for w in weights]), ids)


def anchor_samples(region: Sequence, spacing: float = DEFAULT_ANCHOR_SPACING,
                   max_samples: int = DEFAULT_ANCHOR_MAX_SAMPLES) -> np.ndarray:
    """
    Boundary and interior samples of an anchor region about `spacing` pixels apart.

    The boundary is sampled twice as densely as the interior grid. When the
    region would need more than `max_samples` samples the spacing widens.
    """
    poly = Polygon(region)
    perimeter, area = poly.length, poly.area
    # smallest spacing s with perimeter * 2 / s + area / s^2 <= max_samples
    widest = (2.0 * perimeter + math.sqrt(4.0 * perimeter ** 2 + 4.0 * max_samples * area)) / (2.0 * max_samples)
    spacing = max(float(spacing), widest)

    boundary = sample_ring(region, int(math.ceil(2.0 * perimeter / spacing)))
    minx, miny, maxx, maxy = poly.bounds
    nx = max(int(math.ceil((maxx - minx) / spacing)), 1)
    ny = max(int(math.ceil((maxy - miny) / spacing)), 1)
    xs = minx + (np.arange(nx) + 0.5) * (maxx - minx) / nx
    ys = miny + (np.arange(ny) + 0.5) * (maxy - miny) / ny
    gx, gy = np.meshgrid(xs, ys)
    gx, gy = gx.ravel(), gy.ravel()
    inside = shapely.contains_xy(poly, gx, gy)
    interior = np.column_stack([gx[inside], gy[inside]])
    if len(interior):
        # keep interior samples clear of the boundary samples
        clear = shapely.distance(poly.exterior, shapely.points(interior)) > spacing / 4.0
        interior = interior[clear]
    if len(interior):
        return np.vstack([boundary, interior])
    return boundary


def _subsample(n: int, limit: int) -> np.ndarray:
    if n <= limit:
        return np.arange(n)
    return np.unique(np.round(np.linspace(0, n - 1, limit)).astype(int))


def merge_coincident(points: np.ndarray, displacements: np.ndarray,
                     weights: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Collapse exactly coincident samples into one: weighted mean displacement, summed weight."""
    if len(points) == 0:
        return points, displacements, weights
    unique, inverse = np.unique(points, axis=0, return_inverse=True)
    if len(unique) == len(points):
        return points, displacements, weights
    inverse = np.asarray(inverse).reshape(-1)
    merged_w = np.zeros(len(unique))
    np.add.at(merged_w, inverse, weights)
    merged_d = np.zeros((len(unique), 2))
    np.add.at(merged_d, inverse, displacements * weights[:, None])
    merged_d /= merged_w[:, None]
    logger.debug(f"  Merged {len(points) - len(unique)} coincident residual samples")
    return unique, merged_d, merged_w


def _anchor_spacing(data_pts: np.ndarray, spacing: float, min_separation: float) -> float:
    """Anchor sample spacing: the configured value, tightened to half the data spacing."""
    if len(data_pts) < 2:
        return spacing
    nearest, _ = cKDTree(data_pts).query(data_pts, k=2)
    data_spacing = float(np.median(nearest[:, 1]))
    return max(min(spacing, 0.5 * data_spacing), 10.0 * min_separation)


# ---------------------------------------------------------------------------
# Thin-plate spline
# ---------------------------------------------------------------------------

def _fit_tps(data_pts: np.ndarray, data_disp: np.ndarray, data_w: np.ndarray, anchor_pts: np.ndarray,
             lam: float, min_separation: float, max_condition: float) -> Tuple[ThinPlateSplineTransform, float]:
    ctrl = np.vstack([data_pts, anchor_pts])
    targets = np.vstack([data_disp, np.zeros((len(anchor_pts), 2))])
    n = len(ctrl)
    if n < 3:
        raise DegenerateControlPoints(f"TPS needs at least 3 control points, got {n}")

    min_dist = float(pdist(ctrl).min())
    if min_dist < min_separation:
        raise DegenerateControlPoints(
            f"Control points closer than {min_separation} px (min separation {min_dist:.3g})")

    centroid = ctrl.mean(axis=0)
    mean_dist = float(np.mean(np.linalg.norm(ctrl - centroid, axis=1)))
    s = math.sqrt(2.0) / mean_dist if mean_dist > 0 else 1.0
    norm_ctrl = s * (ctrl - centroid)

    K = tps_kernel(np.linalg.norm(norm_ctrl[:, None, :] - norm_ctrl[None, :, :], axis=2))
    reg = np.concatenate([lam / data_w, np.zeros(len(anchor_pts))])
    K[np.diag_indices(n)] += reg
    P = np.column_stack([np.ones(n), norm_ctrl])
    L = np.zeros((n + 3, n + 3))
    L[:n, :n] = K
    L[:n, n:] = P
    L[n:, :n] = P.T
    rhs = np.vstack([targets, np.zeros((3, 2))])

    cond = np.linalg.cond(L)
    if not np.isfinite(cond) or cond > max_condition:
        raise DegenerateControlPoints(f"TPS system is ill-conditioned (condition number {cond:.3g})")

    try:
        sol = linalg.solve(L, rhs)
    except linalg.LinAlgError as e:
        raise DegenerateControlPoints(f"TPS system is singular: {e}")

    w_norm = sol[:n]
    a_norm = sol[n:]
    # U(s r) = s^2 U(r) + s^2 log(s) r^2, and the r^2 term collapses to a
    # constant because the weights sum to zero and are orthogonal to x and y.
    kappa = (np.sum(ctrl * ctrl, axis=1)[:, None] * w_norm).sum(axis=0)
    weights = s * s * w_norm
    affine = np.zeros((3, 2))
    affine[0] = a_norm[0] - s * (centroid @ a_norm[1:]) + s * s * math.log(s) * kappa
    affine[1:] = s * a_norm[1:]
    return ThinPlateSplineTransform(control_points=ctrl, weights=weights, affine=affine, lam=lam), cond


def _pick_violations(check_pts: np.ndarray, disp: np.ndarray, ctrl: np.ndarray,
                     tolerance: float, min_gap: float) -> np.ndarray:
    """Worst violating check points, kept at least min_gap from each other and from ctrl."""
    tree = cKDTree(ctrl)
    picked = []
    for i in np.argsort(-disp, kind='stable'):
        if disp[i] <= tolerance or len(picked) >= ANCHOR_REFINE_BATCH:
            break
        p = check_pts[i]
        if tree.query(p)[0] < min_gap:
            continue
        if picked and np.min(np.linalg.norm(np.asarray(picked) - p, axis=1)) < min_gap:
            continue
        picked.append(p)
    return np.asarray(picked).reshape(-1, 2)


def solve_tps(field: ResidualField, anchors: Sequence[Anchor], lam: float = DEFAULT_TPS_LAMBDA,
              max_control_points: int = DEFAULT_TPS_MAX_CONTROL_POINTS,
              min_separation: float = DEFAULT_MIN_CONTROL_SEPARATION,
              max_condition: float = DEFAULT_MAX_CONDITION_NUMBER,
              anchor_spacing: float = DEFAULT_ANCHOR_SPACING,
              anchor_max_samples: int = DEFAULT_ANCHOR_MAX_SAMPLES,
              anchor_tolerance: float = DEFAULT_ANCHOR_TOLERANCE,
              anchor_refine_rounds: int = DEFAULT_ANCHOR_REFINE_ROUNDS) -> ThinPlateSplineTransform:
    """
    Fit a regularized thin-plate spline to the residual field.

    Anchor samples enter the bordered system as zero-displacement rows with
    no regularization on their diagonal, so the spline interpolates zero there.
    The system is solved in Hartley-normalized coordinates and mapped back
    to pixel coefficients.

    After each solve the displacement is checked on a sample of every anchor
    twice as dense as its control samples. Check points above
    `anchor_tolerance` join the system as further zero rows, for at most
    `anchor_refine_rounds` rounds.

    Raises:
        InsufficientConstraints: no residual samples
        DegenerateControlPoints: near-duplicate control points or an
            ill-conditioned system
        AnchorViolation: anchor displacement still above tolerance after
            the last round
    """
    if len(field) == 0:
        raise InsufficientConstraints("Local warp needs at least one scored constraint")

    anchor_polys = [Polygon(a.region) for a in anchors]
    keep = np.array([not any(p.covers(ShapelyPoint(*pt)) for p in anchor_polys)
                     for pt in field.points], dtype=bool)
    if not np.all(keep):
        logger.debug(f"  Dropping {int((~keep).sum())} residual samples inside anchor regions")
    keep &= field.weights > 0
    data_pts, data_disp, data_w = merge_coincident(
        field.points[keep], field.displacements[keep], field.weights[keep])

    idx = _subsample(len(data_pts), max_control_points)
    if len(idx) < len(data_pts):
        logger.info(f"  Subsampled TPS control points: {len(data_pts)} -> {len(idx)}")
    data_pts, data_disp, data_w = data_pts[idx], data_disp[idx], data_w[idx]

    spacing = _anchor_spacing(data_pts, anchor_spacing, min_separation)
    anchor_pts = [anchor_samples(a.region, spacing, anchor_max_samples) for a in anchors]
    anchor_pts = np.vstack(anchor_pts) if anchor_pts else np.zeros((0, 2))
    check_pts = [anchor_samples(a.region, spacing / 2.0, 4 * anchor_max_samples) for a in anchors]
    check_pts = np.vstack(check_pts) if check_pts else np.zeros((0, 2))

    for round_index in range(anchor_refine_rounds + 1):
        tps, cond = _fit_tps(data_pts, data_disp, data_w, anchor_pts, lam, min_separation, max_condition)
        if len(check_pts) == 0:
            break
        disp = np.linalg.norm(tps.displacement(check_pts), axis=1)
        worst = float(disp.max())
        logger.debug(f"  Anchor check round {round_index}: max displacement {worst:.3g} px")
        if worst <= anchor_tolerance:
            break
        added = _pick_violations(check_pts, disp, tps.control_points, anchor_tolerance, spacing / 8.0)
        if round_index == anchor_refine_rounds or len(added) == 0:
            raise AnchorViolation(
                f"Local warp moves anchored pixels by up to {worst:.3g} px "
                f"(tolerance {anchor_tolerance} px)", max_displacement=worst)
        anchor_pts = np.vstack([anchor_pts, added])

    logger.info(f"  TPS: {len(data_pts)} data control points, {len(anchor_pts)} anchor samples, "
                f"lambda={lam}, condition={cond:.3g}")
    return tps


# ---------------------------------------------------------------------------
# Free-form deformation
# ---------------------------------------------------------------------------

def _ffd_grid(points: np.ndarray, anchor_polys: List[Polygon], grid_size: int) -> Tuple[np.ndarray, float, int, int]:
    bounds = [points.min(axis=0), points.max(axis=0)]
    for p in anchor_polys:
        minx, miny, maxx, maxy = p.bounds
        bounds[0] = np.minimum(bounds[0], [minx, miny])
        bounds[1] = np.maximum(bounds[1], [maxx, maxy])
    lo, hi = bounds
    extent = float(np.max(hi - lo))
    spacing = extent / grid_size if extent > 0 else 1.0
    origin = lo - spacing
    nx = int(math.ceil((hi[0] - lo[0]) / spacing)) + 3
    ny = int(math.ceil((hi[1] - lo[1]) / spacing)) + 3
    return origin, spacing, nx, ny


def solve_ffd(field: ResidualField, anchors: Sequence[Anchor], lam: float = DEFAULT_TPS_LAMBDA,
              grid_size: int = DEFAULT_FFD_GRID_SIZE) -> FreeFormDeformation:
    """
    Fit a bilinear displacement grid to the residual field.

    The grid covers the data with a one-cell margin. Border nodes and the
    nodes of every cell touching an anchor are fixed at zero; the remaining
    nodes solve a sparse least-squares problem with a first-difference
    smoothness penalty weighted by lam.

    Raises:
        InsufficientConstraints: no residual samples
        DegenerateControlPoints: every node is fixed
    """
    if len(field) == 0:
        raise InsufficientConstraints("Local warp needs at least one scored constraint")

    anchor_polys = [Polygon(a.region) for a in anchors]
    origin, spacing, nx, ny = _ffd_grid(field.points, anchor_polys, grid_size)

    fixed = np.zeros((ny, nx), dtype=bool)
    fixed[0, :] = fixed[-1, :] = True
    fixed[:, 0] = fixed[:, -1] = True
    for poly in anchor_polys:
        for row in range(ny - 1):
            for col in range(nx - 1):
                x0 = origin[0] + col * spacing
                y0 = origin[1] + row * spacing
                if poly.intersects(box(x0, y0, x0 + spacing, y0 + spacing)):
                    fixed[row:row + 2, col:col + 2] = True

    free_index = -np.ones((ny, nx), dtype=int)
    free_nodes = np.argwhere(~fixed)
    if len(free_nodes) == 0:
        raise DegenerateControlPoints("Every FFD node is fixed by the border or an anchor")
    free_index[~fixed] = np.arange(len(free_nodes))
    num_free = len(free_nodes)

    helper = FreeFormDeformation(origin, np.array([spacing, spacing]), np.zeros((ny, nx, 2)))
    rows, cols, vals = [], [], []
    rhs = []
    r = 0
    for pt, disp, w in zip(field.points, field.displacements, field.weights):
        cell = helper.cell_weights(pt)
        if cell is None:
            continue
        row, col, fx, fy = cell
        sw = math.sqrt(w)
        for (i, j), bw in (((row, col), (1 - fx) * (1 - fy)), ((row, col + 1), fx * (1 - fy)),
                           ((row + 1, col), (1 - fx) * fy), ((row + 1, col + 1), fx * fy)):
            k = free_index[i, j]
            if k >= 0 and bw != 0.0:
                rows.append(r)
                cols.append(k)
                vals.append(sw * bw)
        rhs.append(sw * disp)
        r += 1

    sl = math.sqrt(lam) if lam > 0 else 0.0
    if sl > 0:
        for i in range(ny):
            for j in range(nx):
                for ni, nj in ((i, j + 1), (i + 1, j)):
                    if ni >= ny or nj >= nx:
                        continue
                    a, b = free_index[i, j], free_index[ni, nj]
                    if a < 0 and b < 0:
                        continue
                    if a >= 0:
                        rows.append(r)
                        cols.append(a)
                        vals.append(sl)
                    if b >= 0:
                        rows.append(r)
                        cols.append(b)
                        vals.append(-sl)
                    rhs.append(np.zeros(2))
                    r += 1

    A = sparse.csr_matrix((vals, (rows, cols)), shape=(r, num_free))
    b = np.asarray(rhs, dtype=np.float64).reshape(r, 2)
    solution = np.zeros((num_free, 2))
    for axis in range(2):
        solution[:, axis] = lsqr(A, b[:, axis], atol=1e-12, btol=1e-12, iter_lim=10 * num_free + 100)[0]

    displacements = np.zeros((ny, nx, 2))
    displacements[~fixed] = solution
    logger.info(f"  FFD: {nx}x{ny} grid, spacing {spacing:.3f} px, {num_free} free nodes, lambda={lam}")
    return FreeFormDeformation(origin=origin, spacing=np.array([spacing, spacing]),
                               displacements=displacements)


def solve_local_warp(global_stack, constraints: Sequence, model: str = 'tps',
                     lam: float = DEFAULT_TPS_LAMBDA, **kwargs):
    """
    Build the local warp stage for a solved global stack.

    Args:
        global_stack: TransformStack holding the global model
        constraints: Full constraint list
        model: 'tps' or 'ffd'
        lam: Regularization weight (>= 0)

    Returns:
        ThinPlateSplineTransform or FreeFormDeformation
    """
    if model not in LOCAL_MODELS:
        raise ValueError(f"Unknown local warp model: {model}")
    if lam < 0 or not math.isfinite(lam):
        raise ValueError(f"lambda must be finite and non-negative, got {lam}")
    anchors = [c for c in constraints if isinstance(c, Anchor)]
    field = compute_residual_field(global_stack, constraints)
    logger.info(f"  Residual field: {len(field)} samples from {len(set(field.ids))} constraints, "
                f"{len(anchors)} anchors")
    if model == 'tps':
        return solve_tps(field, anchors, lam, **kwargs)
    return solve_ffd(field, anchors, lam, **kwargs)
