"""
Transformations module for the georeferencing engine.
Provides the transform variants (identity, similarity, affine, homography,
thin-plate spline, free-form deformation) and the ordered TransformStack that
maps source pixels to reference pixels.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np
from affine import Affine

from defaults import DEFAULT_INVERSE_MAX_ITERATIONS, DEFAULT_INVERSE_TOLERANCE
from errors import InverseDidNotConverge, UnsupportedForProjExport

logger = logging.getLogger(__name__)


def _as_points(points) -> np.ndarray:
    pts = np.asarray(points, dtype=np.float64)
    if pts.ndim == 1:
        pts = pts.reshape(1, 2)
    return pts


def _affine_apply(aff: Affine, pts: np.ndarray) -> np.ndarray:
    a, b, c, d, e, f = aff[:6]
    x = pts[:, 0]
    y = pts[:, 1]
    return np.column_stack([a * x + b * y + c, d * x + e * y + f])


# ---------------------------------------------------------------------------
# Analytic stages
# ---------------------------------------------------------------------------

@dataclass
class IdentityTransform:
    TYPE = 'identity'

    def apply(self, points) -> np.ndarray:
        return _as_points(points).copy()

    def apply_inverse(self, points) -> np.ndarray:
        return _as_points(points).copy()

    def as_affine(self) -> Affine:
        return Affine.identity()

    def to_dict(self) -> Dict:
        return {'type': self.TYPE}


@dataclass
class SimilarityTransform:
    """Rotation, uniform scale and translation (4 DOF)."""
    scale: float = 1.0
    rotation: float = 0.0
    tx: float = 0.0
    ty: float = 0.0
    TYPE = 'similarity'

    def as_affine(self) -> Affine:
        c = self.scale * math.cos(self.rotation)
        s = self.scale * math.sin(self.rotation)
        return Affine(c, -s, self.tx, s, c, self.ty)

    def apply(self, points) -> np.ndarray:
        return _affine_apply(self.as_affine(), _as_points(points))

    def apply_inverse(self, points) -> np.ndarray:
        return _affine_apply(~self.as_affine(), _as_points(points))

    def to_dict(self) -> Dict:
        return {'type': self.TYPE, 'scale': self.scale, 'rotation': self.rotation,
                'tx': self.tx, 'ty': self.ty}


@dataclass
class AffineTransform:
    """Full affine (6 DOF): [[a, b, c], [d, e, f]]."""
    matrix: np.ndarray = field(default_factory=lambda: np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]))
    TYPE = 'affine'

    def __post_init__(self):
        self.matrix = np.asarray(self.matrix, dtype=np.float64).reshape(2, 3)

    @classmethod
    def from_affine(cls, aff: Affine) -> 'AffineTransform':
        a, b, c, d, e, f = aff[:6]
        return cls(np.array([[a, b, c], [d, e, f]]))

    def as_affine(self) -> Affine:
        return Affine(*self.matrix.ravel().tolist())

    def apply(self, points) -> np.ndarray:
        return _affine_apply(self.as_affine(), _as_points(points))

    def apply_inverse(self, points) -> np.ndarray:
        return _affine_apply(~self.as_affine(), _as_points(points))

    def to_dict(self) -> Dict:
        return {'type': self.TYPE, 'matrix': self.matrix.tolist()}


@dataclass
class HomographyTransform:
    """Projective transform (8 DOF), normalized so that h33 = 1."""
    matrix: np.ndarray = field(default_factory=lambda: np.eye(3))
    TYPE = 'homography'

    def __post_init__(self):
        H = np.asarray(self.matrix, dtype=np.float64).reshape(3, 3)
        if abs(H[2, 2]) < 1e-15:
            raise ValueError("Homography with h33 == 0 cannot be normalized")
        self.matrix = H / H[2, 2]

    def _map(self, H: np.ndarray, points) -> np.ndarray:
        pts = _as_points(points).reshape(-1, 1, 2)
        return cv2.perspectiveTransform(pts, H).reshape(-1, 2)

    def apply(self, points) -> np.ndarray:
        return self._map(self.matrix, points)

    def apply_inverse(self, points) -> np.ndarray:
        return self._map(np.linalg.inv(self.matrix), points)

    def to_dict(self) -> Dict:
        return {'type': self.TYPE, 'matrix': self.matrix.tolist()}


# ---------------------------------------------------------------------------
# Spline stages (displacement fields, inverted by bounded Newton iteration)
# ---------------------------------------------------------------------------

def tps_kernel(r: np.ndarray) -> np.ndarray:
    """Thin-plate radial basis U(r) = r^2 log r, with U(0) = 0."""
    r = np.asarray(r, dtype=np.float64)
    out = np.zeros_like(r)
    nz = r > 0
    out[nz] = r[nz] ** 2 * np.log(r[nz])
    return out


def _newton_inverse(stage, target: np.ndarray, max_iterations: int, tolerance: float) -> np.ndarray:
    """Solve x + D(x) = target for x, starting from target - D(target)."""
    x = target - stage.displacement(target.reshape(1, 2))[0]
    for _ in range(max_iterations):
        disp, jac = stage.displacement_and_jacobian(x)
        residual = x + disp - target
        if np.linalg.norm(residual) <= tolerance * max(1.0, np.linalg.norm(target)):
            return x
        J = np.eye(2) + jac
        det = np.linalg.det(J)
        if not np.isfinite(det) or abs(det) < 1e-12:
            raise InverseDidNotConverge(
                f"{stage.TYPE} inverse hit a singular Jacobian near ({x[0]:.3f}, {x[1]:.3f})")
        x = x - np.linalg.solve(J, residual)
        if not np.all(np.isfinite(x)):
            break
    raise InverseDidNotConverge(
        f"{stage.TYPE} inverse did not converge for ({target[0]:.3f}, {target[1]:.3f}) "
        f"within {max_iterations} iterations")


@dataclass
class ThinPlateSplineTransform:
    """
    Thin-plate spline displacement layered on top of the global model.

    D(p) = [1, x, y] @ affine + sum_i U(|p - c_i|) * weights[i]
    and the stage maps p -> p + D(p).
    """
    control_points: np.ndarray
    weights: np.ndarray
    affine: np.ndarray
    lam: float = 0.0
    max_iterations: int = DEFAULT_INVERSE_MAX_ITERATIONS
    tolerance: float = DEFAULT_INVERSE_TOLERANCE
    TYPE = 'tps'

    def __post_init__(self):
        self.control_points = np.asarray(self.control_points, dtype=np.float64).reshape(-1, 2)
        self.weights = np.asarray(self.weights, dtype=np.float64).reshape(-1, 2)
        self.affine = np.asarray(self.affine, dtype=np.float64).reshape(3, 2)

    def displacement(self, points) -> np.ndarray:
        pts = _as_points(points)
        diff = pts[:, None, :] - self.control_points[None, :, :]
        K = tps_kernel(np.linalg.norm(diff, axis=2))
        P = np.column_stack([np.ones(len(pts)), pts])
        return P @ self.affine + K @ self.weights

    def displacement_and_jacobian(self, point: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        diff = point[None, :] - self.control_points
        r = np.linalg.norm(diff, axis=1)
        disp = np.array([1.0, point[0], point[1]]) @ self.affine + tps_kernel(r) @ self.weights
        # grad U = (p - c) * (2 log r + 1)
        g = np.zeros(len(r))
        nz = r > 0
        g[nz] = 2.0 * np.log(r[nz]) + 1.0
        grad = diff * g[:, None]
        jac = self.weights.T @ grad + self.affine[1:, :].T
        return disp, jac

    def apply(self, points) -> np.ndarray:
        pts = _as_points(points)
        return pts + self.displacement(pts)

    def apply_inverse(self, points) -> np.ndarray:
        pts = _as_points(points)
        return np.array([_newton_inverse(self, p, self.max_iterations, self.tolerance) for p in pts])

    def to_dict(self) -> Dict:
        return {'type': self.TYPE, 'control_points': self.control_points.tolist(),
                'weights': self.weights.tolist(), 'affine': self.affine.tolist(), 'lam': self.lam}


@dataclass
class FreeFormDeformation:
    """
    Bilinear displacement field on a regular grid.

    displacements has shape (ny, nx, 2); node (i, j) sits at
    origin + (j * spacing[0], i * spacing[1]). Outside the grid the
    displacement is zero (border nodes are held at zero by the solver).
    """
    origin: np.ndarray
    spacing: np.ndarray
    displacements: np.ndarray
    max_iterations: int = DEFAULT_INVERSE_MAX_ITERATIONS
    tolerance: float = DEFAULT_INVERSE_TOLERANCE
    TYPE = 'ffd'

    def __post_init__(self):
        self.origin = np.asarray(self.origin, dtype=np.float64).reshape(2)
        self.spacing = np.asarray(self.spacing, dtype=np.float64).reshape(2)
        self.displacements = np.asarray(self.displacements, dtype=np.float64)
        if self.displacements.ndim != 3 or self.displacements.shape[2] != 2:
            raise ValueError("FFD displacements must have shape (ny, nx, 2)")
        if np.any(self.spacing <= 0):
            raise ValueError("FFD spacing must be positive")

    @property
    def shape(self) -> Tuple[int, int]:
        return self.displacements.shape[0], self.displacements.shape[1]

    def cell_weights(self, point: np.ndarray) -> Optional[Tuple[int, int, float, float]]:
        """Cell (row, col) and fractional offsets of a point, or None outside the grid."""
        ny, nx = self.shape
        g = (point - self.origin) / self.spacing
        if not (0.0 <= g[0] <= nx - 1 and 0.0 <= g[1] <= ny - 1):
            return None
        col = min(int(math.floor(g[0])), nx - 2)
        row = min(int(math.floor(g[1])), ny - 2)
        return row, col, g[0] - col, g[1] - row

    def displacement(self, points) -> np.ndarray:
        pts = _as_points(points)
        out = np.zeros_like(pts)
        for k, p in enumerate(pts):
            out[k] = self.displacement_and_jacobian(p)[0]
        return out

    def displacement_and_jacobian(self, point: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        cell = self.cell_weights(point)
        if cell is None:
            return np.zeros(2), np.zeros((2, 2))
        row, col, fx, fy = cell
        d00 = self.displacements[row, col]
        d01 = self.displacements[row, col + 1]
        d10 = self.displacements[row + 1, col]
        d11 = self.displacements[row + 1, col + 1]
        disp = (d00 * (1 - fx) * (1 - fy) + d01 * fx * (1 - fy)
                + d10 * (1 - fx) * fy + d11 * fx * fy)
        ddx = ((d01 - d00) * (1 - fy) + (d11 - d10) * fy) / self.spacing[0]
        ddy = ((d10 - d00) * (1 - fx) + (d11 - d01) * fx) / self.spacing[1]
        return disp, np.column_stack([ddx, ddy])

    def apply(self, points) -> np.ndarray:
        pts = _as_points(points)
        return pts + self.displacement(pts)

    def apply_inverse(self, points) -> np.ndarray:
        pts = _as_points(points)
        return np.array([_newton_inverse(self, p, self.max_iterations, self.tolerance) for p in pts])

    def to_dict(self) -> Dict:
        return {'type': self.TYPE, 'origin': self.origin.tolist(), 'spacing': self.spacing.tolist(),
                'displacements': self.displacements.tolist()}


AFFINE_STAGES = (IdentityTransform, SimilarityTransform, AffineTransform)
SPLINE_STAGES = (ThinPlateSplineTransform, FreeFormDeformation)


def transform_from_dict(data: Dict):
    """Rebuild a transform stage from its to_dict() form."""
    kind = data.get('type')
    if kind == IdentityTransform.TYPE:
        return IdentityTransform()
    if kind == SimilarityTransform.TYPE:
        return SimilarityTransform(float(data['scale']), float(data['rotation']),
                                   float(data['tx']), float(data['ty']))
    if kind == AffineTransform.TYPE:
        return AffineTransform(np.array(data['matrix']))
    if kind == HomographyTransform.TYPE:
        return HomographyTransform(np.array(data['matrix']))
    if kind == ThinPlateSplineTransform.TYPE:
        return ThinPlateSplineTransform(np.array(data['control_points']), np.array(data['weights']),
                                        np.array(data['affine']), float(data.get('lam', 0.0)))
    if kind == FreeFormDeformation.TYPE:
        return FreeFormDeformation(np.array(data['origin']), np.array(data['spacing']),
                                   np.array(data['displacements']))
    raise ValueError(f"Unknown transform type: {kind!r}")


def _format_number(value: float) -> str:
    text = f"{value:.15g}"
    return '0' if text == '-0' else text


# ---------------------------------------------------------------------------
# Stack
# ---------------------------------------------------------------------------

class TransformStack:
    """Ordered chain of stages; evaluation runs them left to right."""

    def __init__(self, stages: Optional[Sequence] = None):
        self.stages: List = list(stages) if stages else []

    def __len__(self):
        return len(self.stages)

    def __repr__(self):
        return f"TransformStack([{', '.join(s.TYPE for s in self.stages)}])"

    def evaluate_many(self, points) -> np.ndarray:
        pts = _as_points(points)
        for stage in self.stages:
            pts = stage.apply(pts)
        return pts

    def evaluate(self, point) -> Tuple[float, float]:
        """Map one source pixel to the reference pixel space."""
        out = self.evaluate_many(point)[0]
        return float(out[0]), float(out[1])

    def invert_many(self, points) -> np.ndarray:
        pts = _as_points(points)
        for stage in reversed(self.stages):
            pts = stage.apply_inverse(pts)
        return pts

    def invert(self, point) -> Tuple[float, float]:
        """
        Map one reference pixel back to the source pixel space.

        Raises:
            InverseDidNotConverge: if a spline stage cannot be inverted at this point
        """
        out = self.invert_many(point)[0]
        return float(out[0]), float(out[1])

    def is_affine(self) -> bool:
        return all(isinstance(s, AFFINE_STAGES) for s in self.stages)

    def has_local_warp(self) -> bool:
        return any(isinstance(s, SPLINE_STAGES) for s in self.stages)

    def global_stage(self):
        """First similarity/affine/homography stage, or None."""
        for s in self.stages:
            if isinstance(s, (SimilarityTransform, AffineTransform, HomographyTransform)):
                return s
        return None

    def to_affine(self) -> Affine:
        """Collapse an affine-only stack into a single Affine."""
        result = Affine.identity()
        for stage in self.stages:
            if not isinstance(stage, AFFINE_STAGES):
                raise UnsupportedForProjExport(
                    f"Stage '{stage.TYPE}' cannot be expressed as an affine transform")
            result = stage.as_affine() * result
        return result

    def compose_with(self, other_affine) -> 'TransformStack':
        """Append another affine (e.g. the reference raster's pixel->world) after this stack."""
        if not isinstance(other_affine, Affine):
            other_affine = Affine(*list(other_affine)[:6])
        return TransformStack(self.stages + [AffineTransform.from_affine(other_affine)])

    def to_proj_pipeline(self) -> str:
        """
        Render the stack as a PROJ pipeline of affine steps.

        Raises:
            UnsupportedForProjExport: if any stage is not identity/similarity/affine
        """
        steps = []
        for stage in self.stages:
            if not isinstance(stage, AFFINE_STAGES):
                raise UnsupportedForProjExport(
                    f"Stage '{stage.TYPE}' has no PROJ pipeline representation")
            if isinstance(stage, IdentityTransform):
                continue
            a, b, c, d, e, f = stage.as_affine()[:6]
            steps.append(
                f"+step +proj=affine +xoff={_format_number(c)} +yoff={_format_number(f)} "
                f"+s11={_format_number(a)} +s12={_format_number(b)} "
                f"+s21={_format_number(d)} +s22={_format_number(e)}")
        if not steps:
            steps.append("+step +proj=affine +xoff=0 +yoff=0 +s11=1 +s12=0 +s21=0 +s22=1")
        return ' '.join(['+proj=pipeline'] + steps)

    def to_dict(self) -> Dict:
        return {'stages': [s.to_dict() for s in self.stages]}

    @classmethod
    def from_dict(cls, data: Dict) -> 'TransformStack':
        return cls([transform_from_dict(s) for s in data.get('stages', [])])
