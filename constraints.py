"""
Constraint types and the Constraint Store.

A constraint is one of a closed set of frozen dataclasses. The store is the
single owner of constraint identity: it assigns ids, validates geometry at
add time and derives the georeferenced fields of point pairs.
"""

import logging
import math
from dataclasses import dataclass, fields, replace
from typing import ClassVar, Dict, List, Optional, Tuple, Union

import numpy as np
from shapely.geometry import Point as ShapelyPoint
from shapely.geometry import Polygon

from errors import InvalidConstraint, MissingCrs

logger = logging.getLogger(__name__)

XY = Tuple[float, float]

RELATIONAL_KINDS = ('max_distance', 'min_distance', 'left_of', 'above')


@dataclass(frozen=True)
class PointPair:
    """Source pixel -> reference pixel correspondence."""
    KIND: ClassVar[str] = 'point_pair'
    src: XY
    dst: XY
    weight: float = 1.0
    dst_real: Optional[XY] = None
    dst_local: Optional[XY] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class Line:
    """Polyline correspondence scored by orthogonal distance."""
    KIND: ClassVar[str] = 'line'
    src_points: Tuple[XY, ...]
    dst_points: Tuple[XY, ...]
    weight: float = 1.0
    id: Optional[int] = None


@dataclass(frozen=True)
class Area:
    """Polygon correspondence scored by boundary Chamfer distance."""
    KIND: ClassVar[str] = 'area'
    src_polygon: Tuple[XY, ...]
    dst_polygon: Tuple[XY, ...]
    weight: float = 1.0
    id: Optional[int] = None


@dataclass(frozen=True)
class Directional:
    """
    Elliptical anisotropic pin.

    `src` is pinned to the reference location `point`; the ellipse with
    `semi_axes = (major, minor)` rotated by `axis_angle` (radians, from the
    reference x axis) describes how tightly each direction is held.
    """
    KIND: ClassVar[str] = 'directional'
    src: XY
    point: XY
    axis_angle: float
    semi_axes: XY
    weight: float = 1.0
    id: Optional[int] = None


@dataclass(frozen=True)
class Relational:
    """Soft one-sided relation between the predicted positions of two constraints."""
    KIND: ClassVar[str] = 'relational'
    a_id: int
    b_id: int
    kind: str
    param: float
    weight: float = 1.0
    id: Optional[int] = None


@dataclass(frozen=True)
class Anchor:
    """Reference-space region held at zero local displacement."""
    KIND: ClassVar[str] = 'anchor'
    region: Tuple[XY, ...]
    mode: str = 'no_warp'
    id: Optional[int] = None


@dataclass(frozen=True)
class ChangeMask:
    """Reference-space region whose constraints are excluded from scoring."""
    KIND: ClassVar[str] = 'change_mask'
    region: Tuple[XY, ...]
    id: Optional[int] = None


Constraint = Union[PointPair, Line, Area, Directional, Relational, Anchor, ChangeMask]

CONSTRAINT_TYPES = {
    cls.KIND: cls
    for cls in (PointPair, Line, Area, Directional, Relational, Anchor, ChangeMask)
}

# Kinds that produce a displacement residual
SCORED_TYPES = (PointPair, Line, Area, Directional)


def _unknown(constraint) -> InvalidConstraint:
    return InvalidConstraint(f"Unknown constraint type: {type(constraint).__name__}")


# ---------------------------------------------------------------------------
# Coercion and validation
# ---------------------------------------------------------------------------

def _as_xy(value, what: str) -> XY:
    try:
        x, y = value
        xy = (float(x), float(y))
    except (TypeError, ValueError):
        raise InvalidConstraint(f"{what} must be an (x, y) pair, got {value!r}")
    if not (math.isfinite(xy[0]) and math.isfinite(xy[1])):
        raise InvalidConstraint(f"{what} must be finite, got {xy}")
    return xy


def _as_path(values, what: str, min_points: int) -> Tuple[XY, ...]:
    try:
        path = tuple(_as_xy(v, what) for v in values)
    except TypeError:
        raise InvalidConstraint(f"{what} must be a sequence of points")
    if len(path) < min_points:
        raise InvalidConstraint(f"{what} needs at least {min_points} points, got {len(path)}")
    return path


def _as_weight(value) -> float:
    try:
        weight = float(value)
    except (TypeError, ValueError):
        raise InvalidConstraint(f"weight must be a number, got {value!r}")
    if not math.isfinite(weight) or weight <= 0:
        raise InvalidConstraint(f"weight must be in (0, inf), got {weight}")
    return weight


def _as_float(value, what: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidConstraint(f"{what} must be a number, got {value!r}")
    if not math.isfinite(number):
        raise InvalidConstraint(f"{what} must be finite, got {number}")
    return number


def _as_id(value, what: str) -> int:
    try:
        ident = int(value)
    except (TypeError, ValueError, OverflowError):
        raise InvalidConstraint(f"{what} must be a constraint id, got {value!r}")
    if isinstance(value, bool) or ident != value:
        raise InvalidConstraint(f"{what} must be a constraint id, got {value!r}")
    return ident


def _as_region(values, what: str) -> Tuple[XY, ...]:
    region = _as_path(values, what, 3)
    poly = Polygon(region)
    if not poly.is_valid or poly.area <= 0:
        raise InvalidConstraint(f"{what} is not a valid simple polygon")
    return region


def _check_in_bounds(points, bounds: Optional[XY], what: str):
    if bounds is None:
        return
    width, height = bounds
    for x, y in points:
        if not (0.0 <= x <= width and 0.0 <= y <= height):
            raise InvalidConstraint(
                f"{what} ({x}, {y}) lies outside the source bounds {width}x{height}")


def coerce_constraint(constraint: Constraint, source_bounds: Optional[XY] = None) -> Constraint:
    """
    Validate a constraint and return a copy with normalized coordinates.

    Args:
        constraint: Any constraint variant
        source_bounds: (width, height) of the source document, or None if unknown

    Returns:
        Normalized constraint (tuples of floats)

    Raises:
        InvalidConstraint: on malformed geometry, bad weight or out-of-bounds input
    """
    if isinstance(constraint, PointPair):
        src = _as_xy(constraint.src, 'src')
        _check_in_bounds([src], source_bounds, 'src')
        return replace(constraint, src=src, dst=_as_xy(constraint.dst, 'dst'),
                       weight=_as_weight(constraint.weight),
                       dst_real=None if constraint.dst_real is None else _as_xy(constraint.dst_real, 'dst_real'),
                       dst_local=None if constraint.dst_local is None else _as_xy(constraint.dst_local, 'dst_local'))
    if isinstance(constraint, Line):
        src = _as_path(constraint.src_points, 'src_points', 2)
        dst = _as_path(constraint.dst_points, 'dst_points', 2)
        _check_in_bounds(src, source_bounds, 'src_points')
        if _path_length(src) <= 0 or _path_length(dst) <= 0:
            raise InvalidConstraint("line has zero length")
        return replace(constraint, src_points=src, dst_points=dst, weight=_as_weight(constraint.weight))
    if isinstance(constraint, Area):
        src = _as_region(constraint.src_polygon, 'src_polygon')
        dst = _as_region(constraint.dst_polygon, 'dst_polygon')
        _check_in_bounds(src, source_bounds, 'src_polygon')
        return replace(constraint, src_polygon=src, dst_polygon=dst, weight=_as_weight(constraint.weight))
    if isinstance(constraint, Directional):
        src = _as_xy(constraint.src, 'src')
        _check_in_bounds([src], source_bounds, 'src')
        major, minor = _as_xy(constraint.semi_axes, 'semi_axes')
        if major <= 0 or minor <= 0:
            raise InvalidConstraint(f"semi_axes must be positive, got {(major, minor)}")
        angle = _as_float(constraint.axis_angle, 'axis_angle')
        return replace(constraint, src=src, point=_as_xy(constraint.point, 'point'),
                       axis_angle=angle, semi_axes=(major, minor),
                       weight=_as_weight(constraint.weight))
    if isinstance(constraint, Relational):
        if constraint.kind not in RELATIONAL_KINDS:
            raise InvalidConstraint(f"Unknown relation kind: {constraint.kind!r}")
        param = _as_float(constraint.param, 'relation param')
        if constraint.kind in ('max_distance', 'min_distance') and param < 0:
            raise InvalidConstraint("distance band must be non-negative")
        a_id = _as_id(constraint.a_id, 'a_id')
        b_id = _as_id(constraint.b_id, 'b_id')
        if a_id == b_id:
            raise InvalidConstraint("a relation needs two different constraints")
        return replace(constraint, a_id=a_id, b_id=b_id,
                       param=param, weight=_as_weight(constraint.weight))
    if isinstance(constraint, Anchor):
        if constraint.mode != 'no_warp':
            raise InvalidConstraint(f"Unsupported anchor mode: {constraint.mode!r}")
        return replace(constraint, region=_as_region(constraint.region, 'region'))
    if isinstance(constraint, ChangeMask):
        return replace(constraint, region=_as_region(constraint.region, 'region'))
    raise _unknown(constraint)


def _path_length(path) -> float:
    pts = np.asarray(path, dtype=np.float64)
    return float(np.sum(np.linalg.norm(np.diff(pts, axis=0), axis=1)))


# ---------------------------------------------------------------------------
# Geometry helpers shared by the solver stages
# ---------------------------------------------------------------------------

def source_location(constraint: Constraint) -> Optional[np.ndarray]:
    """Representative source pixel of a constraint (None for regions and relations)."""
    if isinstance(constraint, PointPair):
        return np.asarray(constraint.src, dtype=np.float64)
    if isinstance(constraint, Line):
        return np.mean(np.asarray(constraint.src_points, dtype=np.float64), axis=0)
    if isinstance(constraint, Area):
        c = Polygon(constraint.src_polygon).centroid
        return np.array([c.x, c.y])
    if isinstance(constraint, Directional):
        return np.asarray(constraint.src, dtype=np.float64)
    if isinstance(constraint, (Relational, Anchor, ChangeMask)):
        return None
    raise _unknown(constraint)


def reference_location(constraint: Constraint) -> Optional[np.ndarray]:
    """Representative reference pixel of a constraint (None for regions and relations)."""
    if isinstance(constraint, PointPair):
        return np.asarray(constraint.dst, dtype=np.float64)
    if isinstance(constraint, Line):
        return np.mean(np.asarray(constraint.dst_points, dtype=np.float64), axis=0)
    if isinstance(constraint, Area):
        c = Polygon(constraint.dst_polygon).centroid
        return np.array([c.x, c.y])
    if isinstance(constraint, Directional):
        return np.asarray(constraint.point, dtype=np.float64)
    if isinstance(constraint, (Relational, Anchor, ChangeMask)):
        return None
    raise _unknown(constraint)


def masked_ids(constraints: List[Constraint]) -> List[int]:
    """Ids of scored constraints whose reference location lies in a ChangeMask."""
    masks = [Polygon(c.region) for c in constraints if isinstance(c, ChangeMask)]
    if not masks:
        return []
    result = []
    for c in constraints:
        if not isinstance(c, SCORED_TYPES):
            continue
        loc = reference_location(c)
        pt = ShapelyPoint(float(loc[0]), float(loc[1]))
        if any(mask.covers(pt) for mask in masks):
            result.append(c.id)
    return result


def point_correspondences(constraints: List[Constraint],
                          high_trust_weight: float) -> List[Tuple[int, XY, XY, float]]:
    """
    Reduce constraints to point correspondences for robust estimation.

    Point pairs and directional pins contribute directly. Lines contribute
    their endpoints and areas their centroids, but only when the user marked
    them as high trust (weight >= high_trust_weight).

    Returns:
        List of (constraint_id, src, dst, weight) in ascending id order
    """
    result = []
    for c in sorted(constraints, key=lambda item: item.id):
        if isinstance(c, PointPair):
            result.append((c.id, c.src, c.dst, c.weight))
        elif isinstance(c, Directional):
            result.append((c.id, c.src, c.point, c.weight))
        elif isinstance(c, Line):
            if c.weight >= high_trust_weight:
                result.append((c.id, c.src_points[0], c.dst_points[0], c.weight))
                result.append((c.id, c.src_points[-1], c.dst_points[-1], c.weight))
        elif isinstance(c, Area):
            if c.weight >= high_trust_weight:
                src = tuple(source_location(c))
                dst = tuple(reference_location(c))
                result.append((c.id, src, dst, c.weight))
        elif isinstance(c, (Relational, Anchor, ChangeMask)):
            continue
        else:
            raise _unknown(c)
    return result


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _to_json_value(value):
    if isinstance(value, tuple):
        return [_to_json_value(v) for v in value]
    return value


def constraint_to_dict(constraint: Constraint) -> Dict:
    """Serialize a constraint to a JSON-compatible dict tagged with its kind."""
    if not isinstance(constraint, tuple(CONSTRAINT_TYPES.values())):
        raise _unknown(constraint)
    data = {'kind': constraint.KIND}
    for f in fields(constraint):
        data[f.name] = _to_json_value(getattr(constraint, f.name))
    return data


def constraint_from_dict(data: Dict) -> Constraint:
    """Inverse of constraint_to_dict. Geometry is validated when added to a store."""
    data = dict(data)
    kind = data.pop('kind', None)
    cls = CONSTRAINT_TYPES.get(kind)
    if cls is None:
        raise InvalidConstraint(f"Unknown constraint kind: {kind!r}")
    names = {f.name for f in fields(cls)}
    unknown = set(data) - names
    if unknown:
        raise InvalidConstraint(f"Unexpected fields for {kind}: {sorted(unknown)}")
    try:
        return cls(**data)
    except TypeError as e:
        raise InvalidConstraint(f"Malformed {kind} constraint: {e}")


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class ConstraintStore:
    """
    Single source of truth for the constraints of one session.

    Ids are assigned from a monotonically increasing counter and are never
    reused, even after deletion.
    """

    def __init__(self, source_bounds: Optional[XY] = None, geodesy=None):
        """
        Args:
            source_bounds: (width, height) of the source document; None skips the bounds check
            geodesy: Optional GeodesyAdapter used to derive dst_real / dst_local
        """
        self.source_bounds = source_bounds
        self.geodesy = geodesy
        self._constraints: Dict[int, Constraint] = {}
        self._next_id = 1

    @property
    def next_id(self) -> int:
        return self._next_id

    def __len__(self):
        return len(self._constraints)

    def add(self, constraint: Constraint) -> List[Constraint]:
        """Validate, assign an id, derive georeferenced fields and append."""
        self._insert(constraint, check_relations=True)
        return self.list()

    def _insert(self, constraint: Constraint, check_relations: bool):
        constraint = coerce_constraint(constraint, self.source_bounds)

        if constraint.id is None:
            cid = self._next_id
        else:
            cid = int(constraint.id)
            if cid < self._next_id:
                raise InvalidConstraint(f"Constraint id {cid} is already used or retired")
        constraint = replace(constraint, id=cid)

        if isinstance(constraint, Relational):
            self._check_relation(constraint, require_targets=check_relations)

        if isinstance(constraint, PointPair) and self.geodesy is not None:
            constraint = self._derive_georeferenced(constraint)

        self._constraints[cid] = constraint
        self._next_id = cid + 1
        logger.debug(f"Added {constraint.KIND} constraint {cid}")

    def _check_relation(self, relation: Relational, require_targets: bool = True):
        """Targets must carry a position; missing targets are tolerated only when require_targets is off."""
        for ref in (relation.a_id, relation.b_id):
            target = self._constraints.get(ref)
            if target is None:
                if require_targets:
                    raise InvalidConstraint(f"Relation references unknown constraint {ref}")
                continue
            if source_location(target) is None:
                raise InvalidConstraint(f"Constraint {ref} has no position to relate")

    def delete(self, constraint_id: int) -> List[Constraint]:
        """Remove a constraint. Its id is retired for the lifetime of the store."""
        if constraint_id not in self._constraints:
            raise InvalidConstraint(f"No constraint with id {constraint_id}")
        del self._constraints[constraint_id]
        dangling = [c.id for c in self._constraints.values()
                    if isinstance(c, Relational) and constraint_id in (c.a_id, c.b_id)]
        if dangling:
            logger.warning(f"Relations {dangling} now reference deleted constraint {constraint_id} "
                           f"and will be ignored by the solver")
        logger.debug(f"Deleted constraint {constraint_id}")
        return self.list()

    def get(self, constraint_id: int) -> Optional[Constraint]:
        return self._constraints.get(constraint_id)

    def list(self) -> List[Constraint]:
        return [self._constraints[cid] for cid in sorted(self._constraints)]

    def rederive(self):
        """Recompute dst_real / dst_local after the reference georef changed."""
        for cid, c in list(self._constraints.items()):
            if isinstance(c, PointPair):
                c = replace(c, dst_real=None, dst_local=None)
                if self.geodesy is not None:
                    c = self._derive_georeferenced(c)
                self._constraints[cid] = c

    def _derive_georeferenced(self, pair: PointPair) -> PointPair:
        dst_real = pair.dst_real
        dst_local = pair.dst_local
        if dst_real is None:
            dst_real = tuple(self.geodesy.pixel_to_world(*pair.dst))
        if dst_local is None:
            try:
                coord = self.geodesy.pixel_to(pair.dst[0], pair.dst[1], 'local_m')
                if not coord.low_confidence:
                    dst_local = (coord.x, coord.y)
            except (MissingCrs, ValueError, RuntimeError) as e:
                logger.debug(f"Could not derive local meters for constraint {pair.id}: {e}")
        return replace(pair, dst_real=dst_real, dst_local=dst_local)

    def to_dicts(self) -> List[Dict]:
        return [constraint_to_dict(c) for c in self.list()]

    def load_dicts(self, items: List[Dict], next_id: Optional[int] = None):
        """Replace the contents from serialized constraints, keeping their ids."""
        self._constraints = {}
        self._next_id = 1
        for item in items:
            c = constraint_from_dict(item)
            if c.id is None:
                raise InvalidConstraint("Persisted constraint without id")
            self._insert(c, check_relations=False)
        # targets stored after their relation are only visible now
        for c in self._constraints.values():
            if isinstance(c, Relational):
                self._check_relation(c, require_targets=False)
        if next_id is not None:
            if next_id < self._next_id:
                raise InvalidConstraint(f"next_id {next_id} is below the highest stored id")
            self._next_id = int(next_id)
