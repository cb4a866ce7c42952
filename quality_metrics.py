"""
Quality metrics for a solved transform stack.

Residuals are measured in reference pixels and converted to the requested
unit. Aggregates skip constraints inside a ChangeMask and are accumulated
in ascending id order, so the same session always reports the same numbers.
"""

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from constraints import (
    SCORED_TYPES,
    Area,
    Directional,
    Line,
    PointPair,
    masked_ids,
    reference_location,
    source_location,
)
from defaults import DEFAULT_AREA_SAMPLES, DEFAULT_LINE_SAMPLES, ERROR_UNITS
from errors import InvalidConstraint, LowConfidenceScale, LowSourceVariance, MissingCrs, MissingMapScale
from refinement import closed_ring, closest_points_on_polyline, sample_polyline, sample_ring

logger = logging.getLogger(__name__)

LOW_VARIANCE_THRESHOLD = 1e-6


@dataclass
class QualityMetrics:
    """Aggregate and per-constraint registration error."""
    rmse: float = 0.0
    p90_error: float = 0.0
    residuals_by_id: Dict[int, float] = field(default_factory=dict)
    unit: str = 'pixels'
    residuals: List[float] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    map_scale: Optional[float] = None
    excluded_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict:
        data = asdict(self)
        # JSON object keys must be strings
        data['residuals_by_id'] = {str(k): v for k, v in self.residuals_by_id.items()}
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'QualityMetrics':
        data = {k: v for k, v in data.items() if k in cls.__annotations__}
        data['residuals_by_id'] = {int(k): float(v) for k, v in data.get('residuals_by_id', {}).items()}
        return cls(**data)

    def convert_units(self, pixel_size: float, target: str,
                      map_scale: Optional[float] = None) -> 'QualityMetrics':
        """
        Return a copy expressed in another unit using a single pixel size.

        Args:
            pixel_size: Ground meters per reference pixel
            target: 'pixels', 'meters' or 'mapmm'
            map_scale: Map scale denominator, required whenever mapmm is involved

        Raises:
            MissingMapScale: mapmm involved and no denominator is available
        """
        if target not in ERROR_UNITS:
            raise ValueError(f"Unknown error unit: {target}")
        denom = map_scale if map_scale is not None else self.map_scale
        if 'mapmm' in (self.unit, target) and self.unit != target and denom is None:
            raise MissingMapScale("Converting to or from map millimeters needs a map scale denominator")

        meters_per_unit = {
            'pixels': pixel_size,
            'meters': 1.0,
            'mapmm': None if denom is None else denom / 1000.0,
        }
        factor = meters_per_unit[self.unit] / meters_per_unit[target] if self.unit != target else 1.0
        return QualityMetrics(
            rmse=self.rmse * factor,
            p90_error=self.p90_error * factor,
            residuals_by_id={k: v * factor for k, v in self.residuals_by_id.items()},
            unit=target,
            residuals=[r * factor for r in self.residuals],
            warnings=list(self.warnings),
            map_scale=denom if target == 'mapmm' else self.map_scale,
            excluded_ids=list(self.excluded_ids),
        )


def nearest_rank(values: Sequence[float], q: float) -> float:
    """Nearest-rank percentile (no interpolation); 0.0 for an empty sequence."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(1, int(math.ceil(q * len(ordered))))
    return float(ordered[rank - 1])


def constraint_residual(stack, constraint, line_samples: int = DEFAULT_LINE_SAMPLES,
                        area_samples: int = DEFAULT_AREA_SAMPLES) -> float:
    """Displacement magnitude of one scored constraint in reference pixels."""
    if isinstance(constraint, PointPair):
        pred = stack.evaluate_many(constraint.src)[0]
        return float(np.linalg.norm(pred - np.asarray(constraint.dst)))
    if isinstance(constraint, Directional):
        pred = stack.evaluate_many(constraint.src)[0]
        return float(np.linalg.norm(pred - np.asarray(constraint.point)))
    if isinstance(constraint, Line):
        pred = stack.evaluate_many(sample_polyline(constraint.src_points, line_samples))
        _, dist, _ = closest_points_on_polyline(pred, np.asarray(constraint.dst_points, dtype=np.float64))
        return float(np.mean(dist))
    if isinstance(constraint, Area):
        pred = stack.evaluate_many(sample_ring(constraint.src_polygon, area_samples))
        _, dist, _ = closest_points_on_polyline(pred, closed_ring(constraint.dst_polygon))
        return float(np.mean(dist))
    raise InvalidConstraint(f"Constraint type {type(constraint).__name__} has no residual")


def _source_variance_low(constraints: Sequence) -> bool:
    locations = [source_location(c) for c in constraints]
    if not locations:
        return False
    pts = np.asarray(locations)
    var = float(np.mean(np.sum((pts - pts.mean(axis=0)) ** 2, axis=1)))
    return var < LOW_VARIANCE_THRESHOLD


def compute_quality_metrics(stack, constraints: Sequence, unit: str = 'pixels',
                            map_scale: Optional[float] = None, geodesy=None,
                            line_samples: int = DEFAULT_LINE_SAMPLES,
                            area_samples: int = DEFAULT_AREA_SAMPLES) -> QualityMetrics:
    """
    Score every constraint against a transform stack.

    Args:
        stack: TransformStack mapping source pixels to reference pixels
        constraints: Full constraint list
        unit: 'pixels', 'meters' or 'mapmm'
        map_scale: Map scale denominator (required for 'mapmm')
        geodesy: GeodesyAdapter providing the local metric scale

    Returns:
        QualityMetrics in the requested unit

    Raises:
        MissingMapScale: unit is 'mapmm' and no denominator was given
        MissingCrs: a ground unit was requested without a reference georef
    """
    if unit not in ERROR_UNITS:
        raise ValueError(f"Unknown error unit: {unit}")
    check_unit_inputs(unit, map_scale, geodesy)

    warnings = []
    if unit != 'pixels' and not geodesy.has_crs:
        warnings.append(LowConfidenceScale.__name__)
        logger.warning("  Reference has no usable CRS; treating affine units as meters")

    scored = sorted((c for c in constraints if isinstance(c, SCORED_TYPES)), key=lambda c: c.id)
    excluded = set(masked_ids(constraints))

    residuals_by_id = {}
    for c in scored:
        r = constraint_residual(stack, c, line_samples, area_samples)
        if unit != 'pixels':
            loc = reference_location(c)
            r *= geodesy.metric_scale_at(float(loc[0]), float(loc[1]))
            if unit == 'mapmm':
                r *= 1000.0 / map_scale
        residuals_by_id[c.id] = r

    kept = [c for c in scored if c.id not in excluded]
    aggregated = [residuals_by_id[c.id] for c in kept]
    rmse = math.sqrt(math.fsum(r * r for r in aggregated) / len(aggregated)) if aggregated else 0.0
    p90 = nearest_rank(aggregated, 0.9)

    if _source_variance_low(kept):
        warnings.append(LowSourceVariance.__name__)
        logger.warning("  Low variance in source points; results may be unstable")

    logger.info(f"  RMSE: {rmse:.4f} {unit}, P90: {p90:.4f} {unit} "
                f"({len(aggregated)} scored, {len(excluded)} masked)")
    return QualityMetrics(rmse=rmse, p90_error=p90, residuals_by_id=residuals_by_id, unit=unit,
                          residuals=sorted(aggregated), warnings=warnings,
                          map_scale=map_scale, excluded_ids=sorted(excluded))


def check_unit_inputs(unit: str, map_scale: Optional[float], geodesy):
    """Fail before solving when the requested unit cannot be produced."""
    if unit == 'mapmm':
        if map_scale is None:
            raise MissingMapScale("Error unit 'mapmm' needs a map scale denominator (e.g. 10000)")
        if not math.isfinite(map_scale) or map_scale <= 0:
            raise ValueError(f"Map scale denominator must be positive, got {map_scale}")
    if unit != 'pixels' and (geodesy is None or not geodesy.has_georef):
        raise MissingCrs(f"Error unit '{unit}' needs a georeferenced reference raster")
