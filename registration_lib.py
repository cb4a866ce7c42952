"""
Core registration library for human-assisted georeferencing.

GeorefSession owns the constraints of one source document, runs the solver
pipeline (RANSAC -> refinement -> optional local warp), publishes the
resulting TransformStack and QualityMetrics, and exposes the geodesy and
export helpers. Sessions are independent; nothing here is process-global.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from constraints import ConstraintStore, masked_ids, point_correspondences
from defaults import (
    DATUM_POLICIES,
    DEFAULT_ANCHOR_MAX_SAMPLES,
    DEFAULT_ANCHOR_REFINE_ROUNDS,
    DEFAULT_ANCHOR_SPACING,
    DEFAULT_ANCHOR_TOLERANCE,
    DEFAULT_AREA_SAMPLES,
    DEFAULT_DATUM_POLICY,
    DEFAULT_DEBUG_LEVEL,
    DEFAULT_DEGENERACY_THRESHOLD,
    DEFAULT_ERROR_UNIT,
    DEFAULT_FFD_GRID_SIZE,
    DEFAULT_HIGH_TRUST_WEIGHT,
    DEFAULT_LINE_SAMPLES,
    DEFAULT_MAX_CONDITION_NUMBER,
    DEFAULT_METHOD,
    DEFAULT_MIN_CONTROL_SEPARATION,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_RANSAC_ITERATIONS,
    DEFAULT_RANSAC_SEED,
    DEFAULT_RANSAC_THRESHOLD,
    DEFAULT_REFINE_MAX_ITERATIONS,
    DEFAULT_REFINE_TOLERANCE,
    DEFAULT_RIDGE,
    DEFAULT_ROBUST_LOSS,
    DEFAULT_ROBUST_SCALE,
    DEFAULT_TPS_LAMBDA,
    DEFAULT_TPS_MAX_CONTROL_POINTS,
    ERROR_UNITS,
    GLOBAL_METHODS,
    LOCAL_MODELS,
    ROBUST_LOSSES,
)
from errors import MissingGlobalSolution, UnsupportedForProjExport
from exporters import export_geotiff, export_georeferenced_world_file, export_world_file
from geodesy import GeodesyAdapter, Georef, load_reference_georef
from local_warp import solve_local_warp
from quality_metrics import QualityMetrics, check_unit_inputs, compute_quality_metrics
from ransac import estimate_global_model
from refinement import Refiner
from transformations import TransformStack
from utils import read_json, write_json

SESSION_FORMAT_VERSION = 1


@dataclass
class RegistrationConfig:
    """Configuration for the registration pipeline."""
    method: str = DEFAULT_METHOD
    error_unit: str = DEFAULT_ERROR_UNIT
    map_scale: Optional[float] = None
    local_model: Optional[str] = None
    lam: float = DEFAULT_TPS_LAMBDA
    output_dir: str = DEFAULT_OUTPUT_DIR
    verbose: bool = False
    debug_level: str = DEFAULT_DEBUG_LEVEL

    # Source document size (width, height); None skips the bounds check
    source_bounds: Optional[List[float]] = None

    # RANSAC
    ransac_threshold: float = DEFAULT_RANSAC_THRESHOLD
    ransac_iterations: int = DEFAULT_RANSAC_ITERATIONS
    ransac_seed: int = DEFAULT_RANSAC_SEED
    degeneracy_threshold: float = DEFAULT_DEGENERACY_THRESHOLD
    high_trust_weight: float = DEFAULT_HIGH_TRUST_WEIGHT

    # Refinement
    robust_loss: str = DEFAULT_ROBUST_LOSS
    robust_scale: float = DEFAULT_ROBUST_SCALE
    refine_tolerance: float = DEFAULT_REFINE_TOLERANCE
    refine_max_iterations: int = DEFAULT_REFINE_MAX_ITERATIONS
    ridge: float = DEFAULT_RIDGE
    line_samples: int = DEFAULT_LINE_SAMPLES
    area_samples: int = DEFAULT_AREA_SAMPLES

    # Local warp
    tps_max_control_points: int = DEFAULT_TPS_MAX_CONTROL_POINTS
    min_control_separation: float = DEFAULT_MIN_CONTROL_SEPARATION
    max_condition_number: float = DEFAULT_MAX_CONDITION_NUMBER
    anchor_spacing: float = DEFAULT_ANCHOR_SPACING
    anchor_max_samples: int = DEFAULT_ANCHOR_MAX_SAMPLES
    anchor_tolerance: float = DEFAULT_ANCHOR_TOLERANCE
    anchor_refine_rounds: int = DEFAULT_ANCHOR_REFINE_ROUNDS
    ffd_grid_size: int = DEFAULT_FFD_GRID_SIZE

    # Geodesy
    datum_policy: str = DEFAULT_DATUM_POLICY

    def __post_init__(self):
        if self.method not in GLOBAL_METHODS:
            raise ValueError(f"method must be one of {GLOBAL_METHODS}, got {self.method!r}")
        if self.error_unit not in ERROR_UNITS:
            raise ValueError(f"error_unit must be one of {ERROR_UNITS}, got {self.error_unit!r}")
        if self.local_model is not None and self.local_model not in LOCAL_MODELS:
            raise ValueError(f"local_model must be one of {LOCAL_MODELS}, got {self.local_model!r}")
        if self.robust_loss not in ROBUST_LOSSES:
            raise ValueError(f"robust_loss must be one of {ROBUST_LOSSES}, got {self.robust_loss!r}")
        if self.datum_policy not in DATUM_POLICIES:
            raise ValueError(f"datum_policy must be one of {DATUM_POLICIES}, got {self.datum_policy!r}")

    @classmethod
    def from_dict(cls, config_dict: dict):
        """Create config from dictionary."""
        return cls(**{k: v for k, v in config_dict.items() if k in cls.__annotations__})

    def to_dict(self) -> dict:
        return asdict(self)


class GeorefSession:
    """
    One registration session: constraints, published solution and reference georef.

    A solve publishes its stack and metrics only after it completes; a solve
    that raises leaves the previous ones untouched.
    """

    def __init__(self, config: Optional[RegistrationConfig] = None,
                 georef: Optional[Georef] = None, source_bounds=None):
        self.config = config or RegistrationConfig()
        bounds = source_bounds if source_bounds is not None else self.config.source_bounds
        self.geodesy = GeodesyAdapter(georef, self.config.datum_policy)
        self.store = ConstraintStore(tuple(bounds) if bounds is not None else None,
                                     self.geodesy if georef is not None else None)
        self.reference_path: Optional[Path] = None
        self.transform_stack: Optional[TransformStack] = None
        self.quality_metrics: Optional[QualityMetrics] = None
        self.last_ransac = None
        self.last_refinement = None

    # -- constraints -------------------------------------------------------

    def add_constraint(self, constraint) -> list:
        return self.store.add(constraint)

    def delete_constraint(self, constraint_id: int) -> list:
        return self.store.delete(constraint_id)

    def list_constraints(self) -> list:
        return self.store.list()

    # -- solving -----------------------------------------------------------

    def _fit_global(self, method: str):
        """RANSAC followed by refinement; returns (stack, ransac result, refine result)."""
        if method not in GLOBAL_METHODS:
            raise ValueError(f"Unknown transform type: {method}")
        cfg = self.config
        constraints = self.store.list()
        excluded = set(masked_ids(constraints))
        usable = [c for c in constraints if c.id not in excluded]

        ransac_result = estimate_global_model(
            point_correspondences(usable, cfg.high_trust_weight), method=method,
            threshold=cfg.ransac_threshold, iterations=cfg.ransac_iterations,
            seed=cfg.ransac_seed, degeneracy_threshold=cfg.degeneracy_threshold)

        refiner = Refiner(method=method, loss=cfg.robust_loss, scale=cfg.robust_scale,
                          tolerance=cfg.refine_tolerance, max_iterations=cfg.refine_max_iterations,
                          ridge=cfg.ridge, line_samples=cfg.line_samples, area_samples=cfg.area_samples)
        refine_result = refiner.refine(ransac_result.model, constraints, excluded_ids=sorted(excluded))
        return TransformStack([refine_result.model]), ransac_result, refine_result

    def _score(self, stack: TransformStack, unit: str, map_scale: Optional[float]) -> QualityMetrics:
        return compute_quality_metrics(stack, self.store.list(), unit=unit, map_scale=map_scale,
                                       geodesy=self.geodesy, line_samples=self.config.line_samples,
                                       area_samples=self.config.area_samples)

    def solve_global(self, method: Optional[str] = None, error_unit: Optional[str] = None,
                     map_scale: Optional[float] = None) -> Tuple[TransformStack, QualityMetrics]:
        """
        Fit the global model and publish it as a one-stage stack.

        Args:
            method: 'similarity' or 'affine' (defaults to config.method)
            error_unit: 'pixels', 'meters' or 'mapmm' (defaults to config.error_unit)
            map_scale: Map scale denominator, required for 'mapmm'

        Returns:
            (TransformStack, QualityMetrics)
        """
        method = method or self.config.method
        error_unit = error_unit or self.config.error_unit
        if map_scale is None:
            map_scale = self.config.map_scale
        check_unit_inputs(error_unit, map_scale, self.geodesy)

        logging.info(f"Solving global {method} model from {len(self.store)} constraints")
        stack, ransac_result, refine_result = self._fit_global(method)
        metrics = self._score(stack, error_unit, map_scale)
        metrics.warnings.extend(refine_result.warnings)

        self.transform_stack = stack
        self.quality_metrics = metrics
        self.last_ransac = ransac_result
        self.last_refinement = refine_result
        return stack, metrics

    def solve_local(self, model: Optional[str] = None, lam: Optional[float] = None,
                    error_unit: Optional[str] = None,
                    map_scale: Optional[float] = None) -> Tuple[TransformStack, QualityMetrics]:
        """
        Layer a local warp over the published global model.

        Any previous local stage is replaced. Metrics keep the unit of the
        last solve unless another is requested.

        Raises:
            MissingGlobalSolution: solve_global has not been run
        """
        if self.transform_stack is None or self.transform_stack.global_stage() is None:
            raise MissingGlobalSolution("Run solve_global before solve_local")
        model = model or self.config.local_model or 'tps'
        lam = self.config.lam if lam is None else lam
        if error_unit is None:
            error_unit = self.quality_metrics.unit if self.quality_metrics else self.config.error_unit
        if map_scale is None:
            map_scale = self.quality_metrics.map_scale if self.quality_metrics else self.config.map_scale
        check_unit_inputs(error_unit, map_scale, self.geodesy)

        cfg = self.config
        if model == 'tps':
            options = {'max_control_points': cfg.tps_max_control_points,
                       'min_separation': cfg.min_control_separation,
                       'max_condition': cfg.max_condition_number,
                       'anchor_spacing': cfg.anchor_spacing,
                       'anchor_max_samples': cfg.anchor_max_samples,
                       'anchor_tolerance': cfg.anchor_tolerance,
                       'anchor_refine_rounds': cfg.anchor_refine_rounds}
        else:
            options = {'grid_size': cfg.ffd_grid_size}

        logging.info(f"Solving local {model} warp (lambda={lam})")
        base = TransformStack([self.transform_stack.global_stage()])
        stage = solve_local_warp(base, self.store.list(), model=model, lam=lam, **options)
        stack = TransformStack(base.stages + [stage])
        metrics = self._score(stack, error_unit, map_scale)

        self.transform_stack = stack
        self.quality_metrics = metrics
        return stack, metrics

    def get_proj_string(self, method: Optional[str] = None) -> str:
        """
        PROJ pipeline text for the published stack.

        When nothing is published yet, or the published global model is of a
        different family than `method`, a fresh global fit is rendered
        without publishing it. A published local warp always blocks export.

        Raises:
            UnsupportedForProjExport: the published stack holds a non-affine stage
        """
        stack = self.transform_stack
        if stack is not None:
            if stack.has_local_warp():
                raise UnsupportedForProjExport(
                    "Published solution includes a local warp; PROJ pipelines cannot express it")
            current = stack.global_stage()
            if method is None or (current is not None and current.TYPE == method):
                return stack.to_proj_pipeline()
        stack, _, _ = self._fit_global(method or self.config.method)
        return stack.to_proj_pipeline()

    def _require_stack(self) -> TransformStack:
        if self.transform_stack is None:
            raise MissingGlobalSolution("No solved transform; run solve_global first")
        return self.transform_stack

    # -- geodesy -----------------------------------------------------------

    def get_reference_georef(self) -> Optional[Georef]:
        return self.geodesy.georef

    def set_reference_georef(self, georef: Optional[Georef]):
        """Replace the reference georef and re-derive dst_real / dst_local."""
        self.geodesy = GeodesyAdapter(georef, self.config.datum_policy)
        self.store.geodesy = self.geodesy if georef is not None else None
        self.store.rederive()

    def load_reference(self, path) -> Georef:
        georef = load_reference_georef(path)
        self.reference_path = Path(path)
        self.set_reference_georef(georef)
        return georef

    def pixel_to(self, u: float, v: float, mode: str = 'pixel', policy: Optional[str] = None):
        return self.geodesy.pixel_to(u, v, mode, policy)

    def metric_scale_at(self, u: float, v: float) -> float:
        return self.geodesy.metric_scale_at(u, v)

    def suggest_output_crs(self, policy: Optional[str] = None):
        return self.geodesy.suggest_output_crs(policy)

    def get_reference_crs(self):
        return self.geodesy.reference_crs_info()

    # -- export ------------------------------------------------------------

    def export_world_file(self, path) -> Path:
        return export_world_file(self._require_stack(), path)

    def export_georeferenced_world_file(self, path) -> Path:
        return export_georeferenced_world_file(self._require_stack(), self.geodesy.georef, path)

    def export_geotiff(self, source_path, output_path) -> Path:
        return export_geotiff(self._require_stack(), self.geodesy.georef, source_path, output_path)

    # -- persistence -------------------------------------------------------

    def to_dict(self) -> dict:
        georef = self.geodesy.georef
        return {
            'version': SESSION_FORMAT_VERSION,
            'saved_at': datetime.now().isoformat(),
            'next_id': self.store.next_id,
            'source_bounds': list(self.store.source_bounds) if self.store.source_bounds else None,
            'constraints': self.store.to_dicts(),
            'transform_stack': self.transform_stack.to_dict() if self.transform_stack else None,
            'quality_metrics': self.quality_metrics.to_dict() if self.quality_metrics else None,
            'reference_georef': georef.to_dict() if georef else None,
        }

    def save(self, path) -> Path:
        path = write_json(self.to_dict(), path)
        logging.info(f"Saved session to {path}")
        return path

    @classmethod
    def from_dict(cls, data: dict, config: Optional[RegistrationConfig] = None) -> 'GeorefSession':
        """Rebuild a session exactly as saved; nothing is re-solved."""
        version = data.get('version')
        if version != SESSION_FORMAT_VERSION:
            raise ValueError(f"Unsupported session format version: {version!r}")
        georef = Georef.from_dict(data['reference_georef']) if data.get('reference_georef') else None
        session = cls(config=config, georef=georef, source_bounds=data.get('source_bounds'))
        session.store.load_dicts(data.get('constraints', []), data.get('next_id'))
        if data.get('transform_stack'):
            session.transform_stack = TransformStack.from_dict(data['transform_stack'])
        if data.get('quality_metrics'):
            session.quality_metrics = QualityMetrics.from_dict(data['quality_metrics'])
        return session

    @classmethod
    def load(cls, path, config: Optional[RegistrationConfig] = None) -> 'GeorefSession':
        session = cls.from_dict(read_json(path), config)
        logging.info(f"Loaded session from {path} ({len(session.store)} constraints)")
        return session
