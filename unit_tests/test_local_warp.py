"""
Unit tests for local_warp module.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from constraints import Anchor, ChangeMask, ConstraintStore, Line, PointPair
from errors import AnchorViolation, DegenerateControlPoints, InsufficientConstraints
from local_warp import anchor_samples, compute_residual_field, merge_coincident, solve_local_warp
from transformations import (
    AffineTransform,
    FreeFormDeformation,
    ThinPlateSplineTransform,
    TransformStack,
)


def _wavy(points):
    pts = np.asarray(points, dtype=np.float64)
    return pts + np.column_stack([1.5 * np.sin(pts[:, 1] / 25.0), 1.0 * np.cos(pts[:, 0] / 30.0)])


@pytest.fixture
def global_stack():
    return TransformStack([AffineTransform(np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]))])


@pytest.fixture
def wavy_store():
    """Point pairs whose reference positions carry a smooth non-affine distortion."""
    src = np.array([[10.0, 10.0], [50.0, 12.0], [90.0, 15.0], [15.0, 50.0], [55.0, 55.0],
                    [92.0, 48.0], [12.0, 88.0], [48.0, 92.0], [88.0, 85.0]])
    dst = _wavy(src)
    store = ConstraintStore()
    for s, d in zip(src, dst):
        store.add(PointPair(src=tuple(s), dst=tuple(d)))
    return store


@pytest.fixture
def ring_store():
    """Point pairs on a circle around (500, 500) carrying ~20 px smooth residuals."""
    angles = np.linspace(0.0, 2.0 * np.pi, 30, endpoint=False)
    src = np.column_stack([500.0 + 450.0 * np.cos(angles), 500.0 + 450.0 * np.sin(angles)])
    dst = src + np.column_stack([20.0 * np.sin(3.0 * angles), 20.0 * np.cos(2.0 * angles)])
    store = ConstraintStore()
    for s, d in zip(src, dst):
        store.add(PointPair(src=tuple(s), dst=tuple(d)))
    return store


class TestResidualField:
    """Test residual sampling after the global model."""

    def test_point_residuals(self, global_stack, wavy_store):
        field = compute_residual_field(global_stack, wavy_store.list())

        assert len(field) == 9
        assert field.ids == list(range(1, 10))
        expected = np.array([c.dst for c in wavy_store.list()]) - np.array([c.src for c in wavy_store.list()])
        np.testing.assert_allclose(field.displacements, expected)

    def test_line_weight_spread_over_samples(self, global_stack):
        store = ConstraintStore()
        store.add(Line(src_points=[(0, 0), (10, 0)], dst_points=[(0, 2), (10, 2)], weight=4.0))
        field = compute_residual_field(global_stack, store.list(), line_samples=8)

        assert len(field) == 8
        assert field.weights.sum() == pytest.approx(4.0)
        np.testing.assert_allclose(field.displacements, np.tile([0.0, 2.0], (8, 1)))

    def test_masked_constraints_skipped(self, global_stack, wavy_store):
        wavy_store.add(ChangeMask(region=[(0, 0), (20, 0), (20, 20), (0, 20)]))
        field = compute_residual_field(global_stack, wavy_store.list())

        assert 1 not in field.ids
        assert len(field) == 8

    def test_anchor_samples_inside_region(self):
        region = [(0, 0), (10, 0), (10, 10), (0, 10)]
        samples = anchor_samples(region, spacing=2.5)

        # 32 boundary samples at half spacing plus a 4x4 interior grid
        assert len(samples) == 32 + 16
        assert np.all(samples >= -1e-9) and np.all(samples <= 10 + 1e-9)

    def test_anchor_samples_scale_with_region(self):
        small = anchor_samples([(0, 0), (20, 0), (20, 20), (0, 20)], spacing=10.0, max_samples=5000)
        large = anchor_samples([(0, 0), (500, 0), (500, 500), (0, 500)], spacing=10.0, max_samples=5000)

        assert len(small) == 16 + 4
        assert len(large) == 400 + 2500

    def test_anchor_samples_capped(self):
        samples = anchor_samples([(0, 0), (500, 0), (500, 500), (0, 500)], spacing=1.0, max_samples=500)

        assert 400 < len(samples) <= 550


class TestThinPlateSpline:
    """Test the TPS local warp solver."""

    def test_interpolates_at_zero_lambda(self, global_stack, wavy_store):
        tps = solve_local_warp(global_stack, wavy_store.list(), model='tps', lam=0.0)
        stack = TransformStack(global_stack.stages + [tps])

        assert isinstance(tps, ThinPlateSplineTransform)
        for c in wavy_store.list():
            np.testing.assert_allclose(stack.evaluate(c.src), c.dst, atol=1e-6)

    def test_smoothing_does_not_interpolate(self, global_stack, wavy_store):
        tps = solve_local_warp(global_stack, wavy_store.list(), model='tps', lam=10.0)
        stack = TransformStack(global_stack.stages + [tps])

        errors = [np.linalg.norm(np.subtract(stack.evaluate(c.src), c.dst)) for c in wavy_store.list()]
        assert max(errors) > 1e-6

    def test_inverse_round_trip(self, global_stack, wavy_store):
        tps = solve_local_warp(global_stack, wavy_store.list(), model='tps', lam=0.0)
        stack = TransformStack(global_stack.stages + [tps])

        for p in [(30.0, 30.0), (70.0, 40.0), (20.0, 75.0)]:
            np.testing.assert_allclose(stack.invert(stack.evaluate(p)), p, atol=1e-6)

    def test_anchor_region_stays_put(self, global_stack, wavy_store):
        wavy_store.add(Anchor(region=[(60, 60), (80, 60), (80, 80), (60, 80)]))
        tps = solve_local_warp(global_stack, wavy_store.list(), model='tps', lam=0.0, anchor_spacing=2.0)

        rng = np.random.default_rng(0)
        interior = rng.uniform(60.0, 80.0, size=(500, 2))
        disp = np.linalg.norm(tps.displacement(interior), axis=1)
        assert disp.max() < 2e-2

    def test_large_anchor_held_between_samples(self, global_stack, ring_store):
        ring_store.add(Anchor(region=[(250, 250), (750, 250), (750, 750), (250, 750)]))
        tps = solve_local_warp(global_stack, ring_store.list(), model='tps', lam=0.0, anchor_tolerance=0.25)

        rng = np.random.default_rng(1)
        interior = rng.uniform(250.0, 750.0, size=(2000, 2))
        disp = np.linalg.norm(tps.displacement(interior), axis=1)
        assert disp.max() < 0.5

    def test_anchor_violation_raised(self, global_stack, ring_store):
        ring_store.add(Anchor(region=[(250, 250), (750, 250), (750, 750), (250, 750)]))

        with pytest.raises(AnchorViolation) as exc:
            solve_local_warp(global_stack, ring_store.list(), model='tps', lam=0.0,
                             anchor_tolerance=1e-12, anchor_refine_rounds=1)
        assert exc.value.max_displacement > 1e-12

    def test_point_on_line_endpoint(self, global_stack):
        store = ConstraintStore()
        store.add(PointPair(src=(0.0, 0.0), dst=(1.0, 0.5)))
        store.add(PointPair(src=(50.0, 60.0), dst=(51.0, 60.0)))
        store.add(PointPair(src=(100.0, 40.0), dst=(100.0, 41.0)))
        store.add(Line(src_points=[(0, 0), (100, 0)], dst_points=[(0, 1), (100, 1)]))

        tps = solve_local_warp(global_stack, store.list(), model='tps', lam=0.0)

        assert isinstance(tps, ThinPlateSplineTransform)
        assert len(np.unique(tps.control_points, axis=0)) == len(tps.control_points)

    def test_merge_coincident_samples(self):
        points = np.array([[0.0, 0.0], [5.0, 5.0], [0.0, 0.0]])
        disps = np.array([[1.0, 0.0], [0.0, 2.0], [4.0, 3.0]])
        weights = np.array([1.0, 1.0, 2.0])

        merged_pts, merged_disp, merged_w = merge_coincident(points, disps, weights)

        np.testing.assert_allclose(merged_pts, [[0.0, 0.0], [5.0, 5.0]])
        np.testing.assert_allclose(merged_disp, [[3.0, 2.0], [0.0, 2.0]])
        np.testing.assert_allclose(merged_w, [3.0, 1.0])

    def test_near_duplicate_control_points(self, global_stack):
        store = ConstraintStore()
        store.add(PointPair(src=(10.0, 10.0), dst=(11.0, 10.0)))
        store.add(PointPair(src=(10.0, 10.0000001), dst=(12.0, 10.0)))
        store.add(PointPair(src=(50.0, 10.0), dst=(50.0, 11.0)))
        store.add(PointPair(src=(30.0, 60.0), dst=(31.0, 61.0)))

        with pytest.raises(DegenerateControlPoints):
            solve_local_warp(global_stack, store.list(), model='tps')

    def test_too_few_control_points(self, global_stack):
        store = ConstraintStore()
        store.add(PointPair(src=(10.0, 10.0), dst=(11.0, 10.0)))
        store.add(PointPair(src=(50.0, 10.0), dst=(50.0, 11.0)))

        with pytest.raises(DegenerateControlPoints):
            solve_local_warp(global_stack, store.list(), model='tps')

    def test_no_scored_constraints(self, global_stack):
        store = ConstraintStore()
        store.add(Anchor(region=[(0, 0), (10, 0), (10, 10)]))

        with pytest.raises(InsufficientConstraints):
            solve_local_warp(global_stack, store.list(), model='tps')


class TestFreeFormDeformation:
    """Test the FFD local warp solver."""

    def test_reduces_residuals(self, global_stack, wavy_store):
        ffd = solve_local_warp(global_stack, wavy_store.list(), model='ffd', lam=0.0)
        stack = TransformStack(global_stack.stages + [ffd])

        assert isinstance(ffd, FreeFormDeformation)
        before = [np.linalg.norm(np.subtract(c.src, c.dst)) for c in wavy_store.list()]
        after = [np.linalg.norm(np.subtract(stack.evaluate(c.src), c.dst)) for c in wavy_store.list()]
        assert np.mean(after) < np.mean(before)

    def test_zero_inside_anchor(self, global_stack, wavy_store):
        wavy_store.add(Anchor(region=[(60, 60), (80, 60), (80, 80), (60, 80)]))
        ffd = solve_local_warp(global_stack, wavy_store.list(), model='ffd', lam=0.1)

        interior = np.array([[65.0, 65.0], [70.0, 75.0], [79.0, 61.0]])
        np.testing.assert_allclose(ffd.displacement(interior), 0.0, atol=1e-12)

    def test_zero_outside_grid(self, global_stack, wavy_store):
        ffd = solve_local_warp(global_stack, wavy_store.list(), model='ffd', lam=0.1)

        np.testing.assert_allclose(ffd.displacement([[-500.0, -500.0]]), 0.0)


class TestSolveLocalWarp:
    """Test argument validation."""

    def test_unknown_model(self, global_stack, wavy_store):
        with pytest.raises(ValueError):
            solve_local_warp(global_stack, wavy_store.list(), model='bspline')

    def test_negative_lambda(self, global_stack, wavy_store):
        with pytest.raises(ValueError):
            solve_local_warp(global_stack, wavy_store.list(), model='tps', lam=-1.0)
