"""
Unit tests for transformations module.
"""

import math
import sys
from pathlib import Path

import numpy as np
import pytest
from affine import Affine

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from errors import InverseDidNotConverge, UnsupportedForProjExport
from transformations import (
    AffineTransform,
    FreeFormDeformation,
    HomographyTransform,
    IdentityTransform,
    SimilarityTransform,
    ThinPlateSplineTransform,
    TransformStack,
    tps_kernel,
)


@pytest.fixture
def ffd():
    """3x3 grid with a single raised centre node."""
    displacements = np.zeros((3, 3, 2))
    displacements[1, 1] = [2.0, -1.0]
    return FreeFormDeformation(origin=[0.0, 0.0], spacing=[10.0, 10.0], displacements=displacements)


@pytest.fixture
def tps():
    ctrl = np.array([[0.0, 0.0], [50.0, 0.0], [0.0, 50.0], [50.0, 50.0], [25.0, 25.0]])
    weights = np.array([[1e-4, 0.0], [-1e-4, 0.0], [-1e-4, 0.0], [1e-4, 0.0], [0.0, 0.0]])
    return ThinPlateSplineTransform(control_points=ctrl, weights=weights,
                                    affine=np.array([[0.5, -0.25], [0.01, 0.0], [0.0, -0.01]]))


class TestAnalyticStages:
    """Test forward and inverse mapping of analytic stages."""

    def test_similarity_round_trip(self):
        model = SimilarityTransform(scale=1.5, rotation=math.radians(20), tx=3.0, ty=-8.0)
        pts = np.array([[0.0, 0.0], [12.0, 7.5], [-3.0, 40.0]])

        np.testing.assert_allclose(model.apply_inverse(model.apply(pts)), pts, atol=1e-9)

    def test_affine_round_trip(self):
        model = AffineTransform(np.array([[1.2, 0.1, 15.0], [-0.05, 0.9, -7.5]]))
        pts = np.array([[10.0, 20.0], [300.0, -4.0]])

        np.testing.assert_allclose(model.apply_inverse(model.apply(pts)), pts, atol=1e-9)

    def test_homography_round_trip(self):
        model = HomographyTransform(np.array([[1.0, 0.02, 5.0], [0.01, 1.1, -3.0], [1e-4, 2e-4, 1.0]]))
        pts = np.array([[10.0, 20.0], [80.0, 60.0]])

        np.testing.assert_allclose(model.apply_inverse(model.apply(pts)), pts, atol=1e-6)

    def test_homography_normalized(self):
        model = HomographyTransform(2.0 * np.eye(3))
        assert model.matrix[2, 2] == 1.0


class TestSplineStages:
    """Test displacement-field stages."""

    def test_tps_kernel(self):
        np.testing.assert_allclose(tps_kernel(np.array([0.0, 1.0, math.e])), [0.0, 0.0, math.e ** 2])

    def test_tps_inverse(self, tps):
        pts = np.array([[10.0, 10.0], [40.0, 20.0]])
        np.testing.assert_allclose(tps.apply_inverse(tps.apply(pts)), pts, atol=1e-6)

    def test_ffd_bilinear(self, ffd):
        np.testing.assert_allclose(ffd.displacement([[10.0, 10.0]]), [[2.0, -1.0]])
        np.testing.assert_allclose(ffd.displacement([[5.0, 10.0]]), [[1.0, -0.5]])

    def test_ffd_zero_outside_grid(self, ffd):
        np.testing.assert_allclose(ffd.displacement([[-1.0, 5.0], [25.0, 25.0]]), 0.0)

    def test_ffd_inverse(self, ffd):
        pts = np.array([[8.0, 12.0], [14.0, 6.0]])
        np.testing.assert_allclose(ffd.apply_inverse(ffd.apply(pts)), pts, atol=1e-6)

    def test_inverse_budget_exhausted(self, ffd):
        ffd.max_iterations = 0
        with pytest.raises(InverseDidNotConverge):
            ffd.apply_inverse([[9.0, 11.0]])


class TestTransformStack:
    """Test stack evaluation, collapse and serialization."""

    def test_empty_stack_is_identity(self):
        stack = TransformStack()
        assert stack.evaluate((3.0, 4.0)) == (3.0, 4.0)
        assert stack.to_affine() == Affine.identity()

    def test_stages_apply_left_to_right(self):
        stack = TransformStack([SimilarityTransform(tx=1.0), AffineTransform.from_affine(Affine.scale(2.0))])

        assert stack.evaluate((0.0, 0.0)) == pytest.approx((2.0, 0.0))
        assert stack.to_affine().almost_equals(Affine.scale(2.0) * Affine.translation(1.0, 0.0))

    def test_compose_with(self):
        stack = TransformStack([SimilarityTransform(tx=1.0)])
        composed = stack.compose_with(Affine.scale(2.0))

        assert len(stack) == 1
        assert composed.evaluate((0.0, 0.0)) == pytest.approx((2.0, 0.0))

    def test_invert_round_trip(self, ffd):
        stack = TransformStack([AffineTransform(np.array([[1.0, 0.0, 2.0], [0.0, 1.0, 1.0]])), ffd])
        p = (6.0, 7.0)

        assert stack.invert(stack.evaluate(p)) == pytest.approx(p, abs=1e-6)

    def test_proj_pipeline(self):
        stack = TransformStack([SimilarityTransform(tx=5.0, ty=-2.0)])
        text = stack.to_proj_pipeline()

        assert text.startswith('+proj=pipeline')
        assert '+xoff=5' in text
        assert '+yoff=-2' in text
        assert '+s11=1' in text and '+s12=0' in text

    def test_identity_pipeline(self):
        text = TransformStack([IdentityTransform()]).to_proj_pipeline()
        assert text == '+proj=pipeline +step +proj=affine +xoff=0 +yoff=0 +s11=1 +s12=0 +s21=0 +s22=1'

    def test_non_affine_stages_rejected(self, tps):
        with pytest.raises(UnsupportedForProjExport):
            TransformStack([AffineTransform(), tps]).to_proj_pipeline()
        with pytest.raises(UnsupportedForProjExport):
            TransformStack([HomographyTransform()]).to_proj_pipeline()
        with pytest.raises(UnsupportedForProjExport):
            TransformStack([AffineTransform(), tps]).to_affine()

    def test_dict_round_trip(self, tps, ffd):
        stack = TransformStack([SimilarityTransform(scale=1.1, rotation=0.2, tx=1.0, ty=2.0), tps, ffd])
        restored = TransformStack.from_dict(stack.to_dict())
        pts = np.array([[5.0, 5.0], [12.0, 18.0], [30.0, 2.0]])

        assert [s.TYPE for s in restored.stages] == ['similarity', 'tps', 'ffd']
        np.testing.assert_allclose(restored.evaluate_many(pts), stack.evaluate_many(pts))

    def test_flags(self, tps):
        assert TransformStack([AffineTransform()]).is_affine()
        assert TransformStack([AffineTransform(), tps]).has_local_warp()
        assert isinstance(TransformStack([IdentityTransform(), AffineTransform()]).global_stage(), AffineTransform)
