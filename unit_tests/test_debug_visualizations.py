"""
Unit tests for debug_visualizations module.
"""

import sys
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from constraints import Anchor, ConstraintStore, PointPair
from debug_visualizations import plot_deformation_lattice, plot_residual_vectors
from quality_metrics import compute_quality_metrics
from transformations import AffineTransform, TransformStack


class TestDebugPlots:
    """Test that debug plots are written."""

    def test_residual_vectors(self, affine_pairs, temp_dir):
        src, dst = affine_pairs
        store = ConstraintStore()
        for s, d in zip(src, dst):
            store.add(PointPair(src=tuple(s), dst=tuple(d + 0.5)))
        store.add(Anchor(region=[(0, 0), (10, 0), (10, 10)]))
        stack = TransformStack([AffineTransform(np.array([[1.2, 0.1, 15.0], [-0.05, 0.9, -7.5]]))])
        metrics = compute_quality_metrics(stack, store.list())

        out = plot_residual_vectors(stack, store.list(), temp_dir / "viz" / "residuals.png", metrics)

        assert out.exists()

    def test_residual_vectors_nothing_scored(self, temp_dir):
        store = ConstraintStore()
        store.add(Anchor(region=[(0, 0), (10, 0), (10, 10)]))

        assert plot_residual_vectors(TransformStack(), store.list(), temp_dir / "r.png") is None

    def test_deformation_lattice(self, temp_dir):
        stack = TransformStack([AffineTransform(np.array([[1.0, 0.2, 0.0], [0.0, 1.0, 0.0]]))])

        out = plot_deformation_lattice(stack, (0, 0, 100, 80), temp_dir / "lattice.png", lines=5)

        assert out.exists()
