"""Debug plots for a solved registration: residual vectors and the deformation lattice."""

import logging
from pathlib import Path
from typing import Optional, Sequence

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np

from constraints import SCORED_TYPES, Anchor, ChangeMask, reference_location, source_location


def plot_residual_vectors(stack, constraints: Sequence, output_path: Path,
                          metrics=None, scale: float = 10.0) -> Optional[Path]:
    """
    Quiver plot of predicted -> target displacement for each scored constraint,
    drawn in reference pixel space (y axis pointing down like the raster).

    Args:
        stack: Solved TransformStack
        constraints: Constraint list
        output_path: PNG file to write
        metrics: Optional QualityMetrics for the title
        scale: Exaggeration factor for the arrows
    """
    scored = [c for c in constraints if isinstance(c, SCORED_TYPES)]
    if not scored:
        logging.warning("No scored constraints to plot")
        return None

    predicted = stack.evaluate_many(np.array([source_location(c) for c in scored]))
    targets = np.array([reference_location(c) for c in scored])
    excluded = set(metrics.excluded_ids) if metrics else set()

    fig, ax = plt.subplots(figsize=(10, 10))
    for c in constraints:
        if isinstance(c, (Anchor, ChangeMask)):
            region = np.asarray(c.region + (c.region[0],))
            color = 'tab:green' if isinstance(c, Anchor) else 'tab:gray'
            ax.fill(region[:, 0], region[:, 1], alpha=0.2, color=color, label=c.KIND)

    colors = ['lightgray' if c.id in excluded else 'tab:red' for c in scored]
    delta = (targets - predicted) * scale
    ax.quiver(predicted[:, 0], predicted[:, 1], delta[:, 0], delta[:, 1], color=colors,
              angles='xy', scale_units='xy', scale=1)
    ax.scatter(targets[:, 0], targets[:, 1], s=12, c='tab:blue', label='target')
    for c, p in zip(scored, predicted):
        ax.annotate(str(c.id), p, fontsize=8, xytext=(3, 3), textcoords='offset points')

    title = f"Residual vectors (x{scale:g})"
    if metrics is not None:
        title += f" | RMSE {metrics.rmse:.3f} {metrics.unit} | P90 {metrics.p90_error:.3f} {metrics.unit}"
    ax.set_title(title)
    ax.set_aspect('equal')
    ax.invert_yaxis()
    handles, labels = ax.get_legend_handles_labels()
    unique = dict(zip(labels, handles))
    ax.legend(unique.values(), unique.keys(), loc='best')

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(output_path, dpi=150, bbox_inches='tight')
    plt.close(fig)
    logging.info(f"Saved residual plot to {output_path.name}")
    return output_path


def plot_deformation_lattice(stack, bounds, output_path: Path, lines: int = 20) -> Path:
    """
    Draw a regular lattice over the source bounds mapped through the stack.

    Args:
        stack: Solved TransformStack
        bounds: (xmin, ymin, xmax, ymax) in source pixels
        output_path: PNG file to write
        lines: Lattice lines per axis
    """
    xmin, ymin, xmax, ymax = bounds
    xs = np.linspace(xmin, xmax, lines)
    ys = np.linspace(ymin, ymax, lines)
    dense_x = np.linspace(xmin, xmax, 4 * lines)
    dense_y = np.linspace(ymin, ymax, 4 * lines)

    fig, ax = plt.subplots(figsize=(10, 10))
    for y in ys:
        mapped = stack.evaluate_many(np.column_stack([dense_x, np.full_like(dense_x, y)]))
        ax.plot(mapped[:, 0], mapped[:, 1], color='tab:blue', linewidth=0.6)
    for x in xs:
        mapped = stack.evaluate_many(np.column_stack([np.full_like(dense_y, x), dense_y]))
        ax.plot(mapped[:, 0], mapped[:, 1], color='tab:blue', linewidth=0.6)

    ax.set_title(f"Deformation lattice ({' -> '.join(s.TYPE for s in stack.stages)})")
    ax.set_aspect('equal')
    ax.invert_yaxis()

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(output_path, dpi=150, bbox_inches='tight')
    plt.close(fig)
    logging.info(f"Saved deformation lattice to {output_path.name}")
    return output_path
