"""
Robust initial estimation of the global model with seeded RANSAC.

Sampling draws from a numpy Generator seeded by the caller, and points are
visited in ascending constraint id, so identical input and seed reproduce
the same model bit for bit.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from defaults import (
    DEFAULT_DEGENERACY_THRESHOLD,
    DEFAULT_RANSAC_ITERATIONS,
    DEFAULT_RANSAC_SEED,
    DEFAULT_RANSAC_THRESHOLD,
)
from errors import DegenerateGeometry, InsufficientConstraints
from transformations import AffineTransform, SimilarityTransform

logger = logging.getLogger(__name__)

MIN_SAMPLES = {'similarity': 2, 'affine': 3}


@dataclass
class RansacResult:
    """Best consensus model and its support."""
    model: object
    inlier_ids: List[int]
    inlier_mask: np.ndarray
    num_inliers: int
    residual_sum: float
    iterations: int
    degenerate_samples: int
    residuals: np.ndarray = field(repr=False, default=None)


def similarity_from_params(a: float, b: float, tx: float, ty: float) -> SimilarityTransform:
    """x' = a x - b y + tx, y' = b x + a y + ty."""
    return SimilarityTransform(scale=math.hypot(a, b), rotation=math.atan2(b, a), tx=tx, ty=ty)


def fit_similarity_least_squares(src: np.ndarray, dst: np.ndarray,
                                 weights: Optional[np.ndarray] = None) -> SimilarityTransform:
    """Weighted linear least-squares similarity fit (needs >= 2 distinct points)."""
    n = len(src)
    A = np.zeros((2 * n, 4))
    A[0::2] = np.column_stack([src[:, 0], -src[:, 1], np.ones(n), np.zeros(n)])
    A[1::2] = np.column_stack([src[:, 1], src[:, 0], np.zeros(n), np.ones(n)])
    rhs = dst.reshape(-1)
    if weights is not None:
        sw = np.repeat(np.sqrt(weights), 2)
        A = A * sw[:, None]
        rhs = rhs * sw
    params, *_ = np.linalg.lstsq(A, rhs, rcond=None)
    return similarity_from_params(*params.tolist())


def fit_affine_least_squares(src: np.ndarray, dst: np.ndarray,
                             weights: Optional[np.ndarray] = None) -> AffineTransform:
    """Weighted linear least-squares affine fit (needs >= 3 non-collinear points)."""
    n = len(src)
    A = np.column_stack([src, np.ones(n)])
    rhs = dst.copy()
    if weights is not None:
        sw = np.sqrt(weights)
        A = A * sw[:, None]
        rhs = rhs * sw[:, None]
    coeffs, *_ = np.linalg.lstsq(A, rhs, rcond=None)
    return AffineTransform(coeffs.T)


def _fit_similarity_minimal(src: np.ndarray, dst: np.ndarray) -> SimilarityTransform:
    # z' = m z + t in the complex plane
    s0, s1 = complex(*src[0]), complex(*src[1])
    d0, d1 = complex(*dst[0]), complex(*dst[1])
    m = (d1 - d0) / (s1 - s0)
    t = d0 - m * s0
    return similarity_from_params(m.real, m.imag, t.real, t.imag)


def _fit_affine_minimal(src: np.ndarray, dst: np.ndarray) -> AffineTransform:
    M = cv2.getAffineTransform(src.astype(np.float32), dst.astype(np.float32))
    return AffineTransform(M)


def is_degenerate_sample(src: np.ndarray, dst: np.ndarray, method: str,
                         threshold: float, extent: float) -> bool:
    """
    Coincident or collinear minimal samples.

    Distances are compared relative to `extent` (the diagonal of the point
    cloud), and collinearity uses twice the triangle area over the squared
    longest edge, so the threshold is scale free.
    """
    min_dist = threshold * extent
    if method == 'similarity':
        return (np.linalg.norm(src[1] - src[0]) <= min_dist
                or np.linalg.norm(dst[1] - dst[0]) <= min_dist)
    edges = [np.linalg.norm(src[i] - src[j]) for i, j in ((0, 1), (1, 2), (0, 2))]
    longest = max(edges)
    if min(edges) <= min_dist:
        return True
    e1 = src[1] - src[0]
    e2 = src[2] - src[0]
    cross = abs(e1[0] * e2[1] - e1[1] * e2[0])
    return cross / (longest ** 2) <= threshold


def _deduplicate(correspondences: Sequence[Tuple[int, Sequence[float], Sequence[float], float]]):
    seen = set()
    unique = []
    for cid, src, dst, weight in sorted(correspondences, key=lambda c: c[0]):
        key = (float(src[0]), float(src[1]), float(dst[0]), float(dst[1]))
        if key in seen:
            logger.debug(f"Dropping duplicate correspondence from constraint {cid}")
            continue
        seen.add(key)
        unique.append((cid, src, dst, weight))
    return unique


def estimate_global_model(correspondences, method: str = 'affine',
                          threshold: float = DEFAULT_RANSAC_THRESHOLD,
                          iterations: int = DEFAULT_RANSAC_ITERATIONS,
                          seed: int = DEFAULT_RANSAC_SEED,
                          degeneracy_threshold: float = DEFAULT_DEGENERACY_THRESHOLD) -> RansacResult:
    """
    Estimate a similarity or affine model by random sample consensus.

    Args:
        correspondences: (constraint_id, src, dst, weight) tuples
        method: 'similarity' or 'affine'
        threshold: Inlier threshold in reference pixels
        iterations: Number of minimal samples to draw
        seed: Seed for the sampling generator
        degeneracy_threshold: Relative threshold for coincident/collinear samples

    Returns:
        RansacResult with the best model re-fitted on its inliers

    Raises:
        InsufficientConstraints: fewer correspondences than the minimal sample
        DegenerateGeometry: every sample was degenerate
    """
    if method not in MIN_SAMPLES:
        raise ValueError(f"Unknown transform type: {method}")
    k = MIN_SAMPLES[method]
    corr = _deduplicate(correspondences)
    if len(corr) < k:
        raise InsufficientConstraints(
            f"{method} needs at least {k} point correspondences, got {len(corr)}")

    ids = np.array([c[0] for c in corr])
    src = np.array([c[1] for c in corr], dtype=np.float64)
    dst = np.array([c[2] for c in corr], dtype=np.float64)
    weights = np.array([c[3] for c in corr], dtype=np.float64)
    n = len(corr)
    extent = max(1.0, float(np.linalg.norm(src.max(axis=0) - src.min(axis=0))))

    fit_minimal = _fit_similarity_minimal if method == 'similarity' else _fit_affine_minimal
    rng = np.random.default_rng(seed)

    best_model = None
    best_count = -1
    best_sum = math.inf
    degenerate = 0
    performed = 0
    for _ in range(iterations):
        performed += 1
        idx = np.sort(rng.choice(n, size=k, replace=False))
        if is_degenerate_sample(src[idx], dst[idx], method, degeneracy_threshold, extent):
            degenerate += 1
            continue
        model = fit_minimal(src[idx], dst[idx])
        residuals = np.linalg.norm(model.apply(src) - dst, axis=1)
        inliers = residuals <= threshold
        count = int(np.count_nonzero(inliers))
        rsum = math.fsum(residuals[inliers].tolist())
        if count > best_count or (count == best_count and rsum < best_sum):
            best_model, best_count, best_sum = model, count, rsum
            if count == n and rsum == 0.0:
                break

    if best_model is None:
        raise DegenerateGeometry(
            f"All {performed} RANSAC samples were coincident or collinear")

    residuals = np.linalg.norm(best_model.apply(src) - dst, axis=1)
    mask = residuals <= threshold
    if best_count >= k:
        fit_ls = fit_similarity_least_squares if method == 'similarity' else fit_affine_least_squares
        refit = fit_ls(src[mask], dst[mask], weights[mask])
        refit_residuals = np.linalg.norm(refit.apply(src) - dst, axis=1)
        refit_mask = refit_residuals <= threshold
        if np.count_nonzero(refit_mask) >= best_count:
            best_model, residuals, mask = refit, refit_residuals, refit_mask

    inlier_ids = sorted(set(ids[mask].tolist()))
    logger.info(f"  RANSAC ({method}): {int(mask.sum())}/{n} inliers after {performed} samples "
                f"({degenerate} degenerate)")
    return RansacResult(model=best_model, inlier_ids=inlier_ids, inlier_mask=mask,
                        num_inliers=int(mask.sum()), residual_sum=math.fsum(residuals[mask].tolist()),
                        iterations=performed, degenerate_samples=degenerate, residuals=residuals)
