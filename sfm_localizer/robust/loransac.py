"""
Locally optimized RANSAC (LO-RANSAC).

Chum, Matas, Kittler, "Locally Optimized RANSAC", DAGM 2003, and
Lebeda, Matas, Chum, "Fixing the Locally Optimized RANSAC", BMVC 2012.

Hypotheses are generated from minimal samples. Whenever a hypothesis is at
least as good as the best one so far, it is refined by least squares on its
inliers with a threshold that shrinks from sqrt(2)*t down to t, and by an
inner RANSAC drawing larger-than-minimal samples from the inlier set.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# Hard cap on the adaptive number of iterations.
REALLY_MAX_ITERATIONS = 4096


class ScoreEvaluator:
    """
    Truncated quadratic (MSAC) cost over a fixed squared-residual threshold.

    The threshold is expressed in the kernel's residual units.
    """

    def __init__(self, threshold: float):
        self.threshold = float(threshold)

    def score(
        self,
        kernel,
        model: np.ndarray,
        samples: Optional[Sequence[int]] = None,
        threshold: Optional[float] = None,
    ) -> Tuple[float, np.ndarray]:
        """
        Args:
            kernel: Resection kernel.
            model: Model in the kernel's normalized coordinates.
            samples: Indices to evaluate (all correspondences when None).
            threshold: Override of the scorer threshold.

        Returns:
            Tuple of (cost, inliers), lower cost is better.
        """
        if threshold is None:
            threshold = self.threshold
        errors = kernel.errors(model)
        if samples is not None:
            samples = np.asarray(samples)
            errors = errors[samples]
        else:
            samples = np.arange(len(errors))
        mask = errors < threshold
        cost = float(np.sum(errors[mask]) + threshold * np.count_nonzero(~mask))
        return cost, samples[mask]


@dataclass
class LoRansacResult:
    """Best model (pixel units), its inliers and MSAC cost."""

    model: Optional[np.ndarray]
    inliers: np.ndarray
    score: float


def iterations_required(min_samples: int, outliers_probability: float, inlier_ratio: float) -> int:
    """Number of draws needed to hit an all-inlier sample with the given confidence."""
    p_good = inlier_ratio ** min_samples
    if p_good >= 1.0:
        return 0
    if p_good <= 0.0:
        return REALLY_MAX_ITERATIONS
    return int(math.log(outliers_probability) / math.log(1.0 - p_good))


def iterative_least_squares(
    kernel,
    scorer: ScoreEvaluator,
    model: np.ndarray,
    mtheta: float = math.sqrt(2.0),
    num_iter: int = 4,
) -> Tuple[float, Optional[np.ndarray], np.ndarray]:
    """
    Refine a model by least squares with a threshold shrinking from
    mtheta * t to t.

    Returns:
        Tuple of (cost, model, inliers). The cost is inf and the model None
        when the inliers become too few for the least-squares solver.
    """
    min_samples = kernel.MINIMUM_LS_SAMPLES
    theta = scorer.threshold
    delta_theta = (mtheta * theta - theta) / (num_iter - 1)
    failed = (math.inf, None, np.zeros(0, dtype=int))

    _, inliers = scorer.score(kernel, model)
    if len(inliers) < min_samples:
        return failed

    models = kernel.fit_ls(inliers)
    if len(models) != 1:
        return failed
    model = models[0]

    threshold = theta * mtheta
    for _ in range(num_iter):
        _, inliers = scorer.score(kernel, model, threshold=threshold)
        if len(inliers) < min_samples:
            return failed
        models = kernel.fit_ls(inliers)
        if len(models) != 1:
            return failed
        model = models[0]
        threshold -= delta_theta

    cost, inliers = scorer.score(kernel, model)
    return cost, model, inliers


def local_optimization(
    kernel,
    scorer: ScoreEvaluator,
    model: np.ndarray,
    inliers: np.ndarray,
    rng: np.random.Generator,
    mtheta: float = math.sqrt(2.0),
    num_rep: int = 10,
    min_sample_size: int = 10,
) -> Tuple[float, np.ndarray, np.ndarray]:
    """
    Inner RANSAC over the inliers of a promising hypothesis.

    Returns:
        Tuple of (cost, model, inliers) for the best refined model. If no
        refinement succeeds, the input model is returned with its own cost.
    """
    best_cost, _ = scorer.score(kernel, model)
    best_model = model
    best_inliers = np.asarray(inliers)

    sample_size = min(min_sample_size, len(best_inliers) // 2)
    if sample_size > kernel.MINIMUM_LS_SAMPLES:
        pool = best_inliers
        for _ in range(num_rep):
            sample = rng.choice(pool, size=sample_size, replace=False)
            models = kernel.fit_ls(sample)
            if len(models) != 1:
                continue
            cost, refined, refined_inliers = iterative_least_squares(
                kernel, scorer, models[0], mtheta
            )
            if refined is not None and cost < best_cost:
                best_cost, best_model, best_inliers = cost, refined, refined_inliers

    # Always try a plain least-squares polish of the current best model
    cost, refined, refined_inliers = iterative_least_squares(
        kernel, scorer, best_model, mtheta
    )
    if refined is not None and cost < best_cost:
        best_cost, best_model, best_inliers = cost, refined, refined_inliers

    return best_cost, best_model, best_inliers


def lo_ransac(
    kernel,
    scorer: ScoreEvaluator,
    max_iterations: int = 100,
    outliers_probability: float = 1e-2,
    rng: Optional[np.random.Generator] = None,
) -> LoRansacResult:
    """
    Robustly estimate a model with LO-RANSAC.

    Args:
        kernel: Kernel exposing fit, fit_ls and errors (see
            sfm_localizer.robust.kernels.ResectionKernelLoRansacK).
        scorer: Score evaluator holding the inlier threshold.
        max_iterations: Initial number of iterations, adapted to the best
            inlier ratio found so far.
        outliers_probability: Accepted probability of missing the right model.
        rng: Random generator used for sampling.

    Returns:
        LoRansacResult with the model in pixel units.
    """
    if rng is None:
        rng = np.random.default_rng()

    min_samples = kernel.MINIMUM_SAMPLES
    total_samples = kernel.num_samples
    best = LoRansacResult(model=None, inliers=np.zeros(0, dtype=int), score=math.inf)

    if total_samples < min_samples:
        return best

    best_num_inliers = 0
    iteration = 0
    while iteration < max_iterations:
        sample = rng.choice(total_samples, size=min_samples, replace=False)

        for model in kernel.fit(sample):
            cost, inliers = scorer.score(kernel, model)
            if len(inliers) < best_num_inliers:
                continue

            if len(inliers) > kernel.MINIMUM_LS_SAMPLES:
                cost, model, inliers = local_optimization(
                    kernel, scorer, model, inliers, rng
                )

            if len(inliers) > best_num_inliers or (
                len(inliers) == best_num_inliers and cost < best.score
            ):
                best_num_inliers = len(inliers)
                best = LoRansacResult(model=model, inliers=np.sort(inliers), score=cost)
                logger.debug(
                    "LO-RANSAC iteration %d: inliers=%d/%d, cost=%.4g",
                    iteration,
                    best_num_inliers,
                    total_samples,
                    cost,
                )

                inlier_ratio = best_num_inliers / float(total_samples)
                max_iterations = min(
                    iterations_required(min_samples, outliers_probability, inlier_ratio),
                    REALLY_MAX_ITERATIONS,
                )
        iteration += 1

    if best.model is not None:
        best.model = kernel.unnormalize(best.model)
    return best


__all__ = [
    "ScoreEvaluator",
    "LoRansacResult",
    "iterations_required",
    "iterative_least_squares",
    "local_optimization",
    "lo_ransac",
]
