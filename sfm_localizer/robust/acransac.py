"""
A-contrario RANSAC (AC-RANSAC).

Moisan, Moulon, Monasse, "Automatic homographic registration of a pair of
images, with a contrario elimination of outliers", IPOL 2012.

Instead of a fixed inlier threshold, every hypothesis is scored by its number
of false alarms (NFA) over all possible thresholds. The most meaningful
hypothesis gives both the model and an empirical precision.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.special import gammaln

logger = logging.getLogger(__name__)

# Added to residuals before taking their log.
FLOAT_EPSILON = float(np.finfo(np.float32).eps)


@dataclass
class ACRansacResult:
    """
    Outcome of an AC-RANSAC run.

    `error_max` is the estimated precision in pixels. When no meaningful model
    was found `inliers` is empty, `model` is None and `error_max` echoes the
    precision bound that was supplied.
    """

    inliers: np.ndarray
    model: Optional[np.ndarray]
    error_max: float
    min_nfa: float


def log_combi(k: np.ndarray, n: np.ndarray) -> np.ndarray:
    """
    log10 of the binomial coefficient C(n, k), defined as 0 when k <= 0 or k >= n.
    """
    k = np.asarray(k, dtype=np.float64)
    n = np.asarray(n, dtype=np.float64)
    with np.errstate(invalid="ignore"):
        value = (gammaln(n + 1) - gammaln(k + 1) - gammaln(n - k + 1)) / np.log(10.0)
    return np.where((k <= 0) | (k >= n), 0.0, value)


def best_nfa(
    start_index: int,
    logalpha0: float,
    sorted_errors: np.ndarray,
    loge0: float,
    max_threshold: float,
    logc_n: np.ndarray,
    logc_k: np.ndarray,
    mult_error: float = 1.0,
) -> Tuple[float, int]:
    """
    Find the inlier count that minimizes the NFA for one hypothesis.

    Args:
        start_index: Minimal sample size.
        logalpha0: log10 of the probability of a unit error for a random point.
        sorted_errors: Residuals sorted in increasing order (N,).
        loge0: log10 of the number of tests.
        max_threshold: Residuals above this bound are never inliers.
        logc_n: logc_n[k] = log10 C(N, k).
        logc_k: logc_k[k] = log10 C(k, start_index).
        mult_error: 1.0 for squared point-to-point errors, 0.5 for point-to-line.

    Returns:
        Tuple of (nfa, k): best NFA and the number of inliers achieving it.
    """
    n = len(sorted_errors)
    ks = np.arange(start_index + 1, n + 1)
    errors = sorted_errors[ks - 1]

    # Errors are sorted, so the admissible candidates form a prefix.
    ks = ks[errors <= max_threshold]
    if ks.size == 0:
        return math.inf, start_index
    errors = errors[: ks.size]

    logalpha = logalpha0 + mult_error * np.log10(errors + FLOAT_EPSILON)
    nfa = loge0 + logalpha * (ks - start_index) + logc_n[ks] + logc_k[ks]

    best = int(np.argmin(nfa))
    if not nfa[best] < math.inf:
        return math.inf, start_index
    return float(nfa[best]), int(ks[best])


def acransac(
    kernel,
    max_iteration: int = 1024,
    precision: float = math.inf,
    rng: Optional[np.random.Generator] = None,
) -> ACRansacResult:
    """
    Robustly estimate a model with AC-RANSAC.

    Args:
        kernel: Resection kernel (see sfm_localizer.robust.kernels).
        max_iteration: Maximum number of sampling rounds.
        precision: Upper bound on the squared residual in pixels^2, or inf to
            let the estimator choose freely.
        rng: Random generator used for sampling.

    Returns:
        ACRansacResult with the unnormalized model and the pixel precision.
    """
    if rng is None:
        rng = np.random.default_rng()

    size_sample = kernel.MINIMUM_SAMPLES
    n_data = kernel.num_samples
    no_model = ACRansacResult(
        inliers=np.zeros(0, dtype=int),
        model=None,
        error_max=math.sqrt(precision),
        min_nfa=math.inf,
    )
    if n_data <= size_sample:
        return no_model

    n00 = kernel.normalizer2[0, 0]
    max_threshold = math.inf if math.isinf(precision) else precision * n00 * n00

    # Possible sampling indices (restricted to the best inlier set later on)
    index = np.arange(n_data)

    # Precompute log combinations
    loge0 = math.log10(kernel.MAX_MODELS * (n_data - size_sample))
    all_k = np.arange(n_data + 1)
    logc_n = log_combi(all_k, n_data)
    logc_k = log_combi(size_sample, all_k)

    min_nfa = math.inf
    error_max = math.inf
    best_inliers = np.zeros(0, dtype=int)
    best_model = None

    # Reserve 10% of iterations for focused sampling
    n_iter_reserve = max_iteration // 10
    n_iter = max_iteration - n_iter_reserve

    ac_mode = math.isinf(precision)

    it = 0
    while it < n_iter:
        population = index if ac_mode else n_data
        sample = rng.choice(population, size=size_sample, replace=False)

        better = False
        for model in kernel.fit(sample):
            residuals = kernel.errors(model)

            if not ac_mode:
                n_inlier = int(np.count_nonzero(residuals <= max_threshold))
                # The model is meaningful enough to switch to a-contrario scoring
                if n_inlier > 2.5 * size_sample:
                    ac_mode = True

            if not ac_mode:
                continue

            order = np.argsort(residuals, kind="stable")
            sorted_errors = residuals[order]

            nfa, k = best_nfa(
                size_sample,
                kernel.logalpha0,
                sorted_errors,
                loge0,
                max_threshold,
                logc_n,
                logc_k,
                kernel.mult_error,
            )

            if nfa < min_nfa:
                better = True
                min_nfa = nfa
                best_inliers = order[:k]
                error_max = float(sorted_errors[k - 1])
                best_model = model
                logger.debug(
                    "AC-RANSAC iteration %d: nfa=%.3f, inliers=%d/%d, threshold=%.3g",
                    it,
                    nfa,
                    k,
                    n_data,
                    error_max,
                )

        # Focused sampling among the best inlier set so far
        if ac_mode and ((better and min_nfa < 0) or (it + 1 == n_iter and n_iter_reserve)):
            if best_inliers.size == 0:
                # Keep looking for any model, even a non meaningful one
                n_iter += 1
                n_iter_reserve -= 1
            else:
                index = best_inliers.copy()
                if n_iter_reserve:
                    n_iter = it + 1 + n_iter_reserve
                    n_iter_reserve = 0
        it += 1

    if min_nfa >= 0 or best_model is None:
        logger.debug("AC-RANSAC: no meaningful model (min nfa=%s)", min_nfa)
        no_model.min_nfa = min_nfa
        return no_model

    return ACRansacResult(
        inliers=np.sort(best_inliers),
        model=kernel.unnormalize(best_model),
        error_max=kernel.unnormalize_error(error_max),
        min_nfa=min_nfa,
    )


__all__ = ["ACRansacResult", "acransac", "best_nfa", "log_combi"]
