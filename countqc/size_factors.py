"""
Median-of-ratios size factor estimation.

Each sample is compared against a pseudo-reference sample built from the
per-feature geometric means; the size factor is the median of the
count / reference ratios. Features dominated by a few very highly
expressed outliers therefore do not drive the estimate.

References:
    - Anders S, Huber W (2010). Differential expression analysis for sequence
      count data. Genome Biology 11:R106
"""

import logging

import numpy as np
import pandas as pd

from .exceptions import DegenerateInputError
from .utils import check_counts

logger = logging.getLogger(__name__)

__all__ = ['estimate_size_factors', 'estimate_size_factors_for_matrix']


def estimate_size_factors_for_matrix(
    counts,
    loc_func=np.median,
    geo_means=None,
    control_genes=None,
    type="ratio"
):
    """
    Median-of-ratios size factors for a raw count matrix.

    Parameters
    ----------
    counts : np.ndarray
        2D (features x samples) raw counts.
    loc_func : callable, default np.median
        Location function applied to the per-sample log ratios.
    geo_means : np.ndarray or None
        Precomputed geometric means, one per feature. When supplied the
        factors are rescaled to a geometric mean of one.
    control_genes : array-like or None
        Optional boolean mask or positions of the features to use.
    type : {"ratio", "poscounts"}
        "ratio" only uses features without any zero count; "poscounts"
        computes geometric means and ratios over positive counts only.

    Returns
    -------
    np.ndarray
        Size factors, one per sample.

    Raises
    ------
    DegenerateInputError
        If no feature is eligible, or a factor is zero or not finite.
    """
    counts = check_counts(counts)
    G, S = counts.shape

    # ---- Determine log geometric means per feature ----
    if geo_means is None:
        incoming_geo_means = False

        if type == "ratio":
            with np.errstate(divide="ignore", invalid="ignore"):
                log_geomeans = np.mean(np.log(counts), axis=1)
        elif type == "poscounts":
            lc = np.log(counts, where=(counts > 0), out=np.zeros_like(counts))
            log_geomeans = np.mean(lc, axis=1)
            all_zero = np.sum(counts, axis=1) == 0
            log_geomeans[all_zero] = -np.inf
        else:
            raise ValueError(f"Unknown size factor type: {type}")
    else:
        incoming_geo_means = True
        geo_means = np.asarray(geo_means, dtype=float)
        if len(geo_means) != G:
            raise ValueError(f"geo_means has length {len(geo_means)}, "
                             f"expected one per feature ({G})")
        with np.errstate(divide="ignore"):
            log_geomeans = np.log(geo_means)

    # ---- Restrict to control features (optional) ----
    if control_genes is not None:
        control_genes = np.asarray(control_genes)
        log_geomeans = log_geomeans[control_genes]
        counts = counts[control_genes, :]

    eligible = np.isfinite(log_geomeans)
    n_eligible = int(eligible.sum())
    if n_eligible < 1:
        raise DegenerateInputError(
            f"no feature has a positive geometric mean across {S} samples "
            f"(every one of {len(log_geomeans)} features contains a zero); "
            "cannot compute size factors")
    logger.debug(f"Median-of-ratios over {n_eligible}/{len(log_geomeans)} eligible features")

    # ---- Per-sample location of log ratios ----
    size_factors = np.zeros(S)
    for j in range(S):
        c = counts[:, j]
        mask = eligible & (c > 0)
        if not mask.any():
            size_factors[j] = np.nan
            continue
        vals = np.log(c[mask]) - log_geomeans[mask]
        size_factors[j] = np.exp(loc_func(vals))

    bad = ~np.isfinite(size_factors) | (size_factors <= 0)
    if bad.any():
        raise DegenerateInputError(
            f"size factors for sample positions {np.flatnonzero(bad).tolist()} "
            "are zero or not finite")

    # ---- Rescale to geometric mean 1 when the reference is not the data ----
    if incoming_geo_means or type == "poscounts":
        size_factors = size_factors / np.exp(np.mean(np.log(size_factors)))

    return size_factors


def estimate_size_factors(
    counts,
    type="ratio",
    loc_func=np.median,
    geo_means=None,
    control_genes=None
):
    """
    Estimate per-sample size factors.

    Accepts a plain array or a labelled DataFrame; for the latter the
    result is a Series indexed by sample identifier.

    Examples
    --------
    >>> counts = np.array([[10, 20], [30, 60], [5, 10]])
    >>> estimate_size_factors(counts)
    array([0.70710678, 1.41421356])
    """
    if isinstance(counts, pd.DataFrame):
        sf = estimate_size_factors_for_matrix(
            counts.values, loc_func=loc_func, geo_means=geo_means,
            control_genes=control_genes, type=type)
        return pd.Series(sf, index=counts.columns, name="size_factor")

    return estimate_size_factors_for_matrix(
        counts,
        loc_func=loc_func,
        geo_means=geo_means,
        control_genes=control_genes,
        type=type
    )
