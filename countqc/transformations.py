"""
Variance stabilizing transformations for count data.

This module prepares count data for distance computation, clustering and
PCA, where a log-like scale with approximately constant variance is
needed:
- VST (Variance Stabilizing Transformation), derived from a fitted
  dispersion-mean trend
- normTransform (log2 of normalized counts plus a pseudocount)

For a mean-variance relation Var(mu) = v(mu), the stabilizing function is
the integral of 1 / sqrt(v). For the parametric trend the integral has a
closed form; for the local trend it is computed numerically.

References:
    - Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
      and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
    - Anders S, Huber W (2010). Differential expression analysis for sequence
      count data. Genome Biology 11:R106
"""

import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from scipy.interpolate import CubicSpline

from .dispersion import DispersionTrend, estimate_gene_wise_dispersion, fit_dispersion_trend
from .exceptions import InsufficientDataError
from .size_factors import estimate_size_factors
from .utils import check_counts, check_size_factors

logger = logging.getLogger(__name__)

__all__ = ['VSTFit', 'fit_vst', 'vst', 'normTransform']

GRID_SIZE = 1000


@dataclass(frozen=True)
class VSTFit:
    """
    Everything needed to apply a fitted variance stabilizing transformation.

    Attributes
    ----------
    size_factors : np.ndarray
        Size factors of the fitted samples.
    trend : DispersionTrend
        Fitted dispersion-mean trend.
    base_means : np.ndarray
        Mean normalized count per feature.
    disp_gw : np.ndarray
        Gene-wise dispersion per feature.
    blind : bool
        Whether the trend was fit ignoring sample groups.
    """

    size_factors: np.ndarray
    trend: DispersionTrend
    base_means: np.ndarray = field(repr=False)
    disp_gw: np.ndarray = field(repr=False)
    blind: bool = True
    _local: tuple = field(default=None, repr=False)

    def transform_normalized(self, norm_counts):
        """Map normalized counts onto the stabilized scale."""
        q = np.asarray(norm_counts, dtype=float)
        fit_type = self.trend.fit_type

        if fit_type == 'parametric':
            a0 = self.trend.coefficients['extraPois']
            a1 = self.trend.coefficients['asymptDisp']
            return np.log((1 + a0 + 2 * a1 * q
                           + 2 * np.sqrt(a1 * q * (1 + a0 + a1 * q))) / (4 * a1)) / np.log(2)

        if fit_type == 'mean':
            alpha = self.trend.coefficients['meanDisp']
            return (2 * np.arcsinh(np.sqrt(alpha * q)) - np.log(alpha) - np.log(4)) / np.log(2)

        spline, eta, xi = self._local
        return eta * spline(np.arcsinh(q)) + xi

    def transform(self, counts):
        """
        Transform raw counts of the fitted samples.

        Parameters
        ----------
        counts : np.ndarray or pd.DataFrame
            Raw counts (features x samples), same samples as the fit.
        """
        is_df = isinstance(counts, pd.DataFrame)
        values = check_counts(counts.values if is_df else counts)
        if values.shape[1] != len(self.size_factors):
            raise ValueError(f"fit has {len(self.size_factors)} samples, "
                             f"counts have {values.shape[1]}")

        transformed = self.transform_normalized(values / self.size_factors)

        if is_df:
            return pd.DataFrame(transformed, index=counts.index, columns=counts.columns)
        return transformed


def _local_integral(trend, norm_counts, size_factors):
    """
    Numerically integrate 1/sqrt(v(mu)) for a local trend.

    The integral is tabulated on an asinh-spaced grid, interpolated with a
    cubic spline, and calibrated so that it matches log2 between the 95%
    and 99.9% quantiles of the feature means.
    """
    max_count = float(norm_counts.max())
    xg = np.sinh(np.linspace(0.0, np.arcsinh(max_count), GRID_SIZE))[1:]
    xim = np.mean(1.0 / size_factors)
    base_var = trend(xg) * xg ** 2 + xim * xg
    base_var = np.maximum.accumulate(base_var)  # monotone variance function

    integrand = 1.0 / np.sqrt(base_var)
    knots = np.arcsinh((xg[1:] + xg[:-1]) / 2)
    integral = np.cumsum(np.diff(xg) * (integrand[1:] + integrand[:-1]) / 2)
    spline = CubicSpline(knots, integral)

    row_means = norm_counts.mean(axis=1)
    h1, h2 = np.quantile(row_means, [0.95, 0.999])
    if h1 <= 0 or h2 <= h1:
        raise InsufficientDataError(
            "cannot calibrate the local transform: the 95% and 99.9% quantiles "
            f"of feature means ({h1:.4g}, {h2:.4g}) do not span a positive range")
    eta = (np.log2(h2) - np.log2(h1)) / (spline(np.arcsinh(h2)) - spline(np.arcsinh(h1)))
    xi = np.log2(h1) - eta * spline(np.arcsinh(h1))
    return spline, float(eta), float(xi)


def _subset_for_fit(base_means, n_subset):
    """Evenly spaced (by mean rank) features with base mean > 5."""
    candidates = np.flatnonzero(base_means > 5)
    if len(candidates) < n_subset:
        raise InsufficientDataError(
            f"only {len(candidates)} features have mean normalized count > 5, "
            f"fewer than n_subset={n_subset}")
    ordered = candidates[np.argsort(base_means[candidates], kind='stable')]
    picks = np.unique(np.round(np.linspace(0, len(ordered) - 1, n_subset)).astype(int))
    return np.sort(ordered[picks])


def fit_vst(counts, size_factors=None, blind=True, group_labels=None,
            fit_type='parametric', min_mean=1.0, min_features=2, n_subset=None,
            size_factor_method='ratio'):
    """
    Fit a variance stabilizing transformation to raw counts.

    Parameters
    ----------
    counts : np.ndarray or pd.DataFrame
        Raw count matrix (features x samples).
    size_factors : array-like, optional
        Size factors for each sample. If None, estimated by median-of-ratios.
    blind : bool, default True
        If True the trend is fit ignoring ``group_labels``. Recommended for
        QC so that expected group differences do not shape the trend.
    group_labels : array-like, optional
        Sample groups; only used when ``blind=False``.
    fit_type : {'parametric', 'local', 'mean'}
        Dispersion trend family.
    min_mean : float, default 1.0
        Features with lower mean normalized count are left out of the fit.
    min_features : int, default 2
        Minimum number of features required for the trend fit.
    n_subset : int, optional
        Fit the trend on this many features only, chosen deterministically
        (evenly spaced by mean) among features with mean > 5.
    size_factor_method : {'ratio', 'poscounts'}
        Used when size factors have to be estimated.

    Returns
    -------
    VSTFit

    Raises
    ------
    InsufficientDataError
        If too few features remain for the trend fit.
    FitDivergenceError
        If the trend fit fails to converge.
    """
    if isinstance(counts, pd.DataFrame):
        counts = counts.values
    counts = check_counts(counts)
    G, S = counts.shape
    if G < min_features:
        raise InsufficientDataError(f"{G} features given, at least {min_features} required")

    if size_factors is None:
        size_factors = estimate_size_factors(counts, type=size_factor_method)
    size_factors = check_size_factors(size_factors, S)

    if blind:
        if group_labels is not None:
            logger.debug("blind=True: ignoring supplied sample groups for the trend fit")
        group_labels = None

    base_means, disp_gw = estimate_gene_wise_dispersion(counts, size_factors,
                                                        group_labels=group_labels)

    fit_idx = np.arange(G)
    if n_subset is not None:
        fit_idx = _subset_for_fit(base_means, n_subset)
        logger.debug(f"Fitting trend on a subset of {len(fit_idx)} features")

    trend = fit_dispersion_trend(base_means[fit_idx], disp_gw[fit_idx],
                                 fit_type=fit_type, min_mean=min_mean,
                                 min_features=min_features)

    local = None
    if trend.fit_type == 'local':
        local = _local_integral(trend, counts / size_factors, size_factors)

    return VSTFit(size_factors=size_factors, trend=trend, base_means=base_means,
                  disp_gw=disp_gw, blind=blind, _local=local)


def vst(counts, size_factors=None, blind=True, group_labels=None,
        fit_type='parametric', min_mean=1.0, min_features=2, n_subset=None,
        size_factor_method='ratio', return_fit=False):
    """
    Variance Stabilizing Transformation.

    Transforms count data to approximately homoskedastic values on a
    log2-like scale. For the parametric trend alpha(mu) = a1 + a0 / mu:

        vst(q) = log2((1 + a0 + 2 a1 q + 2 sqrt(a1 q (1 + a0 + a1 q))) / (4 a1))

    which is approximately linear near zero and approaches log2(q) for large
    normalized counts q.

    Parameters
    ----------
    counts : np.ndarray or pd.DataFrame
        Raw count matrix (features x samples).
    return_fit : bool, default False
        Also return the :class:`VSTFit`.

    See :func:`fit_vst` for the remaining parameters.

    Returns
    -------
    np.ndarray or pd.DataFrame
        VST values with same shape (and labels) as input.
    VSTFit
        Only if ``return_fit=True``.

    Examples
    --------
    >>> rng = np.random.default_rng(0)
    >>> counts = rng.negative_binomial(5, 0.05, size=(500, 6))
    >>> vst_data = vst(counts)

    Notes
    -----
    The output is fully deterministic: repeated calls on the same input
    return bit-identical values.
    """
    fit = fit_vst(counts, size_factors=size_factors, blind=blind,
                  group_labels=group_labels, fit_type=fit_type, min_mean=min_mean,
                  min_features=min_features, n_subset=n_subset,
                  size_factor_method=size_factor_method)
    logger.info(f"Applying {fit.trend.fit_type} VST (blind={blind})")
    transformed = fit.transform(counts)
    if return_fit:
        return transformed, fit
    return transformed


def normTransform(counts, size_factors=None, pseudocount=1.0):
    """
    Simple log2 transformation of normalized counts.

    log2(normalized_counts + pseudocount)

    Parameters
    ----------
    counts : np.ndarray or pd.DataFrame
        Raw count matrix (features x samples).
    size_factors : np.ndarray, optional
        Size factors for each sample. If None, estimated from data.
    pseudocount : float, default 1.0
        Value added before log transformation to avoid log(0).

    Returns
    -------
    np.ndarray or pd.DataFrame
        log2 transformed normalized values.

    Notes
    -----
    Fast, but low counts keep a much larger variance than under VST.
    """
    is_df = isinstance(counts, pd.DataFrame)
    if is_df:
        index = counts.index
        columns = counts.columns
        counts = counts.values

    counts = check_counts(counts)

    if size_factors is None:
        size_factors = estimate_size_factors(counts)
    size_factors = check_size_factors(size_factors, counts.shape[1])

    transformed = np.log2(counts / size_factors + pseudocount)

    if is_df:
        return pd.DataFrame(transformed, index=index, columns=columns)
    return transformed
