"""
Mean-dispersion trend estimation for count data.

Gene-wise dispersions are moment estimates from size-factor normalized
counts. A smooth trend of dispersion against mean is then fit across
features; the trend defines the mean-variance relationship

    Var(mu) = mu + alpha(mu) * mu^2

that the variance stabilizing transformation inverts.

Three trend families are available:
- 'parametric': alpha(mu) = asymptDisp + extraPois / mu, fit as a
  Gamma-family GLM with identity link (DESeq2 default)
- 'local': LOWESS smoothing on the log-log scale
- 'mean': a single constant dispersion

References:
    - Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
      and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
    - Cleveland WS (1979). Robust Locally Weighted Regression and Smoothing
      Scatterplots. JASA 74:829-836
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict

import numpy as np
from scipy.optimize import minimize
from statsmodels.nonparametric.smoothers_lowess import lowess

from .exceptions import FitDivergenceError, InsufficientDataError

logger = logging.getLogger(__name__)

__all__ = [
    'DispersionTrend',
    'estimate_gene_wise_dispersion',
    'fit_parametric_dispersion_trend',
    'fit_local_dispersion_trend',
    'fit_mean_dispersion',
    'fit_dispersion_trend',
]

MIN_DISP = 1e-8
FIT_TYPES = ('parametric', 'local', 'mean')


@dataclass(frozen=True)
class DispersionTrend:
    """
    A fitted dispersion-mean trend.

    Attributes
    ----------
    fit_type : str
        One of 'parametric', 'local', 'mean'.
    func : callable
        Maps mean normalized counts to fitted dispersion.
    coefficients : dict
        'asymptDisp'/'extraPois' for parametric fits, 'meanDisp' for the
        mean fit, empty for the local fit.
    n_features : int
        Number of features the final fit was based on.
    """

    fit_type: str
    func: Callable = field(repr=False)
    coefficients: Dict[str, float] = field(default_factory=dict)
    n_features: int = 0

    def __call__(self, mu):
        return self.func(np.asarray(mu, dtype=float))

    def variance(self, mu):
        """Fitted variance mu + alpha(mu) * mu^2 of normalized counts."""
        mu = np.asarray(mu, dtype=float)
        return mu + self(mu) * mu ** 2


def _safe_mean_var(x, axis=1):
    """
    Compute mean and unbiased variance along given axis.
    x: 2D array (features x samples)
    """
    x = np.asarray(x, dtype=float)
    mean = x.mean(axis=axis)
    if x.shape[axis] > 1:
        var = x.var(axis=axis, ddof=1)
    else:
        var = np.zeros_like(mean)
    return mean, var


def _moment_dispersion(mean, var, min_disp):
    """(var - mean) / mean^2, floored at min_disp; zero means get min_disp."""
    alpha = np.full(mean.shape, min_disp)
    valid = mean > 0
    with np.errstate(divide="ignore", invalid="ignore"):
        a = (var[valid] - mean[valid]) / mean[valid] ** 2
    alpha[valid] = np.maximum(a, min_disp)
    return alpha


def estimate_gene_wise_dispersion(counts, size_factors, group_labels=None, min_disp=MIN_DISP):
    """
    Gene-wise dispersion estimates by the (pooled) method of moments.

    Parameters
    ----------
    counts : np.ndarray
        Raw counts (features x samples).
    size_factors : np.ndarray
        One positive factor per sample.
    group_labels : array-like, optional
        Sample grouping. When given, dispersions are estimated within each
        group and pooled with weights n_g - 1; singleton groups contribute
        nothing.
    min_disp : float
        Lower bound for the estimates.

    Returns
    -------
    base_means : np.ndarray
        Mean normalized count per feature (over all samples).
    disp_gw : np.ndarray
        Gene-wise dispersion per feature.

    Raises
    ------
    InsufficientDataError
        If no group (or the whole matrix) has at least two samples.
    """
    counts = np.asarray(counts, dtype=float)
    sf = np.asarray(size_factors, dtype=float)
    norm_counts = counts / sf
    G, S = counts.shape
    base_means = norm_counts.mean(axis=1)

    if group_labels is None:
        if S < 2:
            raise InsufficientDataError(
                f"dispersion estimation needs at least 2 samples, got {S}")
        _, var = _safe_mean_var(norm_counts, axis=1)
        return base_means, _moment_dispersion(base_means, var, min_disp)

    group_labels = np.asarray(group_labels)
    if group_labels.shape[0] != S:
        raise ValueError(f"group_labels has length {group_labels.shape[0]}, "
                         f"expected one per sample ({S})")

    alpha_sum = np.zeros(G)
    weight_sum = 0
    for g in np.unique(group_labels):
        mask_g = group_labels == g
        n_g = int(mask_g.sum())
        if n_g <= 1:
            continue
        mean_g, var_g = _safe_mean_var(norm_counts[:, mask_g], axis=1)
        alpha_sum += _moment_dispersion(mean_g, var_g, min_disp) * (n_g - 1)
        weight_sum += n_g - 1

    if weight_sum == 0:
        raise InsufficientDataError(
            "no sample group has at least 2 members; cannot estimate "
            "within-group dispersions")
    return base_means, alpha_sum / weight_sum


def _gamma_deviance(params, x, y):
    """Gamma deviance (halved) and its gradient for pred = a / x + b."""
    a, b = params
    pred = a / x + b
    dev = np.sum((y - pred) / pred - np.log(y / pred))
    d_pred = (pred - y) / pred ** 2
    grad = np.array([np.sum(d_pred / x), np.sum(d_pred)])
    return dev, grad


def fit_parametric_dispersion_trend(base_means, disp_gw, min_disp=MIN_DISP,
                                    maxit=10, tol=1e-6):
    """
    Fit the parametric trend alpha = asymptDisp + extraPois / mu.

    The fit is a Gamma-family GLM with identity link, computed by bounded
    deviance minimisation. Following DESeq2, features whose ratio of
    gene-wise to fitted dispersion lies outside (1e-4, 15) are dropped and
    the fit is repeated until the coefficients settle.

    Parameters
    ----------
    base_means : np.ndarray
        Mean normalized counts of the features used for the fit.
    disp_gw : np.ndarray
        Gene-wise dispersions of the same features.
    maxit : int, default 10
        Maximum number of refit iterations.
    tol : float, default 1e-6
        Convergence threshold on sum(log(new / old)^2) between refits. The
        loop also stops as soon as the feature set no longer changes.

    Returns
    -------
    DispersionTrend

    Raises
    ------
    FitDivergenceError
        If the optimiser reports failure or returns non-finite values, if the
        coefficients do not converge within ``maxit`` iterations, or if the
        asymptotic dispersion is not positive.
    """
    base_means = np.asarray(base_means, dtype=float)
    disp_gw = np.asarray(disp_gw, dtype=float)

    coefs = None  # (asymptDisp, extraPois)
    use = np.ones(len(base_means), dtype=bool)

    for iteration in range(1, maxit + 1):
        x = base_means[use]
        y = disp_gw[use]
        if len(x) < 2:
            raise FitDivergenceError(
                f"parametric dispersion fit lost its support: {len(x)} features "
                f"left after {iteration - 1} refits")

        # fixed start: the same feature set always yields the same coefficients
        res = minimize(_gamma_deviance, x0=[1.0, 0.01], args=(x, y),
                       jac=True, method='L-BFGS-B',
                       bounds=[(0.0, None), (min_disp, None)])
        if not res.success or not np.all(np.isfinite(res.x)):
            raise FitDivergenceError(
                f"parametric dispersion fit failed at iteration {iteration}: {res.message}")

        old = coefs
        coefs = np.array([res.x[1], res.x[0]])
        logger.debug(f"Trend iteration {iteration}: asymptDisp={coefs[0]:.4g}, "
                     f"extraPois={coefs[1]:.4g}, n={len(x)}")

        fitted = coefs[0] + coefs[1] / base_means
        ratio = disp_gw / fitted
        new_use = (ratio > 1e-4) & (ratio < 15)

        if np.array_equal(new_use, use):
            break
        if old is not None:
            floor = 1e-8
            change = np.sum(np.log(np.maximum(coefs, floor) / np.maximum(old, floor)) ** 2)
            if change < tol:
                break
        use = new_use
    else:
        raise FitDivergenceError(
            f"parametric dispersion fit did not converge in {maxit} iterations")

    if coefs[0] <= 0 or coefs[1] < 0:
        raise FitDivergenceError(
            f"parametric dispersion fit produced invalid coefficients "
            f"asymptDisp={coefs[0]:.4g}, extraPois={coefs[1]:.4g}")

    asympt, extra = float(coefs[0]), float(coefs[1])
    logger.info(f"Trend coefficients: asymptDisp={asympt:.4f}, extraPois={extra:.4f}")

    def trend_fn(mu):
        return asympt + extra / np.maximum(mu, min_disp)

    return DispersionTrend('parametric', trend_fn,
                           {'asymptDisp': asympt, 'extraPois': extra},
                           n_features=len(x))


def fit_local_dispersion_trend(base_means, disp_gw, frac=0.2, it=3):
    """
    Fit dispersion trend using local regression (LOWESS).

    Fitting is performed on the log10-log10 scale; outside the observed
    range of means the trend is held constant at the boundary values.

    Parameters
    ----------
    base_means : np.ndarray
        Mean normalized counts per feature.
    disp_gw : np.ndarray
        Gene-wise dispersion estimates.
    frac : float, default 0.2
        Fraction of data to use in each local fit.
    it : int, default 3
        Number of robustness iterations.

    Returns
    -------
    DispersionTrend
    """
    base_means = np.asarray(base_means, dtype=float)
    disp_gw = np.asarray(disp_gw, dtype=float)

    x = np.log10(base_means)
    y = np.log10(disp_gw)

    # stable sort keeps ties in input order
    order = np.argsort(x, kind='stable')
    smoothed = lowess(y[order], x[order], frac=frac, it=it, return_sorted=True)
    x_smooth = smoothed[:, 0]
    y_smooth = smoothed[:, 1]
    if not np.all(np.isfinite(y_smooth)):
        raise FitDivergenceError("local dispersion fit produced non-finite values")

    def trend_fn(means):
        log_means = np.log10(np.maximum(means, MIN_DISP))
        log_disp = np.interp(log_means, x_smooth, y_smooth,
                             left=y_smooth[0], right=y_smooth[-1])
        return 10 ** log_disp

    return DispersionTrend('local', trend_fn, {}, n_features=len(base_means))


def fit_mean_dispersion(disp_gw, base_means=None, min_mean=0.0):
    """
    Fit a constant dispersion across all features.

    Uses the geometric mean of the gene-wise estimates, which is robust to
    a few very large dispersions.
    """
    disp_gw = np.asarray(disp_gw, dtype=float)
    mask = np.isfinite(disp_gw) & (disp_gw > 0)
    if base_means is not None:
        mask &= np.asarray(base_means, dtype=float) >= min_mean

    mean_disp = float(np.exp(np.mean(np.log(disp_gw[mask]))))

    def trend_fn(means):
        return np.full_like(np.asarray(means, dtype=float), mean_disp)

    return DispersionTrend('mean', trend_fn, {'meanDisp': mean_disp},
                           n_features=int(mask.sum()))


def fit_dispersion_trend(base_means, disp_gw, fit_type='parametric',
                         min_mean=1.0, min_features=2, min_disp=MIN_DISP, **kwargs):
    """
    Fit dispersion trend using specified method.

    Only features with base mean above ``min_mean`` and a gene-wise
    dispersion clearly above the floor (``> 100 * min_disp``) take part in
    the fit.

    Parameters
    ----------
    base_means : np.ndarray
        Mean normalized counts per feature.
    disp_gw : np.ndarray
        Gene-wise dispersion estimates.
    fit_type : {'parametric', 'local', 'mean'}
        Trend family.
    min_mean : float, default 1.0
        Features with a lower mean normalized count are ignored.
    min_features : int, default 2
        Minimum number of eligible features.
    **kwargs
        Passed to the underlying fitting function.

    Returns
    -------
    DispersionTrend

    Raises
    ------
    InsufficientDataError
        If fewer than ``min_features`` features are eligible.
    FitDivergenceError
        If the trend fit fails to converge.
    """
    if fit_type not in FIT_TYPES:
        raise ValueError(f"Unknown fit_type: {fit_type!r} (expected one of {FIT_TYPES})")

    base_means = np.asarray(base_means, dtype=float)
    disp_gw = np.asarray(disp_gw, dtype=float)

    use = (base_means > min_mean) & (disp_gw > 100 * min_disp)
    use &= np.isfinite(base_means) & np.isfinite(disp_gw)
    n_use = int(use.sum())
    if n_use < max(min_features, 1):
        raise InsufficientDataError(
            f"only {n_use} of {len(base_means)} features have mean > {min_mean} "
            f"and dispersion above the floor; at least {min_features} are "
            "required to fit a dispersion trend")

    logger.info(f"Fitting {fit_type} dispersion trend on {n_use} features")
    if fit_type == 'parametric':
        return fit_parametric_dispersion_trend(base_means[use], disp_gw[use],
                                               min_disp=min_disp, **kwargs)
    elif fit_type == 'local':
        return fit_local_dispersion_trend(base_means[use], disp_gw[use], **kwargs)
    return fit_mean_dispersion(disp_gw[use])
