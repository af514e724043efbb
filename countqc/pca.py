"""
Principal component analysis of transformed count data.

Samples are projected onto the principal axes of the feature-centred
(optionally scaled) matrix, computed by singular value decomposition of
the centred features x samples matrix.

Sign convention: eigenvectors are only defined up to sign. Each
component is oriented so that its largest-magnitude feature loading is
positive (the first such feature on ties), which makes results
reproducible across runs and platforms.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .exceptions import InsufficientSamplesError, ZeroVarianceError

logger = logging.getLogger(__name__)

__all__ = ['PCAResult', 'pca', 'pca_data']


@dataclass(frozen=True)
class PCAResult:
    """
    Output of :func:`pca`.

    - ``scores``: samples x components projections.
    - ``loadings``: features x components unit vectors.
    - ``explained_variance``: eigenvalue per component (variance of its
      scores).
    - ``explained_variance_ratio``: eigenvalue / sum of all eigenvalues.
    - ``features``: identifiers of the features the PCA was computed on.
    """

    scores: pd.DataFrame
    loadings: pd.DataFrame
    explained_variance: pd.Series
    explained_variance_ratio: pd.Series
    features: pd.Index

    @property
    def n_components(self):
        return self.scores.shape[1]


def _orient(vt_row):
    """+1/-1 so that the largest-magnitude entry becomes positive."""
    return 1.0 if vt_row[np.argmax(np.abs(vt_row))] >= 0 else -1.0


def pca(transformed, n_components=None, n_top=None, scale=False):
    """
    PCA of samples from a transformed matrix.

    Parameters
    ----------
    transformed : np.ndarray or pd.DataFrame
        Transformed expression data (features x samples), e.g. from vst().
    n_components : int, optional
        Number of components to report. Defaults to every non-trivial
        component, min(n_features, n_samples) - 1.
    n_top : int, optional
        Restrict to the ``n_top`` features with the highest variance across
        samples (ties keep input order). Default: all features.
    scale : bool, default False
        Scale each feature to unit variance after centring. Features with
        zero variance are dropped in this mode.

    Returns
    -------
    PCAResult

    Raises
    ------
    InsufficientSamplesError
        If fewer than two samples are given.
    ZeroVarianceError
        If every feature has zero variance.
    ValueError
        If fewer than two features remain to project on.

    Examples
    --------
    >>> res = pca(vst_data, n_top=500)
    >>> res.explained_variance_ratio.iloc[:2]
    """
    if isinstance(transformed, pd.DataFrame):
        features = transformed.index
        samples = transformed.columns
        data = transformed.values
    else:
        data = np.asarray(transformed)
        features = pd.RangeIndex(data.shape[0]) if data.ndim == 2 else None
        samples = pd.RangeIndex(data.shape[1]) if data.ndim == 2 else None

    data = np.asarray(data, dtype=float)
    if data.ndim != 2:
        raise ValueError(f"expected a 2D features x samples matrix, got shape {data.shape}")
    G, S = data.shape
    if S < 2:
        raise InsufficientSamplesError(f"PCA needs at least 2 samples, got {S}")
    if not np.all(np.isfinite(data)):
        raise ValueError("transformed matrix contains NaN or infinite values")

    # exact test: the variance of a constant non-integer row is rounding noise
    constant = data.max(axis=1) == data.min(axis=1)
    var_genes = data.var(axis=1, ddof=1)
    var_genes[constant] = 0.0
    if G == 0 or constant.all():
        raise ZeroVarianceError(
            f"all {G} features have zero variance across {S} samples")

    # Select top variable features
    keep = np.arange(G)
    if n_top is not None:
        if n_top < 1:
            raise ValueError(f"n_top must be positive, got {n_top}")
        keep = np.sort(np.argsort(-var_genes, kind='stable')[:n_top])

    data_subset = data[keep, :]
    centered = data_subset - data_subset.mean(axis=1, keepdims=True)
    centered[constant[keep]] = 0.0

    if scale:
        sd = np.sqrt(var_genes[keep])
        nonzero = ~constant[keep]
        if not nonzero.all():
            logger.debug(f"Dropping {int((~nonzero).sum())} zero-variance features before scaling")
        keep = keep[nonzero]
        centered = centered[nonzero] / sd[nonzero, None]

    n_max = min(len(keep), S) - 1
    if n_max < 1:
        raise ValueError(f"PCA needs at least 2 features, got {len(keep)}")
    if n_components is None:
        n_components = n_max
    elif not 1 <= n_components <= n_max:
        raise ValueError(f"n_components must be between 1 and {n_max}, got {n_components}")

    # SVD of the centred features x samples matrix
    U, s, Vt = np.linalg.svd(centered, full_matrices=False)
    eigenvalues = s ** 2 / (S - 1)
    total = eigenvalues.sum()

    U = U[:, :n_components].copy()
    signs = np.array([_orient(U[:, k]) for k in range(n_components)])
    U *= signs
    scores = centered.T @ U

    names = [f"PC{k + 1}" for k in range(n_components)]
    logger.info(f"PCA on {len(keep)} features x {S} samples, "
                f"{n_components} components")

    return PCAResult(
        scores=pd.DataFrame(scores, index=samples, columns=names),
        loadings=pd.DataFrame(U, index=features[keep], columns=names),
        explained_variance=pd.Series(eigenvalues[:n_components], index=names),
        explained_variance_ratio=pd.Series(eigenvalues[:n_components] / total, index=names),
        features=features[keep],
    )


def pca_data(result, sample_table, intgroup):
    """
    Per-sample table behind a PCA plot.

    Parameters
    ----------
    result : PCAResult
    sample_table : pd.DataFrame
        Sample annotations indexed like ``result.scores``.
    intgroup : str or list of str
        Annotation columns to attach; their values are also joined with
        ":" into a ``group`` column.

    Returns
    -------
    pd.DataFrame
        Columns PC1, PC2 (when available), the ``intgroup`` columns, and
        ``group``. ``attrs['percentVar']`` holds the variance fractions.
    """
    if isinstance(intgroup, str):
        intgroup = [intgroup]
    missing = [c for c in intgroup if c not in sample_table.columns]
    if missing:
        raise ValueError(f"intgroup columns not in sample table: {missing}")

    pcs = result.scores.iloc[:, :2]
    annot = sample_table.reindex(pcs.index)[intgroup]
    df = pd.concat([pcs, annot], axis=1)
    df["group"] = annot.astype(str).agg(":".join, axis=1)
    df.attrs["percentVar"] = result.explained_variance_ratio.iloc[:2].tolist()
    return df
