"""
End-to-end exploratory QC pipeline.

normalize -> transform -> reduce:

1. median-of-ratios size factors (stored with a "normalized" assay)
2. variance stabilizing transformation (stored as a "vst" assay)
3. Euclidean sample distances and hierarchical clustering
4. PCA of the transformed samples

The AnnotatedMatrix is passed explicitly through every stage; nothing is
kept between calls.
"""

import logging
from dataclasses import dataclass

import pandas as pd

from .annotated_matrix import AnnotatedMatrix
from .clustering import ClusterTree, cluster_samples
from .config import ClusterConfig, PCAConfig, VSTConfig
from .pca import PCAResult, pca

logger = logging.getLogger(__name__)

__all__ = ['QCResult', 'run_qc']


@dataclass(frozen=True)
class QCResult:
    """Artifacts produced by :func:`run_qc`."""

    matrix: AnnotatedMatrix
    distances: pd.DataFrame
    tree: ClusterTree
    pca: PCAResult

    @property
    def size_factors(self):
        return self.matrix.size_factors

    @property
    def transformed(self):
        return self.matrix.assay("vst")


def run_qc(matrix, vst_config=None, pca_config=None, cluster_config=None, assay="counts"):
    """
    Run size factors, VST, clustering and PCA on an AnnotatedMatrix.

    Parameters
    ----------
    matrix : AnnotatedMatrix
        Container holding the raw counts under ``assay``. Existing size
        factors are reused.
    vst_config : VSTConfig, optional
    pca_config : PCAConfig, optional
    cluster_config : ClusterConfig, optional
    assay : str, default "counts"
        Name of the raw count assay.

    Returns
    -------
    QCResult

    Examples
    --------
    >>> am = AnnotatedMatrix.from_counts(counts_df, sample_table=coldata)
    >>> qc = run_qc(am, pca_config=PCAConfig(n_top=500))
    >>> qc.pca.explained_variance_ratio
    """
    if not isinstance(matrix, AnnotatedMatrix):
        raise TypeError(f"matrix must be an AnnotatedMatrix, got {type(matrix)}")
    vst_config = vst_config or VSTConfig()
    pca_config = pca_config or PCAConfig()
    cluster_config = cluster_config or ClusterConfig()

    logger.info(f"Running QC on {matrix.n_features} features x {matrix.n_samples} samples")

    if matrix.size_factors is None:
        logger.info("Estimating size factors...")
        matrix = matrix.estimate_size_factors(method=vst_config.size_factor_method,
                                              assay=assay)
    elif "normalized" not in matrix.assay_names:
        logger.info("Using stored size factors")
        matrix = matrix.add_assay("normalized",
                                  matrix.assays[assay] / matrix.size_factors.values)

    logger.info("Applying variance stabilizing transformation...")
    matrix = matrix.vst(blind=vst_config.blind, fit_type=vst_config.fit_type,
                        assay=assay, min_mean=vst_config.min_mean,
                        min_features=vst_config.min_features,
                        n_subset=vst_config.n_subset,
                        size_factor_method=vst_config.size_factor_method)
    transformed = matrix.assay("vst")

    logger.info("Computing sample distances...")
    distances, tree = cluster_samples(transformed, method=cluster_config.method)

    logger.info("Running PCA...")
    pca_result = pca(transformed, n_components=pca_config.n_components,
                     n_top=pca_config.n_top, scale=pca_config.scale)

    logger.info("Done.")
    return QCResult(matrix=matrix, distances=distances, tree=tree, pca=pca_result)
