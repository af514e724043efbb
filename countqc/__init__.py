"""
Exploratory QC for count-based experiments in Python.

This package normalizes a feature x sample count matrix, stabilizes its
variance, and projects samples into low-dimensional space (distance-based
clustering and PCA) for visual inspection. All data travels in an
AnnotatedMatrix that keeps assays, feature annotations and sample
annotations aligned.

Main Classes:
    AnnotatedMatrix : Synchronized assays + feature table + sample table
    ClusterTree : Hierarchical clustering of samples
    PCAResult : Principal component scores and variance fractions

Main Functions:
    estimate_size_factors : Median-of-ratios size factors
    vst : Variance stabilizing transformation
    cluster_samples : Sample distance matrix and clustering tree
    pca : Principal component analysis of samples
    run_qc : The full normalize -> transform -> reduce pipeline

References:
    Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
    and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
"""

# Container
from .annotated_matrix import AnnotatedMatrix, FeatureKind

# Size factors
from .size_factors import estimate_size_factors

# Dispersion trends
from .dispersion import (
    DispersionTrend,
    estimate_gene_wise_dispersion,
    fit_dispersion_trend,
)

# Transformations
from .transformations import VSTFit, fit_vst, vst, normTransform

# Distances, clustering, PCA
from .clustering import ClusterTree, ClusterMerge, sample_distances, hierarchical_clustering, cluster_samples
from .pca import PCAResult, pca, pca_data

# Design
from .design import create_design_matrix, design_groups

# Utilities
from .utils import fpm, normalize_counts, filter_low_counts

# Pipeline
from .config import VSTConfig, PCAConfig, ClusterConfig
from .pipeline import QCResult, run_qc

from .exceptions import (
    CountQCError,
    ShapeMismatchError,
    IdentityMismatchError,
    DuplicateIdentifierError,
    DuplicateAssayNameError,
    IndexOutOfRangeError,
    InvalidPermutationError,
    DegenerateInputError,
    InsufficientDataError,
    FitDivergenceError,
    InsufficientSamplesError,
    ZeroVarianceError,
)

__version__ = "0.1.0"

__all__ = [
    # Container
    'AnnotatedMatrix',
    'FeatureKind',

    # Size factors
    'estimate_size_factors',

    # Dispersions
    'DispersionTrend',
    'estimate_gene_wise_dispersion',
    'fit_dispersion_trend',

    # Transformations
    'VSTFit',
    'fit_vst',
    'vst',
    'normTransform',

    # Clustering and PCA
    'ClusterTree',
    'ClusterMerge',
    'sample_distances',
    'hierarchical_clustering',
    'cluster_samples',
    'PCAResult',
    'pca',
    'pca_data',

    # Design
    'create_design_matrix',
    'design_groups',

    # Utilities
    'fpm',
    'normalize_counts',
    'filter_low_counts',

    # Pipeline
    'VSTConfig',
    'PCAConfig',
    'ClusterConfig',
    'QCResult',
    'run_qc',

    # Errors
    'CountQCError',
    'ShapeMismatchError',
    'IdentityMismatchError',
    'DuplicateIdentifierError',
    'DuplicateAssayNameError',
    'IndexOutOfRangeError',
    'InvalidPermutationError',
    'DegenerateInputError',
    'InsufficientDataError',
    'FitDivergenceError',
    'InsufficientSamplesError',
    'ZeroVarianceError',
]
