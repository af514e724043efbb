"""
Utility functions for count matrices.

This module provides helpers for input validation and for simple
normalizations that complement median-of-ratios size factors.

References:
    - Anders S, Huber W (2010). Differential expression analysis for sequence
      count data. Genome Biology 11:R106
"""

import numpy as np
import pandas as pd

__all__ = ['check_counts', 'fpm', 'normalize_counts', 'filter_low_counts']


def check_counts(counts):
    """
    Validate a raw count matrix and return it as a float array.

    Raises
    ------
    ValueError
        If the matrix is not 2D, contains NaN/inf, or negative values.
    """
    counts = np.asarray(counts, dtype=float)
    if counts.ndim != 2:
        raise ValueError(f"counts must be 2D (features x samples), got shape {counts.shape}")
    if not np.all(np.isfinite(counts)):
        raise ValueError("counts contain NaN or infinite values")
    if np.any(counts < 0):
        raise ValueError("counts must be non-negative")
    return counts


def check_size_factors(size_factors, n_samples):
    """Validate size factors against the number of samples."""
    size_factors = np.asarray(size_factors, dtype=float).reshape(-1)
    if size_factors.shape[0] != n_samples:
        raise ValueError(f"got {size_factors.shape[0]} size factors for {n_samples} samples")
    if not np.all(np.isfinite(size_factors)) or np.any(size_factors <= 0):
        raise ValueError("size factors must be finite and positive")
    return size_factors


def fpm(counts, size_factors=None):
    """
    Calculate Fragments Per Million (FPM), also known as CPM.

    Parameters
    ----------
    counts : np.ndarray or pd.DataFrame
        Raw count matrix (features x samples).
    size_factors : np.ndarray, optional
        Pre-computed size factors. If None, uses library size normalization;
        otherwise counts are divided by the size factors and scaled so that
        the geometric mean of the implied library sizes is one million.

    Returns
    -------
    np.ndarray or pd.DataFrame
        FPM values with same shape as input.

    Examples
    --------
    >>> counts = np.array([[100, 200], [50, 100], [25, 50]])
    >>> fpm(counts).sum(axis=0)
    array([1000000., 1000000.])
    """
    is_df = isinstance(counts, pd.DataFrame)
    if is_df:
        index = counts.index
        columns = counts.columns
        counts = counts.values

    counts = check_counts(counts)

    if size_factors is None:
        lib_sizes = counts.sum(axis=0)
        if np.any(lib_sizes == 0):
            raise ValueError("cannot compute FPM for samples with zero total count")
        normalized = counts / lib_sizes * 1e6
    else:
        size_factors = check_size_factors(size_factors, counts.shape[1])
        lib_sizes = counts.sum(axis=0)
        geo_lib = np.exp(np.mean(np.log(lib_sizes[lib_sizes > 0])))
        normalized = counts / size_factors / geo_lib * 1e6

    if is_df:
        return pd.DataFrame(normalized, index=index, columns=columns)
    return normalized


def normalize_counts(counts, size_factors):
    """
    Normalize counts by size factors.

    Parameters
    ----------
    counts : np.ndarray or pd.DataFrame
        Raw count matrix (features x samples).
    size_factors : np.ndarray
        Size factors for each sample.

    Returns
    -------
    np.ndarray or pd.DataFrame
        Normalized counts with same shape as input.
    """
    is_df = isinstance(counts, pd.DataFrame)
    if is_df:
        index = counts.index
        columns = counts.columns
        counts = counts.values

    counts = check_counts(counts)
    size_factors = check_size_factors(size_factors, counts.shape[1])
    normalized = counts / size_factors

    if is_df:
        return pd.DataFrame(normalized, index=index, columns=columns)
    return normalized


def filter_low_counts(counts, min_count=10, min_samples=None):
    """
    Mask of features with enough counts.

    A feature is kept when at least ``min_samples`` samples have a count of
    at least ``min_count``.

    Parameters
    ----------
    counts : np.ndarray or pd.DataFrame
        Raw count matrix (features x samples).
    min_count : int, default 10
        Minimum count threshold.
    min_samples : int, optional
        Minimum number of samples that must meet the threshold.
        Default is half the samples, at least 1.

    Returns
    -------
    np.ndarray
        Boolean mask over features.

    Examples
    --------
    >>> counts = np.array([[100, 200], [1, 2], [50, 100]])
    >>> filter_low_counts(counts, min_count=10)
    array([ True, False,  True])
    """
    if isinstance(counts, pd.DataFrame):
        counts = counts.values
    counts = np.asarray(counts, dtype=float)

    n_samples = counts.shape[1]
    if min_samples is None:
        min_samples = max(1, n_samples // 2)

    above_threshold = (counts >= min_count).sum(axis=1)
    return above_threshold >= min_samples
