"""
Pytest configuration and shared fixtures.

Synthetic count matrices are drawn from negative binomial distributions
whose dispersion follows alpha(mu) = 0.02 + 2 / mu, so that the
parametric trend family is well specified.
"""

import numpy as np
import pandas as pd
import pytest

from countqc.annotated_matrix import AnnotatedMatrix


def generate_nb_counts(
    n_features: int = 800,
    n_samples: int = 8,
    size_factors=None,
    group_shift: float = 0.0,
    n_shifted: int = 0,
    seed: int = 42,
) -> pd.DataFrame:
    """
    Negative binomial counts with a known mean-dispersion relation.

    Args:
        n_features: Number of features (rows)
        n_samples: Number of samples (columns)
        size_factors: Per-sample scale; defaults to all ones
        group_shift: log2 fold change applied to the second half of the
            samples for the first ``n_shifted`` features
        n_shifted: Number of features carrying the group difference
        seed: Random seed for reproducibility
    """
    rng = np.random.default_rng(seed)
    if size_factors is None:
        size_factors = np.ones(n_samples)
    size_factors = np.asarray(size_factors, dtype=float)

    base = np.exp(rng.uniform(np.log(5), np.log(5000), size=n_features))
    mu = np.outer(base, size_factors)
    if n_shifted:
        mu[:n_shifted, n_samples // 2:] *= 2.0 ** group_shift

    alpha = 0.02 + 2.0 / mu
    n = 1.0 / alpha
    p = n / (n + mu)
    counts = rng.negative_binomial(n, p)

    return pd.DataFrame(
        counts,
        index=[f"gene_{i:04d}" for i in range(n_features)],
        columns=[f"sample_{j}" for j in range(n_samples)],
    )


def make_sample_table(columns):
    n = len(columns)
    return pd.DataFrame({
        "condition": ["ctrl"] * (n // 2) + ["treat"] * (n - n // 2),
        "batch": ["A", "B"] * (n // 2) + ["A"] * (n % 2),
    }, index=columns)


def make_feature_table(index):
    return pd.DataFrame({
        "chrom": ["chr1"] * len(index),
        "start": np.arange(len(index)) * 1000,
        "strand": ["+", "-"] * (len(index) // 2) + ["+"] * (len(index) % 2),
    }, index=index)


@pytest.fixture
def nb_counts():
    return generate_nb_counts()


@pytest.fixture
def grouped_counts():
    """Two groups of four samples, 100 features shifted by 3 log2 units."""
    return generate_nb_counts(group_shift=3.0, n_shifted=100, seed=7)


@pytest.fixture
def small_matrix():
    """4 features x 3 samples container with annotations."""
    counts = pd.DataFrame(
        [[10, 20, 30], [0, 5, 7], [100, 80, 120], [3, 3, 9]],
        index=["f1", "f2", "f3", "f4"],
        columns=["s1", "s2", "s3"],
    )
    features = pd.DataFrame({"kind": ["a", "b", "a", "b"]}, index=counts.index)
    samples = pd.DataFrame({"condition": ["x", "y", "x"]}, index=counts.columns)
    return AnnotatedMatrix.from_counts(counts, sample_table=samples, feature_table=features)


@pytest.fixture
def nb_matrix(nb_counts):
    return AnnotatedMatrix.from_counts(
        nb_counts,
        sample_table=make_sample_table(nb_counts.columns),
        feature_table=make_feature_table(nb_counts.index),
        design="~ condition",
    )
