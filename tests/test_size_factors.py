"""
Tests for median-of-ratios size factor estimation.
"""

import numpy as np
import pandas as pd
import pytest

from countqc.exceptions import DegenerateInputError
from countqc.size_factors import estimate_size_factors, estimate_size_factors_for_matrix

from conftest import generate_nb_counts


class TestMedianOfRatios:

    def test_doubled_library(self):
        rng = np.random.default_rng(0)
        base = rng.integers(5, 500, size=(10, 1))
        counts = np.hstack([base, base, 2 * base, 2 * base])

        sf = estimate_size_factors(counts)

        np.testing.assert_allclose(sf[2] / sf[0], 2.0)
        np.testing.assert_allclose(sf[3] / sf[1], 2.0)
        np.testing.assert_allclose(sf, [2 ** -0.5, 2 ** -0.5, 2 ** 0.5, 2 ** 0.5])

    def test_proportional_to_scale(self):
        base = np.arange(1, 21, dtype=float).reshape(-1, 1)
        scale = np.array([0.5, 1.0, 3.0, 4.0])
        counts = base * scale

        sf = estimate_size_factors(counts)

        np.testing.assert_allclose(sf / sf[1], scale)

    def test_geometric_mean_is_one_for_exact_scaling(self):
        base = np.arange(1, 21, dtype=float).reshape(-1, 1)
        counts = base * np.array([0.5, 2.0, 4.0])
        sf = estimate_size_factors(counts)
        np.testing.assert_allclose(np.exp(np.mean(np.log(sf))), 1.0)

    def test_positive_and_finite(self, nb_counts):
        sf = estimate_size_factors(nb_counts)
        assert np.all(np.isfinite(sf))
        assert np.all(sf > 0)

    def test_recovers_simulated_factors(self):
        truth = np.array([0.5, 0.8, 1.0, 1.25, 2.0, 1.0])
        counts = generate_nb_counts(n_features=2000, n_samples=6, size_factors=truth, seed=3)
        sf = estimate_size_factors(counts).values
        np.testing.assert_allclose(sf / sf[2], truth, rtol=0.1)

    def test_column_permutation(self, nb_counts):
        sf = estimate_size_factors(nb_counts)
        order = [3, 0, 7, 1, 6, 2, 5, 4]
        sf_perm = estimate_size_factors(nb_counts.iloc[:, order])
        np.testing.assert_allclose(sf_perm.values, sf.values[order])
        assert list(sf_perm.index) == list(nb_counts.columns[order])

    @pytest.mark.parametrize("type", ["ratio", "poscounts"])
    def test_feature_permutation(self, nb_counts, type):
        zeros = pd.DataFrame(0, index=[f"zero_{i}" for i in range(5)],
                             columns=nb_counts.columns)
        counts = pd.concat([nb_counts, zeros])
        shuffled = counts.iloc[np.random.default_rng(0).permutation(len(counts))]

        sf = estimate_size_factors(counts, type=type)
        sf_shuffled = estimate_size_factors(shuffled, type=type)

        np.testing.assert_allclose(sf_shuffled.values, sf.values, rtol=1e-12)

    def test_zero_rows_are_ignored(self):
        base = np.arange(1, 11, dtype=float).reshape(-1, 1)
        counts = base * np.array([1.0, 2.0, 4.0])
        with_zeros = np.vstack([counts, [[0, 7, 3], [5, 0, 0]]])
        np.testing.assert_allclose(estimate_size_factors(with_zeros),
                                   estimate_size_factors(counts))

    def test_series_for_dataframe_input(self, nb_counts):
        sf = estimate_size_factors(nb_counts)
        assert isinstance(sf, pd.Series)
        assert sf.name == "size_factor"
        assert list(sf.index) == list(nb_counts.columns)

    def test_custom_location_function(self):
        base = np.arange(1, 21, dtype=float).reshape(-1, 1)
        counts = base * np.array([1.0, 2.0])
        np.testing.assert_allclose(estimate_size_factors(counts, loc_func=np.mean),
                                   estimate_size_factors(counts))

    def test_control_genes(self):
        base = np.arange(1, 11, dtype=float).reshape(-1, 1)
        controls = base * np.array([1.0, 2.0])
        # non-control features are pure noise in the second sample
        others = np.column_stack([np.full(10, 50.0), np.full(10, 500.0)])
        counts = np.vstack([controls, others])
        mask = np.r_[np.ones(10, bool), np.zeros(10, bool)]

        sf = estimate_size_factors(counts, control_genes=mask)

        np.testing.assert_allclose(sf[1] / sf[0], 2.0)


class TestDegenerateInput:

    def test_every_feature_has_a_zero(self):
        counts = np.array([[0, 5, 3], [4, 0, 2], [7, 1, 0]])
        with pytest.raises(DegenerateInputError, match="no feature"):
            estimate_size_factors(counts)

    def test_all_zero_matrix(self):
        with pytest.raises(DegenerateInputError):
            estimate_size_factors(np.zeros((5, 3)))

    def test_degenerate_is_value_error(self):
        with pytest.raises(ValueError):
            estimate_size_factors(np.zeros((5, 3)))

    def test_negative_counts(self):
        with pytest.raises(ValueError, match="non-negative"):
            estimate_size_factors(np.array([[1, -1], [2, 3]]))

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unknown size factor type"):
            estimate_size_factors(np.ones((3, 2)), type="tmm")


class TestPoscounts:

    def test_works_when_every_feature_has_a_zero(self):
        counts = np.array([[0, 5, 3], [4, 0, 2], [7, 1, 0], [8, 6, 4]])
        sf = estimate_size_factors(counts, type="poscounts")
        assert np.all(np.isfinite(sf))
        np.testing.assert_allclose(np.exp(np.mean(np.log(sf))), 1.0)

    def test_matches_ratio_without_zeros(self):
        base = np.arange(1, 21, dtype=float).reshape(-1, 1)
        counts = base * np.array([0.5, 2.0, 4.0])
        np.testing.assert_allclose(estimate_size_factors(counts, type="poscounts"),
                                   estimate_size_factors(counts, type="ratio"))


class TestGeoMeans:

    def test_supplied_geo_means_are_rescaled(self):
        counts = np.array([[10, 20], [30, 60], [5, 10]], dtype=float)
        geo = np.array([1.0, 3.0, 0.5])
        sf = estimate_size_factors_for_matrix(counts, geo_means=geo)
        np.testing.assert_allclose(np.prod(sf), 1.0)
        np.testing.assert_allclose(sf[1] / sf[0], 2.0)

    def test_geo_means_length_checked(self):
        with pytest.raises(ValueError, match="geo_means"):
            estimate_size_factors_for_matrix(np.ones((3, 2)), geo_means=[1.0, 2.0])
