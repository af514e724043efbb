"""
Tests for PCA of transformed samples.
"""

import numpy as np
import pandas as pd
import pytest

from countqc.exceptions import InsufficientSamplesError, ZeroVarianceError
from countqc.pca import PCAResult, pca, pca_data
from countqc.transformations import vst

from conftest import make_sample_table


@pytest.fixture
def grouped_vst(grouped_counts):
    return vst(grouped_counts)


class TestPCA:

    def test_result_layout(self, grouped_vst):
        res = pca(grouped_vst)
        assert isinstance(res, PCAResult)
        assert res.n_components == 7
        assert list(res.scores.index) == list(grouped_vst.columns)
        assert list(res.scores.columns) == [f"PC{k}" for k in range(1, 8)]
        assert res.loadings.shape == (len(grouped_vst), 7)
        assert res.features.equals(grouped_vst.index)

    def test_variance_fractions(self, grouped_vst):
        res = pca(grouped_vst)
        ratio = res.explained_variance_ratio
        assert ratio.sum() == pytest.approx(1.0)
        assert np.all(np.diff(ratio.values) <= 1e-12)
        assert pca(grouped_vst, n_components=2).explained_variance_ratio.sum() < 1.0

    def test_group_effect_on_first_component(self, grouped_vst):
        res = pca(grouped_vst, n_top=500)
        ratio = res.explained_variance_ratio
        assert ratio["PC1"] > ratio["PC2"]
        pc1 = res.scores["PC1"].values
        assert np.all(np.sign(pc1[:4]) == np.sign(pc1[0]))
        assert np.all(np.sign(pc1[4:]) == -np.sign(pc1[0]))

    def test_scores_variance_is_eigenvalue(self, grouped_vst):
        res = pca(grouped_vst)
        np.testing.assert_allclose(res.scores.var(axis=0, ddof=1).values,
                                   res.explained_variance.values)

    def test_loadings_are_orthonormal(self, grouped_vst):
        U = pca(grouped_vst, n_components=3).loadings.values
        np.testing.assert_allclose(U.T @ U, np.eye(3), atol=1e-10)

    def test_sign_convention(self, grouped_vst):
        res = pca(grouped_vst)
        for name in res.loadings.columns:
            col = res.loadings[name].values
            assert col[np.argmax(np.abs(col))] > 0

    def test_sign_stable_under_negation(self, grouped_vst):
        a = pca(grouped_vst, n_components=2)
        b = pca(-grouped_vst, n_components=2)
        # negating the data flips every loading, the sign rule flips it back
        np.testing.assert_allclose(a.loadings.values, b.loadings.values, atol=1e-10)
        np.testing.assert_allclose(a.scores.values, -b.scores.values, atol=1e-10)

    def test_bit_identical_on_repeat(self, grouped_vst):
        a = pca(grouped_vst, n_top=300)
        b = pca(grouped_vst, n_top=300)
        assert np.array_equal(a.scores.values, b.scores.values)

    def test_n_top_selects_most_variable(self, grouped_vst):
        res = pca(grouped_vst, n_top=50)
        variances = grouped_vst.var(axis=1, ddof=1)
        expected = variances.sort_values(ascending=False, kind='stable').index[:50]
        assert set(res.features) == set(expected)
        assert list(res.features) == [f for f in grouped_vst.index if f in set(expected)]

    def test_n_components_bounds(self, grouped_vst):
        with pytest.raises(ValueError, match="n_components"):
            pca(grouped_vst, n_components=8)
        with pytest.raises(ValueError, match="n_components"):
            pca(grouped_vst, n_components=0)

    def test_fewer_features_than_samples(self):
        data = np.random.default_rng(2).normal(size=(3, 10))
        res = pca(data)
        assert res.n_components == 2
        with pytest.raises(ValueError, match="n_components"):
            pca(data, n_components=3)

    def test_single_feature(self):
        with pytest.raises(ValueError, match="at least 2 features"):
            pca(np.array([[1.0, 2.0, 4.0, 8.0]]))

    def test_array_input(self):
        data = np.random.default_rng(3).normal(size=(40, 5))
        res = pca(data)
        assert list(res.scores.index) == [0, 1, 2, 3, 4]

    def test_scale_drops_constant_features(self):
        rng = np.random.default_rng(4)
        data = pd.DataFrame(rng.normal(size=(20, 6)),
                            index=[f"g{i}" for i in range(20)])
        data.iloc[0] = 3.0
        res = pca(data, scale=True)
        assert "g0" not in res.features
        assert len(res.loadings) == 19

    def test_scale_drops_non_integer_constant(self):
        rng = np.random.default_rng(6)
        data = pd.DataFrame(rng.normal(size=(10, 5)),
                            index=[f"g{i}" for i in range(10)])
        data.iloc[3] = 0.1
        res = pca(data, scale=True)
        assert "g3" not in res.features
        assert np.all(np.isfinite(res.scores.values))

    def test_scale_is_unit_free(self):
        rng = np.random.default_rng(5)
        data = rng.normal(size=(30, 6))
        stretched = data * np.linspace(1, 100, 30)[:, None]
        a = pca(data, scale=True, n_components=2)
        b = pca(stretched, scale=True, n_components=2)
        np.testing.assert_allclose(a.explained_variance_ratio.values,
                                   b.explained_variance_ratio.values)


class TestDegenerate:

    def test_all_features_constant(self):
        with pytest.raises(ZeroVarianceError):
            pca(np.tile([[1.0], [2.0], [3.0]], (1, 5)))

    def test_non_integer_constant_features(self):
        data = np.full((5, 3), 0.1)
        data[1] = 0.7
        with pytest.raises(ZeroVarianceError):
            pca(data)

    def test_one_top_feature(self):
        data = np.full((6, 4), 0.3)
        data[5] = [0.1, 0.2, 0.3, 0.4]
        with pytest.raises(ValueError, match="at least 2 features"):
            pca(data, n_top=1)

    def test_single_sample(self):
        with pytest.raises(InsufficientSamplesError):
            pca(np.ones((10, 1)))

    def test_single_sample_after_subsetting(self, nb_matrix):
        am = nb_matrix.vst().subset_columns([0])
        with pytest.raises(InsufficientSamplesError):
            pca(am.assay("vst"))

    def test_non_finite(self):
        with pytest.raises(ValueError):
            pca(np.array([[1.0, np.inf], [2.0, 3.0]]))


class TestPCAData:

    def test_table(self, grouped_counts, grouped_vst):
        samples = make_sample_table(grouped_counts.columns)
        res = pca(grouped_vst)
        df = pca_data(res, samples, ["condition", "batch"])

        assert list(df.columns) == ["PC1", "PC2", "condition", "batch", "group"]
        assert df.loc["sample_0", "group"] == "ctrl:A"
        assert df.attrs["percentVar"] == res.explained_variance_ratio.iloc[:2].tolist()

    def test_single_column(self, grouped_counts, grouped_vst):
        samples = make_sample_table(grouped_counts.columns)
        df = pca_data(pca(grouped_vst), samples, "condition")
        assert df["group"].tolist() == df["condition"].tolist()

    def test_missing_column(self, grouped_counts, grouped_vst):
        samples = make_sample_table(grouped_counts.columns)
        with pytest.raises(ValueError, match="intgroup"):
            pca_data(pca(grouped_vst), samples, "tissue")
