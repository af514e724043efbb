"""
AnnotatedMatrix container for count-based experiments.

This module provides an immutable container that holds one or more
same-shaped assay matrices (features x samples) together with a feature
annotation table and a sample annotation table, and keeps the three in
lockstep under subsetting and reordering.

Shape Invariants:
    - every assay has n_features rows and n_samples columns
    - assay rows follow feature_table order, assay columns follow
      sample_table order
    - feature and sample identifiers are unique
    - size factors, when present, cover exactly the sample identifiers

Every operation returns a new AnnotatedMatrix; the instance it was called
on is never modified, so a failed operation leaves no partial state.

Examples:
    >>> counts = pd.DataFrame([[10, 20], [30, 60]],
    ...                       index=["g1", "g2"], columns=["s1", "s2"])
    >>> samples = pd.DataFrame({"condition": ["ctrl", "treat"]}, index=["s1", "s2"])
    >>> am = AnnotatedMatrix.from_counts(counts, sample_table=samples)
    >>> am.subset_columns(["s2"]).shape
    (2, 1)
"""

import logging
from collections.abc import Mapping
from enum import Enum
from types import MappingProxyType

import numpy as np
import pandas as pd

from .exceptions import (
    DegenerateInputError,
    DuplicateAssayNameError,
    DuplicateIdentifierError,
    IdentityMismatchError,
    IndexOutOfRangeError,
    InvalidPermutationError,
    ShapeMismatchError,
)

logger = logging.getLogger(__name__)

__all__ = ['AnnotatedMatrix', 'FeatureKind']


class FeatureKind(Enum):
    """
    Feature classification supplied by the annotation collaborator.

    The container never infers kinds from free-text annotation; a
    ``feature_kind`` column holding these members has to be provided.
    """

    PROTEIN_CODING = "protein_coding"
    NON_CODING = "non_coding"
    PSEUDOGENE = "pseudogene"
    OTHER = "other"


def _check_unique(index, what):
    if index.has_duplicates:
        dups = index[index.duplicated()].unique().tolist()
        raise DuplicateIdentifierError(
            f"{what} identifiers must be unique; repeated: {dups}", identifiers=dups)


def _as_matrix(name, matrix, feature_ids, sample_ids):
    """Validate one assay against the identifiers and return a read-only copy."""
    labels = isinstance(matrix, pd.DataFrame)
    values = matrix.to_numpy(copy=True) if labels else np.array(matrix, copy=True)

    if values.ndim != 2:
        raise ShapeMismatchError(
            f"assay '{name}' must be 2D, got shape {values.shape}",
            expected=(len(feature_ids), len(sample_ids)), got=values.shape)
    if not np.issubdtype(values.dtype, np.number):
        raise TypeError(f"assay '{name}' must be numeric, got dtype {values.dtype}")

    expected = (len(feature_ids), len(sample_ids))
    if values.shape != expected:
        raise ShapeMismatchError(
            f"assay '{name}' has shape {values.shape}, but the annotation tables "
            f"describe {expected[0]} features x {expected[1]} samples",
            expected=expected, got=values.shape)

    if labels:
        for what, got, ids in (("row", matrix.index, feature_ids),
                               ("column", matrix.columns, sample_ids)):
            if not got.equals(ids):
                if set(got) == set(ids):
                    raise IdentityMismatchError(
                        f"assay '{name}' {what} labels are in a different order "
                        "than the annotation table")
                missing = [i for i in ids if i not in set(got)]
                raise IdentityMismatchError(
                    f"assay '{name}' {what} labels disagree with the annotation "
                    f"table; not found in assay: {missing[:10]}", identifiers=missing)

    values.flags.writeable = False
    return values


def _as_size_factors(size_factors, sample_ids):
    if isinstance(size_factors, Mapping) and not isinstance(size_factors, pd.Series):
        size_factors = pd.Series(size_factors, dtype=float)

    if isinstance(size_factors, pd.Series):
        if (len(size_factors) != len(sample_ids) or size_factors.index.has_duplicates
                or set(size_factors.index) != set(sample_ids)):
            extra = [i for i in size_factors.index if i not in set(sample_ids)]
            missing = [i for i in sample_ids if i not in set(size_factors.index)]
            raise IdentityMismatchError(
                f"size factors must have one entry per sample; missing: {missing[:10]}, "
                f"unknown: {extra[:10]}", identifiers=missing + extra)
        sf = size_factors.reindex(sample_ids).astype(float)
    else:
        values = np.asarray(size_factors, dtype=float).reshape(-1)
        if len(values) != len(sample_ids):
            raise ShapeMismatchError(
                f"got {len(values)} size factors for {len(sample_ids)} samples",
                expected=len(sample_ids), got=len(values))
        sf = pd.Series(values, index=sample_ids)

    if not np.all(np.isfinite(sf.values)) or np.any(sf.values <= 0):
        raise DegenerateInputError("size factors must be finite and positive")
    sf.name = "size_factor"
    return sf


class AnnotatedMatrix:
    """
    Immutable container for assays + feature annotations + sample annotations.

    Parameters
    ----------
    assays : Mapping[str, np.ndarray or pd.DataFrame]
        Named matrices, all of shape (n_features, n_samples). A DataFrame
        assay must carry the feature identifiers as index and the sample
        identifiers as columns, in table order.
    feature_table : pd.DataFrame
        One row per feature; the index holds unique feature identifiers.
    sample_table : pd.DataFrame
        One row per sample; the index holds unique sample identifiers.
    size_factors : pd.Series, Mapping or array-like, optional
        One positive factor per sample.
    design : str, optional
        Design formula (e.g. "~ condition") used by non-blind transforms.

    Raises
    ------
    ShapeMismatchError
        If an assay's dimensions disagree with the table lengths.
    IdentityMismatchError
        If labelled assays disagree with the table identifiers or order.
    DuplicateIdentifierError
        If a table repeats an identifier.

    Attributes
    ----------
    assays : Mapping[str, np.ndarray]
        Read-only view of the assay matrices.
    feature_table, sample_table : pd.DataFrame
        Annotation tables (copies are returned).
    size_factors : pd.Series or None
        Size factor per sample.
    """

    def __init__(self, assays, feature_table, sample_table, size_factors=None, design=None):
        if not isinstance(feature_table, pd.DataFrame):
            raise TypeError(f"feature_table must be pd.DataFrame, got {type(feature_table)}")
        if not isinstance(sample_table, pd.DataFrame):
            raise TypeError(f"sample_table must be pd.DataFrame, got {type(sample_table)}")
        if not isinstance(assays, Mapping) or len(assays) == 0:
            raise ValueError("assays must be a non-empty mapping of name -> matrix")

        _check_unique(feature_table.index, "feature")
        _check_unique(sample_table.index, "sample")

        feature_ids = feature_table.index
        sample_ids = sample_table.index

        stored = {}
        for name, matrix in assays.items():
            if not isinstance(name, str):
                raise TypeError(f"assay names must be strings, got {name!r}")
            stored[name] = _as_matrix(name, matrix, feature_ids, sample_ids)

        self._assays = stored
        self._feature_table = feature_table.copy()
        self._sample_table = sample_table.copy()
        self._size_factors = (None if size_factors is None
                              else _as_size_factors(size_factors, sample_ids))
        self._design = design

    @classmethod
    def from_counts(cls, counts, sample_table=None, feature_table=None,
                    assay_name="counts", design=None):
        """
        Build a container from a labelled count matrix.

        The annotation tables are aligned to the count matrix by identifier
        matching; both must describe exactly the same identifiers.

        Parameters
        ----------
        counts : pd.DataFrame
            Count matrix with feature identifiers as index and sample
            identifiers as columns.
        sample_table, feature_table : pd.DataFrame, optional
            Annotations keyed by identifier, in any order. Missing tables
            become empty annotation tables.

        Raises
        ------
        IdentityMismatchError
            If a table is missing identifiers of the matrix or has extra ones.
        """
        if not isinstance(counts, pd.DataFrame):
            raise TypeError("counts must be a pandas DataFrame with labelled rows and columns")
        _check_unique(counts.index, "feature")
        _check_unique(counts.columns, "sample")

        def align(table, ids, what):
            if table is None:
                return pd.DataFrame(index=ids)
            _check_unique(table.index, what)
            missing = [i for i in ids if i not in set(table.index)]
            extra = [i for i in table.index if i not in set(ids)]
            if missing or extra:
                raise IdentityMismatchError(
                    f"{what} table does not match the count matrix; missing: "
                    f"{missing[:10]}, unknown: {extra[:10]}", identifiers=missing + extra)
            return table.loc[ids]

        return cls(
            {assay_name: counts},
            feature_table=align(feature_table, counts.index, "feature"),
            sample_table=align(sample_table, counts.columns, "sample"),
            design=design,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def assays(self):
        """Read-only mapping of assay name to matrix (features x samples)."""
        return MappingProxyType(self._assays)

    @property
    def assay_names(self):
        return list(self._assays)

    @property
    def feature_table(self):
        return self._feature_table.copy()

    @property
    def sample_table(self):
        return self._sample_table.copy()

    @property
    def feature_ids(self):
        return self._feature_table.index

    @property
    def sample_ids(self):
        return self._sample_table.index

    @property
    def size_factors(self):
        return None if self._size_factors is None else self._size_factors.copy()

    @property
    def design(self):
        return self._design

    @property
    def shape(self):
        """Matrix dimensions (n_features, n_samples)."""
        return (len(self._feature_table), len(self._sample_table))

    @property
    def n_features(self):
        return len(self._feature_table)

    @property
    def n_samples(self):
        return len(self._sample_table)

    def assay(self, name="counts", as_frame=True):
        """
        Get one assay.

        Parameters
        ----------
        name : str, default "counts"
            Assay name.
        as_frame : bool, default True
            Return a labelled DataFrame instead of the read-only array.
        """
        if name not in self._assays:
            raise KeyError(f"no assay named {name!r}; available: {self.assay_names}")
        values = self._assays[name]
        if as_frame:
            return pd.DataFrame(values.copy(), index=self.feature_ids, columns=self.sample_ids)
        return values

    def counts(self, normalized=False, assay="counts"):
        """
        Count matrix as a labelled DataFrame.

        With ``normalized=True`` counts are divided by the stored size
        factors, which are estimated on the fly when absent.
        """
        data = self.assay(assay)
        if not normalized:
            return data
        sf = self._size_factors
        if sf is None:
            from .size_factors import estimate_size_factors
            sf = estimate_size_factors(data)
        return data / sf.values

    # ------------------------------------------------------------------
    # Structural operations
    # ------------------------------------------------------------------

    def _replace(self, **changes):
        parts = dict(assays=self._assays, feature_table=self._feature_table,
                     sample_table=self._sample_table, size_factors=self._size_factors,
                     design=self._design)
        parts.update(changes)
        return AnnotatedMatrix(**parts)

    @staticmethod
    def _resolve(selector, ids, table, axis):
        """Turn a selector into an array of unique positions along one axis."""
        n = len(ids)
        if callable(selector):
            selector = selector(table)
        if isinstance(selector, slice):
            return np.arange(n)[selector]
        if isinstance(selector, (pd.Series, pd.Index)):
            selector = selector.to_numpy()

        sel = np.asarray(selector)
        if sel.ndim == 0:
            sel = sel.reshape(1)
        if sel.ndim != 1:
            raise ValueError(f"{axis} selector must be one-dimensional, got shape {sel.shape}")

        if sel.dtype == bool:
            if len(sel) != n:
                raise ShapeMismatchError(
                    f"boolean {axis} mask has length {len(sel)}, expected {n}",
                    expected=n, got=len(sel))
            return np.flatnonzero(sel)

        if len(sel) == 0:
            return np.array([], dtype=int)

        if np.issubdtype(sel.dtype, np.integer):
            bad = sel[(sel < 0) | (sel >= n)]
            if len(bad):
                raise IndexOutOfRangeError(
                    f"{axis} positions {bad.tolist()} are out of range for {n} {axis}s",
                    positions=bad.tolist())
            positions = sel.astype(int)
        else:
            positions = ids.get_indexer(sel)
            unknown = sel[positions < 0]
            if len(unknown):
                raise IdentityMismatchError(
                    f"unknown {axis} identifiers: {unknown.tolist()[:10]}",
                    identifiers=unknown.tolist())

        if len(np.unique(positions)) != len(positions):
            seen, dups = set(), []
            for p in positions:
                if p in seen:
                    dups.append(ids[p])
                seen.add(p)
            raise DuplicateIdentifierError(
                f"{axis} selector repeats identifiers {dups[:10]}", identifiers=dups)
        return positions

    def subset_rows(self, selector):
        """
        Subset (and/or reorder) features.

        Parameters
        ----------
        selector : array-like, slice or callable
            Boolean mask, integer positions, feature identifiers, or a
            callable that receives the feature table and returns one of
            these. Integers are always read as positions.

        Returns
        -------
        AnnotatedMatrix
            New container; every assay and the feature table are filtered
            identically. Size factors are kept.

        Raises
        ------
        IndexOutOfRangeError, IdentityMismatchError, DuplicateIdentifierError,
        ShapeMismatchError
            If the selector is invalid; the original is untouched.
        """
        pos = self._resolve(selector, self.feature_ids, self._feature_table, "feature")
        logger.debug(f"Selecting {len(pos)}/{self.n_features} features")
        return self._replace(
            assays={k: v[pos, :] for k, v in self._assays.items()},
            feature_table=self._feature_table.iloc[pos],
        )

    def subset_columns(self, selector):
        """
        Subset (and/or reorder) samples.

        Accepts the same selectors as :meth:`subset_rows`, with the callable
        receiving the sample table. Size factors follow a pure reordering and
        are cleared whenever the sample set changes.
        """
        pos = self._resolve(selector, self.sample_ids, self._sample_table, "sample")
        sample_table = self._sample_table.iloc[pos]

        size_factors = None
        if self._size_factors is not None:
            if len(pos) == self.n_samples:
                size_factors = self._size_factors.iloc[pos]
            else:
                logger.debug("Sample set changed; clearing size factors")

        logger.debug(f"Selecting {len(pos)}/{self.n_samples} samples")
        return self._replace(
            assays={k: v[:, pos] for k, v in self._assays.items()},
            sample_table=sample_table,
            size_factors=size_factors,
        )

    def reorder_columns(self, new_order):
        """
        Permute the sample axis of all assays and the sample table.

        Parameters
        ----------
        new_order : array-like
            Sample identifiers or positions forming a permutation of all
            samples.

        Raises
        ------
        InvalidPermutationError
            If ``new_order`` is not a permutation of the existing samples.
        """
        try:
            pos = self._resolve(new_order, self.sample_ids, self._sample_table, "sample")
        except (IndexOutOfRangeError, IdentityMismatchError,
                DuplicateIdentifierError, ShapeMismatchError) as exc:
            raise InvalidPermutationError(f"invalid column order: {exc}") from exc
        if len(pos) != self.n_samples or np.asarray(new_order).dtype == bool:
            raise InvalidPermutationError(
                f"new order names {len(pos)} samples, expected a permutation "
                f"of all {self.n_samples}")
        return self.subset_columns(pos)

    def add_assay(self, name, matrix):
        """
        Return a new container with an additional assay.

        Raises
        ------
        DuplicateAssayNameError
            If ``name`` is already present.
        ShapeMismatchError
            If the matrix shape disagrees with the container.
        """
        if name in self._assays:
            raise DuplicateAssayNameError(f"assay {name!r} already exists")
        assays = dict(self._assays)
        assays[name] = matrix
        return self._replace(assays=assays)

    def with_size_factors(self, size_factors):
        """Return a copy carrying the given size factors."""
        return self._replace(size_factors=size_factors)

    def select_feature_kind(self, *kinds):
        """
        Keep features whose ``feature_kind`` annotation is one of ``kinds``.

        Raises
        ------
        ValueError
            If the feature table has no ``feature_kind`` column, or holds
            values that are not FeatureKind members.
        """
        if "feature_kind" not in self._feature_table.columns:
            raise ValueError("feature table has no 'feature_kind' column")
        for kind in kinds:
            if not isinstance(kind, FeatureKind):
                raise TypeError(f"expected FeatureKind, got {kind!r}")
        column = self._feature_table["feature_kind"]
        invalid = [v for v in column.unique() if not isinstance(v, FeatureKind)]
        if invalid:
            raise ValueError(f"feature_kind holds values that are not FeatureKind: {invalid[:10]}")
        return self.subset_rows(column.isin(kinds).to_numpy())

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    def estimate_size_factors(self, method="ratio", control_genes=None, assay="counts"):
        """
        Estimate size factors and store them with a "normalized" assay.

        Returns
        -------
        AnnotatedMatrix
            New container; an existing "normalized" assay is replaced.
        """
        from .size_factors import estimate_size_factors as est_sf

        sf = est_sf(self._assays[assay], type=method, control_genes=control_genes)
        assays = dict(self._assays)
        assays["normalized"] = self._assays[assay] / sf
        return self._replace(assays=assays, size_factors=sf)

    def vst(self, blind=True, fit_type="parametric", assay="counts", name="vst", **kwargs):
        """
        Apply the variance stabilizing transformation.

        Stored size factors are used when present, otherwise they are
        estimated (``size_factor_method`` is passed on to the transform).
        With ``blind=False`` samples are grouped by the design formula.

        Returns
        -------
        AnnotatedMatrix
            New container with the transformed assay under ``name`` and the
            size factors that were used. An existing assay of that name is
            replaced, as ``estimate_size_factors`` replaces "normalized".
        """
        from .design import design_groups
        from .transformations import vst

        group_labels = None
        if not blind:
            if self._design is None:
                raise ValueError("blind=False requires a design formula")
            group_labels = design_groups(self._sample_table, self._design)

        sf = None if self._size_factors is None else self._size_factors.values
        transformed, fit = vst(self._assays[assay], size_factors=sf, blind=blind,
                               group_labels=group_labels, fit_type=fit_type,
                               return_fit=True, **kwargs)
        assays = dict(self._assays)
        assays[name] = transformed
        return self._replace(assays=assays, size_factors=fit.size_factors)

    def filter_low_counts(self, min_count=10, min_samples=None, assay="counts"):
        """Keep features with >= min_count in at least min_samples samples."""
        from .utils import filter_low_counts

        mask = filter_low_counts(self._assays[assay], min_count=min_count,
                                 min_samples=min_samples)
        logger.info(f"Low-count filter kept {int(mask.sum())}/{self.n_features} features")
        return self.subset_rows(mask)

    # ------------------------------------------------------------------

    def equals(self, other):
        """True if assays, tables and size factors are identical."""
        if not isinstance(other, AnnotatedMatrix):
            return False
        if self.assay_names != other.assay_names:
            return False
        if not all(np.array_equal(self._assays[k], other._assays[k]) for k in self._assays):
            return False
        if (self._size_factors is None) != (other._size_factors is None):
            return False
        if self._size_factors is not None and not self._size_factors.equals(other._size_factors):
            return False
        return (self._feature_table.equals(other._feature_table)
                and self._sample_table.equals(other._sample_table)
                and self._feature_table.index.equals(other._feature_table.index)
                and self._sample_table.index.equals(other._sample_table.index))

    def __repr__(self):
        G, S = self.shape
        sf = "with size factors" if self._size_factors is not None else "no size factors"
        return (f"AnnotatedMatrix with {G} features and {S} samples "
                f"(assays: {', '.join(self.assay_names)}; {sf})")
