"""
Design formulas for grouping-aware dispersion estimation.

A design formula such as ``"~ condition + batch"`` is turned into a
design matrix with patsy. Samples sharing an identical design row form
one group; non-blind transformations pool within-group dispersions so
that expected group differences do not inflate the mean-variance trend.
"""

import numpy as np
import pandas as pd
from patsy import PatsyError, dmatrix

__all__ = ['create_design_matrix', 'design_groups']


def create_design_matrix(sample_table, formula="~ condition"):
    """
    Create a design matrix from sample annotations and a formula.

    Parameters
    ----------
    sample_table : pd.DataFrame
        Sample annotations with experimental variables as columns.
    formula : str, default "~ condition"
        R-style formula. Use 'C(var)' for explicit categorical treatment.

    Returns
    -------
    np.ndarray
        Design matrix (samples x parameters).
    list
        Column names for the design matrix.

    Raises
    ------
    TypeError
        If sample_table is not a DataFrame.
    ValueError
        If the formula references columns that are not in sample_table.

    Examples
    --------
    >>> sample_table = pd.DataFrame({'condition': ['ctrl', 'ctrl', 'treat', 'treat']})
    >>> X, names = create_design_matrix(sample_table, "~ condition")
    >>> names
    ['Intercept', 'condition[T.treat]']
    """
    if not isinstance(sample_table, pd.DataFrame):
        raise TypeError("sample_table must be a pandas DataFrame")

    try:
        design = dmatrix(formula, data=sample_table, return_type='dataframe')
    except PatsyError as exc:
        raise ValueError(f"cannot build design matrix from {formula!r}: {exc}") from exc

    if len(design) != len(sample_table):
        raise ValueError(f"design formula {formula!r} dropped samples with missing values "
                         f"({len(design)} of {len(sample_table)} rows kept)")
    return design.values, list(design.columns)


def design_groups(sample_table, formula="~ condition"):
    """
    Group labels from identical rows of the design matrix.

    Returns
    -------
    np.ndarray
        Integer group label per sample, numbered in order of first
        appearance.
    """
    X, _ = create_design_matrix(sample_table, formula)
    _, first, inverse = np.unique(X, axis=0, return_index=True, return_inverse=True)
    inverse = np.asarray(inverse).reshape(-1)
    # renumber so that group ids follow sample order
    rank = np.empty(len(first), dtype=int)
    rank[np.argsort(first, kind='stable')] = np.arange(len(first))
    return rank[inverse]
