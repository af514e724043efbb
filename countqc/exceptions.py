"""
Exception hierarchy for countqc.

All errors raised by the package derive from :class:`CountQCError`.
Validation failures additionally derive from ``ValueError`` so callers
that only catch built-in exceptions keep working.
"""

__all__ = [
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


class CountQCError(Exception):
    """Base class for all countqc errors."""
    pass


class ShapeMismatchError(CountQCError, ValueError):
    """Raised when a matrix shape disagrees with the annotation tables."""

    def __init__(self, message, expected=None, got=None):
        super().__init__(message)
        self.expected = expected
        self.got = got


class IdentityMismatchError(CountQCError, ValueError):
    """Raised when row/column labels disagree with table identifiers."""

    def __init__(self, message, identifiers=None):
        super().__init__(message)
        self.identifiers = list(identifiers) if identifiers is not None else []


class DuplicateIdentifierError(CountQCError, ValueError):
    """Raised when a feature or sample identifier occurs more than once."""

    def __init__(self, message, identifiers=None):
        super().__init__(message)
        self.identifiers = list(identifiers) if identifiers is not None else []


class DuplicateAssayNameError(CountQCError, ValueError):
    """Raised when adding an assay under a name that is already taken."""
    pass


class IndexOutOfRangeError(CountQCError, IndexError, ValueError):
    """Raised when a positional selector points outside the matrix."""

    def __init__(self, message, positions=None):
        super().__init__(message)
        self.positions = list(positions) if positions is not None else []


class InvalidPermutationError(CountQCError, ValueError):
    """Raised when a new column order is not a permutation of the samples."""
    pass


class DegenerateInputError(CountQCError, ValueError):
    """Raised when size factors cannot be estimated from the counts."""
    pass


class InsufficientDataError(CountQCError, ValueError):
    """Raised when too few features remain to fit a mean-variance trend."""
    pass


class FitDivergenceError(CountQCError, RuntimeError):
    """Raised when the dispersion trend fit does not converge."""
    pass


class InsufficientSamplesError(CountQCError, ValueError):
    """Raised when fewer than two samples are available."""
    pass


class ZeroVarianceError(CountQCError, ValueError):
    """Raised when every feature is constant across samples."""
    pass
