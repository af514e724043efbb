"""Typed configuration for the QC pipeline stages."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class VSTConfig:
    """Size factor and variance stabilizing transformation settings."""

    fit_type: str = 'parametric'
    blind: bool = True
    min_mean: float = 1.0
    min_features: int = 2
    n_subset: Optional[int] = None
    size_factor_method: str = 'ratio'


@dataclass(frozen=True)
class PCAConfig:
    """PCA settings; ``n_top`` restricts to the most variable features."""

    n_components: Optional[int] = None
    n_top: Optional[int] = None
    scale: bool = False


@dataclass(frozen=True)
class ClusterConfig:
    """Hierarchical clustering settings."""

    method: str = 'average'
