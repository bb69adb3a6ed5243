"""Preprocessing: quality control, normalization, feature selection, scaling.

Example
-------
>>> from cellscope.core.preprocessing import (
...     PreprocessingConfig, QualityControl, Normalizer, FeatureSelector, Scaler,
... )
>>> config = PreprocessingConfig.from_yaml("config.yaml")
>>> dataset, qc_result = QualityControl(config.qc).filter(dataset)
>>> Normalizer(config.normalization).normalize(dataset)
>>> FeatureSelector(config.feature_selection).select(dataset)
>>> Scaler(config.scaling).scale(dataset)
"""

from .config import (
    FeatureSelectionConfig,
    NormalizationConfig,
    PreprocessingConfig,
    QCConfig,
    ScalingConfig,
)
from .features import FeatureSelectionResult, FeatureSelector, rank_by_score
from .normalization import NormalizationMethod, NormalizationResult, Normalizer
from .qc import QCResult, QualityControl
from .scaling import Scaler, ScalingResult

__all__ = [
    "PreprocessingConfig",
    "QCConfig",
    "NormalizationConfig",
    "FeatureSelectionConfig",
    "ScalingConfig",
    "QualityControl",
    "QCResult",
    "Normalizer",
    "NormalizationMethod",
    "NormalizationResult",
    "FeatureSelector",
    "FeatureSelectionResult",
    "rank_by_score",
    "Scaler",
    "ScalingResult",
]
