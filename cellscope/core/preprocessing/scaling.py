"""Feature scaling with optional nuisance regression."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import logging

import numpy as np
import pandas as pd

from ...errors import ConfigurationError
from ..dataset import Dataset, Layer
from .config import ScalingConfig


@dataclass
class ScalingResult:
    """Result from scaling.

    Attributes
    ----------
    features : List[str]
        Features written to the scaled layer
    regressed : List[str]
        Covariates regressed out before scaling
    max_value : float, optional
        Clip value applied
    """

    features: List[str] = field(default_factory=list)
    regressed: List[str] = field(default_factory=list)
    max_value: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_features": len(self.features),
            "regressed": list(self.regressed),
            "max_value": self.max_value,
        }


class Scaler:
    """Standardize normalized expression of selected features.

    Per feature, nuisance covariates are optionally regressed out, then
    values are centred to zero mean, scaled to unit variance and clipped
    at ``max_value``. Features outside the selection hold 0 in the dense
    SCALED layer, and ``var["scaled"]`` marks the scaled subset.

    Parameters
    ----------
    config : ScalingConfig, optional
        Scaling configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.
    """

    def __init__(
        self,
        config: Optional[ScalingConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ScalingConfig()
        self.logger = logger or logging.getLogger(__name__)

    def scale(
        self,
        dataset: Dataset,
        features: Optional[Sequence[str]] = None,
    ) -> ScalingResult:
        """Write the SCALED layer.

        Parameters
        ----------
        dataset : Dataset
            Dataset with a normalized layer
        features : Sequence[str], optional
            Features to scale. Defaults to the selected variable features.

        Returns
        -------
        ScalingResult

        Raises
        ------
        ConfigurationError
            If no features are selected or a covariate column is missing
        """
        import anndata as ad
        import scanpy as sc

        self.config.validate()
        features = list(features) if features is not None else dataset.selected_features
        if not features:
            raise ConfigurationError("No features to scale; run feature selection first")

        obs = dataset.obs
        covariates = list(self.config.regress_out)
        missing = [c for c in covariates if c not in obs.columns]
        if missing:
            raise ConfigurationError(f"Covariates not found in cell metadata: {missing}")

        tmp = ad.AnnData(
            X=dataset.layer_matrix(Layer.NORMALIZED, features=features),
            obs=obs[covariates].copy() if covariates else pd.DataFrame(index=obs.index),
        )
        if covariates:
            self.logger.info("Regressing out %s from %d features", covariates, len(features))
            sc.pp.regress_out(tmp, keys=covariates, n_jobs=self.config.n_jobs)
        sc.pp.scale(tmp, zero_center=True, max_value=self.config.max_value)

        positions = dataset.feature_positions(features)
        full = np.zeros((dataset.n_cells, dataset.n_features), dtype=np.float64)
        full[:, positions] = np.asarray(tmp.X, dtype=np.float64)
        mask = np.zeros(dataset.n_features, dtype=bool)
        mask[positions] = True

        dataset.set_layer(Layer.SCALED, full)
        dataset.add_feature_metadata({"scaled": mask})
        self.logger.info(
            "Scaled %d features for %d cells (clip=%s)",
            len(features), dataset.n_cells, self.config.max_value,
        )
        return ScalingResult(
            features=[str(f) for f in features],
            regressed=covariates,
            max_value=self.config.max_value,
        )
