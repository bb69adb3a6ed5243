"""Count normalization.

Two strategies are exposed by name; the caller picks one:

- ``log_normalize``: scale each cell to ``scale_factor`` total counts,
  then log1p. Sparse in, sparse out.
- ``vst``: analytic Pearson residuals of a negative binomial model with
  fixed overdispersion ``theta``, clipped at ``clip`` (default
  sqrt(n_cells)). Dense output.

Raw counts are never modified; the result goes to the NORMALIZED layer.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union
import logging

import numpy as np
from scipy import sparse

from ...errors import ConfigurationError, DegenerateCellError
from ..dataset import Dataset, Layer
from .config import NormalizationConfig


class NormalizationMethod(str, Enum):
    """Normalization strategies."""

    LOG_NORMALIZE = "log_normalize"
    VST = "vst"

    @classmethod
    def parse(cls, value: Union[str, "NormalizationMethod"]) -> "NormalizationMethod":
        if isinstance(value, NormalizationMethod):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigurationError(
                f"Unknown normalization method '{value}'. Use log_normalize or vst"
            )


@dataclass
class NormalizationResult:
    """Result from normalization.

    Attributes
    ----------
    method : str
        Strategy applied
    n_cells : int
        Number of cells normalized
    n_features : int
        Number of features normalized
    scale_factor : float, optional
        Target total (log_normalize)
    theta : float, optional
        Overdispersion (vst)
    clip : float, optional
        Residual clip value actually used (vst)
    """

    method: str
    n_cells: int = 0
    n_features: int = 0
    scale_factor: Optional[float] = None
    theta: Optional[float] = None
    clip: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, omitting parameters of the other strategy."""
        result = {
            "method": self.method,
            "n_cells": self.n_cells,
            "n_features": self.n_features,
        }
        for key in ("scale_factor", "theta", "clip"):
            value = getattr(self, key)
            if value is not None:
                result[key] = float(value)
        return result


class Normalizer:
    """Normalize raw counts into the NORMALIZED layer.

    Parameters
    ----------
    config : NormalizationConfig, optional
        Normalization configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellscope.core.preprocessing import Normalizer, NormalizationConfig
    >>> normalizer = Normalizer(NormalizationConfig(method="log_normalize"))
    >>> result = normalizer.normalize(dataset)
    """

    def __init__(
        self,
        config: Optional[NormalizationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or NormalizationConfig()
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def _check_totals(dataset: Dataset, counts: sparse.csr_matrix) -> None:
        totals = np.asarray(counts.sum(axis=1)).ravel()
        zero = np.flatnonzero(totals <= 0)
        if zero.size:
            cell_ids = [str(c) for c in dataset.cell_ids[zero]]
            raise DegenerateCellError(
                f"{zero.size} cells have zero total count and cannot be normalized "
                f"(first: {cell_ids[:5]}); run QC first",
                cell_ids=cell_ids,
            )

    def log_normalize(self, counts: sparse.csr_matrix, scale_factor: float) -> sparse.csr_matrix:
        """Scale each cell to ``scale_factor`` total counts and apply log1p.

        Parameters
        ----------
        counts : sparse.csr_matrix
            Raw counts, cells x features, no zero-total rows
        scale_factor : float
            Target total per cell

        Returns
        -------
        sparse.csr_matrix
            log1p(counts / total * scale_factor)
        """
        import anndata as ad
        import scanpy as sc

        tmp = ad.AnnData(X=sparse.csr_matrix(counts, dtype=np.float64))
        scaled = sc.pp.normalize_total(tmp, target_sum=scale_factor, inplace=False)["X"]
        return sparse.csr_matrix(scaled).log1p()

    def pearson_residuals(
        self,
        counts: sparse.csr_matrix,
        theta: float,
        clip: Optional[float] = None,
    ) -> np.ndarray:
        """Analytic negative binomial Pearson residuals.

        Parameters
        ----------
        counts : sparse.csr_matrix
            Raw counts, cells x features, no zero-total rows
        theta : float
            Overdispersion; larger values approach a Poisson model
        clip : float, optional
            Residuals are clipped to [-clip, clip]. Defaults to sqrt(n_cells).

        Returns
        -------
        np.ndarray
            Dense residual matrix. Features never observed have an expected
            count of zero and get residual 0 in every cell.
        """
        import anndata as ad
        import scanpy as sc

        counts = sparse.csr_matrix(counts, dtype=np.float64)
        unobserved = np.asarray(counts.sum(axis=0)).ravel() <= 0
        tmp = ad.AnnData(X=counts)
        with np.errstate(divide="ignore", invalid="ignore"):
            residuals = sc.experimental.pp.normalize_pearson_residuals(
                tmp, theta=theta, clip=clip, inplace=False
            )["X"]
        residuals = np.array(residuals, dtype=np.float64)
        if unobserved.any():
            self.logger.warning(
                "%d features have zero total count; their residuals are set to 0",
                int(unobserved.sum()),
            )
            residuals[:, unobserved] = 0.0
        return residuals

    def normalize(
        self,
        dataset: Dataset,
        method: Optional[Union[str, NormalizationMethod]] = None,
    ) -> NormalizationResult:
        """Normalize counts and commit the NORMALIZED layer.

        Parameters
        ----------
        dataset : Dataset
            Dataset with raw counts
        method : str or NormalizationMethod, optional
            Overrides ``config.method``

        Returns
        -------
        NormalizationResult

        Raises
        ------
        DegenerateCellError
            If any cell has a zero total count
        """
        self.config.validate()
        method = NormalizationMethod.parse(method or self.config.method)
        counts = sparse.csr_matrix(dataset.get_layer(Layer.COUNTS))
        self._check_totals(dataset, counts)

        if method is NormalizationMethod.LOG_NORMALIZE:
            matrix = self.log_normalize(counts, self.config.scale_factor)
            result = NormalizationResult(
                method=method.value,
                n_cells=dataset.n_cells,
                n_features=dataset.n_features,
                scale_factor=float(self.config.scale_factor),
            )
        else:
            clip = self.config.clip if self.config.clip is not None else float(np.sqrt(dataset.n_cells))
            matrix = self.pearson_residuals(counts, self.config.theta, clip)
            result = NormalizationResult(
                method=method.value,
                n_cells=dataset.n_cells,
                n_features=dataset.n_features,
                theta=float(self.config.theta),
                clip=clip,
            )

        dataset.set_layer(Layer.NORMALIZED, matrix, record=result.to_dict())
        self.logger.info(
            "Normalized %d cells x %d features with %s",
            dataset.n_cells, dataset.n_features, method.value,
        )
        return result
