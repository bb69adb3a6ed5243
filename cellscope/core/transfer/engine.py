"""Label transfer from a reference to a query through scored anchors."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import logging

import numpy as np
import pandas as pd
from scipy import sparse

from ...errors import ConfigurationError, NoAnchorsFoundError
from ..dataset import Dataset, Layer, ReducedEmbedding
from .anchors import AnchorSet
from .config import TransferConfig


@dataclass
class TransferResult:
    """Result from label transfer.

    Attributes
    ----------
    predictions : pd.DataFrame
        Per query cell: predicted label, ``prediction_score_max`` and one
        ``prediction_score_<label>`` column per reference label
    labels : List[str]
        Reference label set, sorted
    continuous : pd.DataFrame
        Transferred continuous values (may be empty)
    n_anchors : int
        Anchors used
    """

    predictions: pd.DataFrame = field(default_factory=pd.DataFrame)
    labels: List[str] = field(default_factory=list)
    continuous: pd.DataFrame = field(default_factory=pd.DataFrame)
    n_anchors: int = 0
    prediction_key: str = "predicted_id"

    def to_dict(self) -> Dict[str, Any]:
        counts = self.predictions[self.prediction_key].value_counts() if len(self.predictions) else {}
        return {
            "n_query_cells": len(self.predictions),
            "n_anchors": self.n_anchors,
            "labels": list(self.labels),
            "predicted_counts": {str(k): int(v) for k, v in dict(counts).items()},
            "mean_score_max": float(self.predictions["prediction_score_max"].mean())
            if len(self.predictions) else 0.0,
            "transferred_values": list(self.continuous.columns),
        }


class LabelTransfer:
    """Transfer reference labels and values onto query cells.

    Each query cell is weighted against its ``k_weight`` nearest anchors
    in the shared space: weights fall linearly with distance relative to
    the farthest of those anchors, are multiplied by anchor scores,
    passed through a Gaussian kernel with bandwidth ``sd_weight`` and
    normalized to sum to one.

    Parameters
    ----------
    config : TransferConfig, optional
        Transfer configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.
    """

    def __init__(
        self,
        config: Optional[TransferConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or TransferConfig()
        self.logger = logger or logging.getLogger(__name__)

    def weight_matrix(
        self,
        anchors: AnchorSet,
        mask: Optional[np.ndarray] = None,
    ) -> sparse.csr_matrix:
        """Query cells x anchors weight matrix with rows summing to one.

        Anchors outside ``mask`` get no weight; columns still follow the
        order of the masked anchor table.
        """
        from sklearn.neighbors import NearestNeighbors

        table = anchors.anchors if mask is None else anchors.anchors[mask]
        anchor_coords = anchors.query_embedding[table["query_index"].to_numpy()]
        scores = table["score"].to_numpy(dtype=np.float64)
        n_query = anchors.query_embedding.shape[0]
        k = min(self.config.k_weight, len(table))

        nn = NearestNeighbors(n_neighbors=k, n_jobs=self.config.n_jobs).fit(anchor_coords)
        distances, indices = nn.kneighbors(anchors.query_embedding)

        farthest = distances[:, -1:]
        with np.errstate(divide="ignore", invalid="ignore"):
            weights = np.where(farthest > 0, 1.0 - distances / farthest, 1.0)
        weights = weights * scores[indices]
        weights = 1.0 - np.exp(-weights / (2.0 * (1.0 / self.config.sd_weight) ** 2))

        totals = weights.sum(axis=1, keepdims=True)
        uniform = np.full_like(weights, 1.0 / k)
        with np.errstate(divide="ignore", invalid="ignore"):
            weights = np.where(totals > 0, weights / totals, uniform)

        return sparse.csr_matrix(
            (weights.ravel(), (np.repeat(np.arange(n_query), k), indices.ravel())),
            shape=(n_query, len(table)),
        )

    def _reference_values(
        self,
        reference: Dataset,
        names: Sequence[str],
        rows: np.ndarray,
    ) -> pd.DataFrame:
        obs = reference.obs
        values = {}
        feature_ids = set(reference.feature_ids)
        for name in names:
            if name in obs.columns:
                column = pd.to_numeric(obs[name], errors="coerce").to_numpy(dtype=np.float64)
                if np.isnan(column).any():
                    raise ConfigurationError(f"Reference column '{name}' is not numeric")
                values[name] = column[rows]
            elif name in feature_ids:
                values[name] = reference.layer_matrix(Layer.NORMALIZED, features=[name])[rows, 0]
            else:
                raise ConfigurationError(
                    f"'{name}' is neither a reference metadata column nor a feature"
                )
        return pd.DataFrame(values)

    def transfer(
        self,
        anchors: AnchorSet,
        reference: Dataset,
        query: Dataset,
        label_key: Optional[str] = None,
        refdata: Optional[Sequence[str]] = None,
    ) -> TransferResult:
        """Predict query labels from reference labels.

        Reference cells with a missing label are treated as unlabeled:
        their anchors carry no weight, so only observed labels can be
        predicted. The anchor set is marked used only once the transfer
        can no longer fail.

        Parameters
        ----------
        anchors : AnchorSet
            Unused anchors found between ``reference`` and ``query``
        reference : Dataset
            Reference with labels in ``label_key``
        query : Dataset
            Query receiving predictions in its cell metadata
        label_key : str, optional
            Reference label column. Uses config default if None.
        refdata : Sequence[str], optional
            Reference numeric metadata columns or features transferred
            as weighted averages into ``predicted_<name>`` columns

        Returns
        -------
        TransferResult

        Raises
        ------
        ConfigurationError
            If the anchors were already used, belong to other datasets,
            the label column is missing or ``refdata`` names are unknown
        NoAnchorsFoundError
            If every anchor points at an unlabeled reference cell
        """
        cfg = self.config
        label_key = label_key or cfg.label_key
        anchors.ensure_unused()
        if anchors.reference_id != reference.dataset_id or anchors.query_id != query.dataset_id:
            raise ConfigurationError(
                f"Anchors were found for {anchors.reference_id} -> {anchors.query_id}, "
                f"not {reference.dataset_id} -> {query.dataset_id}"
            )
        if anchors.query_embedding.shape[0] != query.n_cells:
            raise ConfigurationError("Query cell count differs from the one anchors were found on")
        obs = reference.obs
        if label_key not in obs.columns:
            raise ConfigurationError(f"Reference has no label column '{label_key}'")

        ref_rows = anchors.anchors["reference_index"].to_numpy()
        label_column = obs[label_key]
        observed = label_column.notna().to_numpy()
        labeled = observed[ref_rows]
        if not labeled.any():
            raise NoAnchorsFoundError(
                f"All {anchors.n_anchors} anchors point at reference cells without a '{label_key}' label"
            )
        if not labeled.all():
            self.logger.warning(
                "Ignoring %d of %d anchors whose reference cell has no '%s' label",
                int((~labeled).sum()), anchors.n_anchors, label_key,
            )
        ref_rows = ref_rows[labeled]
        values = self._reference_values(reference, refdata, ref_rows) if refdata else None

        ref_labels = np.asarray(label_column.astype(object).to_numpy(), dtype=object)
        anchor_labels = [str(label) for label in ref_labels[ref_rows]]
        labels = sorted({str(label) for label in ref_labels[observed]})
        label_pos = {label: i for i, label in enumerate(labels)}
        one_hot = sparse.csr_matrix(
            (
                np.ones(ref_rows.size),
                (np.arange(ref_rows.size), [label_pos[l] for l in anchor_labels]),
            ),
            shape=(ref_rows.size, len(labels)),
        )
        weights = self.weight_matrix(anchors, mask=labeled)
        scores = np.asarray((weights @ one_hot).todense(), dtype=np.float64)
        best = scores.argmax(axis=1)

        predictions = pd.DataFrame(index=query.cell_ids)
        predictions[cfg.prediction_key] = pd.Categorical(
            [labels[i] for i in best], categories=labels
        )
        predictions["prediction_score_max"] = scores.max(axis=1)
        for label, column in zip(labels, scores.T):
            predictions[f"prediction_score_{label}"] = column

        continuous = pd.DataFrame(index=query.cell_ids)
        if values is not None:
            transferred = weights @ values.to_numpy(dtype=np.float64)
            for i, name in enumerate(values.columns):
                continuous[f"predicted_{name}"] = transferred[:, i]

        anchors.consume()
        query.add_cell_metadata(predictions)
        if len(continuous.columns):
            query.add_cell_metadata(continuous)
        query.set_embedding(ReducedEmbedding(
            name="ref_pca",
            coordinates=anchors.query_projection,
            source_kind="layer",
            source=Layer.NORMALIZED.value,
            params={"reference": anchors.reference_id, **anchors.params},
        ))

        result = TransferResult(
            predictions=predictions,
            labels=labels,
            continuous=continuous,
            n_anchors=int(labeled.sum()),
            prediction_key=cfg.prediction_key,
        )
        self.logger.info(
            "Transferred '%s' to %d query cells with %d anchors (mean max score %.3f)",
            label_key, query.n_cells, result.n_anchors,
            float(predictions["prediction_score_max"].mean()),
        )
        return result
