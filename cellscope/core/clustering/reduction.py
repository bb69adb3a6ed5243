"""Dimensionality reduction: PCA on scaled features and UMAP on PCA."""

from typing import Optional, Sequence, Tuple
import logging

import numpy as np
import pandas as pd

from ...errors import ConfigurationError, DimensionalityError
from ..dataset import Dataset, Layer, ReducedEmbedding
from .config import ReductionConfig


def resolve_dims(
    dims: Optional[Tuple[int, int]],
    n_available: int,
) -> Tuple[int, int]:
    """Validate a half-open component range against the available components."""
    if dims is None:
        return 0, n_available
    start, stop = int(dims[0]), int(dims[1])
    if start < 0 or stop <= start or stop > n_available:
        raise ConfigurationError(
            f"Dimension range ({start}, {stop}) is invalid for an embedding "
            f"with {n_available} components"
        )
    return start, stop


class DimensionalityReducer:
    """PCA and UMAP over a Dataset.

    Parameters
    ----------
    config : ReductionConfig, optional
        Reduction configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Notes
    -----
    The sign of each principal component is arbitrary. Repeated runs on
    equivalent input can return any component multiplied by -1.
    """

    def __init__(
        self,
        config: Optional[ReductionConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ReductionConfig()
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def _scaled_features(dataset: Dataset) -> Sequence[str]:
        var = dataset.var
        if "scaled" not in var or not var["scaled"].astype(bool).any():
            raise ConfigurationError("No scaled features; run scaling before PCA")
        return [str(f) for f in var.index[var["scaled"].astype(bool).to_numpy()]]

    def run_pca(
        self,
        dataset: Dataset,
        n_components: Optional[int] = None,
        seed: Optional[int] = None,
        name: str = "pca",
    ) -> ReducedEmbedding:
        """Principal components of the scaled selected features.

        Parameters
        ----------
        dataset : Dataset
            Dataset with a SCALED layer
        n_components : int, optional
            Number of components. Uses config default if None.
        seed : int, optional
            Seed for the iterative solver. Uses config default if None.
        name : str
            Embedding name

        Returns
        -------
        ReducedEmbedding
            Coordinates, loadings and non-increasing variance per component

        Raises
        ------
        DimensionalityError
            If n_components exceeds min(n_cells, n_scaled_features)
        """
        import anndata as ad
        import scanpy as sc

        self.config.validate()
        n_components = int(n_components if n_components is not None else self.config.n_pcs)
        seed = int(seed if seed is not None else self.config.random_seed)
        features = self._scaled_features(dataset)

        limit = min(dataset.n_cells, len(features))
        if n_components < 1 or n_components > limit:
            raise DimensionalityError(
                f"Requested {n_components} components but only {limit} are available "
                f"({dataset.n_cells} cells, {len(features)} scaled features)"
            )
        # arpack needs n_components strictly below the matrix rank bound
        solver = "arpack" if n_components < limit else "full"

        tmp = ad.AnnData(X=dataset.layer_matrix(Layer.SCALED, features=features))
        sc.tl.pca(
            tmp,
            n_comps=n_components,
            zero_center=True,
            svd_solver=solver,
            random_state=seed,
        )

        embedding = ReducedEmbedding(
            name=name,
            coordinates=np.asarray(tmp.obsm["X_pca"], dtype=np.float64),
            source_kind="layer",
            source=Layer.SCALED.value,
            variance=np.asarray(tmp.uns["pca"]["variance"], dtype=np.float64),
            variance_ratio=np.asarray(tmp.uns["pca"]["variance_ratio"], dtype=np.float64),
            loadings=np.asarray(tmp.varm["PCs"], dtype=np.float64),
            feature_ids=tuple(features),
            params={"n_components": n_components, "seed": seed, "svd_solver": solver},
        )
        dataset.set_embedding(embedding)
        self.logger.info(
            "PCA: %d components over %d features (%.1f%% variance explained)",
            n_components, len(features), 100 * float(embedding.variance_ratio.sum()),
        )
        return embedding

    def elbow_table(self, dataset: Dataset, name: str = "pca") -> pd.DataFrame:
        """Variance per component for elbow inspection.

        Returns
        -------
        pd.DataFrame
            Columns ``component`` (1-based), ``variance``,
            ``variance_ratio`` and ``cumulative_ratio``
        """
        embedding = dataset.get_embedding(name)
        if embedding.variance is None:
            raise ConfigurationError(f"Embedding '{name}' has no variance record")
        ratio = embedding.variance_ratio
        return pd.DataFrame({
            "component": np.arange(1, embedding.n_components + 1),
            "variance": embedding.variance,
            "variance_ratio": ratio,
            "cumulative_ratio": np.cumsum(ratio),
        })

    def run_umap(
        self,
        dataset: Dataset,
        n_components: Optional[int] = None,
        dims: Optional[Tuple[int, int]] = None,
        seed: Optional[int] = None,
        embedding: str = "pca",
        name: str = "umap",
    ) -> ReducedEmbedding:
        """UMAP layout over a PCA component range.

        Parameters
        ----------
        dataset : Dataset
            Dataset with the source embedding
        n_components : int, optional
            Output dimensions. Uses config default if None.
        dims : Tuple[int, int], optional
            Half-open source component range. Uses config default if None.
        seed : int, optional
            Random seed. Same seed and input give the same layout.
        embedding : str
            Source embedding
        name : str
            Embedding name

        Returns
        -------
        ReducedEmbedding

        Raises
        ------
        DimensionalityError
            If n_components exceeds the source dimensions or reaches the
            number of cells
        """
        import anndata as ad
        import scanpy as sc

        self.config.validate()
        n_components = int(n_components if n_components is not None else self.config.umap_components)
        seed = int(seed if seed is not None else self.config.random_seed)
        source = dataset.get_embedding(embedding)
        start, stop = resolve_dims(dims if dims is not None else self.config.umap_dims, source.n_components)

        if n_components > stop - start or n_components >= dataset.n_cells:
            raise DimensionalityError(
                f"Cannot compute {n_components} UMAP components from {stop - start} "
                f"dimensions and {dataset.n_cells} cells"
            )
        n_neighbors = min(self.config.umap_neighbors, dataset.n_cells - 1)

        tmp = ad.AnnData(obs=pd.DataFrame(index=dataset.cell_ids))
        tmp.obsm["X_source"] = source.restrict((start, stop))
        sc.pp.neighbors(tmp, n_neighbors=n_neighbors, use_rep="X_source", random_state=seed)
        sc.tl.umap(
            tmp,
            n_components=n_components,
            min_dist=self.config.umap_min_dist,
            random_state=seed,
        )

        result = ReducedEmbedding(
            name=name,
            coordinates=np.asarray(tmp.obsm["X_umap"], dtype=np.float64),
            source_kind="embedding",
            source=embedding,
            params={
                "n_components": n_components,
                "dims": [start, stop],
                "n_neighbors": n_neighbors,
                "min_dist": self.config.umap_min_dist,
                "seed": seed,
            },
        )
        dataset.set_embedding(result)
        self.logger.info(
            "UMAP: %d components from %s[%d:%d] (seed=%d)", n_components, embedding, start, stop, seed
        )
        return result
