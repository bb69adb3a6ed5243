"""Core analysis modules for cellscope.

Submodules
----------
dataset
    AnnData-backed Dataset with enumerated layers and lineage
preprocessing
    Quality control, normalization, feature selection, scaling
clustering
    PCA/UMAP, shared-neighbor graph, Leiden clustering, markers
spatial
    Spatially variable features
transfer
    Anchor-based label transfer between datasets
"""
