"""cellscope: single-cell and spatial transcriptomics analysis engine.

Walks the standard workflow over one explicit Dataset: quality control,
normalization, feature selection, scaling, PCA and UMAP, shared-neighbor
graph, Leiden clustering, differential markers, spatially variable
features and anchor-based label transfer between datasets.

Packages
--------
core
    Dataset container and the analysis engines
pipeline
    YAML-defined stage orchestration with checkpoints
io
    Readers, table writers and logging helpers
viz
    Presentation settings and plot-ready accessors
cli
    Command line (``cellscope``)
"""

__version__ = "0.1.0"
