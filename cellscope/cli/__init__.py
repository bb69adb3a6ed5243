"""Command-line interface for cellscope.

Example Usage
-------------
    # From command line:
    cellscope --help
    cellscope cluster --input filtered_feature_bc_matrix/ --out results/
    cellscope markers --input results/clustered.h5ad --out results/
    cellscope run --config pipeline.yaml
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]
