"""Test fixtures for cellscope.

Provides synthetic count generators and test utilities.
"""

from .helpers import same_partition
from .mock_counts import (
    create_bimodal_noise_counts,
    create_counts_anndata,
    create_overdispersed_counts,
    create_reference_query_counts,
    create_spatial_counts,
    create_two_group_counts,
    feature_names,
)

__all__ = [
    "create_bimodal_noise_counts",
    "create_counts_anndata",
    "create_overdispersed_counts",
    "create_reference_query_counts",
    "create_spatial_counts",
    "create_two_group_counts",
    "feature_names",
    "same_partition",
]
