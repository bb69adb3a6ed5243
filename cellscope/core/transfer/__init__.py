"""Anchor-based label transfer between datasets.

Example
-------
>>> from cellscope.core.transfer import AnchorFinder, LabelTransfer, TransferConfig
>>> config = TransferConfig(n_components=30, label_key="celltype")
>>> anchors = AnchorFinder(config).find_anchors(reference, query)
>>> result = LabelTransfer(config).transfer(anchors, reference, query)
"""

from .anchors import AnchorFinder, AnchorSet, l2_normalize
from .config import TransferConfig
from .engine import LabelTransfer, TransferResult

__all__ = [
    "TransferConfig",
    "AnchorFinder",
    "AnchorSet",
    "l2_normalize",
    "LabelTransfer",
    "TransferResult",
]
