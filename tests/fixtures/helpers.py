"""Assertion helpers shared by the unit tests."""

import numpy as np
import pandas as pd


def same_partition(labels, groups) -> bool:
    """True if two labelings split cells into the same sets."""
    frame = pd.DataFrame({
        "a": np.asarray(labels).astype(str),
        "b": np.asarray(groups).astype(str),
    })
    return bool(
        frame.groupby("a")["b"].nunique().eq(1).all()
        and frame.groupby("b")["a"].nunique().eq(1).all()
    )
