"""LSOA boundary reconciliation, apportionment and weighted aggregation."""

from .aggregate import pcn_ethnicity, practice_ethnicity
from .apportion import DegenerateMergeError, apportion_ethnicity
from .boundary_changes import BoundaryChanges, ChangeKind, classify_boundary_changes

__all__ = [
    "BoundaryChanges",
    "ChangeKind",
    "DegenerateMergeError",
    "apportion_ethnicity",
    "classify_boundary_changes",
    "pcn_ethnicity",
    "practice_ethnicity",
]
