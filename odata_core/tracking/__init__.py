"""
odata_core.tracking - Change tracking
=====================================

"""

from odata_core.tracking.tracker import ChangeEvent, ChangeTracker, ChangeType

__all__ = [
    "ChangeEvent",
    "ChangeTracker",
    "ChangeType",
]
