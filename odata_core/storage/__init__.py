"""
odata_core.storage - Row stores
===============================

- RowStore / Transaction: the interface the execution core writes against
- Query and predicates: declarative reads
- MemoryStore: complete in-process implementation

"""

from odata_core.storage.base import (
    And,
    Comparison,
    KeyIn,
    Not,
    Or,
    Predicate,
    Query,
    RowStore,
    Scope,
    StoreCapabilities,
    Transaction,
)
from odata_core.storage.memory import MemoryStore, evaluate_filter

__all__ = [
    "RowStore",
    "Transaction",
    "StoreCapabilities",
    "Query",
    "Scope",
    "Predicate",
    "Comparison",
    "And",
    "Or",
    "Not",
    "KeyIn",
    "MemoryStore",
    "evaluate_filter",
]
