"""
odata_core.metadata - Entity metadata
=====================================

- PropertyDescriptor / EntityDescriptor: immutable per-type descriptions
- EntityHooks: optional lifecycle callbacks
- EntityRegistry: entity set name -> descriptor, built once at startup
- parse_csdl: descriptors from a CSDL ($metadata) document

"""

from odata_core.metadata.descriptors import (
    EntityDescriptor,
    EntityHooks,
    PropertyDescriptor,
    copy_nullable,
)
from odata_core.metadata.csdl import parse_csdl
from odata_core.metadata.registry import EntityRegistry

__all__ = [
    "EntityDescriptor",
    "EntityHooks",
    "PropertyDescriptor",
    "copy_nullable",
    "EntityRegistry",
    "parse_csdl",
]
