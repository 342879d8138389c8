"""
odata_core.query - Query options and URL-level codecs
=====================================================

"""

from odata_core.query.options import ComputeExpression, FilterExpression, OrderByItem, QueryOptions
from odata_core.query.preference import Preference
from odata_core.query.references import (
    escape_odata_literal,
    format_entity_reference,
    parse_composite_key,
    parse_entity_reference,
)
from odata_core.query.skiptoken import SkipToken

__all__ = [
    "QueryOptions",
    "OrderByItem",
    "FilterExpression",
    "ComputeExpression",
    "Preference",
    "SkipToken",
    "escape_odata_literal",
    "format_entity_reference",
    "parse_composite_key",
    "parse_entity_reference",
]
