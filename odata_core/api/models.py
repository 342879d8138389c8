"""
odata_core.api.models - Pydantic models for the gateway
=======================================================
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Examples shown in Swagger
# ---------------------------------------------------------------------------

EXAMPLE_ENTITY_SET = "Orders"
EXAMPLE_KEY_SEGMENT = "Orders(1)"
EXAMPLE_REFERENCE = "Customers(5)"


class ErrorDetail(BaseModel):
    """One entry of an OData error body."""

    code: str = Field(..., json_schema_extra={"example": "Entity not found"})
    message: str = Field(..., json_schema_extra={"example": "entity 'Orders(42)' not found"})
    target: Optional[str] = Field(default=None, json_schema_extra={"example": "Orders"})
    details: Optional[List[Dict[str, Any]]] = None


class ErrorResponse(BaseModel):
    """OData JSON error body."""

    error: ErrorDetail


class ReferenceBody(BaseModel):
    """Body of ``PUT``/``POST`` ``$ref`` requests."""

    model_config = ConfigDict(populate_by_name=True)

    odata_id: str = Field(
        ...,
        alias="@odata.id",
        description="Reference to the related entity (relative or absolute)",
        json_schema_extra={"example": EXAMPLE_REFERENCE},
    )


class EntitySetInfo(BaseModel):
    name: str
    kind: str = "EntitySet"
    url: str


class ServiceDocument(BaseModel):
    """The service document listing every entity set."""

    model_config = ConfigDict(populate_by_name=True)

    context: str = Field(..., alias="@odata.context")
    value: List[EntitySetInfo] = Field(default_factory=list)


ERROR_RESPONSES: Dict[int, Dict[str, Any]] = {
    400: {"model": ErrorResponse, "description": "Invalid request"},
    403: {"model": ErrorResponse, "description": "Rejected by a hook"},
    404: {"model": ErrorResponse, "description": "Entity or entity set not found"},
    412: {"model": ErrorResponse, "description": "If-Match does not match"},
    501: {"model": ErrorResponse, "description": "Feature not enabled"},
}
