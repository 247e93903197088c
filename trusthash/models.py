"""Pydantic models for the sidecar HTTP API.

Request bodies are deliberately permissive: field presence and value rules
are enforced by the services so every caller gets the same messages.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ByBindingRequest(BaseModel):
    """POST /v1/matches/byBinding request body."""

    model_config = ConfigDict(extra="ignore")

    alg: Optional[str] = Field(default=None, description="Soft binding algorithm identifier")
    value: Optional[str] = Field(default=None, description="Base64 binding value")


class ByReferenceRequest(BaseModel):
    """POST /v1/matches/byReference request body."""

    model_config = ConfigDict(extra="ignore")

    referenceUrl: Optional[str] = Field(default=None, description="HTTPS URL of the asset")
    assetLength: Optional[Any] = Field(default=None, description="Declared asset size in bytes")
    assetType: Optional[str] = Field(default=None, description="Declared image/* media type")
    region: Optional[Any] = Field(default=None, description="Region of interest (ignored)")


class ErrorResponse(BaseModel):
    """Standard error response."""

    success: bool = Field(default=False)
    error: str = Field(..., description="Error message")
    code: str = Field(default="internal_error", description="Error kind")
