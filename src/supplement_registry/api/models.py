"""Pydantic models for API request payloads."""

from typing import Literal

from pydantic import BaseModel, Field

SourceName = Literal["external-catalog", "ai", "user"]


class ProductRequest(BaseModel):
    """Get-or-create request for one product observation."""

    barcode: str | None = None
    source: SourceName = "user"
    candidate: dict[str, object] | None = None


class MergeRequest(BaseModel):
    """New observation of an existing product from another source."""

    source: SourceName
    candidate: dict[str, object] = Field(default_factory=dict)
