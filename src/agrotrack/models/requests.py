"""
Request and response models for the HTTP surface.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ProductCreateRequest(BaseModel):
    """Request model for product creation."""

    name: str = Field(..., min_length=2, max_length=200, description="Product name")
    description: str = Field(default="", max_length=5000, description="Free text description")
    category: str = Field(default="general", max_length=64, description="Catalogue category")
    price: float = Field(..., gt=0, description="Unit price")
    unit: str = Field(default="each", max_length=32, description="Unit of sale")
    stock: int = Field(default=0, ge=0, description="Units in stock")
    farmer_id: Optional[str] = Field(default=None, description="Owning farmer")


class RestoreRequest(BaseModel):
    where: Dict[str, Any] = Field(..., description="Filter selecting the soft-deleted rows to restore")


class HardDeleteRequest(BaseModel):
    """Request model for permanent deletion."""

    where: Dict[str, Any] = Field(..., description="Plain column=value pairs; must not be empty")
    reason: Optional[str] = Field(default=None, max_length=500, description="Audit reason")


class PurgeRequest(BaseModel):
    older_than_days: Optional[int] = Field(default=None, ge=0, description="Defaults to the configured retention")
    models: Optional[List[str]] = Field(default=None, description="Limit the purge to these models")


class CacheInvalidateRequest(BaseModel):
    pattern: str = Field(..., min_length=1, max_length=200, description="Redis glob pattern, e.g. 'api:products*'")


class SigninAttemptRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=200)


class CsrfTokenResponse(BaseModel):
    """Response model for CSRF token issuance."""

    token: str = Field(..., description="Send back in the X-CSRF-Token header")
    expires_in: int = Field(..., description="Token lifetime in seconds")
