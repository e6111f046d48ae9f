"""
Data models package.

Contains:
- SQLAlchemy entities with soft-delete columns
- Pydantic request/response models for the HTTP surface
"""

from .entities import (
    MODELS,
    Address,
    Base,
    Customer,
    Farmer,
    Order,
    OrderItem,
    Product,
    ProductReview,
    Subscription,
    User,
)
from .requests import (
    CacheInvalidateRequest,
    CsrfTokenResponse,
    HardDeleteRequest,
    ProductCreateRequest,
    PurgeRequest,
    RestoreRequest,
    SigninAttemptRequest,
)

__all__ = [
    # Entities
    "MODELS",
    "Base",
    "User",
    "Customer",
    "Farmer",
    "Product",
    "Order",
    "OrderItem",
    "Address",
    "ProductReview",
    "Subscription",

    # HTTP models
    "CacheInvalidateRequest",
    "CsrfTokenResponse",
    "HardDeleteRequest",
    "ProductCreateRequest",
    "PurgeRequest",
    "RestoreRequest",
    "SigninAttemptRequest",
]
