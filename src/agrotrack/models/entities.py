"""
Relational entities.

Every entity carries a nullable ``deleted_at`` column; a row is live while it
is NULL. Only the columns the request-handling layer touches are modelled.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    pass


class TrackedMixin:
    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)


class User(TrackedMixin, Base):
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="CUSTOMER")


class Customer(TrackedMixin, Base):
    __tablename__ = "customers"

    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)


class Farmer(TrackedMixin, Base):
    __tablename__ = "farmers"

    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    farm_name: Mapped[str] = mapped_column(String(200), nullable=False)
    location: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class Product(TrackedMixin, Base):
    __tablename__ = "products"

    farmer_id: Mapped[Optional[str]] = mapped_column(ForeignKey("farmers.id"), nullable=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(64), nullable=False, default="general")
    price: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str] = mapped_column(String(32), nullable=False, default="each")
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Order(TrackedMixin, Base):
    __tablename__ = "orders"

    customer_id: Mapped[str] = mapped_column(ForeignKey("customers.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)


class OrderItem(TrackedMixin, Base):
    __tablename__ = "order_items"

    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    price: Mapped[float] = mapped_column(Float, nullable=False)


class Address(TrackedMixin, Base):
    __tablename__ = "addresses"

    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    street: Mapped[str] = mapped_column(String(255), nullable=False)
    city: Mapped[str] = mapped_column(String(120), nullable=False)
    postal_code: Mapped[str] = mapped_column(String(20), nullable=False, default="")


class ProductReview(TrackedMixin, Base):
    __tablename__ = "product_reviews"

    product_id: Mapped[str] = mapped_column(ForeignKey("products.id"), nullable=False)
    customer_id: Mapped[str] = mapped_column(ForeignKey("customers.id"), nullable=False)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[str] = mapped_column(Text, nullable=False, default="")


class Subscription(TrackedMixin, Base):
    __tablename__ = "subscriptions"

    customer_id: Mapped[str] = mapped_column(ForeignKey("customers.id"), nullable=False)
    frequency: Mapped[str] = mapped_column(String(16), nullable=False, default="WEEKLY")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")


MODELS = {
    cls.__name__: cls
    for cls in (User, Customer, Farmer, Product, Order, OrderItem, Address, ProductReview, Subscription)
}
