"""SQLAlchemy model for catalog product records."""

from sqlalchemy import Boolean, Column, Index, Integer, String, Text, func
from sqlalchemy.types import DateTime

from catalog_importer.db.base import Base


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    sku = Column(String(64), index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False)
    gtin = Column(String(14))
    short_description = Column(Text)
    long_description = Column(Text)
    price = Column(Integer)  # cents
    compare_at_price = Column(Integer)  # cents
    stock = Column(Integer)
    low_stock_threshold = Column(Integer)
    brand = Column(String(255))
    category = Column(String(255))
    status = Column(String(16), nullable=False, default="draft")
    is_variant = Column(Boolean, nullable=False, default=False)
    parent_sku = Column(String(64))
    active = Column(Boolean, nullable=False, default=True)
    is_deleted = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (Index("ix_products_sku_lower", func.lower(sku), unique=True),)
