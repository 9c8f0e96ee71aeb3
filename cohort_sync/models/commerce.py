"""
Commerce Data Models

Customers, orders and order line items synced from the Shopify Admin API.
Surrogate ids are owned by the database; Shopify ids are stored as strings.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey, Numeric, Index
from sqlalchemy.orm import relationship
from datetime import datetime

from cohort_sync.models.base import Base


class Customer(Base):
    """
    Shopify customers, created on first sighting in an order payload

    Never deleted by the pipeline.
    """
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Shopify ID (bare, without the gid:// prefix)
    shopify_customer_id = Column(String, unique=True, index=True, nullable=False)

    # Customer info
    email = Column(String, index=True, nullable=False)  # Placeholder when Shopify has none
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    phone = Column(String, nullable=True)

    # Lifetime metrics as reported by Shopify
    orders_count = Column(Integer, default=0)
    total_spent = Column(Numeric(12, 2), default=0)

    tags = Column(JSON, nullable=True)  # ["vip", "wholesale", etc.]

    # Timestamps
    created_at = Column(DateTime, index=True)  # First known activity, preserved on re-sync
    updated_at = Column(DateTime)

    # Written by the downstream classification routine only
    cohort_month = Column(DateTime, nullable=True, index=True)
    initial_product_group = Column(String, nullable=True, index=True)

    orders = relationship("Order", back_populates="customer")


class Order(Base):
    """
    Shopify orders. processed_at drives cohort/month bucketing.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)

    shopify_order_id = Column(String, unique=True, index=True, nullable=False)
    order_number = Column(String, index=True)  # e.g. "#1001"

    # Customer
    customer_id = Column(Integer, ForeignKey("customers.id"), index=True, nullable=True)
    shopify_customer_id = Column(String, index=True, nullable=False)  # "guest-<order id>" when no customer

    # Amounts
    total_price = Column(Numeric(12, 2), nullable=False, default=0)

    # Status
    financial_status = Column(String, index=True, nullable=True)
    fulfillment_status = Column(String, nullable=True)

    tags = Column(JSON, nullable=True)
    sales_channel = Column(String, index=True, nullable=True)  # web, pos, shopify_draft_order...

    # Timestamps
    processed_at = Column(DateTime, index=True, nullable=False)
    created_at = Column(DateTime, index=True)

    # Sync metadata
    synced_at = Column(DateTime, default=datetime.utcnow)

    customer = relationship("Customer", back_populates="orders")
    line_items = relationship("OrderLineItem", back_populates="order")


class OrderLineItem(Base):
    """
    Normalized order line items. product_type feeds cohort bucketing.

    Not updated in place: an order's items are written once.
    """
    __tablename__ = "order_line_items"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Order reference
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=False)
    shopify_order_id = Column(String, index=True, nullable=False)
    shopify_line_item_id = Column(String, nullable=True)

    # Product identifiers
    shopify_product_id = Column(String, index=True, nullable=True)
    shopify_variant_id = Column(String, nullable=True)
    sku = Column(String, index=True, nullable=True)

    # Product info
    title = Column(String, nullable=True)
    vendor = Column(String, nullable=True)
    product_type = Column(String, index=True, nullable=True)

    # Quantities and amounts
    quantity = Column(Integer, nullable=False, default=0)
    price = Column(Numeric(12, 2), nullable=False, default=0)  # Unit price

    # Timestamps
    created_at = Column(DateTime, index=True)  # Parent order's processed_at
    synced_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("Order", back_populates="line_items")


Index("ix_orders_customer_processed", Order.customer_id, Order.processed_at)
