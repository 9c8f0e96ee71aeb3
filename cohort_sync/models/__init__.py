"""Database models for the cohort sync pipeline"""

from cohort_sync.models.base import Base, create_db_engine, make_session_factory, init_db

from cohort_sync.models.commerce import (
    Customer,
    Order,
    OrderLineItem
)

from cohort_sync.models.sync_status import SyncCheckpoint

__all__ = [
    "Base",
    "create_db_engine",
    "make_session_factory",
    "init_db",
    "Customer",
    "Order",
    "OrderLineItem",
    "SyncCheckpoint",
]
