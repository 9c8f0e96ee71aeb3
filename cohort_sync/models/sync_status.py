"""
Per-period sync checkpoints
"""
from sqlalchemy import Column, Integer, String, DateTime, Text
from datetime import datetime

from cohort_sync.models.base import Base


class SyncCheckpoint(Base):
    """
    Track sync status for each period (YYYY-MM)

    Optimization only: the pipeline must run whether or not this table
    can be read or written.
    """
    __tablename__ = "sync_checkpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)

    period_key = Column(String, unique=True, index=True, nullable=False)

    # Sync status
    sync_status = Column(String, index=True)  # in_progress, success, failed, skipped

    # Sync metrics
    orders_synced = Column(Integer, default=0)
    customers_synced = Column(Integer, default=0)
    line_items_synced = Column(Integer, default=0)

    # Error tracking
    last_error = Column(Text, nullable=True)

    # Timestamps
    last_synced_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
