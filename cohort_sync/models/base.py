"""
Base database model and engine/session management
"""
import os
from typing import Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from cohort_sync.utils.logger import log

# Base class for all models
Base = declarative_base()


def create_db_engine(database_url: str, schema: Optional[str] = None) -> Engine:
    """
    Create an engine for the sink.

    Tables are declared without a schema; on Postgres `schema` is applied
    through schema_translate_map (e.g. "production").
    """
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        # In-memory SQLite must share one connection across threads
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    if database_url.startswith("sqlite"):
        # Resolve relative SQLite paths to absolute so cwd changes can't break it
        if database_url.startswith("sqlite:///") and not database_url.startswith("sqlite:////"):
            rel_path = database_url[len("sqlite:///"):]
            database_url = "sqlite:///" + os.path.abspath(rel_path)
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 60},
            poolclass=NullPool,
            pool_pre_ping=True
        )

    engine = create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=3,
        max_overflow=5,
        pool_recycle=300,
    )
    if schema:
        engine = engine.execution_options(schema_translate_map={None: schema})
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to an engine"""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _migrate_missing_columns(engine: Engine):
    """Add columns defined in models but missing from existing DB tables.

    create_all() only creates missing *tables*; it cannot add new columns
    to tables that already exist.
    """
    schema = (engine.get_execution_options().get("schema_translate_map") or {}).get(None)
    inspector = inspect(engine)
    with engine.connect() as conn:
        for table_name, table in Base.metadata.tables.items():
            if not inspector.has_table(table_name, schema=schema):
                continue  # create_all will handle it
            existing = {c["name"] for c in inspector.get_columns(table_name, schema=schema)}
            qualified = f"{schema}.{table_name}" if schema else table_name
            for col in table.columns:
                if col.name not in existing:
                    col_type = col.type.compile(dialect=engine.dialect)
                    sql = f'ALTER TABLE {qualified} ADD COLUMN {col.name} {col_type}'
                    log.info(f"Auto-migrating: {sql}")
                    conn.execute(text(sql))
        conn.commit()


def init_db(engine: Engine):
    """Create tables and auto-migrate new columns."""
    # Import models so their tables register on Base.metadata
    from cohort_sync.models import commerce, sync_status  # noqa: F401

    Base.metadata.create_all(bind=engine)
    _migrate_missing_columns(engine)
