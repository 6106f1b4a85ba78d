"""SQLModel database engine and session management."""

import logging

from sqlalchemy import inspect
from sqlmodel import SQLModel, create_engine, Session

from backend.config import settings

logger = logging.getLogger(__name__)

# SQLite needs check_same_thread=False; PostgreSQL does not
connect_args = {}
if settings.database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(
    settings.database_url,
    echo=False,
    connect_args=connect_args,
)

# Columns added after the first release: (table, column, DDL type, default)
_ADDED_COLUMNS = [
    ("paper_order", "routed_to_provider", "BOOLEAN", "FALSE"),
    ("broker_order", "price_estimated", "BOOLEAN", "FALSE"),
]


def _run_migrations(target_engine=None):
    """Run lightweight schema migrations for columns added after release."""
    from sqlalchemy import text

    target_engine = target_engine or engine
    inspector = inspect(target_engine)
    tables = set(inspector.get_table_names())

    for table, column, ddl_type, default in _ADDED_COLUMNS:
        if table not in tables:
            continue
        columns = {col["name"] for col in inspector.get_columns(table)}
        if column in columns:
            continue
        logger.info(f"Migrating: adding {table}.{column}")
        with target_engine.connect() as conn:
            conn.execute(
                text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type} DEFAULT {default}")
            )
            conn.commit()


def create_db_and_tables(target_engine=None):
    """Create all tables. Called on startup."""
    import backend.models  # noqa: F401  (registers tables on the metadata)

    target_engine = target_engine or engine
    SQLModel.metadata.create_all(target_engine)
    _run_migrations(target_engine)


def get_session() -> Session:
    """Dependency that yields a database session."""
    with Session(engine) as session:
        yield session
