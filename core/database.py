from typing import Any, Dict, Generator, List
import logging

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import SQLModel, create_engine, Session

logger = logging.getLogger(__name__)


# ============================================================
# ✅ Create SQLModel engine (once, at process start)
# ============================================================
def create_db_engine(database_url: str, **engine_kwargs) -> Engine:
    """
    Build the engine for the relational store.
    SQLite needs check_same_thread disabled because FastAPI serves
    sync routes from a thread pool.
    """
    connect_args = dict(engine_kwargs.pop("connect_args", {}))
    if database_url.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
        logger.warning("⚠️ Using SQLite database: %s", database_url)
    else:
        # For PostgreSQL, pool_pre_ping avoids stale connections
        engine_kwargs.setdefault("pool_pre_ping", True)
        logger.info("✅ Using database from environment")

    return create_engine(
        database_url,
        echo=False,
        connect_args=connect_args,
        **engine_kwargs,
    )


# ============================================================
# ✅ Create tables (called at startup)
# ============================================================
def create_db_and_tables(engine: Engine) -> None:
    # Registers table metadata on SQLModel before create_all
    import models.models  # noqa: F401

    try:
        SQLModel.metadata.create_all(engine)
        logger.info("✅ All database tables created successfully.")
    except Exception as e:
        logger.error(f"❌ Failed to create tables: {e}")
        raise


# ============================================================
# ✅ Insert-if-absent (race-safe row creation)
# ============================================================
def insert_if_absent(session: Session, model, values: Dict[str, Any], index_elements: List[str]) -> bool:
    """
    Insert a row unless one already exists for ``index_elements``.
    Returns True when this call created the row.
    Uses ON CONFLICT DO NOTHING where the dialect has it, so a lost race
    never aborts the caller's transaction.
    """
    dialect = session.get_bind().dialect.name
    if dialect in ("postgresql", "sqlite"):
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        statement = insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
        return session.exec(statement).rowcount == 1

    try:
        with session.begin_nested():
            session.add(model(**values))
    except IntegrityError:
        logger.debug("%s row %s created concurrently", model.__name__, values)
        return False
    return True


# ============================================================
# ✅ Dependency: FastAPI session generator
# ============================================================
def get_session(request: Request) -> Generator[Session, None, None]:
    """
    Provides a SQLModel Session bound to the engine the app was built with.
    Closes automatically after request completes.
    """
    with Session(request.app.state.engine) as session:
        yield session
