from typing import Iterable, Optional
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert


def _normalize_db_url(url: str | None) -> str | None:
    # managed postgres hosts hand out "postgres://..." , asyncpg/SQLAlchemy needs "postgresql+asyncpg://..."
    if not url:
        return None
    if url.startswith("postgres://",):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def is_sqlite_url(url: str | None) -> bool:
    return bool(url) and url.startswith("sqlite")


def insert_ignore(session, model, values: dict, index_elements: Iterable[str], returning: Optional[Iterable] = None):
    """INSERT ... ON CONFLICT (index_elements) DO NOTHING [RETURNING ...] for the session's dialect."""
    dialect = session.bind.dialect.name
    insert_fn = sqlite_insert if dialect == "sqlite" else pg_insert
    stmt = insert_fn(model).values(**values).on_conflict_do_nothing(index_elements=list(index_elements))
    if returning is not None:
        stmt = stmt.returning(*returning)
    return stmt
