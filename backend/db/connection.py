from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine,async_sessionmaker,AsyncSession
from sqlalchemy.pool import StaticPool
from backend.config.settings import config_settings
from backend.db.utils import _normalize_db_url, is_sqlite_url

DATABASE_URL=_normalize_db_url(config_settings.DATABASE_URL)


def _build_engine(url: str):
    if not is_sqlite_url(url):
        return create_async_engine(url, echo=False, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in url or url.endswith("://"):
        # one shared connection, otherwise every checkout sees an empty database
        kwargs["poolclass"] = StaticPool
    engine = create_async_engine(url, echo=False, **kwargs)

    # pysqlite's implicit BEGIN handling breaks SAVEPOINT; take over transaction start
    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


async_engine=_build_engine(DATABASE_URL)

async_session=async_sessionmaker(bind=async_engine,class_=AsyncSession,expire_on_commit=False)
