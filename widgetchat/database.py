import os

from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from widgetchat.settings import settings

os.makedirs(settings.get_data_dir(), exist_ok=True)

engine = create_async_engine(
    settings.get_database_url(),
    connect_args={"check_same_thread": False},
)
SessionLocal = async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
Base = declarative_base()


def enable_sqlite_foreign_keys(async_engine):
    """SQLite ignores ON DELETE clauses unless the pragma is set per connection."""

    @event.listens_for(async_engine.sync_engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


enable_sqlite_foreign_keys(engine)


async def get_db():
    async with SessionLocal() as db:
        yield db
