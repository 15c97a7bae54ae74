import os
import sys
import tempfile

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Keep the app's own sqlite file and thumbnails out of the working tree
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="widgetchat-test-"))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from widgetchat import database  # noqa: E402
from widgetchat.database import Base, enable_sqlite_foreign_keys, get_db  # noqa: E402
from widgetchat.main import app  # noqa: E402
from widgetchat.models import db_models  # noqa: E402
from widgetchat.services.tasks import runner  # noqa: E402
from widgetchat.settings import settings  # noqa: E402


@pytest_asyncio.fixture
async def session_factory(monkeypatch):
    """In-memory database shared by the test, the app and background tasks."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    monkeypatch.setattr(database, "SessionLocal", factory)
    monkeypatch.setattr(settings, "_stagger_seconds", 0.0)
    try:
        yield factory
    finally:
        await runner.drain(timeout=10)
        await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            yield c
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def make_conversation(db):
    """Insert a conversation with (role, content, created_at) messages."""

    async def _make(messages=(), title=db_models.UNTITLED, widget_id=None):
        conv = db_models.ConversationDB(
            title=title,
            widget_id=widget_id,
            messages=[
                {"role": role, "content": content, "created_at": created_at.isoformat()}
                for role, content, created_at in messages
            ],
        )
        if messages:
            conv.created_at = messages[0][2]
        db.add(conv)
        await db.commit()
        return conv

    return _make


@pytest.fixture
def make_category(db):
    """Insert a global tag mapped to the given conversations, optionally with a widget."""

    async def _make(tag, conversation_ids=(), widget_status=None, schema=None, component="function W() {}"):
        category = db_models.GlobalTagDB(tag=tag)
        db.add(category)
        await db.flush()
        for conversation_id in conversation_ids:
            await db.execute(
                db_models.conversation_global_tags.insert().values(
                    conversation_id=conversation_id, global_tag_id=category.id
                )
            )
        widget = None
        if widget_status:
            widget = db_models.WidgetDB(
                global_tag_id=category.id,
                name=f"{tag} widget",
                description="",
                component_code=component,
                data_schema=schema or {"type": "object", "properties": {"date": {"type": "string"}}},
                schema_version=1,
                status=widget_status,
            )
            db.add(widget)
        await db.commit()
        return category, widget

    return _make


def parse_sse(body: str):
    """Split an event stream body into (event, data) pairs."""
    events = []
    for block in body.split("\n\n"):
        if not block.strip():
            continue
        event, data = None, None
        for line in block.split("\n"):
            if line.startswith("event:"):
                event = line[len("event:"):]
            elif line.startswith("data:"):
                data = line[len("data:"):]
        events.append((event, data))
    return events


def fake_stream(fragments, captured=None):
    """Stand-in for completion.stream_completion yielding fixed fragments."""

    def _stream(messages, **kwargs):
        if captured is not None:
            captured.append(messages)

        async def _gen():
            for fragment in fragments:
                yield fragment

        return _gen()

    return _stream
