import datetime

import pytest
from sqlalchemy import select

from widgetchat.models import db_models
from widgetchat.services import history


@pytest.mark.asyncio
async def test_create_and_get_conversation(db):
    """Test creating a conversation and retrieving it by ID."""
    conv = await history.create_conversation(db, "Test Title")

    assert conv.id is not None
    assert conv.title == "Test Title"
    assert conv.messages == []

    fetched = await history.get_conversation(db, conv.id)
    assert fetched is not None
    assert fetched.id == conv.id


@pytest.mark.asyncio
async def test_new_conversation_gets_placeholder_title(db):
    conv = await history.create_conversation(db)
    assert conv.title == db_models.UNTITLED


@pytest.mark.asyncio
async def test_append_message_records_send_time(db):
    """Every stored message carries the moment it was sent."""
    conv = await history.create_conversation(db)
    sent_at = datetime.datetime(2025, 12, 16, 4, 30)

    await history.append_message(db, conv.id, "user", "Hello", created_at=sent_at)
    updated = await history.append_message(db, conv.id, "assistant", "Hi!")

    assert [m["role"] for m in updated.messages] == ["user", "assistant"]
    assert updated.messages[0]["created_at"] == "2025-12-16T04:30:00"
    assert updated.messages[1]["created_at"]
    assert updated.updated_at >= conv.created_at


@pytest.mark.asyncio
async def test_append_message_to_missing_conversation(db):
    assert await history.append_message(db, "missing", "user", "Hello") is None


@pytest.mark.asyncio
async def test_get_conversations_pagination(db):
    """Test retrieving multiple conversations with limits and offsets."""
    for i in range(15):
        await history.create_conversation(db, f"Conv {i}")

    convs = await history.get_conversations(db, limit=10, offset=0)
    assert len(convs) == 10

    convs_page2 = await history.get_conversations(db, limit=10, offset=10)
    assert len(convs_page2) == 5


@pytest.mark.asyncio
async def test_rename_conversation(db):
    conv = await history.create_conversation(db)
    renamed = await history.update_conversation_title(db, conv.id, "Lunch log")
    assert renamed.title == "Lunch log"
    assert await history.update_conversation_title(db, "missing", "x") is None


@pytest.mark.asyncio
async def test_delete_conversation_keeps_widget_items(db, make_category):
    """Deleting a conversation drops its tags and memberships but not the data it produced."""
    conv = await history.create_conversation(db, "To Delete")
    category, widget = await make_category("Meal tracking", [conv.id], widget_status=db_models.WIDGET_ACTIVE)
    db.add(db_models.ConversationTagDB(conversation_id=conv.id, tag="The user logs lunch."))
    db.add(db_models.WidgetDataDB(widget_id=widget.id, data={"date": "2025-12-15"}, source_conversation_id=conv.id))
    await db.commit()

    assert await history.delete_conversation(db, conv.id) is True
    assert await history.get_conversation(db, conv.id) is None

    tags = (await db.execute(select(db_models.ConversationTagDB))).scalars().all()
    assert tags == []
    memberships = (await db.execute(select(db_models.conversation_global_tags))).all()
    assert memberships == []
    items = (
        await db.execute(select(db_models.WidgetDataDB).execution_options(populate_existing=True))
    ).scalars().all()
    assert len(items) == 1
    assert items[0].source_conversation_id is None


@pytest.mark.asyncio
async def test_delete_missing_conversation(db):
    assert await history.delete_conversation(db, "missing") is False


def test_format_transcript_shows_local_send_time():
    """A message sent at 04:30 UTC on Dec 16 was sent on the evening of Dec 15 in Los Angeles."""
    messages = [
        {"role": "user", "content": "I had pasta tonight", "created_at": "2025-12-16T04:30:00"},
        {"role": "assistant", "content": "Noted."},
    ]
    transcript = history.format_transcript(messages, "America/Los_Angeles")
    lines = transcript.split("\n")

    assert lines[0] == "[Mon, Dec 15, 2025, 08:30 PM] USER: I had pasta tonight"
    assert lines[1] == "ASSISTANT: Noted."


def test_format_transcript_without_timezone():
    messages = [{"role": "user", "content": "Hi", "created_at": "2025-12-16T04:30:00"}]
    assert history.format_transcript(messages) == "USER: Hi"


def test_conversation_date_uses_first_message():
    conv = db_models.ConversationDB(
        created_at=datetime.datetime(2026, 1, 1),
        messages=[{"role": "user", "content": "Hi", "created_at": "2025-12-16T04:30:00"}],
    )
    assert history.conversation_date(conv, "America/Los_Angeles") == "2025-12-15"


def test_conversation_date_falls_back_to_creation_time():
    conv = db_models.ConversationDB(created_at=datetime.datetime(2026, 1, 1, 12, 0), messages=[])
    assert history.conversation_date(conv, "UTC") == "2026-01-01"
