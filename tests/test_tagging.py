import datetime
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import select

from widgetchat.models import db_models
from widgetchat.services import tagging
from widgetchat.services.errors import CompletionError, NotFoundError

SENT = datetime.datetime(2025, 12, 16, 4, 30)


async def _stored_tags(db, conversation_id):
    result = await db.execute(
        select(db_models.ConversationTagDB.tag)
        .where(db_models.ConversationTagDB.conversation_id == conversation_id)
        .order_by(db_models.ConversationTagDB.tag)
    )
    return [row[0] for row in result.all()]


@pytest_asyncio.fixture
async def tagged_conversation(db, make_conversation):
    conv = await make_conversation([("user", "I had a caesar salad for lunch", SENT)])
    db.add(db_models.ConversationTagDB(conversation_id=conv.id, tag="Old tag"))
    await db.commit()
    return conv


def test_clean_tags_dedupes_and_caps():
    raw = {"tags": [" a ", "a", "", *[f"tag {i}" for i in range(12)]]}
    tags = tagging.clean_tags(raw)
    assert tags[0] == "a"
    assert len(tags) == tagging.MAX_TAGS


@pytest.mark.asyncio
async def test_tags_are_replaced_not_merged(db, tagged_conversation):
    new_tags = [
        "The user logs lunch.",
        "The user counts calories.",
        "The user eats salad.",
        "The user tracks meals.",
        "The user wants nutrition facts.",
    ]
    mock_complete = AsyncMock(return_value={"tags": new_tags})
    with patch("widgetchat.services.completion.complete_json", mock_complete):
        result = await tagging.extract_conversation_tags(db, tagged_conversation.id)

    assert result.count == 5
    assert await _stored_tags(db, tagged_conversation.id) == sorted(new_tags)
    prompt = mock_complete.call_args.args[0][1]["content"]
    assert "USER: I had a caesar salad for lunch" in prompt


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failure",
    [
        AsyncMock(side_effect=CompletionError("Malformed JSON from completion")),
        AsyncMock(return_value={"tags": "not a list"}),
        AsyncMock(return_value={"tags": []}),
        AsyncMock(return_value={"tags": ["a", "b", "c", "d", "d "]}),
    ],
    ids=["malformed", "wrong-shape", "empty", "too-few"],
)
async def test_failed_extraction_keeps_previous_tags(db, tagged_conversation, failure):
    with patch("widgetchat.services.completion.complete_json", failure):
        with pytest.raises(CompletionError):
            await tagging.extract_conversation_tags(db, tagged_conversation.id)

    assert await _stored_tags(db, tagged_conversation.id) == ["Old tag"]


@pytest.mark.asyncio
async def test_conversation_without_messages(db, make_conversation):
    conv = await make_conversation()
    mock_complete = AsyncMock()
    with patch("widgetchat.services.completion.complete_json", mock_complete):
        result = await tagging.extract_conversation_tags(db, conv.id)

    assert result.count == 0
    assert result.message == "No messages found"
    mock_complete.assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_conversation(db):
    with pytest.raises(NotFoundError):
        await tagging.extract_conversation_tags(db, "missing")
