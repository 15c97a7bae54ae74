import datetime
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from widgetchat.models import db_models
from widgetchat.services import clustering

SENT = datetime.datetime(2025, 12, 16, 4, 30)


async def _add_tags(db, conversation_id, *tags):
    db.add_all([db_models.ConversationTagDB(conversation_id=conversation_id, tag=t) for t in tags])
    await db.commit()


@pytest.mark.asyncio
async def test_no_tags(db):
    mock_complete = AsyncMock()
    with patch("widgetchat.services.completion.complete_json", mock_complete):
        result = await clustering.cluster_tags(db)

    assert result.message == "No conversation tags found"
    mock_complete.assert_not_awaited()


@pytest.mark.asyncio
async def test_existing_category_text_is_reused_and_stale_mappings_replaced(db, make_conversation, make_category):
    """
    A returned category with the same text as an existing one reuses its row;
    a conversation's memberships become exactly what the latest run says.
    """
    lunch = await make_conversation([("user", "Salad for lunch", SENT)])
    run = await make_conversation([("user", "Ran 5k this morning", SENT)])
    await _add_tags(db, lunch.id, "The user logs lunch.")
    await _add_tags(db, run.id, "The user logs a run.")
    meals, _ = await make_category("Meal tracking", [lunch.id, run.id])

    response = {
        "global_tags": [
            {"tag": " Meal tracking ", "source_conversation_ids": [lunch.id]},
            {"tag": "Fitness log", "source_conversation_ids": [run.id, "not-a-conversation"]},
        ]
    }
    mock_complete = AsyncMock(return_value=response)
    with patch("widgetchat.services.completion.complete_json", mock_complete):
        result = await clustering.cluster_tags(db)

    assert result.new_tags_count == 1
    assert result.mappings_count == 2

    categories = (await db.execute(select(db_models.GlobalTagDB))).scalars().all()
    assert sorted(c.tag for c in categories) == ["Fitness log", "Meal tracking"]
    assert any(c.id == meals.id for c in categories)

    fitness = next(c for c in categories if c.tag == "Fitness log")
    assert await clustering.get_tag_ids_for_conversation(db, lunch.id) == [meals.id]
    assert await clustering.get_tag_ids_for_conversation(db, run.id) == [fitness.id]

    prompt = mock_complete.call_args.args[0][1]["content"]
    assert "EXISTING CATEGORIES:\n- Meal tracking" in prompt
    assert f"({lunch.id})" in prompt


@pytest.mark.asyncio
async def test_conversation_can_join_several_categories(db, make_conversation):
    conv = await make_conversation([("user", "Salad and a run", SENT)])
    await _add_tags(db, conv.id, "The user logs lunch.", "The user logs a run.")

    response = {
        "global_tags": [
            {"tag": "Meal tracking", "source_conversation_ids": [conv.id]},
            {"tag": "Fitness log", "source_conversation_ids": [conv.id, conv.id]},
        ]
    }
    with patch("widgetchat.services.completion.complete_json", AsyncMock(return_value=response)):
        result = await clustering.cluster_tags(db)

    assert result.mappings_count == 2
    assert {s.tag: s.conversation_ids for s in result.global_tags} == {
        "Meal tracking": [conv.id],
        "Fitness log": [conv.id],
    }


@pytest.mark.asyncio
async def test_link_conversation_is_idempotent(db, make_conversation, make_category):
    conv = await make_conversation()
    category, _ = await make_category("Meal tracking")

    assert await clustering.link_conversation(db, conv.id, category.id) is True
    assert await clustering.link_conversation(db, conv.id, category.id) is False
    await db.commit()
    assert await clustering.get_conversation_ids_for_tag(db, category.id) == [conv.id]


def test_format_tag_corpus():
    corpus = clustering.format_tag_corpus({"c1": ["A", "B"], "c2": ["C"]})
    assert corpus == "Conversation 1 (c1):\n  1. A\n  2. B\n\nConversation 2 (c2):\n  1. C"
