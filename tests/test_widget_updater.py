import datetime
from unittest.mock import AsyncMock, patch

import pytest

from widgetchat.models import db_models
from widgetchat.services import widget_store, widget_updater
from widgetchat.services.errors import CompletionError, NotFoundError, WidgetNotReadyError
from widgetchat.settings import settings

SENT = datetime.datetime(2025, 12, 16, 4, 30)

MEAL_SCHEMA = {
    "type": "object",
    "properties": {"date": {"type": "string"}, "meal": {"type": "string"}, "calories": {"type": "number"}},
    "required": ["date", "meal"],
}

ADD_DINNER = {
    "schemaChanged": False,
    "operations": [
        {"action": "add", "data": {"date": "2025-12-15", "meal": "dinner", "calories": 700}, "reasoning": "Dinner"}
    ],
}


@pytest.fixture(autouse=True)
def display_timezone(monkeypatch):
    monkeypatch.setattr(settings, "_display_timezone", "America/Los_Angeles")


@pytest.mark.asyncio
async def test_update_is_idempotent(db, make_conversation, make_category):
    """A second run for the same conversation is skipped without calling the completion API."""
    conv = await make_conversation([("user", "Pasta for dinner tonight, 700 calories", SENT)])
    _, widget = await make_category("Meal tracking", [conv.id], widget_status=db_models.WIDGET_ACTIVE, schema=MEAL_SCHEMA)

    mock_complete = AsyncMock(return_value=ADD_DINNER)
    with patch("widgetchat.services.completion.complete_json", mock_complete):
        first = await widget_updater.update_widget_data(db, widget.id, conv.id)
        second = await widget_updater.update_widget_data(db, widget.id, conv.id)

    assert first.counts.added == 1
    assert second.skipped is True
    assert mock_complete.await_count == 1

    items = await widget_store.list_items(db, widget.id)
    assert len(items) == 1
    assert items[0].source_conversation_id == conv.id
    assert items[0].schema_version == widget.schema_version


@pytest.mark.asyncio
async def test_transcript_carries_local_send_time(db, make_conversation, make_category):
    conv = await make_conversation([("user", "Pasta for dinner tonight", SENT)])
    _, widget = await make_category("Meal tracking", [conv.id], widget_status=db_models.WIDGET_ACTIVE, schema=MEAL_SCHEMA)

    mock_complete = AsyncMock(return_value={"schemaChanged": False, "operations": []})
    with patch("widgetchat.services.completion.complete_json", mock_complete):
        result = await widget_updater.update_widget_data(db, widget.id, conv.id)

    assert result.message == "No data operations needed"
    prompt = mock_complete.call_args.args[0][1]["content"]
    assert "[Mon, Dec 15, 2025, 08:30 PM] USER: Pasta for dinner tonight" in prompt
    assert "EXISTING DATA IN WIDGET:\nNo existing data" in prompt


@pytest.mark.asyncio
async def test_widget_must_be_active(db, make_conversation, make_category):
    conv = await make_conversation([("user", "Salad", SENT)])
    _, widget = await make_category("Meal tracking", [conv.id], widget_status=db_models.WIDGET_GENERATING)

    with pytest.raises(WidgetNotReadyError):
        await widget_updater.update_widget_data(db, widget.id, conv.id)


@pytest.mark.asyncio
async def test_unknown_widget_or_conversation(db, make_category):
    _, widget = await make_category("Meal tracking", widget_status=db_models.WIDGET_ACTIVE)

    with pytest.raises(NotFoundError):
        await widget_updater.update_widget_data(db, "missing", "missing")
    with pytest.raises(NotFoundError):
        await widget_updater.update_widget_data(db, widget.id, "missing")


@pytest.mark.asyncio
async def test_conversation_without_messages(db, make_conversation, make_category):
    conv = await make_conversation()
    _, widget = await make_category("Meal tracking", [conv.id], widget_status=db_models.WIDGET_ACTIVE)

    mock_complete = AsyncMock()
    with patch("widgetchat.services.completion.complete_json", mock_complete):
        result = await widget_updater.update_widget_data(db, widget.id, conv.id)

    assert result.message == "No messages in conversation"
    mock_complete.assert_not_awaited()


@pytest.mark.asyncio
async def test_schema_evolution_clears_items_and_lists_reextractions(db, make_conversation, make_category):
    earlier = await make_conversation([("user", "Salad for lunch", SENT - datetime.timedelta(days=1))])
    current = await make_conversation([("user", "Chicken dinner, 40g protein", SENT)])
    _, widget = await make_category(
        "Meal tracking", [earlier.id, current.id], widget_status=db_models.WIDGET_ACTIVE, schema=MEAL_SCHEMA
    )
    widget_store.insert_items(db, widget.id, [({"date": "2025-12-14", "meal": "lunch", "calories": 400}, earlier.id)], 1)
    await db.commit()

    decision = {
        "schemaChanged": True,
        "reason": "Protein is tracked now",
        "newSchema": {"type": "object", "properties": {"protein": {"type": "number"}}, "required": ["protein"]},
    }
    with patch("widgetchat.services.completion.complete_json", AsyncMock(return_value=decision)), patch(
        "widgetchat.services.completion.complete", AsyncMock(return_value="```jsx\nfunction MealTracker2() {}\n```")
    ):
        result = await widget_updater.update_widget_data(db, widget.id, current.id)

    assert result.schema_changed is True
    assert result.schema_version == 2
    assert sorted(result.reextract_conversation_ids) == sorted([earlier.id, current.id])
    assert result.reextract_conversation_ids[-1] == current.id

    widget = await widget_store.get_widget(db, widget.id)
    assert set(widget.data_schema["properties"]) == {"date", "meal", "calories", "protein"}
    assert widget.data_schema["required"] == ["date", "meal"]
    assert widget.component_code == "function MealTracker2() {}"
    assert await widget_store.list_items(db, widget.id) == []


@pytest.mark.asyncio
async def test_failed_component_regeneration_keeps_data(db, make_conversation, make_category):
    conv = await make_conversation([("user", "Chicken dinner, 40g protein", SENT)])
    _, widget = await make_category(
        "Meal tracking", [conv.id], widget_status=db_models.WIDGET_ACTIVE, schema=MEAL_SCHEMA, component="function Old() {}"
    )
    widget_store.insert_items(db, widget.id, [({"date": "2025-12-14", "meal": "lunch"}, None)], 1)
    await db.commit()

    decision = {"schemaChanged": True, "newSchema": {"properties": {"protein": {"type": "number"}}}}
    with patch("widgetchat.services.completion.complete_json", AsyncMock(return_value=decision)), patch(
        "widgetchat.services.completion.complete", AsyncMock(side_effect=CompletionError("timeout"))
    ):
        with pytest.raises(CompletionError):
            await widget_updater.update_widget_data(db, widget.id, conv.id)

    widget = await widget_store.get_widget(db, widget.id)
    assert widget.schema_version == 1
    assert widget.component_code == "function Old() {}"
    assert "protein" not in widget.data_schema["properties"]
    assert len(await widget_store.list_items(db, widget.id)) == 1


def test_merge_schema_never_drops_fields():
    merged = widget_updater.merge_schema(
        MEAL_SCHEMA,
        {"type": "object", "properties": {"calories": {"type": "string"}, "notes": {"type": "string"}}, "required": ["notes"]},
    )
    assert merged["properties"]["calories"] == {"type": "number"}
    assert set(merged["properties"]) == {"date", "meal", "calories", "notes"}
    assert merged["required"] == ["date", "meal"]


@pytest.mark.asyncio
async def test_schema_proposal_without_new_fields_applies_operations(db, make_conversation, make_category):
    """Restating existing fields is not an evolution: nothing is cleared and the version stays."""
    earlier = await make_conversation([("user", "Salad for lunch", SENT - datetime.timedelta(days=1))])
    current = await make_conversation([("user", "Pasta for dinner tonight, 700 calories", SENT)])
    _, widget = await make_category(
        "Meal tracking", [earlier.id, current.id], widget_status=db_models.WIDGET_ACTIVE, schema=MEAL_SCHEMA
    )
    widget_store.insert_items(db, widget.id, [({"date": "2025-12-14", "meal": "lunch", "calories": 400}, earlier.id)], 1)
    await db.commit()

    decision = {**ADD_DINNER, "schemaChanged": True, "newSchema": {"properties": {"meal": {"type": "string"}}}}
    mock_component = AsyncMock()
    with patch("widgetchat.services.completion.complete_json", AsyncMock(return_value=decision)), patch(
        "widgetchat.services.completion.complete", mock_component
    ):
        result = await widget_updater.update_widget_data(db, widget.id, current.id)

    assert result.schema_changed is False
    assert result.schema_version == 1
    assert result.counts.added == 1
    assert result.reextract_conversation_ids == []
    mock_component.assert_not_awaited()

    widget = await widget_store.get_widget(db, widget.id)
    assert widget.schema_version == 1
    assert set(widget.data_schema["properties"]) == {"date", "meal", "calories"}
    assert sorted(item.data["meal"] for item in await widget_store.list_items(db, widget.id)) == ["dinner", "lunch"]


@pytest.mark.asyncio
async def test_fixed_schema_mode_ignores_schema_proposals(db, make_conversation, make_category):
    conv = await make_conversation([("user", "Chicken dinner, 40g protein", SENT)])
    _, widget = await make_category("Meal tracking", [conv.id], widget_status=db_models.WIDGET_ACTIVE, schema=MEAL_SCHEMA)

    decision = {**ADD_DINNER, "schemaChanged": True, "newSchema": {"properties": {"protein": {"type": "number"}}}}
    mock_json = AsyncMock(return_value=decision)
    mock_component = AsyncMock()
    with patch("widgetchat.services.completion.complete_json", mock_json), patch(
        "widgetchat.services.completion.complete", mock_component
    ):
        result = await widget_updater.update_widget_data(db, widget.id, conv.id, allow_evolution=False)

    assert result.schema_changed is False
    assert result.counts.added == 1
    assert mock_json.call_args.args[0][0]["content"] == widget_updater.OPERATIONS_ONLY_PROMPT
    mock_component.assert_not_awaited()

    widget = await widget_store.get_widget(db, widget.id)
    assert widget.schema_version == 1
    assert "protein" not in widget.data_schema["properties"]
