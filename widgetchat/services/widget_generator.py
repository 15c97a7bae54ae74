"""
Widget generation per category.

One completion call designs the widget: name, description, data schema,
component code and an initial extraction of items from every conversation
mapped to the category. The widget row moves generating -> active, or to
error with the failure message.
"""
import logging
from typing import Any, Dict, List

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from widgetchat.models import db_models
from widgetchat.models.schemas import RegenerationOutcome, RegenerationResult, WidgetGenerationResult, WidgetSpec
from widgetchat.services import clustering, completion, history, widget_store
from widgetchat.services.errors import CompletionError, NotFoundError
from widgetchat.services.matching import DATE_FIELD
from widgetchat.services.tasks import KeyedLocks
from widgetchat.settings import settings

logger = logging.getLogger(__name__)

_generation_locks = KeyedLocks()

UI_TYPES = {
    "CHART": "Bar, line or area charts. For numerical values over time or by category: calories, expenses, counts, durations, scores.",
    "HISTORY": "Vertical log grouped by date. For text-heavy chronological entries: journal notes, meeting notes, mood descriptions.",
    "WEEK": "7-column week grid with items in day cells. For weekly rhythms: meal plans, workouts, habits, schedules.",
    "TIMELINE": "Horizontal time axis with bars from start to end. For items with durations: projects, bookings, transit times.",
    "CHECKLIST": "Checkbox list with progress bar. For tasks, todos, shopping or packing lists.",
    "CARDS": "Grid of cards with title, description and tags. For collections: recipes, bookmarks, books, ideas.",
    "DASHBOARD": "Stat cards, progress rings and sparklines. For KPIs, goals and aggregate metrics.",
    "COMPARISON": "Table with one column per option. For decisions, product or apartment comparisons, pros and cons.",
    "TEXT_DIFF": "Before/after text side by side. For proofreading, drafts and code review feedback.",
    "CANVAS": "Freeform board of draggable cards. For brainstorming, mind maps and mood boards.",
    "SIMPLE_LIST": "Plain list of rows. For anything that needs no dates, grouping or checkboxes.",
}

DATE_SCHEMA_FIELD = {"type": "string", "format": "date", "description": "Date of the entry (YYYY-MM-DD)"}


def _ui_type_catalogue() -> str:
    return "\n".join(f"- {name}: {desc}" for name, desc in UI_TYPES.items())


GENERATION_PROMPT = f"""You design small personal data widgets. Given a topic and the user's conversations about it, you produce a React widget and the data it shows.

AVAILABLE UI TYPES (pick the one that best fits the data):
{_ui_type_catalogue()}
If the data has numerical values (counts, amounts, calories, costs, durations), prefer CHART or DASHBOARD.

Respond with a JSON object:
{{
  "name": "concise widget name, e.g. 'Calorie Tracker'",
  "description": "one sentence describing what the widget shows",
  "uiType": "one of the UI types above",
  "dataSchema": {{"type": "object", "properties": {{...}}, "required": [...]}},
  "componentCode": "a complete React function component as a string",
  "extractedData": [ ...items conforming to dataSchema... ]
}}

SCHEMA RULES:
- The schema MUST include a "date" field (string, format date, YYYY-MM-DD) for chronological display
- Use simple field names and JSON types (string, number, boolean)

COMPONENT RULES:
- The component receives {{ data, onDataChange }}: data is an array of items matching the schema, onDataChange(newArray) saves edits
- Use the exact field names from the schema
- Tailwind classes only, dark zinc palette with amber as the single accent, rounded-xl corners
- No imports; React hooks are available as React.useState etc.
- Render an empty state when data is empty

EXTRACTION RULES:
- Extract EVERY concrete data point from the conversations; never invent placeholder data
- The date of each item is the date of the conversation it came from (shown in the conversation header), or the date the user referred to relative to that message, never today's date"""


def ensure_date_field(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Widgets are displayed chronologically; guarantee the schema has a date property."""
    schema = dict(schema or {})
    schema.setdefault("type", "object")
    properties = dict(schema.get("properties") or {})
    if DATE_FIELD not in properties:
        properties[DATE_FIELD] = dict(DATE_SCHEMA_FIELD)
    schema["properties"] = properties
    return schema


def assign_provenance(items: List[Dict[str, Any]], conversation_ids: List[str], dates: Dict[str, str]):
    """
    Pair each item with a source conversation, round-robin.

    Provenance during bulk generation is best-effort: items are not attributed
    to the conversation they were actually read from. An item without a date
    takes the date of the conversation it was paired with.
    """
    paired = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        source = conversation_ids[index % len(conversation_ids)] if conversation_ids else None
        data = dict(item)
        if not data.get(DATE_FIELD) and source in dates:
            data[DATE_FIELD] = dates[source]
        paired.append((data, source))
    return paired


async def _load_category_context(db: AsyncSession, global_tag_id: str):
    conversation_ids = await clustering.get_conversation_ids_for_tag(db, global_tag_id)
    conversations = await history.get_conversations_by_ids(db, conversation_ids)
    result = await db.execute(
        select(db_models.ConversationTagDB).where(db_models.ConversationTagDB.conversation_id.in_(conversation_ids))
    )
    tags = [row.tag for row in result.scalars().all()] if conversation_ids else []
    return conversations, tags


def format_conversations(conversations, tz_name: str) -> str:
    blocks = []
    for conv in conversations:
        date = history.conversation_date(conv, tz_name)
        transcript = history.format_transcript(conv.messages or [], tz_name)
        blocks.append(f'--- CONVERSATION {conv.id}: "{conv.title}" (Date: {date}) ---\n{transcript}')
    return "\n\n".join(blocks)


async def _design_widget(category_tag: str, tags: List[str], conversations, tz_name: str) -> WidgetSpec:
    tags_list = "\n".join(f"- {t}" for t in tags) or "(none)"
    raw = await completion.complete_json(
        [
            {"role": "system", "content": GENERATION_PROMPT},
            {
                "role": "user",
                "content": (
                    f"TOPIC: {category_tag}\n\n"
                    f"WHAT THE USER ASKED ABOUT:\n{tags_list}\n\n"
                    f"CONVERSATIONS WITH DATES:\n{format_conversations(conversations, tz_name)}"
                ),
            },
        ],
        model=settings.get_widget_model(),
        temperature=0.3,
        timeout=180.0,
    )
    try:
        spec = WidgetSpec.model_validate(raw)
    except ValidationError as e:
        raise CompletionError(f"Widget design has the wrong shape: {e}") from e
    if not spec.component_code.strip():
        raise CompletionError("Widget design has no component code")
    return spec


async def generate_widget(
    db: AsyncSession, global_tag_id: str, force: bool = False, keep_items: bool = False
) -> WidgetGenerationResult:
    """
    Create or rebuild the widget for a category.

    An already active widget is left alone unless `force` is set. With
    `keep_items` the widget's current items survive and the designed initial
    items are discarded; merged widgets are generated this way. Failures mark
    the widget as `error` and re-raise.
    """
    async with _generation_locks(global_tag_id):
        category = await db.get(db_models.GlobalTagDB, global_tag_id)
        if category is None:
            raise NotFoundError("Category", global_tag_id)

        widget = await widget_store.get_widget_for_tag(db, global_tag_id)
        if widget is not None and widget.status == db_models.WIDGET_ACTIVE and not force:
            return WidgetGenerationResult(
                widget_id=widget.id, global_tag_id=global_tag_id, skipped=True, message="Widget already exists"
            )

        if widget is None:
            widget = db_models.WidgetDB(
                global_tag_id=global_tag_id,
                name=category.tag,
                description="",
                component_code="",
                data_schema={},
                status=db_models.WIDGET_GENERATING,
            )
            db.add(widget)
        else:
            widget.status = db_models.WIDGET_GENERATING
            widget.error_message = None
        await db.commit()
        widget_id = widget.id
        category_tag = category.tag

        try:
            tz_name = settings.get_display_timezone()
            conversations, tags = await _load_category_context(db, global_tag_id)
            spec = await _design_widget(category_tag, tags, conversations, tz_name)
            logger.info("[WidgetGen] '%s' -> %s (%s)", category_tag, spec.name, spec.ui_type or "unspecified")

            widget.name = spec.name
            widget.description = spec.description
            widget.data_schema = ensure_date_field(spec.data_schema)
            widget.component_code = completion.strip_code_fences(spec.component_code)
            widget.schema_version = (widget.schema_version or 0) + 1
            widget.status = db_models.WIDGET_ACTIVE
            widget.error_message = None

            conversation_ids = [c.id for c in conversations]
            dates = {c.id: history.conversation_date(c, tz_name) for c in conversations}
            if keep_items:
                rows = await widget_store.list_items(db, widget_id)
            else:
                await widget_store.delete_items_for_widget(db, widget_id)
                rows = widget_store.insert_items(
                    db, widget_id, assign_provenance(spec.extracted_data, conversation_ids, dates), widget.schema_version
                )
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error("[WidgetGen] Generation failed for '%s': %s", category_tag, e)
            widget = await widget_store.get_widget(db, widget_id)
            if widget is not None:
                widget.status = db_models.WIDGET_ERROR
                widget.error_message = str(e) or e.__class__.__name__
                await db.commit()
            raise

        logger.info("[WidgetGen] Widget %s active with %d items", widget_id, len(rows))
        return WidgetGenerationResult(widget_id=widget_id, global_tag_id=global_tag_id, item_count=len(rows))


async def regenerate_all_widgets(db: AsyncSession) -> RegenerationResult:
    """Rebuild every widget, continuing past individual failures."""
    widgets = await widget_store.list_widgets(db)
    if not widgets:
        return RegenerationResult(message="No widgets to regenerate")

    targets = [(w.id, w.name, w.global_tag_id) for w in widgets]
    for widget in widgets:
        widget.status = db_models.WIDGET_GENERATING
        widget.error_message = None
    await db.commit()

    outcomes = []
    for widget_id, name, global_tag_id in targets:
        try:
            await generate_widget(db, global_tag_id, force=True)
            outcomes.append(RegenerationOutcome(id=widget_id, name=name, success=True))
        except Exception as e:
            outcomes.append(RegenerationOutcome(id=widget_id, name=name, success=False, error=str(e)))

    regenerated = sum(1 for o in outcomes if o.success)
    failed = len(outcomes) - regenerated
    logger.info("[WidgetGen] Regenerated %d widgets, %d failed", regenerated, failed)
    return RegenerationResult(
        success=failed == 0,
        regenerated=regenerated,
        failed=failed,
        results=outcomes,
        message=f"Regenerated {regenerated} of {len(outcomes)} widgets",
    )
