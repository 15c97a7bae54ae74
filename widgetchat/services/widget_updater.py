"""
Incremental data extraction for one (widget, conversation) pair.

The completion call sees the widget's schema, a sample of its items and the
conversation transcript with a timestamp on every message. It either returns
add/update/delete operations against the current schema, or asks for the
schema to evolve. An evolved schema keeps every existing field, regenerates
the component, and clears the widget's items so that every linked
conversation is re-extracted under the new schema. A proposal that adds no
field is not an evolution; its operations are applied as usual.

Items carry their source conversation id; a conversation that already has an
item on the widget is skipped, which makes the update idempotent.
"""
import json
import logging
from typing import Any, Dict, List

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from widgetchat.models import db_models
from widgetchat.models.schemas import UpdateDecision, WidgetUpdateResult
from widgetchat.services import clustering, completion, history, matching, widget_store
from widgetchat.services.errors import CompletionError, NotFoundError, WidgetNotReadyError
from widgetchat.services.tasks import KeyedLocks
from widgetchat.settings import settings

logger = logging.getLogger(__name__)

_widget_locks = KeyedLocks()


def widget_lock(widget_id: str):
    """Serializes every writer of one widget's data items."""
    return _widget_locks(widget_id)


_ANALYSIS_INTRO = """You are a data extraction assistant for a personal tracking widget.

You will receive:
1. The widget name and its data schema (the structure each item must follow)
2. Existing data items currently in the widget
3. A conversation with a TIMESTAMP on each message showing exactly when it was sent

DATE RESOLUTION RULES (CRITICAL):
- Each message has a timestamp like "[Mon, Dec 15, 2025, 08:30 PM]"; use THAT date for events mentioned in that message
- If a message from Dec 15 mentions "today" or "tonight", the date is 2025-12-15
- If a message from Dec 15 mentions "yesterday", the date is 2025-12-14
- Never use any other reference date

"""

_EVOLVING_SCHEMA_RULES = """SCHEMA:
- If the conversation contains data the schema cannot represent, set "schemaChanged": true and give "newSchema"
- A new schema must keep every existing field unchanged and only add new optional fields
- Otherwise set "schemaChanged": false

"""

_FIXED_SCHEMA_RULES = """SCHEMA:
- The schema is fixed; always set "schemaChanged": false and "newSchema": null
- Fill the fields the schema has and leave out anything it cannot represent

"""

_ANALYSIS_OUTPUT = """DATA OPERATIONS (only when the schema is unchanged):
1. "add": a new data item
2. "update": replace an existing item, matched by targetDate and optionally targetType (a value of its type/category/meal/name field)
3. "delete": remove an item the user says is wrong or did not happen, matched the same way

Respond with JSON:
{
  "schemaChanged": boolean,
  "reason": "why the schema must change, if it does",
  "newSchema": { ...evolved schema, or null },
  "operations": [
    {
      "action": "add" | "update" | "delete",
      "data": { ...item matching the schema... },
      "targetDate": "YYYY-MM-DD",
      "targetType": "optional type value to match",
      "reason": "why this operation"
    }
  ]
}

Be willing to DELETE or UPDATE existing entries when the user corrects themselves."""

ANALYSIS_PROMPT = _ANALYSIS_INTRO + _EVOLVING_SCHEMA_RULES + _ANALYSIS_OUTPUT
OPERATIONS_ONLY_PROMPT = _ANALYSIS_INTRO + _FIXED_SCHEMA_RULES + _ANALYSIS_OUTPUT

COMPONENT_PROMPT = """You are a React component generator. Update a widget component to support an evolved data schema.

REQUIREMENTS:
- Work with BOTH old data (only the old fields populated) AND new data (new fields populated)
- Handle optional or missing fields gracefully
- Keep the existing look, props ({ data, onDataChange }) and behaviour
- Return ONLY the component code, no explanation"""


def merge_schema(old: Dict[str, Any], proposed: Dict[str, Any]) -> Dict[str, Any]:
    """
    Backward-compatible union of two object schemas.

    Existing properties and required fields always survive; properties that
    only the proposal has are added as optional.
    """
    old = old or {}
    proposed = proposed or {}
    merged = dict(proposed)
    merged.setdefault("type", old.get("type", "object"))
    properties = dict(proposed.get("properties") or {})
    properties.update(old.get("properties") or {})
    merged["properties"] = properties
    merged["required"] = list(old.get("required") or [])
    return merged


async def _analyze(widget, existing_items, db_conv, tz_name: str, allow_evolution: bool = True) -> UpdateDecision:
    sample = [item.data for item in existing_items]
    existing_text = json.dumps(sample, indent=2) if sample else "No existing data"
    raw = await completion.complete_json(
        [
            {"role": "system", "content": ANALYSIS_PROMPT if allow_evolution else OPERATIONS_ONLY_PROMPT},
            {
                "role": "user",
                "content": (
                    f'WIDGET: {widget.name}\n\n'
                    f"DATA SCHEMA:\n{json.dumps(widget.data_schema, indent=2)}\n\n"
                    f"EXISTING DATA IN WIDGET:\n{existing_text}\n\n"
                    "CONVERSATION (each message has a timestamp showing when it was sent):\n"
                    f"{history.format_transcript(db_conv.messages or [], tz_name)}"
                ),
            },
        ],
        model=settings.get_tagging_model(),
        temperature=0.3,
    )
    try:
        return UpdateDecision.model_validate(raw)
    except ValidationError as e:
        raise CompletionError(f"Update decision has the wrong shape: {e}") from e


async def regenerate_component(widget, new_schema: Dict[str, Any]) -> str:
    code = await completion.complete(
        [
            {"role": "system", "content": COMPONENT_PROMPT},
            {
                "role": "user",
                "content": (
                    f"WIDGET: {widget.name}\n\n"
                    f"OLD SCHEMA:\n{json.dumps(widget.data_schema, indent=2)}\n\n"
                    f"NEW SCHEMA:\n{json.dumps(new_schema, indent=2)}\n\n"
                    f"CURRENT COMPONENT:\n{widget.component_code}\n\n"
                    "Update the component to support the evolved schema while maintaining "
                    "backward compatibility with existing data."
                ),
            },
        ],
        model=settings.get_widget_model(),
        temperature=0.3,
        timeout=180.0,
    )
    code = completion.strip_code_fences(code)
    if not code:
        raise CompletionError("Regenerated component is empty")
    return code


async def _evolve(
    db: AsyncSession, widget, decision: UpdateDecision, new_schema: Dict[str, Any], conversation_id: str
) -> WidgetUpdateResult:
    # Nothing is written until the new component exists
    component_code = await regenerate_component(widget, new_schema)

    widget.data_schema = new_schema
    widget.component_code = component_code
    widget.schema_version = (widget.schema_version or 0) + 1
    widget.error_message = None
    cleared = await widget_store.delete_items_for_widget(db, widget.id)
    await db.commit()

    linked = await clustering.get_conversation_ids_for_tag(db, widget.global_tag_id)
    reextract: List[str] = [c for c in linked if c != conversation_id] + [conversation_id]
    logger.info(
        "[WidgetData] Schema of widget %s evolved to v%d (%s); cleared %d items, re-extracting %d conversations",
        widget.id, widget.schema_version, decision.reason or "no reason given", cleared, len(reextract),
    )
    return WidgetUpdateResult(
        widget_id=widget.id,
        conversation_id=conversation_id,
        schema_changed=True,
        schema_version=widget.schema_version,
        reextract_conversation_ids=reextract,
        message=decision.reason,
    )


async def update_widget_data(
    db: AsyncSession, widget_id: str, conversation_id: str, allow_evolution: bool = True
) -> WidgetUpdateResult:
    """
    Derive data operations for one conversation and apply them to the widget.

    With `allow_evolution` off the schema is treated as fixed: the prompt asks
    for operations only and any schema proposal is ignored. Re-extraction after
    an evolution runs this way so it cannot evolve the schema again.
    """
    async with widget_lock(widget_id):
        widget = await widget_store.get_widget(db, widget_id)
        if widget is None:
            raise NotFoundError("Widget", widget_id)
        if widget.status != db_models.WIDGET_ACTIVE:
            raise WidgetNotReadyError(f"Widget {widget_id} is {widget.status}, not active")

        if await widget_store.has_items_from_conversation(db, widget_id, conversation_id):
            return WidgetUpdateResult(
                widget_id=widget_id,
                conversation_id=conversation_id,
                skipped=True,
                schema_version=widget.schema_version,
                message="Data already exists for this conversation",
            )

        db_conv = await history.get_conversation(db, conversation_id)
        if db_conv is None:
            raise NotFoundError("Conversation", conversation_id)
        if not db_conv.messages:
            return WidgetUpdateResult(
                widget_id=widget_id, conversation_id=conversation_id, message="No messages in conversation"
            )

        existing = await widget_store.list_items(
            db, widget_id, limit=settings.get_existing_items_sample(), newest_first=True
        )
        decision = await _analyze(widget, existing, db_conv, settings.get_display_timezone(), allow_evolution)

        if decision.schema_changed and decision.new_schema:
            new_schema = merge_schema(widget.data_schema, decision.new_schema)
            if not allow_evolution:
                logger.warning("[WidgetData] Ignoring schema change for widget %s during re-extraction", widget_id)
            elif set(new_schema["properties"]) == set((widget.data_schema or {}).get("properties") or {}):
                logger.info(
                    "[WidgetData] Proposed schema for widget %s adds no fields; keeping v%d",
                    widget_id, widget.schema_version,
                )
            else:
                return await _evolve(db, widget, decision, new_schema, conversation_id)

        operations, rejected = matching.parse_operations(decision.operations)
        counts, results = await matching.apply_operations(
            db, widget_id, conversation_id, operations, widget.schema_version
        )
        await db.commit()

        logger.info(
            "[WidgetData] Widget %s <- conversation %s: +%d ~%d -%d",
            widget_id, conversation_id, counts.added, counts.updated, counts.deleted,
        )
        return WidgetUpdateResult(
            widget_id=widget_id,
            conversation_id=conversation_id,
            schema_version=widget.schema_version,
            counts=counts,
            results=rejected + results,
            message=None if operations else "No data operations needed",
        )
