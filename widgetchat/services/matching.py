"""
Applying add/update/delete operations to a widget's data items.

Items have no natural primary key, so an operation locates its target by the
item's date plus, optionally, a "type" value. The type value may live under
any of TYPE_FIELDS; they are checked in order and the first equal one wins.
Without a target type the date alone decides.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from widgetchat.models.schemas import DataOperation, OperationCounts, OperationResult
from widgetchat.services import widget_store

logger = logging.getLogger(__name__)

DATE_FIELD = "date"
TYPE_FIELDS = ("type", "category", "meal", "mealType", "name")


def item_matches(data: Optional[Dict[str, Any]], target_date: str, target_type: Optional[str] = None) -> bool:
    data = data or {}
    if data.get(DATE_FIELD) != target_date:
        return False
    if not target_type:
        return True
    for field in TYPE_FIELDS:
        if data.get(field) == target_type:
            return True
    return False


def find_matching_item(items: Sequence, target_date: str, target_type: Optional[str] = None):
    """First item (in the given order) whose data matches; None if nothing does."""
    for item in items:
        if item_matches(item.data, target_date, target_type):
            return item
    return None


def parse_operations(raw_operations: List[Dict[str, Any]]) -> Tuple[List[DataOperation], List[OperationResult]]:
    operations, rejected = [], []
    for raw in raw_operations:
        try:
            operations.append(DataOperation.model_validate(raw))
        except ValidationError as e:
            action = raw.get("action", "unknown") if isinstance(raw, dict) else "unknown"
            rejected.append(OperationResult(action=str(action), success=False, reason=f"Invalid operation: {e.errors()[0]['msg']}"))
    return operations, rejected


async def apply_operations(
    db: AsyncSession,
    widget_id: str,
    conversation_id: Optional[str],
    operations: Sequence[DataOperation],
    schema_version: int = 0,
) -> Tuple[OperationCounts, List[OperationResult]]:
    """
    Stage every operation against the widget's items; caller commits.

    The candidate list is kept current while operations apply, so a delete
    cannot match an item removed earlier in the same batch and a later
    operation sees an item added or updated before it.
    """
    counts = OperationCounts()
    results: List[OperationResult] = []
    candidates = list(await widget_store.list_items(db, widget_id))

    for op in operations:
        action = "update" if op.action == "replace" else op.action
        target_date = op.target_date or (op.data or {}).get(DATE_FIELD)

        if action == "add":
            if not op.data:
                results.append(OperationResult(action="add", success=False, reason="No data provided"))
                continue
            candidates.extend(widget_store.insert_items(db, widget_id, [(op.data, conversation_id)], schema_version))
            counts.added += 1
            results.append(OperationResult(action="add", success=True, reason=op.reason))

        elif action == "update":
            if not target_date or not op.data:
                results.append(OperationResult(action="update", success=False, reason="Missing target date or data"))
                continue
            match = find_matching_item(candidates, target_date, op.target_type)
            if match is not None:
                widget_store.update_item(match, op.data, conversation_id, schema_version)
                counts.updated += 1
                results.append(OperationResult(action="update", success=True, reason=op.reason))
            else:
                candidates.extend(
                    widget_store.insert_items(db, widget_id, [(op.data, conversation_id)], schema_version)
                )
                counts.added += 1
                results.append(OperationResult(action="add (no match to update)", success=True, reason=op.reason))

        elif action == "delete":
            if not target_date:
                results.append(OperationResult(action="delete", success=False, reason="No target date specified"))
                continue
            match = find_matching_item(candidates, target_date, op.target_type)
            if match is None:
                results.append(
                    OperationResult(action="delete", success=False, reason="No matching entry found to delete")
                )
                continue
            await widget_store.delete_item(db, match)
            candidates.remove(match)
            counts.deleted += 1
            results.append(OperationResult(action="delete", success=True, reason=op.reason))

    logger.debug(
        "[WidgetData] Widget %s: +%d ~%d -%d", widget_id, counts.added, counts.updated, counts.deleted
    )
    return counts, results
