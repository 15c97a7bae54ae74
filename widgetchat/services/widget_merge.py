"""
Combining several widgets into one.

The merged widget gets a fresh category holding every conversation its
sources covered and inherits all of their data items. The source widgets and
their categories are removed, so later clustering runs reuse the merged
category. The caller starts generation for the new widget afterwards.
"""
import logging
from typing import List

from sqlalchemy import delete, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from widgetchat.models import db_models
from widgetchat.models.schemas import WidgetMergeResult
from widgetchat.services import clustering, widget_store
from widgetchat.services.errors import NotFoundError

logger = logging.getLogger(__name__)

NAMES_IN_TITLE = 3


def merged_name(names: List[str]) -> str:
    name = "Merged: " + ", ".join(names[:NAMES_IN_TITLE])
    if len(names) > NAMES_IN_TITLE:
        name += f" (+{len(names) - NAMES_IN_TITLE} more)"
    return name


async def _free_category_text(db: AsyncSession, base: str) -> str:
    text, n = base, 1
    while (
        await db.execute(select(db_models.GlobalTagDB.id).where(db_models.GlobalTagDB.tag == text))
    ).first() is not None:
        n += 1
        text = f"{base} ({n})"
    return text


async def merge_widgets(db: AsyncSession, widget_ids: List[str]) -> WidgetMergeResult:
    widgets = []
    for widget_id in widget_ids:
        widget = await widget_store.get_widget(db, widget_id)
        if widget is None:
            raise NotFoundError("Widget", widget_id)
        widgets.append(widget)

    conversation_ids: List[str] = []
    items = []
    category_texts = []
    for widget in widgets:
        category = await db.get(db_models.GlobalTagDB, widget.global_tag_id)
        category_texts.append(category.tag if category else widget.name)
        for conversation_id in await clustering.get_conversation_ids_for_tag(db, widget.global_tag_id):
            if conversation_id not in conversation_ids:
                conversation_ids.append(conversation_id)
        for item in await widget_store.list_items(db, widget.id):
            items.append((dict(item.data), item.source_conversation_id))
            source = item.source_conversation_id
            if source and source not in conversation_ids:
                conversation_ids.append(source)

    names = [w.name for w in widgets]
    source_tag_ids = [w.global_tag_id for w in widgets]
    for widget_id in widget_ids:
        await widget_store.delete_widget(db, widget_id)
    await db.execute(
        delete(db_models.conversation_global_tags).where(
            db_models.conversation_global_tags.c.global_tag_id.in_(source_tag_ids)
        )
    )
    await db.execute(delete(db_models.GlobalTagDB).where(db_models.GlobalTagDB.id.in_(source_tag_ids)))

    category = db_models.GlobalTagDB(tag=await _free_category_text(db, " & ".join(category_texts)))
    db.add(category)
    await db.flush()
    for conversation_id in conversation_ids:
        await db.execute(
            insert(db_models.conversation_global_tags).values(
                conversation_id=conversation_id, global_tag_id=category.id
            )
        )

    widget = db_models.WidgetDB(
        global_tag_id=category.id,
        name=merged_name(names),
        description=f"Combined from {len(names)} widgets: {', '.join(names)}",
        component_code="",
        data_schema={},
        status=db_models.WIDGET_GENERATING,
        last_opened_at=db_models.utcnow(),
    )
    db.add(widget)
    await db.flush()
    widget_store.insert_items(db, widget.id, items)
    await db.commit()

    logger.info(
        "[WidgetMerge] Merged %d widgets into %s: %d conversations, %d items",
        len(names), widget.id, len(conversation_ids), len(items),
    )
    return WidgetMergeResult(
        widget_id=widget.id,
        global_tag_id=category.id,
        name=widget.name,
        merged_count=len(names),
        conversation_count=len(conversation_ids),
        item_count=len(items),
    )
