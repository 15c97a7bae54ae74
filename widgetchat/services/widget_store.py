"""Widget and widget-data persistence. Nothing here commits; callers own the transaction."""
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, inspect, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from widgetchat.models import db_models


async def get_widget(db: AsyncSession, widget_id: str):
    result = await db.execute(
        select(db_models.WidgetDB)
        .where(db_models.WidgetDB.id == widget_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_widget_for_tag(db: AsyncSession, global_tag_id: str):
    result = await db.execute(
        select(db_models.WidgetDB)
        .where(db_models.WidgetDB.global_tag_id == global_tag_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_widgets(db: AsyncSession, status: Optional[str] = None):
    query = select(db_models.WidgetDB).order_by(
        db_models.WidgetDB.last_opened_at.desc(), db_models.WidgetDB.created_at.desc()
    )
    if status:
        query = query.where(db_models.WidgetDB.status == status)
    result = await db.execute(query)
    return result.scalars().all()


async def linked_widgets(db: AsyncSession, conversation_id: str, status: Optional[str] = db_models.WIDGET_ACTIVE):
    """Widgets whose category includes the conversation."""
    query = (
        select(db_models.WidgetDB)
        .join(
            db_models.conversation_global_tags,
            db_models.conversation_global_tags.c.global_tag_id == db_models.WidgetDB.global_tag_id,
        )
        .where(db_models.conversation_global_tags.c.conversation_id == conversation_id)
        .order_by(db_models.WidgetDB.created_at.asc())
    )
    if status:
        query = query.where(db_models.WidgetDB.status == status)
    result = await db.execute(query)
    return result.scalars().all()


async def list_items(db: AsyncSession, widget_id: str, limit: Optional[int] = None, newest_first: bool = False):
    order = db_models.WidgetDataDB.created_at.desc() if newest_first else db_models.WidgetDataDB.created_at.asc()
    query = (
        select(db_models.WidgetDataDB)
        .where(db_models.WidgetDataDB.widget_id == widget_id)
        .order_by(order, db_models.WidgetDataDB.id)
    )
    if limit:
        query = query.limit(limit)
    result = await db.execute(query)
    return result.scalars().all()


async def get_item(db: AsyncSession, widget_id: str, item_id: str):
    result = await db.execute(
        select(db_models.WidgetDataDB).where(
            db_models.WidgetDataDB.id == item_id, db_models.WidgetDataDB.widget_id == widget_id
        )
    )
    return result.scalar_one_or_none()


async def has_items_from_conversation(db: AsyncSession, widget_id: str, conversation_id: str) -> bool:
    result = await db.execute(
        select(db_models.WidgetDataDB.id)
        .where(
            db_models.WidgetDataDB.widget_id == widget_id,
            db_models.WidgetDataDB.source_conversation_id == conversation_id,
        )
        .limit(1)
    )
    return result.first() is not None


def insert_items(
    db: AsyncSession,
    widget_id: str,
    items: Iterable[Tuple[Dict[str, Any], Optional[str]]],
    schema_version: int = 0,
) -> List[db_models.WidgetDataDB]:
    """Stage (data, source_conversation_id) pairs for insertion."""
    rows = [
        db_models.WidgetDataDB(
            widget_id=widget_id, data=data, source_conversation_id=source, schema_version=schema_version
        )
        for data, source in items
    ]
    db.add_all(rows)
    return rows


def update_item(
    item: db_models.WidgetDataDB, data: Dict[str, Any], source_conversation_id: Optional[str], schema_version: int
):
    # A fresh dict so the JSON column registers the change
    item.data = dict(data)
    item.source_conversation_id = source_conversation_id
    item.schema_version = schema_version
    item.updated_at = db_models.utcnow()


async def delete_item(db: AsyncSession, item: db_models.WidgetDataDB):
    if inspect(item).pending:
        db.expunge(item)
        return
    await db.delete(item)


async def delete_items_for_widget(db: AsyncSession, widget_id: str) -> int:
    result = await db.execute(delete(db_models.WidgetDataDB).where(db_models.WidgetDataDB.widget_id == widget_id))
    return result.rowcount or 0


async def delete_widget(db: AsyncSession, widget_id: str):
    await db.execute(
        update(db_models.ConversationDB)
        .where(db_models.ConversationDB.widget_id == widget_id)
        .values(widget_id=None)
    )
    await delete_items_for_widget(db, widget_id)
    await db.execute(delete(db_models.WidgetDB).where(db_models.WidgetDB.id == widget_id))


def touch_last_opened(widget: db_models.WidgetDB):
    widget.last_opened_at = db_models.utcnow()
