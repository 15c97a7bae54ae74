import datetime
from typing import List, Dict, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified

from widgetchat.models import db_models
from widgetchat.services.tasks import KeyedLocks

# Appends are read-modify-write on the JSON column; two turns on the same
# conversation must not interleave.
_append_locks = KeyedLocks()


def _now() -> datetime.datetime:
    return db_models.utcnow()


async def get_conversations(db: AsyncSession, limit: int = 50, offset: int = 0):
    result = await db.execute(
        select(db_models.ConversationDB)
        .order_by(db_models.ConversationDB.updated_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return result.scalars().all()


async def get_conversation(db: AsyncSession, conv_id: str):
    result = await db.execute(
        select(db_models.ConversationDB)
        .where(db_models.ConversationDB.id == conv_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_conversations_by_ids(db: AsyncSession, conv_ids: List[str]):
    if not conv_ids:
        return []
    result = await db.execute(
        select(db_models.ConversationDB)
        .where(db_models.ConversationDB.id.in_(conv_ids))
        .order_by(db_models.ConversationDB.created_at.asc())
    )
    return result.scalars().all()


async def get_conversation_by_widget(db: AsyncSession, widget_id: str):
    result = await db.execute(
        select(db_models.ConversationDB)
        .where(db_models.ConversationDB.widget_id == widget_id)
        .order_by(db_models.ConversationDB.updated_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_conversation(
    db: AsyncSession, title: str = db_models.UNTITLED, messages: Optional[List[Dict]] = None, widget_id: Optional[str] = None
):
    db_conv = db_models.ConversationDB(title=title, messages=list(messages or []), widget_id=widget_id)
    db.add(db_conv)
    await db.commit()
    await db.refresh(db_conv)
    return db_conv


async def append_message(
    db: AsyncSession, conv_id: str, role: str, content: str, created_at: Optional[datetime.datetime] = None
):
    """Append one message; returns the updated conversation or None if it does not exist."""
    created_at = created_at or _now()
    async with _append_locks(conv_id):
        db_conv = await get_conversation(db, conv_id)
        if not db_conv:
            return None
        db_conv.messages = list(db_conv.messages or []) + [
            {"role": role, "content": content, "created_at": created_at.isoformat()}
        ]
        # ORM requires re-assignment for JSON mutation detection
        flag_modified(db_conv, "messages")
        db_conv.updated_at = _now()
        await db.commit()
        await db.refresh(db_conv)
        return db_conv


async def update_conversation_title(db: AsyncSession, conv_id: str, title: str):
    db_conv = await get_conversation(db, conv_id)
    if db_conv:
        db_conv.title = title
        await db.commit()
    return db_conv


async def delete_conversation(db: AsyncSession, conv_id: str) -> bool:
    db_conv = await get_conversation(db, conv_id)
    if not db_conv:
        return False
    await db.execute(
        delete(db_models.ConversationTagDB).where(db_models.ConversationTagDB.conversation_id == conv_id)
    )
    await db.execute(
        delete(db_models.conversation_global_tags).where(
            db_models.conversation_global_tags.c.conversation_id == conv_id
        )
    )
    await db.execute(
        update(db_models.WidgetDataDB)
        .where(db_models.WidgetDataDB.source_conversation_id == conv_id)
        .values(source_conversation_id=None)
    )
    await db.delete(db_conv)
    await db.commit()
    return True


def message_time(message: Dict) -> Optional[datetime.datetime]:
    raw = message.get("created_at")
    if not raw:
        return None
    try:
        return datetime.datetime.fromisoformat(raw)
    except ValueError:
        return None


def to_display_time(moment: datetime.datetime, tz_name: str) -> datetime.datetime:
    """Stored timestamps are naive UTC; shift them into the user's timezone."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=datetime.timezone.utc)
    return moment.astimezone(ZoneInfo(tz_name))


def format_transcript(messages: List[Dict], tz_name: Optional[str] = None) -> str:
    """
    Render messages as `ROLE: content` lines.

    With a timezone, each line is prefixed with the time the message was sent,
    e.g. `[Mon, Dec 15, 2025, 08:30 PM] USER: ...`, so relative dates such as
    "today" can be resolved against the message that contains them.
    """
    lines = []
    for m in messages:
        prefix = ""
        sent = message_time(m) if tz_name else None
        if sent is not None:
            prefix = f"[{to_display_time(sent, tz_name).strftime('%a, %b %d, %Y, %I:%M %p')}] "
        lines.append(f"{prefix}{m['role'].upper()}: {m['content']}")
    return "\n".join(lines)


def conversation_date(db_conv, tz_name: str) -> str:
    """ISO date (YYYY-MM-DD) the conversation started on, in the user's timezone."""
    started = db_conv.created_at
    if db_conv.messages:
        started = message_time(db_conv.messages[0]) or started
    return to_display_time(started, tz_name).date().isoformat()
