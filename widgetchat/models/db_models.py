from sqlalchemy import Column, String, Text, JSON, DateTime, Integer, ForeignKey, Table
import uuid
import datetime
from widgetchat.database import Base

UNTITLED = "New conversation"

WIDGET_GENERATING = "generating"
WIDGET_ACTIVE = "active"
WIDGET_ERROR = "error"


def _new_id():
    return uuid.uuid4().hex


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class ConversationDB(Base):
    __tablename__ = "conversations"

    id = Column(String, primary_key=True, default=_new_id)
    title = Column(String, default=UNTITLED, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    # Each entry: {"role": ..., "content": ..., "created_at": ISO-8601 string}
    messages = Column(JSON, default=list)
    widget_id = Column(String, ForeignKey("ui_widgets.id", ondelete="SET NULL"), nullable=True, index=True)


class ConversationTagDB(Base):
    __tablename__ = "conversation_tags"

    id = Column(String, primary_key=True, default=_new_id)
    conversation_id = Column(
        String, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tag = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)


class GlobalTagDB(Base):
    __tablename__ = "global_tags"

    id = Column(String, primary_key=True, default=_new_id)
    tag = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime, default=utcnow)


conversation_global_tags = Table(
    "conversation_global_tags",
    Base.metadata,
    Column("conversation_id", String, ForeignKey("conversations.id", ondelete="CASCADE"), primary_key=True),
    Column("global_tag_id", String, ForeignKey("global_tags.id", ondelete="CASCADE"), primary_key=True),
)


class WidgetDB(Base):
    __tablename__ = "ui_widgets"

    id = Column(String, primary_key=True, default=_new_id)
    global_tag_id = Column(
        String, ForeignKey("global_tags.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    name = Column(String, nullable=False)
    description = Column(Text, default="")
    component_code = Column(Text, default="")
    data_schema = Column(JSON, default=dict)
    schema_version = Column(Integer, default=0, nullable=False)
    status = Column(String, default=WIDGET_GENERATING, nullable=False, index=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_opened_at = Column(DateTime, default=utcnow)
    thumbnail_url = Column(String, nullable=True)
    code_hash = Column(String, nullable=True)


class WidgetDataDB(Base):
    __tablename__ = "ui_widget_data"

    id = Column(String, primary_key=True, default=_new_id)
    widget_id = Column(String, ForeignKey("ui_widgets.id", ondelete="CASCADE"), nullable=False, index=True)
    data = Column(JSON, nullable=False)
    source_conversation_id = Column(
        String, ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True, index=True
    )
    schema_version = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
