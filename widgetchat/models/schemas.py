import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Literal, Dict, Any


class Message(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


# ── Request bodies ───────────────────────────────────────────────────────────

class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = None
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")


class ConversationRename(BaseModel):
    title: Optional[str] = None


class DataItemPatch(BaseModel):
    id: str
    data: Dict[str, Any]


class WidgetPatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data_items: Optional[List[DataItemPatch]] = Field(default=None, alias="dataItems")
    update_last_opened: bool = Field(default=False, alias="updateLastOpened")


class ThumbnailUpload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_data: str = Field(alias="imageData")
    code_hash: Optional[str] = Field(default=None, alias="codeHash")


class AddConversationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    widget_id: Optional[str] = Field(default=None, alias="widgetId")


class WidgetUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    widget_id: str = Field(alias="widgetId")
    conversation_id: str = Field(alias="conversationId")


class WidgetMergeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    widget_ids: List[str] = Field(default_factory=list, alias="widgetIds")


class LoginRequest(BaseModel):
    password: str = ""


# ── Structured completion outputs ────────────────────────────────────────────

class TagsResponse(BaseModel):
    tags: List[str] = []


class ClusterAssignment(BaseModel):
    tag: str
    source_conversation_ids: List[str] = []


class ClusterResponse(BaseModel):
    global_tags: List[ClusterAssignment] = []


class WidgetSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    ui_type: Optional[str] = Field(default=None, alias="uiType")
    data_schema: Dict[str, Any] = Field(alias="dataSchema")
    component_code: str = Field(alias="componentCode")
    extracted_data: List[Dict[str, Any]] = Field(default_factory=list, alias="extractedData")


class DataOperation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["add", "update", "replace", "delete"]
    data: Optional[Dict[str, Any]] = None
    target_date: Optional[str] = Field(default=None, alias="targetDate")
    target_type: Optional[str] = Field(default=None, alias="targetType")
    reason: Optional[str] = Field(default=None, alias="reasoning")


class UpdateDecision(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    schema_changed: bool = Field(default=False, alias="schemaChanged")
    reason: Optional[str] = None
    new_schema: Optional[Dict[str, Any]] = Field(default=None, alias="newSchema")
    operations: List[Dict[str, Any]] = []


class WidgetDataUpdate(DataOperation):
    widget_id: str = Field(alias="widgetId")
    widget_name: Optional[str] = Field(default=None, alias="widgetName")


# ── Pipeline results ─────────────────────────────────────────────────────────

class OperationCounts(BaseModel):
    added: int = 0
    updated: int = 0
    deleted: int = 0


class OperationResult(BaseModel):
    action: str
    success: bool
    reason: Optional[str] = None


class TagExtractionResult(BaseModel):
    success: bool = True
    conversation_id: str
    tags: List[str] = []
    count: int = 0
    message: Optional[str] = None


class CategorySummary(BaseModel):
    id: str
    tag: str
    conversation_ids: List[str] = []


class ClusteringResult(BaseModel):
    success: bool = True
    global_tags: List[CategorySummary] = []
    new_tags_count: int = 0
    mappings_count: int = 0
    message: Optional[str] = None


class WidgetGenerationResult(BaseModel):
    success: bool = True
    widget_id: Optional[str] = None
    global_tag_id: str
    skipped: bool = False
    item_count: int = 0
    message: Optional[str] = None


class WidgetUpdateResult(BaseModel):
    success: bool = True
    widget_id: str
    conversation_id: str
    skipped: bool = False
    schema_changed: bool = False
    schema_version: Optional[int] = None
    counts: OperationCounts = Field(default_factory=OperationCounts)
    results: List[OperationResult] = []
    reextract_conversation_ids: List[str] = []
    message: Optional[str] = None


class WidgetMergeResult(BaseModel):
    success: bool = True
    widget_id: str
    global_tag_id: str
    name: str
    merged_count: int = 0
    conversation_count: int = 0
    item_count: int = 0


class RegenerationOutcome(BaseModel):
    id: str
    name: str
    success: bool
    error: Optional[str] = None


class RegenerationResult(BaseModel):
    success: bool = True
    regenerated: int = 0
    failed: int = 0
    results: List[RegenerationOutcome] = []
    message: Optional[str] = None


# ── Responses ────────────────────────────────────────────────────────────────

class ConversationSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None
    widget_id: Optional[str] = None


class ConversationOut(ConversationSummary):
    messages: List[Dict[str, Any]] = []


class WidgetItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    data: Dict[str, Any]
    source_conversation_id: Optional[str] = None
    schema_version: int = 0
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None


class WidgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    global_tag_id: str
    name: str
    description: Optional[str] = ""
    component_code: Optional[str] = ""
    data_schema: Dict[str, Any] = {}
    schema_version: int = 0
    status: str
    error_message: Optional[str] = None
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None
    last_opened_at: Optional[datetime.datetime] = None
    thumbnail_url: Optional[str] = None
    code_hash: Optional[str] = None


class WidgetDetail(WidgetOut):
    items: List[WidgetItemOut] = []
