import base64
import binascii
import glob
import json
import logging
import os
import re
import time

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from widgetchat import database
from widgetchat.database import get_db
from widgetchat.models import db_models
from widgetchat.models.schemas import (
    AddConversationRequest,
    ChatRequest,
    RegenerationResult,
    ThumbnailUpload,
    WidgetDetail,
    WidgetItemOut,
    WidgetMergeRequest,
    WidgetMergeResult,
    WidgetOut,
    WidgetPatch,
)
from widgetchat.services import (
    chat_prompts,
    clustering,
    completion,
    history,
    pipeline,
    titles,
    widget_merge,
    widget_store,
)
from widgetchat.services.errors import NotFoundError
from widgetchat.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/widgets", tags=["widgets"])

NEW_ITEM_PREFIX = "new-"
_CODE_BLOCK_RE = re.compile(r"```(?:jsx|javascript|js)?\n([\s\S]*?)```")


def _sse(event: str, data) -> str:
    return f"event:{event}\ndata:{data if event == 'done' else json.dumps(data)}\n\n"


def thumbnails_dir() -> str:
    path = os.path.join(settings.get_data_dir(), "thumbnails")
    os.makedirs(path, exist_ok=True)
    return path


async def _get_widget_or_404(db: AsyncSession, widget_id: str):
    widget = await widget_store.get_widget(db, widget_id)
    if widget is None:
        raise NotFoundError("Widget", widget_id)
    return widget


async def _widget_detail(db: AsyncSession, widget) -> WidgetDetail:
    detail = WidgetDetail.model_validate(widget)
    detail.items = [WidgetItemOut.model_validate(item) for item in await widget_store.list_items(db, widget.id)]
    return detail


@router.get("", response_model=list[WidgetOut])
async def read_widgets(status: str | None = None, db: AsyncSession = Depends(get_db)):
    return await widget_store.list_widgets(db, status=status)


@router.post("/regenerate", response_model=RegenerationResult)
async def regenerate_widgets():
    return await pipeline.run_regenerate_all()


@router.post("/merge", response_model=WidgetMergeResult)
async def merge_widgets(data: WidgetMergeRequest, db: AsyncSession = Depends(get_db)):
    """Combine widgets into one new widget, then regenerate it around the inherited items."""
    widget_ids = list(dict.fromkeys(data.widget_ids))
    if len(widget_ids) < 2:
        raise HTTPException(status_code=400, detail="At least 2 widget IDs are required for merging")
    result = await widget_merge.merge_widgets(db, widget_ids)
    pipeline.trigger_widget_generation(result.global_tag_id, keep_items=True)
    return result


@router.post("/add-conversation")
async def add_conversation(data: AddConversationRequest, db: AsyncSession = Depends(get_db)):
    """
    Attach a conversation to a widget's category and ingest its data.

    Without a widget id the conversation goes through clustering, which
    creates or reuses a category and its widget.
    """
    if not data.conversation_id:
        raise HTTPException(status_code=400, detail="conversationId is required")
    db_conv = await history.get_conversation(db, data.conversation_id)
    if not db_conv:
        raise NotFoundError("Conversation", data.conversation_id)
    widget = await _get_widget_or_404(db, data.widget_id) if data.widget_id else None

    tag_ids = await clustering.get_tag_ids_for_conversation(db, data.conversation_id)
    if not await _has_tags(db, data.conversation_id):
        logger.info("[AddConversation] Tagging conversation %s first", data.conversation_id)
        await pipeline.run_tag_extraction(data.conversation_id, cluster=False)

    if widget is None:
        result = await pipeline.run_tag_clustering()
        return {"success": True, "mode": "clustering", "clustering": result}

    if widget.global_tag_id not in tag_ids:
        await clustering.link_conversation(db, data.conversation_id, widget.global_tag_id)
        await db.commit()

    if widget.status != db_models.WIDGET_ACTIVE:
        pipeline.trigger_widget_generation(widget.global_tag_id)
        return {"success": True, "mode": "generation", "widgetId": widget.id}

    result = await pipeline.run_widget_update(widget.id, data.conversation_id)
    return {"success": True, "mode": "update", "widgetId": widget.id, "update": result}


async def _has_tags(db: AsyncSession, conversation_id: str) -> bool:
    grouped = await clustering.load_tags_by_conversation(db)
    return bool(grouped.get(conversation_id))


@router.get("/{widget_id}", response_model=WidgetDetail)
async def read_widget(widget_id: str, db: AsyncSession = Depends(get_db)):
    widget = await _get_widget_or_404(db, widget_id)
    return await _widget_detail(db, widget)


@router.patch("/{widget_id}", response_model=WidgetDetail)
async def patch_widget(widget_id: str, data: WidgetPatch, db: AsyncSession = Depends(get_db)):
    """Save items edited in the component; ids starting with `new-` are inserted."""
    widget = await _get_widget_or_404(db, widget_id)

    for patch in data.data_items or []:
        if patch.id.startswith(NEW_ITEM_PREFIX):
            widget_store.insert_items(db, widget_id, [(patch.data, None)], widget.schema_version)
            continue
        item = await widget_store.get_item(db, widget_id, patch.id)
        if item is None:
            raise NotFoundError("Data item", patch.id)
        widget_store.update_item(item, patch.data, item.source_conversation_id, widget.schema_version)

    if data.update_last_opened:
        widget_store.touch_last_opened(widget)
    await db.commit()
    return await _widget_detail(db, widget)


@router.delete("/{widget_id}")
async def remove_widget(
    widget_id: str,
    data_item_id: str | None = Query(default=None, alias="dataItemId"),
    delete_widget: bool = Query(default=False, alias="deleteWidget"),
    db: AsyncSession = Depends(get_db),
):
    await _get_widget_or_404(db, widget_id)
    if delete_widget:
        await widget_store.delete_widget(db, widget_id)
        await db.commit()
        return {"success": True, "deleted": "widget"}
    if not data_item_id:
        raise HTTPException(status_code=400, detail="dataItemId or deleteWidget is required")
    item = await widget_store.get_item(db, widget_id, data_item_id)
    if item is None:
        raise NotFoundError("Data item", data_item_id)
    await widget_store.delete_item(db, item)
    await db.commit()
    return {"success": True, "deleted": "item"}


@router.post("/{widget_id}/thumbnail")
async def upload_thumbnail(widget_id: str, data: ThumbnailUpload, db: AsyncSession = Depends(get_db)):
    widget = await _get_widget_or_404(db, widget_id)
    if not data.image_data:
        raise HTTPException(status_code=400, detail="imageData is required")
    if data.code_hash and widget.code_hash == data.code_hash and widget.thumbnail_url:
        return {"success": True, "skipped": True, "thumbnailUrl": widget.thumbnail_url}

    encoded = re.sub(r"^data:image/\w+;base64,", "", data.image_data)
    try:
        image = base64.b64decode(encoded, validate=True)
    except binascii.Error:
        raise HTTPException(status_code=400, detail="imageData is not valid base64")

    directory = thumbnails_dir()
    filename = f"{widget_id}-{int(time.time() * 1000)}.png"
    with open(os.path.join(directory, filename), "wb") as f:
        f.write(image)
    for old in glob.glob(os.path.join(directory, f"{widget_id}-*.png")):
        if os.path.basename(old) != filename:
            os.remove(old)

    widget.thumbnail_url = f"/data/thumbnails/{filename}"
    widget.code_hash = data.code_hash
    await db.commit()
    return {"success": True, "skipped": False, "thumbnailUrl": widget.thumbnail_url}


@router.post("/{widget_id}/chat")
async def widget_chat(widget_id: str, request: ChatRequest, db: AsyncSession = Depends(get_db)):
    """Conversation for editing the widget's component; a final ```jsx block replaces its code."""
    user_text = (request.message or "").strip()
    if not user_text:
        raise HTTPException(status_code=400, detail="Message is required")
    widget = await _get_widget_or_404(db, widget_id)

    if request.conversation_id:
        db_conv = await history.get_conversation(db, request.conversation_id)
        if not db_conv:
            raise NotFoundError("Conversation", request.conversation_id)
    else:
        db_conv = await history.get_conversation_by_widget(db, widget_id)
    is_new = db_conv is None
    if is_new:
        db_conv = await history.create_conversation(db, widget_id=widget_id)

    conv_id = db_conv.id
    db_conv = await history.append_message(db, conv_id, "user", user_text)
    llm_messages = [{"role": "system", "content": chat_prompts.build_widget_editor_prompt(widget)}] + [
        {"role": m["role"], "content": m["content"]} for m in db_conv.messages
    ]

    async def event_stream():
        yield _sse("meta", {"conversationId": conv_id, "widgetId": widget_id})
        full_content = ""
        try:
            async for fragment in completion.stream_completion(llm_messages, model=settings.get_widget_model()):
                full_content += fragment
                yield _sse("token", fragment)

            async with database.SessionLocal() as bg_db:
                await history.append_message(bg_db, conv_id, "assistant", full_content)
                if is_new:
                    title = await titles.generate_title(user_text, full_content)
                    await history.update_conversation_title(bg_db, conv_id, title)
                    yield _sse("title", title)

                blocks = _CODE_BLOCK_RE.findall(full_content)
                if blocks:
                    target = await widget_store.get_widget(bg_db, widget_id)
                    if target is None:
                        yield _sse("error", "Widget no longer exists")
                    else:
                        target.component_code = blocks[-1].strip()
                        await bg_db.commit()
                        logger.info("[WidgetChat] Updated component code for widget %s", widget_id)
                        yield _sse("code_updated", {"widgetId": widget_id, "componentCode": target.component_code})
            yield _sse("done", "done")
        except Exception as e:
            logger.exception("[WidgetChat] Stream error for widget %s", widget_id)
            yield _sse("error", str(e) or "stream error")

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"x-conversation-id": conv_id, "Cache-Control": "no-cache"},
    )
