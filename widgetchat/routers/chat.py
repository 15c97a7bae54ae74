import json
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from widgetchat import database
from widgetchat.database import get_db
from widgetchat.models import db_models
from widgetchat.models.schemas import ChatRequest, ConversationOut, ConversationRename, ConversationSummary
from widgetchat.services import chat_prompts, completion, history, pipeline, titles
from widgetchat.services.errors import NotFoundError
from widgetchat.services.widget_blocks import WidgetBlockFilter, parse_widget_data_block
from widgetchat.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


def sse(event: str, data) -> str:
    payload = data if isinstance(data, str) and event == "done" else json.dumps(data)
    return f"event:{event}\ndata:{payload}\n\n"


def to_llm_messages(messages):
    return [{"role": m["role"], "content": m["content"]} for m in messages]


@router.post("")
async def chat_completion(request: ChatRequest, db: AsyncSession = Depends(get_db)):
    user_text = (request.message or "").strip()
    if not user_text:
        raise HTTPException(status_code=400, detail="Message is required")

    linked = []
    if request.conversation_id:
        db_conv = await history.get_conversation(db, request.conversation_id)
        if not db_conv:
            raise NotFoundError("Conversation", request.conversation_id)
        linked = await chat_prompts.linked_widget_context(db, db_conv.id)
        logger.info("[Chat] %d linked widgets for conversation %s", len(linked), db_conv.id)
    else:
        db_conv = await history.create_conversation(db)

    conv_id = db_conv.id
    needs_title = not db_conv.title or db_conv.title == db_models.UNTITLED
    sent_at = db_models.utcnow()
    # The user's message is stored before the reply so it survives a failed completion
    db_conv = await history.append_message(db, conv_id, "user", user_text, created_at=sent_at)

    system_prompt = chat_prompts.build_system_prompt(linked, sent_at, settings.get_display_timezone())
    llm_messages = [{"role": "system", "content": system_prompt}] + to_llm_messages(db_conv.messages)

    async def event_stream():
        yield sse("meta", {"conversationId": conv_id})
        block_filter = WidgetBlockFilter()
        try:
            async for fragment in completion.stream_completion(llm_messages):
                visible = block_filter.feed(fragment)
                if visible:
                    yield sse("token", visible)
            tail = block_filter.flush()
            if tail:
                yield sse("token", tail)

            clean_content, updates, thinking = parse_widget_data_block(block_filter.raw)
            if thinking:
                logger.info("[Chat] Data thinking: %s", thinking)

            async with database.SessionLocal() as bg_db:
                await history.append_message(bg_db, conv_id, "assistant", clean_content.strip())
                if needs_title:
                    title = await titles.generate_title(user_text, clean_content)
                    await history.update_conversation_title(bg_db, conv_id, title)
                    yield sse("title", title)

            pipeline.trigger_after_chat_turn(conv_id, updates)
            yield sse("done", "done")
        except Exception as e:
            logger.exception("[Chat] Stream error for conversation %s", conv_id)
            yield sse("error", str(e) or "stream error")

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"x-conversation-id": conv_id, "Cache-Control": "no-cache"},
    )


@router.get("/conversations", response_model=list[ConversationSummary])
async def read_conversations(skip: int = 0, limit: int = 100, db: AsyncSession = Depends(get_db)):
    return await history.get_conversations(db, limit=limit, offset=skip)


@router.post("/conversations", response_model=ConversationOut)
async def create_conversation(db: AsyncSession = Depends(get_db)):
    return await history.create_conversation(db)


@router.get("/conversations/{conversation_id}", response_model=ConversationOut)
async def read_conversation(conversation_id: str, db: AsyncSession = Depends(get_db)):
    db_conv = await history.get_conversation(db, conversation_id)
    if not db_conv:
        raise NotFoundError("Conversation", conversation_id)
    return db_conv


@router.patch("/conversations/{conversation_id}", response_model=ConversationOut)
async def rename_conversation(conversation_id: str, data: ConversationRename, db: AsyncSession = Depends(get_db)):
    title = (data.title or "").strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required")
    db_conv = await history.update_conversation_title(db, conversation_id, title)
    if not db_conv:
        raise NotFoundError("Conversation", conversation_id)
    return db_conv


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, db: AsyncSession = Depends(get_db)):
    if not await history.delete_conversation(db, conversation_id):
        raise NotFoundError("Conversation", conversation_id)
    return {"success": True}
