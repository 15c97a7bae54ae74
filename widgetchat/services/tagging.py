"""
Round 1: per-conversation intent tags.

A conversation's tags are regenerated wholesale on every run. The new set is
validated before anything is deleted so a failed or malformed completion
leaves the previous tags in place.
"""
import logging

from pydantic import ValidationError
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from widgetchat.models import db_models
from widgetchat.models.schemas import TagExtractionResult, TagsResponse
from widgetchat.services import completion, history
from widgetchat.services.errors import CompletionError, NotFoundError
from widgetchat.settings import settings

logger = logging.getLogger(__name__)

MIN_TAGS = 5
MAX_TAGS = 10

TAGGING_PROMPT = """You are a conversation analyzer. Your task is to generate 5-10 descriptive sentence-long tags for a conversation.

Each tag should answer the question: "What are the requests the user is looking to address in this conversation?"

Guidelines:
- Each tag should be a complete, descriptive sentence
- Focus on the user's intent, requests, and goals, not on what the assistant said
- Be specific about the context (e.g., mention specific foods, topics, etc.)
- Include both explicit requests and implicit needs

Example tags:
- "The user wants to know the calorie count of their meal that involved soup, a bit of rice, and Korean side dishes."
- "The user is seeking advice on how to structure their morning routine for better productivity."
- "The user needs help debugging a React component that isn't rendering properly."

Respond with a JSON object containing a "tags" array of strings."""


def clean_tags(raw: dict) -> list[str]:
    try:
        parsed = TagsResponse.model_validate(raw)
    except ValidationError as e:
        raise CompletionError(f"Tag response has the wrong shape: {e}") from e
    tags = []
    for tag in parsed.tags:
        tag = tag.strip()
        if tag and tag not in tags:
            tags.append(tag)
    if len(tags) < MIN_TAGS:
        raise CompletionError(f"Tag response contained {len(tags)} tags, expected at least {MIN_TAGS}")
    return tags[:MAX_TAGS]


async def extract_conversation_tags(db: AsyncSession, conversation_id: str) -> TagExtractionResult:
    db_conv = await history.get_conversation(db, conversation_id)
    if not db_conv:
        raise NotFoundError("Conversation", conversation_id)

    messages = db_conv.messages or []
    if not messages:
        return TagExtractionResult(conversation_id=conversation_id, message="No messages found")

    transcript = history.format_transcript(messages)
    raw = await completion.complete_json(
        [
            {"role": "system", "content": TAGGING_PROMPT},
            {
                "role": "user",
                "content": f"Analyze this conversation and generate 5-10 descriptive sentence tags:\n\n{transcript}",
            },
        ],
        model=settings.get_tagging_model(),
        temperature=0.7,
    )
    tags = clean_tags(raw)

    await db.execute(
        delete(db_models.ConversationTagDB).where(db_models.ConversationTagDB.conversation_id == conversation_id)
    )
    now = db_models.utcnow()
    db.add_all(
        [
            db_models.ConversationTagDB(conversation_id=conversation_id, tag=tag, created_at=now, updated_at=now)
            for tag in tags
        ]
    )
    await db.commit()

    logger.info("[Round1] Stored %d tags for conversation %s", len(tags), conversation_id)
    return TagExtractionResult(conversation_id=conversation_id, tags=tags, count=len(tags))
