"""
Round 2: cluster every conversation's tags into global categories.

Each run is a function of (all conversation tags, all existing categories).
Category text is a natural key: a returned tag that matches an existing row
exactly reuses that row. Memberships of every conversation in the result are
replaced, never merged.
"""
import logging
from collections import OrderedDict

from pydantic import ValidationError
from sqlalchemy import delete, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from widgetchat.models import db_models
from widgetchat.models.schemas import CategorySummary, ClusteringResult, ClusterResponse
from widgetchat.services import completion
from widgetchat.services.errors import CompletionError
from widgetchat.settings import settings

logger = logging.getLogger(__name__)

CLUSTERING_PROMPT = """You are a tag clustering and generalization expert. Your task is to analyze descriptive tags from multiple conversations and assign each conversation to higher-level category tags that capture patterns across conversations.

Guidelines:
- Category tags are short phrases (not full sentences)
- Find common themes and patterns across different conversations
- Each category should represent a topic that multiple conversations might belong to
- A conversation may belong to more than one category
- If a conversation fits one of the EXISTING CATEGORIES, reuse that category's tag text EXACTLY, character for character
- Only create a new category for a genuinely new topic

Example input tags:
- "The user wants to know the calorie count of their meal..."
- "The user is tracking their daily food intake..."

Example category:
- "Calorie and nutrition tracking"

Respond with a JSON object containing a "global_tags" array, where each item has:
- "tag": the category phrase
- "source_conversation_ids": array of conversation IDs that belong to this category"""


async def load_tags_by_conversation(db: AsyncSession) -> "OrderedDict[str, list[str]]":
    result = await db.execute(
        select(db_models.ConversationTagDB).order_by(
            db_models.ConversationTagDB.created_at.asc(), db_models.ConversationTagDB.id.asc()
        )
    )
    grouped: "OrderedDict[str, list[str]]" = OrderedDict()
    for row in result.scalars().all():
        grouped.setdefault(row.conversation_id, []).append(row.tag)
    return grouped


async def get_global_tags(db: AsyncSession):
    result = await db.execute(select(db_models.GlobalTagDB).order_by(db_models.GlobalTagDB.created_at.asc()))
    return result.scalars().all()


async def get_category_members(db: AsyncSession) -> dict[str, list[str]]:
    """global_tag_id -> conversation ids mapped to it."""
    result = await db.execute(select(db_models.conversation_global_tags))
    members: dict[str, list[str]] = {}
    for conversation_id, global_tag_id in result.all():
        members.setdefault(global_tag_id, []).append(conversation_id)
    return members


async def get_conversation_ids_for_tag(db: AsyncSession, global_tag_id: str) -> list[str]:
    result = await db.execute(
        select(db_models.conversation_global_tags.c.conversation_id).where(
            db_models.conversation_global_tags.c.global_tag_id == global_tag_id
        )
    )
    return [row[0] for row in result.all()]


async def get_tag_ids_for_conversation(db: AsyncSession, conversation_id: str) -> list[str]:
    result = await db.execute(
        select(db_models.conversation_global_tags.c.global_tag_id).where(
            db_models.conversation_global_tags.c.conversation_id == conversation_id
        )
    )
    return [row[0] for row in result.all()]


async def category_summaries(db: AsyncSession) -> list[CategorySummary]:
    members = await get_category_members(db)
    return [
        CategorySummary(id=g.id, tag=g.tag, conversation_ids=members.get(g.id, []))
        for g in await get_global_tags(db)
    ]


def format_tag_corpus(tags_by_conversation: "OrderedDict[str, list[str]]") -> str:
    blocks = []
    for idx, (conv_id, tags) in enumerate(tags_by_conversation.items()):
        lines = "\n".join(f"  {i + 1}. {t}" for i, t in enumerate(tags))
        blocks.append(f"Conversation {idx + 1} ({conv_id}):\n{lines}")
    return "\n\n".join(blocks)


async def link_conversation(db: AsyncSession, conversation_id: str, global_tag_id: str) -> bool:
    """Add one membership if it is missing; caller commits."""
    existing = await get_tag_ids_for_conversation(db, conversation_id)
    if global_tag_id in existing:
        return False
    await db.execute(
        insert(db_models.conversation_global_tags).values(
            conversation_id=conversation_id, global_tag_id=global_tag_id
        )
    )
    return True


async def cluster_tags(db: AsyncSession) -> ClusteringResult:
    tags_by_conversation = await load_tags_by_conversation(db)
    if not tags_by_conversation:
        return ClusteringResult(message="No conversation tags found")

    existing = await get_global_tags(db)
    existing_text = "\n".join(f"- {g.tag}" for g in existing) or "(none yet)"

    raw = await completion.complete_json(
        [
            {"role": "system", "content": CLUSTERING_PROMPT},
            {
                "role": "user",
                "content": (
                    f"EXISTING CATEGORIES:\n{existing_text}\n\n"
                    f"Assign these conversations to categories:\n\n{format_tag_corpus(tags_by_conversation)}"
                ),
            },
        ],
        model=settings.get_tagging_model(),
        temperature=0.3,
    )
    try:
        parsed = ClusterResponse.model_validate(raw)
    except ValidationError as e:
        raise CompletionError(f"Clustering response has the wrong shape: {e}") from e

    by_text = {g.tag: g for g in existing}
    known_conversations = set(tags_by_conversation)
    # conversation id -> ordered set of category ids
    memberships: "OrderedDict[str, list[str]]" = OrderedDict()
    new_tags_count = 0

    for assignment in parsed.global_tags:
        text = assignment.tag.strip()
        if not text:
            continue
        category = by_text.get(text)
        if category is None:
            category = db_models.GlobalTagDB(tag=text)
            db.add(category)
            await db.flush()
            by_text[text] = category
            new_tags_count += 1
        for conv_id in assignment.source_conversation_ids:
            if conv_id not in known_conversations:
                logger.warning("[Round2] Ignoring unknown conversation id %s for '%s'", conv_id, text)
                continue
            ids = memberships.setdefault(conv_id, [])
            if category.id not in ids:
                ids.append(category.id)

    mappings_count = 0
    for conv_id, category_ids in memberships.items():
        await db.execute(
            delete(db_models.conversation_global_tags).where(
                db_models.conversation_global_tags.c.conversation_id == conv_id
            )
        )
        for category_id in category_ids:
            await db.execute(
                insert(db_models.conversation_global_tags).values(
                    conversation_id=conv_id, global_tag_id=category_id
                )
            )
            mappings_count += 1
    await db.commit()

    logger.info(
        "[Round2] %d categories (%d new), %d mappings across %d conversations",
        len(by_text), new_tags_count, mappings_count, len(memberships),
    )
    return ClusteringResult(
        global_tags=await category_summaries(db),
        new_tags_count=new_tags_count,
        mappings_count=mappings_count,
    )
