from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from widgetchat.database import get_db
from widgetchat.models import db_models
from widgetchat.services import clustering, history

router = APIRouter(prefix="/tags", tags=["tags"])


@router.get("")
async def read_global_tags(db: AsyncSession = Depends(get_db)):
    summaries = await clustering.category_summaries(db)
    return {
        "globalTags": [
            {"id": s.id, "tag": s.tag, "conversationIds": s.conversation_ids, "conversationCount": len(s.conversation_ids)}
            for s in summaries
        ]
    }


@router.get("/conversation-tags")
async def read_conversation_tags(db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(db_models.ConversationTagDB).order_by(db_models.ConversationTagDB.created_at.desc())
    )
    tags = result.scalars().all()
    conversations = await history.get_conversations_by_ids(db, list({t.conversation_id for t in tags}))
    titles = {c.id: c.title for c in conversations}

    grouped = {}
    for tag in tags:
        entry = grouped.setdefault(
            tag.conversation_id,
            {
                "conversationId": tag.conversation_id,
                "conversationTitle": titles.get(tag.conversation_id, db_models.UNTITLED),
                "tags": [],
            },
        )
        entry["tags"].append({"id": tag.id, "tag": tag.tag, "createdAt": tag.created_at})
    return {"conversationTags": list(grouped.values()), "totalTags": len(tags)}
