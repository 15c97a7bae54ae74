import logging

from widgetchat.models.db_models import UNTITLED
from widgetchat.services import completion
from widgetchat.services.errors import CompletionError
from widgetchat.settings import settings

logger = logging.getLogger(__name__)


def fallback_title(text: str) -> str:
    trimmed = (text or "").strip()
    if not trimmed:
        return UNTITLED
    return trimmed[:50]


async def generate_title(user_message: str, assistant_message: str = "") -> str:
    """Short 2-3 word title for a conversation; never raises."""
    base_text = user_message or assistant_message
    if not settings.get_api_key():
        return fallback_title(base_text)

    try:
        title = await completion.complete(
            [
                {
                    "role": "system",
                    "content": "Create a 2-3 word title for this conversation. Be brief and direct. No quotes, no punctuation.",
                },
                {
                    "role": "user",
                    "content": f"User: {user_message[:400]}\nAssistant: {assistant_message[:400]}",
                },
            ],
            model=settings.get_tagging_model(),
            temperature=0.3,
            max_tokens=12,
            timeout=15.0,
        )
    except CompletionError as e:
        logger.warning("[Titling] Title generation failed: %s", e)
        return fallback_title(base_text)

    title = title.strip().strip('"').strip("'").strip()
    return title or fallback_title(base_text)
