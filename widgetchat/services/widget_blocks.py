"""
The assistant may end a reply with a fenced ```widget-data JSON block listing
data operations for widgets linked to the conversation. The block is never
shown to the user and never stored with the message.
"""
import json
import logging
import re
from typing import List, Optional, Tuple

from pydantic import ValidationError

from widgetchat.models.schemas import WidgetDataUpdate

logger = logging.getLogger(__name__)

WIDGET_DATA_MARKER = "```widget-data"

_BLOCK_RE = re.compile(r"```widget-data\s*\n(.*?)(?:\n```|$)", re.DOTALL)


class WidgetBlockFilter:
    """
    Turns streamed fragments into the user-visible part of the reply.

    Text that could be the start of the marker is held back until the next
    fragment decides it. Once the marker is seen, nothing more is emitted.
    Whitespace right before the marker is held back too, so the visible text
    matches the stored (stripped) message.
    """

    def __init__(self, marker: str = WIDGET_DATA_MARKER):
        self.marker = marker
        self.raw = ""
        self._emitted = 0
        self.suppressed = False

    def _safe_end(self) -> int:
        """Index up to which self.raw can be released without risking a partial marker."""
        end = len(self.raw)
        for size in range(min(len(self.marker) - 1, len(self.raw)), 0, -1):
            if self.marker.startswith(self.raw[-size:]):
                end -= size
                break
        return len(self.raw[:end].rstrip())

    def feed(self, fragment: str) -> str:
        self.raw += fragment
        if self.suppressed:
            return ""

        marker_at = self.raw.find(self.marker, max(0, self._emitted - len(self.marker)))
        if marker_at != -1:
            self.suppressed = True
            end = len(self.raw[:marker_at].rstrip())
        else:
            end = self._safe_end()

        if end <= self._emitted:
            return ""
        visible = self.raw[self._emitted:end]
        self._emitted = end
        return visible

    def flush(self) -> str:
        """Release whatever was held back once the stream has ended."""
        if self.suppressed:
            return ""
        visible = self.raw[self._emitted:].rstrip()
        self._emitted = len(self.raw)
        return visible


def parse_widget_data_block(content: str) -> Tuple[str, List[WidgetDataUpdate], Optional[str]]:
    """
    Split a full reply into (clean_content, updates, thinking).

    An unterminated block is still removed from the content. A block that is
    not valid JSON yields no updates.
    """
    match = _BLOCK_RE.search(content)
    if not match:
        return content, [], None

    clean_content = (content[: match.start()] + content[match.end():]).strip()
    try:
        parsed = json.loads(match.group(1).strip())
    except json.JSONDecodeError as e:
        logger.warning("[Chat] Failed to parse widget-data block: %s", e)
        return clean_content, [], None
    if not isinstance(parsed, dict):
        logger.warning("[Chat] widget-data block is not an object")
        return clean_content, [], None

    updates = []
    for raw in parsed.get("updates") or []:
        try:
            updates.append(WidgetDataUpdate.model_validate(raw))
        except ValidationError as e:
            logger.warning("[Chat] Skipping malformed widget update: %s", e.errors()[0]["msg"])
    return clean_content, updates, parsed.get("thinking")
