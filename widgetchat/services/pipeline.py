"""
Orchestration of the derivation pipeline.

    chat turn -> tag extraction -> clustering -> per category:
        no active widget  -> widget generation
        active widget     -> data update per mapped conversation

Each `run_*` stage opens its own session, since it outlives the request that
started it. `trigger_*` wraps a stage in a background task; failures are
logged by the runner and surface through the widget's status or
error_message, never through the chat turn.
"""
import logging
from collections import defaultdict
from typing import List, Sequence

from widgetchat import database
from widgetchat.models import db_models
from widgetchat.models.schemas import (
    ClusteringResult,
    TagExtractionResult,
    WidgetDataUpdate,
    WidgetGenerationResult,
    WidgetUpdateResult,
)
from widgetchat.services import clustering, tagging, widget_generator, widget_store, widget_updater
from widgetchat.services.errors import WidgetNotReadyError
from widgetchat.services.matching import apply_operations
from widgetchat.services.tasks import KeyedLocks, runner
from widgetchat.settings import settings

logger = logging.getLogger(__name__)

_stage_locks = KeyedLocks()


async def run_tag_extraction(conversation_id: str, cluster: bool = True) -> TagExtractionResult:
    async with database.SessionLocal() as db:
        result = await tagging.extract_conversation_tags(db, conversation_id)
    if cluster and result.count:
        trigger_tag_clustering()
    return result


async def run_tag_clustering() -> ClusteringResult:
    # Overlapping runs would race to insert the same new category text
    async with _stage_locks("clustering"):
        async with database.SessionLocal() as db:
            result = await clustering.cluster_tags(db)
            await fan_out_widget_work(db, result)
    return result


async def fan_out_widget_work(db, result: ClusteringResult):
    """Start generation or data updates for every category; nothing here waits on them."""
    for category in result.global_tags:
        if not category.conversation_ids:
            continue
        widget = await widget_store.get_widget_for_tag(db, category.id)
        if widget is None or widget.status != db_models.WIDGET_ACTIVE:
            trigger_widget_generation(category.id)
            continue
        for conversation_id in category.conversation_ids:
            trigger_widget_update(widget.id, conversation_id)


async def run_widget_generation(
    global_tag_id: str, force: bool = False, keep_items: bool = False
) -> WidgetGenerationResult:
    async with database.SessionLocal() as db:
        return await widget_generator.generate_widget(db, global_tag_id, force=force, keep_items=keep_items)


async def run_widget_update(
    widget_id: str, conversation_id: str, allow_evolution: bool = True
) -> WidgetUpdateResult:
    async with database.SessionLocal() as db:
        try:
            result = await widget_updater.update_widget_data(
                db, widget_id, conversation_id, allow_evolution=allow_evolution
            )
        except WidgetNotReadyError:
            raise
        except Exception as e:
            await db.rollback()
            await _record_update_failure(db, widget_id, e)
            raise

    if result.reextract_conversation_ids:
        schedule_reextraction(widget_id, result.reextract_conversation_ids)
    return result


async def _record_update_failure(db, widget_id: str, error: Exception):
    widget = await widget_store.get_widget(db, widget_id)
    if widget is None:
        return
    widget.error_message = f"Data update failed: {error}"
    await db.commit()
    logger.error("[WidgetData] Update failed for widget %s: %s", widget_id, error)


def schedule_reextraction(widget_id: str, conversation_ids: Sequence[str]):
    """
    Re-run the updater for each conversation, spaced out to bound load on the completion API.

    These runs only produce data operations against the schema that was just
    evolved; they never evolve it again.
    """
    stagger = settings.get_stagger_seconds()
    for index, conversation_id in enumerate(conversation_ids):
        runner.spawn_later(
            index * stagger,
            lambda cid=conversation_id: run_widget_update(widget_id, cid, allow_evolution=False),
            name=f"reextract:{widget_id}:{conversation_id}",
        )


async def run_regenerate_all():
    async with database.SessionLocal() as db:
        return await widget_generator.regenerate_all_widgets(db)


async def update_linked_widgets(conversation_id: str) -> List[str]:
    """Queue a data update on every active widget whose category includes the conversation."""
    async with database.SessionLocal() as db:
        widgets = await widget_store.linked_widgets(db, conversation_id)
        widget_ids = [w.id for w in widgets]
    for widget_id in widget_ids:
        trigger_widget_update(widget_id, conversation_id)
    return widget_ids


async def apply_chat_widget_updates(conversation_id: str, updates: Sequence[WidgetDataUpdate]) -> int:
    """Apply operations the assistant emitted in a widget-data block; returns how many items changed."""
    by_widget = defaultdict(list)
    for update in updates:
        by_widget[update.widget_id].append(update)

    changed = 0
    async with database.SessionLocal() as db:
        for widget_id, operations in by_widget.items():
            async with widget_updater.widget_lock(widget_id):
                widget = await widget_store.get_widget(db, widget_id)
                if widget is None or widget.status != db_models.WIDGET_ACTIVE:
                    logger.warning("[Chat] Ignoring updates for unknown or inactive widget %s", widget_id)
                    continue
                for op in operations:
                    logger.info("[Chat] %s on '%s': %s", op.action, op.widget_name or widget.name, op.reason)
                counts, _ = await apply_operations(db, widget_id, conversation_id, operations, widget.schema_version)
                await db.commit()
                changed += counts.added + counts.updated + counts.deleted
    return changed


async def after_chat_turn(conversation_id: str, updates: Sequence[WidgetDataUpdate] = ()):
    """
    Background work after an assistant reply is stored.

    Inline widget updates are applied first so the updater's provenance
    guard sees them before linked widgets are refreshed.
    """
    if updates:
        await apply_chat_widget_updates(conversation_id, updates)
    trigger_tag_extraction(conversation_id)
    await update_linked_widgets(conversation_id)


def trigger_tag_extraction(conversation_id: str):
    return runner.spawn(run_tag_extraction(conversation_id), name=f"tags:{conversation_id}")


def trigger_tag_clustering():
    return runner.spawn(run_tag_clustering(), name="clustering")


def trigger_widget_generation(global_tag_id: str, force: bool = False, keep_items: bool = False):
    return runner.spawn(
        run_widget_generation(global_tag_id, force=force, keep_items=keep_items), name=f"widget:{global_tag_id}"
    )


def trigger_widget_update(widget_id: str, conversation_id: str):
    return runner.spawn(
        run_widget_update(widget_id, conversation_id), name=f"widget-data:{widget_id}:{conversation_id}"
    )


def trigger_after_chat_turn(conversation_id: str, updates: Sequence[WidgetDataUpdate] = ()):
    return runner.spawn(after_chat_turn(conversation_id, updates), name=f"after-turn:{conversation_id}")
