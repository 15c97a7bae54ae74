from fastapi import APIRouter

from widgetchat.models.schemas import (
    ClusteringResult,
    RegenerationResult,
    TagExtractionResult,
    WidgetGenerationResult,
    WidgetUpdateRequest,
    WidgetUpdateResult,
)
from widgetchat.services import pipeline

router = APIRouter(prefix="/pipeline", tags=["pipeline"])


@router.post("/tag-extraction/{conversation_id}", response_model=TagExtractionResult)
async def tag_extraction(conversation_id: str, cluster: bool = True):
    return await pipeline.run_tag_extraction(conversation_id, cluster=cluster)


@router.post("/tag-clustering", response_model=ClusteringResult)
async def tag_clustering():
    return await pipeline.run_tag_clustering()


@router.post("/widget-generation/{global_tag_id}", response_model=WidgetGenerationResult)
async def widget_generation(global_tag_id: str, force: bool = False):
    return await pipeline.run_widget_generation(global_tag_id, force=force)


@router.post("/widget-update", response_model=WidgetUpdateResult)
async def widget_update(data: WidgetUpdateRequest):
    return await pipeline.run_widget_update(data.widget_id, data.conversation_id)


@router.post("/regenerate-widgets", response_model=RegenerationResult)
async def regenerate_widgets():
    return await pipeline.run_regenerate_all()
