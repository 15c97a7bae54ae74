import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from widgetchat.database import Base, engine
from widgetchat.models import db_models  # noqa: F401  registers tables on Base.metadata
from widgetchat.routers import auth, chat, pipeline, tags, widgets
from widgetchat.services.errors import CompletionError, NotFoundError, WidgetNotReadyError
from widgetchat.services.tasks import runner
from widgetchat.settings import settings

logging.basicConfig(
    level=settings.get_log_level(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    if runner.pending:
        logger.info("Waiting for %d background tasks", runner.pending)
        await runner.drain(timeout=30)
    await engine.dispose()


# 1. Setup App
app = FastAPI(title="Widget Chat Backend", lifespan=lifespan)

# 2. Setup CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["x-conversation-id"],
)


# 3. Map domain errors to HTTP statuses
@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})


@app.exception_handler(WidgetNotReadyError)
async def not_ready_handler(request: Request, exc: WidgetNotReadyError):
    return JSONResponse(status_code=409, content={"success": False, "error": str(exc)})


@app.exception_handler(CompletionError)
async def completion_error_handler(request: Request, exc: CompletionError):
    logger.error("Completion service error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"success": False, "error": str(exc)})


# 4. Thumbnails and other files under the data directory
app.mount("/data", StaticFiles(directory=settings.get_data_dir()), name="data")

# 5. Include Routers
app.include_router(auth.router)
protected = [Depends(auth.require_auth)]
app.include_router(chat.router, dependencies=protected)
app.include_router(tags.router, dependencies=protected)
app.include_router(widgets.router, dependencies=protected)
app.include_router(pipeline.router, dependencies=protected)


@app.get("/")
def read_root():
    return {"status": "Widget chat backend is running", "mounted": "/data"}
