"""HTTP API and static page for browsing the transcript store.

Routes:
    GET /                                                   viewer page
    GET /api/projects                                       projects with decoded paths
    GET /api/projects/{project}/conversations               conversation listing
    GET /api/projects/{project}/conversations/{id}          raw user/assistant entries
    GET /projects/{project}/conversations/{id}/view         server-rendered transcript
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from fastapi import FastAPI, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles

from clogue import (
    TranscriptNotFound,
    __version__,
    default_projects_dir,
    export_conversation_html,
    get_template,
    list_conversations,
    list_projects,
    read_conversation,
    resolve_project_dir,
)

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).parent / "static"


@dataclass
class Settings:
    """Where the server reads transcripts from."""

    projects_dir: Path = field(default_factory=default_projects_dir)
    home_dir: str = field(default_factory=lambda: str(Path.home()))


def create_app(settings=None):
    settings = settings or Settings()
    app = FastAPI(title="Clogue", version=__version__)
    app.state.settings = settings
    app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")

    @app.exception_handler(TranscriptNotFound)
    async def not_found_handler(request: Request, exc: TranscriptNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(OSError)
    async def os_error_handler(request: Request, exc: OSError):
        logger.error("Failed to read transcript store for %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    @app.get("/", response_class=HTMLResponse)
    async def index():
        return get_template("index.html").render(
            projects_dir=str(settings.projects_dir), version=__version__
        )

    @app.get("/api/projects")
    async def api_projects():
        return await list_projects(settings.projects_dir, home_dir=settings.home_dir)

    @app.get("/api/projects/{project}/conversations")
    def api_conversations(
        project: str, include_warmup: bool = Query(False, alias="includeWarmup")
    ):
        project_dir = resolve_project_dir(settings.projects_dir, project)
        return list_conversations(project_dir, include_warmup=include_warmup)

    @app.get("/api/projects/{project}/conversations/{conversation}")
    def api_conversation(project: str, conversation: str):
        project_dir = resolve_project_dir(settings.projects_dir, project)
        return read_conversation(project_dir, conversation)

    @app.get(
        "/projects/{project}/conversations/{conversation}/view",
        response_class=HTMLResponse,
    )
    async def view_conversation(project: str, conversation: str):
        return await export_conversation_html(
            settings.projects_dir, project, conversation, home_dir=settings.home_dir
        )

    return app
