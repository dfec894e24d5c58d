from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from backend.routes import router
from comic_weaver.config import Settings
from comic_weaver.runtime import StoryOrchestrator

load_dotenv(Path(__file__).parent.parent / ".env")


def create_app(
    settings: Settings | None = None,
    orchestrator: StoryOrchestrator | None = None,
) -> FastAPI:
    resolved = settings or Settings.from_env()
    story = orchestrator or StoryOrchestrator.from_settings(resolved)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await story.aclose()

    app = FastAPI(title="Comic Weaver", lifespan=lifespan)
    app.state.settings = resolved
    app.state.orchestrator = story
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses COMIC_WEAVER_* env vars or defaults)
app = create_app()
