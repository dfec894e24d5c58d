"""Health check and public settings endpoints."""

from fastapi import APIRouter, Request

from .models import PublicSettings

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings", response_model=PublicSettings)
async def get_settings(request: Request):
    """Non-secret runtime settings (models, panel counts, audio caps)."""
    settings = request.app.state.settings
    return PublicSettings.model_validate(settings.model_dump())
