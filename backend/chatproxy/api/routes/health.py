from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from chatproxy import __version__
from chatproxy.config import Settings
from chatproxy.dependencies import get_settings
from chatproxy.models.schemas import HealthResponse

router = APIRouter()

SERVICE_NAME = "AI Chat System"


@router.get("", response_model=HealthResponse, summary="Liveness check")
async def health(settings: Settings = Depends(get_settings)) -> HealthResponse:
    """Always 200 while the process is up. Does not contact the upstream."""
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        service=SERVICE_NAME,
        version=__version__,
        model=settings.upstream_model,
    )
