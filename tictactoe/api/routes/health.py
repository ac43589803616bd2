from datetime import datetime, timezone

from fastapi import APIRouter

from tictactoe.core.config import get_settings

router = APIRouter()


@router.get("/health")
def health() -> dict:
    return {
        "status": "ok",
        "app": get_settings().app_name,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
