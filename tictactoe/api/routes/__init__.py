from fastapi import APIRouter

from tictactoe.api.routes.admin import router as admin_router
from tictactoe.api.routes.auth import router as auth_router
from tictactoe.api.routes.chat import router as chat_router
from tictactoe.api.routes.game import router as game_router
from tictactoe.api.routes.health import router as health_router
from tictactoe.api.routes.matchmaking import router as matchmaking_router
from tictactoe.api.routes.notifications import router as notifications_router
from tictactoe.api.routes.profile import router as profile_router
from tictactoe.api.routes.social import router as social_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(auth_router, prefix="/auth", tags=["auth"])
router.include_router(profile_router, prefix="/profile", tags=["profile"])
router.include_router(matchmaking_router, prefix="/game/matchmaking", tags=["matchmaking"])
router.include_router(game_router, prefix="/game", tags=["game"])
router.include_router(chat_router, prefix="/chat", tags=["chat"])
router.include_router(social_router, prefix="/friends", tags=["friends"])
router.include_router(notifications_router, prefix="/notifications", tags=["notifications"])
router.include_router(admin_router, prefix="/admin", tags=["admin"])
