import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from tictactoe.api.routes import router as api_router
from tictactoe.core.config import get_settings
from tictactoe.core.logging import configure_logging
from tictactoe.core.request_meta import extract_client_ip
from tictactoe.db.base import Base
from tictactoe.db.migrations import ensure_runtime_schema
from tictactoe.db.session import engine
from tictactoe.realtime.socket_server import build_socket_app
from tictactoe.services.rate_limit_service import rate_limit_service, scope_for_path

settings = get_settings()
configure_logging()
logger = logging.getLogger(__name__)

api_app = FastAPI(title=settings.app_name, debug=settings.debug)


class ApiRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        if not settings.rate_limit_enabled:
            return await call_next(request)

        scope = scope_for_path(request.url.path)
        if scope is None:
            return await call_next(request)

        client_ip = extract_client_ip(request)
        decision = rate_limit_service.check_scope(scope, client_ip)
        if not decision.allowed:
            logger.warning("Rate limit hit: %s scope=%s", client_ip, scope)
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded"},
                headers=decision.headers(),
            )

        response = await call_next(request)
        for key, value in decision.headers().items():
            response.headers[key] = value
        return response


api_app.add_middleware(ApiRateLimitMiddleware)
api_app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
api_app.include_router(api_router, prefix=settings.api_prefix)


@api_app.on_event("startup")
def on_startup() -> None:
    Base.metadata.create_all(bind=engine)
    ensure_runtime_schema(engine)
    logger.info("%s started", settings.app_name)


app = build_socket_app(api_app)
