import uvicorn

from tictactoe.core.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "tictactoe.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.debug,
        log_level=settings.log_level.strip().lower(),
    )


if __name__ == "__main__":
    main()
