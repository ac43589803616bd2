from fastapi import Request

UNKNOWN_CLIENT = "unknown"


def _first_forwarded(value: object) -> str:
    if not isinstance(value, str) or not value.strip():
        return ""
    return value.split(",")[0].strip()


def extract_client_ip(request: Request) -> str:
    forwarded_for = _first_forwarded(request.headers.get("x-forwarded-for", ""))
    if forwarded_for:
        return forwarded_for
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_CLIENT


def extract_user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "").strip()[:500]


def extract_client_ip_from_environ(environ: dict) -> str:
    """Same lookup order as extract_client_ip, for a raw ASGI/WSGI environ."""
    forwarded_for = _first_forwarded(environ.get("HTTP_X_FORWARDED_FOR", ""))
    if forwarded_for:
        return forwarded_for
    real_ip = environ.get("HTTP_X_REAL_IP", "")
    if isinstance(real_ip, str) and real_ip.strip():
        return real_ip.strip()
    remote = environ.get("REMOTE_ADDR", "")
    if isinstance(remote, str) and remote.strip():
        return remote.strip()
    return UNKNOWN_CLIENT


def extract_user_agent_from_environ(environ: dict) -> str:
    user_agent = environ.get("HTTP_USER_AGENT", "")
    return user_agent.strip()[:500] if isinstance(user_agent, str) else ""
