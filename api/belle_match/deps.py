from fastapi import Header, HTTPException


def validate_admin_token(token: str | None, admin_token: str | None) -> None:
    if not admin_token or not token or token != admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def parse_user_id(raw_user_id: str | None) -> str:
    """Caller identity forwarded by the gateway in ``X-User-Id``."""
    value = (raw_user_id or "").strip()
    if not value:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    if len(value) > 128:
        raise HTTPException(status_code=400, detail="X-User-Id is too long")
    return value


def current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    return parse_user_id(x_user_id)


def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
    from . import main as m

    m._validate_admin_token(x_admin_token)