import hashlib
import hmac

from fastapi import APIRouter, HTTPException, Request, Response

from widgetchat.models.schemas import LoginRequest
from widgetchat.settings import settings

router = APIRouter(prefix="/auth", tags=["auth"])

COOKIE_NAME = "site_auth"
COOKIE_MAX_AGE = 60 * 60 * 24 * 7


def auth_token(password: str) -> str:
    """Cookie value for a password; the password itself never leaves the server."""
    return hmac.new(password.encode("utf-8"), COOKIE_NAME.encode("utf-8"), hashlib.sha256).hexdigest()


def is_authenticated(request: Request) -> bool:
    password = settings.get_site_password()
    if not password:
        return True
    cookie = request.cookies.get(COOKIE_NAME, "")
    return hmac.compare_digest(cookie, auth_token(password))


async def require_auth(request: Request):
    """Dependency for every API router; a no-op when no site password is configured."""
    if not is_authenticated(request):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("")
async def login(data: LoginRequest, response: Response):
    password = settings.get_site_password()
    if not password:
        return {"success": True, "authRequired": False}
    if not hmac.compare_digest(data.password.encode("utf-8"), password.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid password")
    response.set_cookie(
        COOKIE_NAME,
        auth_token(password),
        max_age=COOKIE_MAX_AGE,
        httponly=True,
        samesite="lax",
    )
    return {"success": True, "authRequired": True}


@router.get("")
async def auth_status(request: Request):
    return {"authenticated": is_authenticated(request), "authRequired": bool(settings.get_site_password())}


@router.delete("")
async def logout(response: Response):
    response.delete_cookie(COOKIE_NAME)
    return {"success": True}
