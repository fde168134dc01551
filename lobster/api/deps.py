import logging

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from lobster.db import SessionLocal
from lobster.drivers.registry import DriverRegistry
from lobster.services.api_key_service import ApiKeyService
from lobster.services.common import API_MAX_REQUEST_LENGTH
from lobster.services.session_service import SessionService
from lobster.web.helpers import client_ip

logger = logging.getLogger(__name__)

API_PREFIX = "/api/"


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_registry(request: Request) -> DriverRegistry:
    return request.app.state.registry


def api_path(request: Request) -> str:
    """Request path relative to the API root, as covered by the signature."""
    path = request.url.path
    index = path.find(API_PREFIX)
    return path[index + len(API_PREFIX) :] if index >= 0 else path.lstrip("/")


async def require_api_user(request: Request, db: Session = Depends(get_db)) -> int:
    """Authenticate an API request and return the user id it acts for.

    ``lobster <authdata>`` is a signed request checked against the caller's
    API keys. ``session <token>`` lets the logged-in web panel call the API,
    consuming a form token in place of a signature.
    """
    authorization = request.headers.get("Authorization")
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    scheme, _, credentials = authorization.partition(" ")
    if scheme not in ("lobster", "session") or not credentials or " " in credentials:
        raise HTTPException(status_code=400, detail="Authorization header must take the form 'lobster authdata'")

    body = await request.body()
    if len(body) > API_MAX_REQUEST_LENGTH:
        raise HTTPException(
            status_code=400, detail=f"Request body too long (max is {API_MAX_REQUEST_LENGTH})"
        )

    if scheme == "lobster":
        user_id = ApiKeyService(db).check(api_path(request), request.method, credentials, body, client_ip(request))
        db.commit()
        return user_id

    session = getattr(request.state, "web_session", None)
    if session is None or not session.is_logged_in:
        raise HTTPException(status_code=401, detail="Not logged in")
    if not SessionService(db).check_token(session.uid, credentials):
        raise HTTPException(status_code=401, detail="Invalid session token")
    db.commit()
    return session.user_id
