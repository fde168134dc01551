"""
Web session dependencies for auth, panel and admin routes.

The session itself is resolved by the session middleware in ``lobster.main``
and stored on ``request.state.web_session``; these dependencies gate routes on
it and enforce the single-use form token on POST.
"""

from __future__ import annotations

import logging

from fastapi import Depends, Form, HTTPException, Request
from sqlalchemy.orm import Session

from lobster.db import SessionLocal
from lobster.drivers.registry import DriverRegistry
from lobster.models.user import User, UserStatus
from lobster.services.session_service import SessionService, SessionState
from lobster.web.helpers import client_ip

logger = logging.getLogger(__name__)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_registry(request: Request) -> DriverRegistry:
    return request.app.state.registry


def get_web_session(request: Request) -> SessionState:
    state = getattr(request.state, "web_session", None)
    if state is None:
        # the session middleware did not run for this path
        raise HTTPException(status_code=303, headers={"Location": "/login"})
    return state


def _redirect(location: str) -> HTTPException:
    return HTTPException(status_code=303, headers={"Location": location})


def require_form_token(
    request: Request,
    token: str = Form(""),
    db: Session = Depends(get_db),
    session: SessionState = Depends(get_web_session),
) -> None:
    if not SessionService(db).check_token(session.uid, token):
        logger.info("Invalid CSRF token from %s", client_ip(request))
        raise _redirect("/panel/dashboard")
    db.commit()


def require_panel_user(
    db: Session = Depends(get_db),
    session: SessionState = Depends(get_web_session),
) -> User:
    if not session.is_logged_in:
        raise _redirect("/login")
    user = db.get(User, session.user_id)
    if user is None or user.status == UserStatus.disabled:
        session.logout()
        raise _redirect("/login")
    return user


def require_admin(
    db: Session = Depends(get_db),
    session: SessionState = Depends(get_web_session),
) -> User:
    if not session.is_logged_in:
        raise _redirect("/login")
    # visiting any admin page ends an impersonation
    if session.is_impersonating:
        session.user_id = session.original_id
        session.original_id = None
    user = db.get(User, session.user_id)
    if user is None or not user.admin or not session.admin:
        raise _redirect("/panel/dashboard")
    return user
