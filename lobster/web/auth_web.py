"""
Auth Web Routes: login, registration and password reset.
"""

import logging

from fastapi import APIRouter, Depends, Form, Request
from sqlalchemy.orm import Session

from lobster.errors import LobsterError
from lobster.services.session_service import SessionService, SessionState
from lobster.web.deps import get_db, get_web_session, require_form_token
from lobster.web.helpers import client_ip, ctx, redirect, redirect_message, redirect_success

logger = logging.getLogger(__name__)

router = APIRouter()


def _anonymous_page(request: Request, db: Session, session: SessionState, title: str):
    if session.is_logged_in:
        return redirect("/panel/dashboard")
    token = SessionService(db).generate_token(session.uid)
    db.commit()
    return ctx(request, title, token=token)


@router.get("/login")
def login_page(request: Request, db: Session = Depends(get_db), session: SessionState = Depends(get_web_session)):
    return _anonymous_page(request, db, session, "Login")


@router.get("/create")
def create_page(request: Request, db: Session = Depends(get_db), session: SessionState = Depends(get_web_session)):
    return _anonymous_page(request, db, session, "Create account")


@router.get("/pwreset")
def pwreset_page(request: Request, db: Session = Depends(get_db), session: SessionState = Depends(get_web_session)):
    return _anonymous_page(request, db, session, "Reset password")


@router.post("/auth/login", dependencies=[Depends(require_form_token)])
def login_submit(
    request: Request,
    db: Session = Depends(get_db),
    session: SessionState = Depends(get_web_session),
    username: str = Form(""),
    password: str = Form(""),
):
    from lobster.services.auth_service import AuthService

    if session.is_logged_in:
        return redirect_message("/panel/dashboard", LobsterError("already_logged_in").message)
    try:
        user = AuthService(db).login(client_ip(request), username, password)
    except LobsterError as exc:
        # failed attempts are still counted by the limiter
        db.commit()
        return redirect_message("/login", exc.message)
    db.commit()
    session.login(user.id, user.admin)
    return redirect("/panel/dashboard")


@router.post("/auth/create", dependencies=[Depends(require_form_token)])
def create_submit(
    request: Request,
    db: Session = Depends(get_db),
    session: SessionState = Depends(get_web_session),
    username: str = Form(""),
    password: str = Form(""),
    password_confirm: str = Form(""),
    email: str = Form(""),
):
    from lobster.services.auth_service import AuthService

    if session.is_logged_in:
        return redirect_message("/panel/dashboard", LobsterError("already_logged_in").message)
    if password != password_confirm:
        return redirect_message("/create", LobsterError("password_mismatch").message)
    try:
        user = AuthService(db).create(client_ip(request), username, password, email)
    except LobsterError as exc:
        db.rollback()
        return redirect_message("/create", exc.message)
    db.commit()
    session.login(user.id, user.admin)
    return redirect("/panel/dashboard")


@router.get("/auth/logout")
def logout(session: SessionState = Depends(get_web_session)):
    session.logout()
    return redirect("/login")


@router.post("/auth/pwreset_request", dependencies=[Depends(require_form_token)])
def pwreset_request(
    request: Request,
    db: Session = Depends(get_db),
    username: str = Form(""),
    email: str = Form(""),
):
    from lobster.services.auth_service import AuthService

    try:
        AuthService(db).pwreset_request(client_ip(request), username, email)
    except LobsterError as exc:
        # the limiter counts every request, successful or not
        db.commit()
        return redirect_message("/pwreset", exc.message)
    db.commit()
    return redirect_success("/pwreset", "Check your email for a link to reset your password.")


@router.post("/auth/pwreset_submit", dependencies=[Depends(require_form_token)])
def pwreset_submit(
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Form(""),
    token: str = Form("", alias="pwreset_token"),
    password: str = Form(""),
    password_confirm: str = Form(""),
):
    from lobster.services.auth_service import AuthService

    if password != password_confirm:
        return redirect_message("/pwreset", LobsterError("password_mismatch").message)
    if not user_id.isdigit():
        return redirect_message("/pwreset", LobsterError("incorrect_token").message)
    try:
        AuthService(db).pwreset_submit(client_ip(request), int(user_id), token, password)
    except LobsterError as exc:
        db.commit()
        return redirect_message("/pwreset", exc.message)
    db.commit()
    return redirect_success("/login", "Your password has been reset. Please login.")
