import logging
from contextlib import asynccontextmanager
from time import perf_counter

from fastapi import Depends, FastAPI, Request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from starlette.responses import Response

import lobster.celery_app  # noqa: F401
from lobster.api.images import router as images_api_router
from lobster.api.plans import router as plans_api_router
from lobster.api.vms import router as vms_api_router
from lobster.config import settings
from lobster.db import SessionLocal
from lobster.drivers.registry import build_registry, load_sidecar, set_default_registry
from lobster.errors import register_error_handlers
from lobster.logging import configure_logging
from lobster.metrics import observe_request
from lobster.services.common import SESSION_COOKIE_NAME
from lobster.services.payment_service import build_payment_registry
from lobster.services.session_service import SessionService
from lobster.web.admin import router as admin_router
from lobster.web.auth_web import router as auth_web_router
from lobster.web.deps import require_admin
from lobster.web.helpers import client_ip
from lobster.web.panel import router as panel_router
from lobster.web.websockify import router as websockify_router

logger = logging.getLogger(__name__)

_SESSIONLESS_PATHS = ("/health",)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = load_sidecar(settings.drivers_config)
    registry = build_registry(config)
    set_default_registry(registry)
    app.state.registry = registry
    app.state.payments = build_payment_registry(config)
    logger.info("Loaded %d regions: %s", len(registry.regions()), ", ".join(registry.regions()))
    yield


app = FastAPI(title="Lobster", lifespan=lifespan)

configure_logging()
register_error_handlers(app)


def _uses_web_session(request: Request) -> bool:
    path = request.url.path
    if path.startswith(_SESSIONLESS_PATHS):
        return False
    if path.startswith("/api/"):
        # the API only sees the panel session when it is asked to
        return request.headers.get("Authorization", "").startswith("session ")
    return True


@app.middleware("http")
async def session_middleware(request: Request, call_next):
    if not _uses_web_session(request):
        return await call_next(request)

    db = SessionLocal()
    try:
        state = SessionService(db).begin(request.cookies.get(SESSION_COOKIE_NAME), client_ip(request))
        db.commit()
    finally:
        db.close()
    was_logged_in = state.is_logged_in
    request.state.web_session = state

    response = await call_next(request)

    db = SessionLocal()
    try:
        SessionService(db).save(state, was_logged_in)
        db.commit()
    finally:
        db.close()
    response.set_cookie(
        SESSION_COOKIE_NAME,
        state.uid,
        domain=settings.session_domain,
        secure=settings.session_secure,
        httponly=True,
        samesite="lax",
        path="/",
    )
    return response


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    started = perf_counter()
    response = await call_next(request)
    route = request.scope.get("route")
    path = getattr(route, "path", None) or "unmatched"
    observe_request(request.method, path, response.status_code, perf_counter() - started)
    return response


app.include_router(vms_api_router)
app.include_router(images_api_router)
app.include_router(plans_api_router)

app.include_router(auth_web_router)
app.include_router(panel_router)
app.include_router(admin_router)
app.include_router(websockify_router)


@app.get("/health")
def health_check():
    checks = {"db": False, "redis": False}

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        checks["db"] = True
    except Exception:
        logger.warning("Health check: database unreachable", exc_info=True)
    finally:
        db.close()

    try:
        import redis as redis_lib

        client = redis_lib.from_url(settings.redis_url, socket_timeout=2)
        client.ping()
        checks["redis"] = True
    except Exception:
        logger.warning("Health check: redis unreachable")

    all_ok = all(checks.values())
    return {
        "status": "ok" if all_ok else "degraded",
        "checks": checks,
    }


@app.get("/metrics", dependencies=[Depends(require_admin)])
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


def serve() -> None:
    import uvicorn

    host, _, port = settings.http_addr.rpartition(":")
    uvicorn.run("lobster.main:app", host=host or "0.0.0.0", port=int(port), proxy_headers=bool(settings.proxy_header))
