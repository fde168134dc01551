"""
Panel Web Routes: the customer control panel.

GET pages return JSON view models carrying a fresh form token where the page
submits forms. POST handlers consume that token and answer with a 303 to the
next page, passing feedback through ``?message=&type=``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Form, Request
from sqlalchemy.orm import Session

from lobster.api.vms import address_out, details_out, vm_out
from lobster.errors import LobsterError
from lobster.models.user import User
from lobster.services.common import format_credit
from lobster.services.session_service import SessionService, SessionState
from lobster.web.deps import get_db, get_registry, get_web_session, require_form_token, require_panel_user
from lobster.web.helpers import client_ip, ctx, redirect, redirect_message, redirect_success

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/panel")

VM_ACTIONS = ("start", "stop", "reboot", "delete", "vnc", "reimage", "resize", "rename", "snapshot")


def _token(db: Session, session: SessionState) -> str:
    token = SessionService(db).generate_token(session.uid)
    db.commit()
    return token


def _fail(db: Session, path: str, exc: LobsterError):
    db.rollback()
    return redirect_message(path, exc.message)


def _user_out(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email or "",
        "credit": format_credit(user.credit),
        "vm_limit": user.vm_limit,
        "status": user.status.value,
        "admin": user.admin,
    }


def _image_out(image) -> dict:
    return {"id": image.id, "region": image.region, "name": image.name, "status": image.status.value}


def _plan_out(plan) -> dict:
    return {
        "id": plan.id,
        "name": plan.name,
        "price": format_credit(plan.price),
        "ram": plan.ram,
        "cpu": plan.cpu,
        "storage": plan.storage,
        "bandwidth": plan.bandwidth,
    }


# dashboard and VM list


@router.get("/dashboard")
def dashboard(
    request: Request,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user: User = Depends(require_panel_user),
):
    from lobster.services.ledger_service import LedgerService
    from lobster.services.vm_service import VmService

    summary = LedgerService(db).credit_summary(user.id)
    return ctx(
        request,
        "Dashboard",
        user=_user_out(user),
        vms=[vm_out(vm).model_dump() for vm in VmService(db, registry).list_vms(user.id)],
        credit_summary=asdict(summary),
    )


@router.get("/vms")
def vms_page(
    request: Request,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user: User = Depends(require_panel_user),
):
    from lobster.services.vm_service import VmService

    vms = VmService(db, registry).list_vms(user.id)
    return ctx(request, "Virtual Machines", vms=[vm_out(vm).model_dump() for vm in vms])


# VM creation


@router.get("/newvm")
def newvm_page(
    request: Request,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user: User = Depends(require_panel_user),
):
    from lobster.services.region_service import RegionService

    return ctx(request, "New VM", regions=RegionService(db, registry).list())


@router.get("/newvm/{region}")
def newvm_region_page(
    request: Request,
    region: str,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    session: SessionState = Depends(get_web_session),
    user: User = Depends(require_panel_user),
):
    from lobster.services.image_service import ImageService
    from lobster.services.plan_service import PlanService
    from lobster.services.region_service import RegionService

    if not RegionService(db, registry).is_enabled(region):
        return redirect_message("/panel/newvm", LobsterError("invalid_region").message)
    return ctx(
        request,
        "New VM",
        token=_token(db, session),
        region=region,
        plans=[_plan_out(plan) for plan in PlanService(db, registry).list_region(region)],
        images=[_image_out(image) for image in ImageService(db, registry).list_region(user.id, region)],
    )


@router.post("/newvm/{region}", dependencies=[Depends(require_form_token)])
def newvm_submit(
    region: str,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user: User = Depends(require_panel_user),
    name: str = Form(""),
    plan_id: int = Form(0),
    image_id: int = Form(0),
):
    from lobster.services.image_service import ImageService
    from lobster.services.vm_service import VmService

    image = ImageService(db, registry).get(user.id, image_id)
    if image is None or image.region != region:
        return redirect_message(f"/panel/newvm/{region}", LobsterError("invalid_image").message)

    svc = VmService(db, registry)
    try:
        vm_id = svc.create(user.id, name, plan_id, image_id)
    except LobsterError as exc:
        return _fail(db, f"/panel/newvm/{region}", exc)
    db.commit()
    svc.dispatch_pending()
    return redirect(f"/panel/vm/{vm_id}")


# single VM


@router.get("/vm/{vm_id}")
def vm_page(
    request: Request,
    vm_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    session: SessionState = Depends(get_web_session),
    user: User = Depends(require_panel_user),
):
    from lobster.services.image_service import ImageService
    from lobster.services.plan_service import PlanService
    from lobster.services.vm_service import VmService

    svc = VmService(db, registry)
    try:
        vm = svc.get_vm(user.id, vm_id)
    except LobsterError as exc:
        return redirect_message("/panel/vms", exc.message)
    info = svc.load_info(vm)
    addresses = []
    if info.can_addresses:
        try:
            addresses = [address_out(address).model_dump() for address in svc.load_addresses(vm)]
        except LobsterError:
            logger.info("Address listing failed for vm %d", vm.id)
    db.commit()

    return ctx(
        request,
        vm.name,
        token=_token(db, session),
        vm=vm_out(vm).model_dump(),
        details=details_out(info).model_dump(),
        addresses=addresses,
        images=[_image_out(image) for image in ImageService(db, registry).list_region(user.id, vm.region)]
        if info.can_reimage
        else [],
        plans=[_plan_out(plan) for plan in PlanService(db, registry).list_region(vm.region)] if info.can_resize else [],
    )


@router.post("/vm/{vm_id}/action/{name}", dependencies=[Depends(require_form_token)])
def vm_custom_action(
    vm_id: int,
    name: str,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user: User = Depends(require_panel_user),
    value: str = Form(""),
):
    from lobster.services.vm_service import VmService

    svc = VmService(db, registry)
    path = f"/panel/vm/{vm_id}"
    try:
        svc.action(svc.get_vm(user.id, vm_id), name, value)
    except LobsterError as exc:
        return _fail(db, path, exc)
    db.commit()
    return redirect_success(path, "Action executed successfully")


@router.post("/vm/{vm_id}/{action}", dependencies=[Depends(require_form_token)])
def vm_action(
    vm_id: int,
    action: str,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user: User = Depends(require_panel_user),
    name: str = Form(""),
    image_id: int = Form(0),
    plan_id: int = Form(0),
):
    from lobster.services.vm_service import VmService

    path = f"/panel/vm/{vm_id}"
    if action not in VM_ACTIONS:
        return redirect_message(path, LobsterError("operation_unsupported").message)

    svc = VmService(db, registry)
    try:
        vm = svc.get_vm(user.id, vm_id)
        if action == "start":
            svc.start(vm)
        elif action == "stop":
            svc.stop(vm)
        elif action == "reboot":
            svc.reboot(vm)
        elif action == "vnc":
            url = svc.vnc(vm)
            db.commit()
            return redirect(url)
        elif action == "reimage":
            svc.reimage(vm, image_id)
        elif action == "resize":
            svc.resize(vm, plan_id)
        elif action == "rename":
            svc.rename(vm, name)
        elif action == "snapshot":
            image_id = svc.snapshot(vm, name)
            db.commit()
            return redirect_success(f"/panel/image/{image_id}", "Snapshot is being created")
        elif action == "delete":
            svc.delete(vm)
            db.commit()
            svc.dispatch_pending()
            return redirect_success("/panel/vms", "VM deleted")
    except LobsterError as exc:
        return _fail(db, path, exc)
    db.commit()
    return redirect_success(path, f"VM {action} requested")


# billing


@router.get("/billing")
def billing_page(
    request: Request,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    session: SessionState = Depends(get_web_session),
    user: User = Depends(require_panel_user),
):
    from lobster.services.billing_service import BillingService
    from lobster.services.ledger_service import LedgerService

    ledger = LedgerService(db)
    bandwidth = BillingService(db, registry).bandwidth_summary(user.id)
    transactions = [
        {
            "id": transaction.id,
            "gateway": transaction.gateway,
            "notes": transaction.notes,
            "amount": format_credit(transaction.amount),
            "fee": format_credit(transaction.fee),
            "time": transaction.time.isoformat() if transaction.time else "",
        }
        for transaction in ledger.list_transactions(user.id)
    ]
    return ctx(
        request,
        "Billing",
        token=_token(db, session),
        credit_summary=asdict(ledger.credit_summary(user.id)),
        transactions=transactions,
        bandwidth={region: asdict(summary) for region, summary in bandwidth.items()},
        payment_methods=request.app.state.payments.methods(),
    )


@router.post("/pay", dependencies=[Depends(require_form_token)])
def pay(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_panel_user),
    method: str = Form(""),
    amount: float = Form(0),
):
    payments = request.app.state.payments
    try:
        url = payments.handle(db, method, user.id, user.username, amount)
    except LobsterError as exc:
        return _fail(db, "/panel/billing", exc)
    db.commit()
    logger.info("User %d started %s payment of %.2f", user.id, method, amount)
    return redirect(url)


@router.get("/charges")
def charges_current(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_panel_user),
):
    now = datetime.now(UTC)
    return charges_page(request, now.year, now.month, db, user)


@router.get("/charges/{year}/{month}")
def charges_page(
    request: Request,
    year: int,
    month: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_panel_user),
):
    from lobster.services.ledger_service import LedgerService

    if month < 1 or month > 12:
        return redirect_message("/panel/charges", "invalid month")
    charges = [
        {
            "name": charge.name,
            "detail": charge.detail,
            "time": charge.time.isoformat(),
            "amount": format_credit(charge.amount),
        }
        for charge in LedgerService(db).list_charges(user.id, year, month)
    ]
    return ctx(request, "Charges", year=year, month=month, charges=charges)


# images


@router.get("/images")
def images_page(
    request: Request,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    session: SessionState = Depends(get_web_session),
    user: User = Depends(require_panel_user),
):
    from lobster.drivers.base import ImageCapable
    from lobster.services.image_service import ImageService
    from lobster.services.region_service import RegionService

    regions = [
        region for region in RegionService(db, registry).list() if isinstance(registry.get(region), ImageCapable)
    ]
    return ctx(
        request,
        "Images",
        token=_token(db, session),
        images=[_image_out(image) for image in ImageService(db, registry).list(user.id)],
        regions=regions,
    )


@router.post("/images/add", dependencies=[Depends(require_form_token)])
def images_add(
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user: User = Depends(require_panel_user),
    region: str = Form(""),
    name: str = Form(""),
    url: str = Form(""),
    format: str = Form("template"),
):
    from lobster.services.image_service import ImageService

    try:
        image_id = ImageService(db, registry).fetch(user.id, region, name, url, format)
    except LobsterError as exc:
        return _fail(db, "/panel/images", exc)
    db.commit()
    return redirect_success(f"/panel/image/{image_id}", "Image is being fetched")


@router.get("/image/{image_id}")
def image_page(
    request: Request,
    image_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    session: SessionState = Depends(get_web_session),
    user: User = Depends(require_panel_user),
):
    from lobster.services.image_service import ImageService

    result = ImageService(db, registry).info(user.id, image_id)
    if result is None:
        return redirect_message("/panel/images", LobsterError("invalid_image").message)
    image, info = result
    return ctx(
        request,
        image.name,
        token=_token(db, session),
        image=_image_out(image),
        owned=image.user_id == user.id,
        info={"size": info.size, "status": getattr(info.status, "value", info.status), "details": info.details},
    )


@router.post("/image/{image_id}/remove", dependencies=[Depends(require_form_token)])
def image_remove(
    image_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user: User = Depends(require_panel_user),
):
    from lobster.services.image_service import ImageService

    try:
        ImageService(db, registry).delete(user.id, image_id)
    except LobsterError as exc:
        return _fail(db, f"/panel/image/{image_id}", exc)
    db.commit()
    return redirect_success("/panel/images", "Image deleted")


# account


@router.get("/account")
def account_page(
    request: Request,
    db: Session = Depends(get_db),
    session: SessionState = Depends(get_web_session),
    user: User = Depends(require_panel_user),
):
    from lobster.services.api_key_service import ApiKeyService

    keys = [
        {
            "id": key.id,
            "label": key.label,
            "api_id": key.api_id,
            "restrict_action": key.restrict_action or "",
            "restrict_ip": key.restrict_ip or "",
        }
        for key in ApiKeyService(db).list(user.id)
    ]
    return ctx(request, "Account", token=_token(db, session), user=_user_out(user), api_keys=keys)


@router.post("/account/passwd", dependencies=[Depends(require_form_token)])
def account_passwd(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_panel_user),
    old_password: str = Form(""),
    password: str = Form(""),
    password_confirm: str = Form(""),
):
    from lobster.services.auth_service import AuthService

    if password != password_confirm:
        return redirect_message("/panel/account", LobsterError("password_mismatch").message)
    try:
        AuthService(db).change_password(client_ip(request), user.id, old_password, password)
    except LobsterError as exc:
        # failed attempts count against the limiter
        db.commit()
        return redirect_message("/panel/account", exc.message)
    db.commit()
    return redirect_success("/panel/account", "Password changed")


@router.post("/api/add", dependencies=[Depends(require_form_token)])
def api_add(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_panel_user),
    label: str = Form(""),
    restrict_action: str = Form(""),
    restrict_ip: str = Form(""),
):
    from lobster.services.api_key_service import ApiKeyService

    try:
        key = ApiKeyService(db).create(user.id, label, restrict_action, restrict_ip)
    except LobsterError as exc:
        return _fail(db, "/panel/account", exc)
    db.commit()
    # the secret is only ever shown here
    return ctx(request, "API key created", api_key={"id": key.id, "api_id": key.api_id, "api_key": key.api_key})


@router.post("/api/{key_id}/remove", dependencies=[Depends(require_form_token)])
def api_remove(
    key_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_panel_user),
):
    from lobster.services.api_key_service import ApiKeyService

    try:
        ApiKeyService(db).delete(user.id, key_id)
    except LobsterError as exc:
        return _fail(db, "/panel/account", exc)
    db.commit()
    return redirect_success("/panel/account", "API key removed")


@router.get("/token")
def token(
    db: Session = Depends(get_db),
    session: SessionState = Depends(get_web_session),
    user: User = Depends(require_panel_user),
):
    """Issue a form token for the panel's own calls to the session-authenticated API."""
    return {"token": _token(db, session)}
