"""
Admin Web Routes: operator views over users, plans, images and regions.

Every route depends on ``require_admin``, which also ends any impersonation
the session is carrying.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Form, Request
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from lobster.api.vms import vm_out
from lobster.errors import LobsterError
from lobster.models.user import User
from lobster.services.common import BILLING_PRECISION, format_credit
from lobster.services.session_service import SessionService, SessionState
from lobster.web.deps import get_db, get_registry, get_web_session, require_admin, require_form_token
from lobster.web.helpers import ctx, redirect, redirect_message, redirect_success

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")


def _token(db: Session, session: SessionState) -> str:
    token = SessionService(db).generate_token(session.uid)
    db.commit()
    return token


def _fail(db: Session, path: str, exc: LobsterError):
    db.rollback()
    return redirect_message(path, exc.message)


def _user_row(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email or "",
        "credit": format_credit(user.credit),
        "vm_limit": user.vm_limit,
        "status": user.status.value,
        "admin": user.admin,
        "create_time": user.create_time.isoformat() if user.create_time else "",
    }


@router.get("/dashboard")
def dashboard(
    request: Request,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    admin: User = Depends(require_admin),
):
    from lobster.models.billing import Transaction
    from lobster.models.vm import VirtualMachine
    from lobster.services.region_service import RegionService

    return ctx(
        request,
        "Admin",
        users=db.scalar(select(func.count(User.id))),
        vms=db.scalar(select(func.count(VirtualMachine.id))),
        deposits=format_credit(db.scalar(select(func.coalesce(func.sum(Transaction.amount), 0)))),
        regions=RegionService(db, registry).list_all(),
    )


# users


@router.get("/users")
def users_page(request: Request, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    from lobster.services.user_service import UserService

    return ctx(request, "Users", users=[_user_row(user) for user in UserService(db).list()])


@router.get("/user/{user_id}")
def user_page(
    request: Request,
    user_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    session: SessionState = Depends(get_web_session),
    admin: User = Depends(require_admin),
):
    from lobster.services.ledger_service import LedgerService
    from lobster.services.user_service import UserService
    from lobster.services.vm_service import VmService

    try:
        user = UserService(db).get(user_id)
    except LobsterError as exc:
        return redirect_message("/admin/users", exc.message)
    transactions = [
        {"id": t.id, "gateway": t.gateway, "amount": format_credit(t.amount), "notes": t.notes}
        for t in LedgerService(db).list_transactions(user.id)
    ]
    return ctx(
        request,
        user.username,
        token=_token(db, session),
        user=_user_row(user),
        vms=[vm_out(vm).model_dump() for vm in VmService(db, registry).list_vms(user.id)],
        transactions=transactions,
    )


@router.post("/user/{user_id}/login", dependencies=[Depends(require_form_token)])
def user_login(
    user_id: int,
    db: Session = Depends(get_db),
    session: SessionState = Depends(get_web_session),
    admin: User = Depends(require_admin),
):
    from lobster.services.user_service import UserService

    try:
        user = UserService(db).get(user_id)
    except LobsterError as exc:
        return redirect_message("/admin/users", exc.message)
    session.original_id = admin.id
    session.user_id = user.id
    logger.info("Admin %d is now acting as user %d", admin.id, user.id)
    return redirect("/panel/dashboard")


@router.post("/user/{user_id}/credit", dependencies=[Depends(require_form_token)])
def user_credit(
    user_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    admin: User = Depends(require_admin),
    amount: float = Form(0),
    description: str = Form(""),
):
    from lobster.services.user_service import UserService

    path = f"/admin/user/{user_id}"
    if not amount:
        return redirect_message(path, LobsterError("invalid_amount").message)
    try:
        UserService(db, registry).credit(user_id, amount, description or "Credit adjustment")
    except LobsterError as exc:
        return _fail(db, path, exc)
    db.commit()
    return redirect_success(path, "Credit applied")


@router.post("/user/{user_id}/password", dependencies=[Depends(require_form_token)])
def user_password(
    user_id: int,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    password: str = Form(""),
    password_confirm: str = Form(""),
):
    from lobster.services.user_service import UserService

    path = f"/admin/user/{user_id}"
    try:
        UserService(db).set_password(user_id, password, password_confirm)
    except LobsterError as exc:
        return _fail(db, path, exc)
    db.commit()
    return redirect_success(path, "Password updated")


@router.post("/user/{user_id}/disable", dependencies=[Depends(require_form_token)])
def user_disable(user_id: int, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    from lobster.services.user_service import UserService

    path = f"/admin/user/{user_id}"
    try:
        UserService(db).disable(user_id)
    except LobsterError as exc:
        return _fail(db, path, exc)
    db.commit()
    return redirect_success(path, "User disabled")


@router.post("/user/{user_id}/enable", dependencies=[Depends(require_form_token)])
def user_enable(user_id: int, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    from lobster.services.user_service import UserService

    path = f"/admin/user/{user_id}"
    try:
        UserService(db).enable(user_id)
    except LobsterError as exc:
        return _fail(db, path, exc)
    db.commit()
    return redirect_success(path, "User enabled")


# plans


@router.get("/plans")
def plans_page(
    request: Request,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    session: SessionState = Depends(get_web_session),
    admin: User = Depends(require_admin),
):
    from lobster.services.plan_service import PlanService

    plans = [
        {
            "id": plan.id,
            "name": plan.name,
            "price": format_credit(plan.price),
            "ram": plan.ram,
            "cpu": plan.cpu,
            "storage": plan.storage,
            "bandwidth": plan.bandwidth,
            "global": plan.is_global,
            "regions": {binding.region: binding.identification for binding in plan.region_bindings},
        }
        for plan in PlanService(db, registry).list()
    ]
    return ctx(request, "Plans", token=_token(db, session), plans=plans, regions=registry.regions())


@router.post("/plans/add", dependencies=[Depends(require_form_token)])
def plans_add(
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    admin: User = Depends(require_admin),
    name: str = Form(""),
    price: float = Form(0),
    ram: int = Form(0),
    cpu: int = Form(0),
    storage: int = Form(0),
    bandwidth: int = Form(0),
    is_global: bool = Form(True, alias="global"),
):
    from lobster.services.plan_service import PlanService

    try:
        PlanService(db, registry).create(
            name, int(price * BILLING_PRECISION), ram, cpu, storage, bandwidth, is_global=is_global
        )
    except LobsterError as exc:
        return _fail(db, "/admin/plans", exc)
    db.commit()
    return redirect_success("/admin/plans", "Plan created")


@router.post("/plan/{plan_id}/delete", dependencies=[Depends(require_form_token)])
def plan_delete(
    plan_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    admin: User = Depends(require_admin),
):
    from lobster.services.plan_service import PlanService

    try:
        PlanService(db, registry).delete(plan_id)
    except LobsterError as exc:
        return _fail(db, "/admin/plans", exc)
    db.commit()
    return redirect_success("/admin/plans", "Plan deleted")


@router.post("/plan/{plan_id}/associate", dependencies=[Depends(require_form_token)])
def plan_associate(
    plan_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    admin: User = Depends(require_admin),
    region: str = Form(""),
    identification: str = Form(""),
    remove: bool = Form(False),
):
    from lobster.services.plan_service import PlanService

    svc = PlanService(db, registry)
    try:
        if remove:
            svc.deassociate_region(plan_id, region)
        else:
            svc.associate_region(plan_id, region, identification)
    except LobsterError as exc:
        return _fail(db, "/admin/plans", exc)
    db.commit()
    return redirect_success("/admin/plans", "Plan regions updated")


@router.post("/plans/autopopulate", dependencies=[Depends(require_form_token)])
def plans_autopopulate(
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    admin: User = Depends(require_admin),
    region: str = Form(""),
):
    from lobster.services.plan_service import PlanService

    try:
        added = PlanService(db, registry).autopopulate(region)
    except LobsterError as exc:
        return _fail(db, "/admin/plans", exc)
    db.commit()
    return redirect_success("/admin/plans", f"Imported {added} plans")


# images


@router.get("/images")
def images_page(
    request: Request,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    session: SessionState = Depends(get_web_session),
    admin: User = Depends(require_admin),
):
    from lobster.services.image_service import ImageService

    images = [
        {
            "id": image.id,
            "user_id": image.user_id,
            "region": image.region,
            "name": image.name,
            "identification": image.identification,
            "status": image.status.value,
        }
        for image in ImageService(db, registry).list_all()
    ]
    return ctx(request, "Images", token=_token(db, session), images=images, regions=registry.regions())


@router.post("/images/add", dependencies=[Depends(require_form_token)])
def images_add(
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    admin: User = Depends(require_admin),
    name: str = Form(""),
    region: str = Form(""),
    identification: str = Form(""),
):
    from lobster.services.image_service import ImageService

    if not name:
        return redirect_message("/admin/images", LobsterError("invalid_name").message)
    try:
        ImageService(db, registry).add(name, region, identification)
    except LobsterError as exc:
        return _fail(db, "/admin/images", exc)
    db.commit()
    return redirect_success("/admin/images", "Image added")


@router.post("/image/{image_id}/delete", dependencies=[Depends(require_form_token)])
def image_delete(
    image_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    admin: User = Depends(require_admin),
):
    from lobster.services.image_service import ImageService

    try:
        ImageService(db, registry).delete_force(image_id)
    except LobsterError as exc:
        return _fail(db, "/admin/images", exc)
    db.commit()
    return redirect_success("/admin/images", "Image deleted")


@router.post("/images/autopopulate", dependencies=[Depends(require_form_token)])
def images_autopopulate(
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    admin: User = Depends(require_admin),
    region: str = Form(""),
):
    from lobster.services.image_service import ImageService

    try:
        added = ImageService(db, registry).autopopulate(region)
    except LobsterError as exc:
        return _fail(db, "/admin/images", exc)
    db.commit()
    return redirect_success("/admin/images", f"Imported {added} images")


# regions


@router.get("/regions")
def regions_page(
    request: Request,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    session: SessionState = Depends(get_web_session),
    admin: User = Depends(require_admin),
):
    from lobster.services.region_service import RegionService

    return ctx(request, "Regions", token=_token(db, session), regions=RegionService(db, registry).list_all())


@router.post("/region/{name}/{op}", dependencies=[Depends(require_form_token)])
def region_toggle(
    name: str,
    op: str,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    admin: User = Depends(require_admin),
):
    from lobster.services.region_service import RegionService

    svc = RegionService(db, registry)
    try:
        if op == "enable":
            svc.enable(name)
        elif op == "disable":
            svc.disable(name)
        else:
            raise LobsterError("operation_unsupported")
    except LobsterError as exc:
        return _fail(db, "/admin/regions", exc)
    db.commit()
    return redirect_success("/admin/regions", f"Region {name} {op}d")


# VM suspension


@router.post("/vm/{vm_id}/{op}", dependencies=[Depends(require_form_token)])
def vm_suspension(
    vm_id: int,
    op: str,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    admin: User = Depends(require_admin),
):
    from lobster.services.vm_service import VmService

    svc = VmService(db, registry)
    path = "/admin/users"
    try:
        vm = svc.get_vm_any(vm_id)
        path = f"/admin/user/{vm.user_id}"
        if op == "suspend":
            svc.suspend(vm, auto=False)
        elif op == "unsuspend":
            svc.unsuspend(vm)
        else:
            raise LobsterError("operation_unsupported")
    except LobsterError as exc:
        return _fail(db, path, exc)
    db.commit()
    svc.dispatch_pending()
    return redirect_success(path, f"VM {op}ed")
