"""VM API: the signed JSON surface for virtual machines."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from lobster.api.deps import get_db, get_registry, require_api_user
from lobster.drivers.base import IpAddress, VmInfo
from lobster.models.vm import VirtualMachine
from lobster.schemas import api as schemas
from lobster.services.common import as_utc

router = APIRouter(prefix="/api/vms", tags=["vms"])


def vm_out(vm: VirtualMachine) -> schemas.VirtualMachine:
    return schemas.VirtualMachine(
        id=vm.id,
        plan_id=vm.plan_id,
        region=vm.region,
        name=vm.name,
        status=vm.status.value,
        task_pending=vm.task_pending,
        external_ip=vm.external_ip,
        private_ip=vm.private_ip,
        created_time=int(as_utc(vm.created_time).timestamp()) if vm.created_time else 0,
    )


def details_out(info: VmInfo) -> schemas.VirtualMachineDetails:
    data = asdict(info)
    data.pop("override_capabilities")
    return schemas.VirtualMachineDetails.model_validate(data)


def address_out(address: IpAddress) -> schemas.IpAddress:
    return schemas.IpAddress.model_validate(asdict(address))


@router.get("", response_model=schemas.VMListResponse)
def list_vms(
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user_id: int = Depends(require_api_user),
):
    from lobster.services.vm_service import VmService

    return schemas.VMListResponse(vms=[vm_out(vm) for vm in VmService(db, registry).list_vms(user_id)])


@router.post("", response_model=schemas.VMCreateResponse, status_code=status.HTTP_201_CREATED)
def create_vm(
    payload: schemas.VMCreateRequest,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user_id: int = Depends(require_api_user),
):
    from lobster.services.vm_service import VmService

    svc = VmService(db, registry)
    vm_id = svc.create(user_id, payload.name, payload.plan_id, payload.image_id)
    db.commit()
    svc.dispatch_pending()
    return schemas.VMCreateResponse(id=vm_id)


@router.get("/{vm_id}", response_model=schemas.VMInfoResponse)
def get_vm(
    vm_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user_id: int = Depends(require_api_user),
):
    from lobster.services.vm_service import VmService

    svc = VmService(db, registry)
    vm = svc.get_vm(user_id, vm_id)
    info = svc.load_info(vm)
    db.commit()
    return schemas.VMInfoResponse(vm=vm_out(vm), details=details_out(info))


@router.post("/{vm_id}/action")
def vm_action(
    vm_id: int,
    payload: schemas.VMActionRequest,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user_id: int = Depends(require_api_user),
):
    from lobster.services.vm_service import VmService

    svc = VmService(db, registry)
    vm = svc.get_vm(user_id, vm_id)
    response = None
    if payload.action == "start":
        svc.start(vm)
    elif payload.action == "stop":
        svc.stop(vm)
    elif payload.action == "reboot":
        svc.reboot(vm)
    elif payload.action == "vnc":
        response = schemas.VMVncResponse(url=svc.vnc(vm))
    elif payload.action == "rename":
        svc.rename(vm, payload.value)
    elif payload.action == "snapshot":
        response = schemas.VMSnapshotResponse(id=svc.snapshot(vm, payload.value))
    else:
        svc.action(vm, payload.action, payload.value)
    db.commit()
    return response


@router.post("/{vm_id}/reimage")
def reimage_vm(
    vm_id: int,
    payload: schemas.VMReimageRequest,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user_id: int = Depends(require_api_user),
):
    from lobster.services.vm_service import VmService

    svc = VmService(db, registry)
    svc.reimage(svc.get_vm(user_id, vm_id), payload.image_id)
    db.commit()
    return None


@router.post("/{vm_id}/resize")
def resize_vm(
    vm_id: int,
    payload: schemas.VMResizeRequest,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user_id: int = Depends(require_api_user),
):
    from lobster.services.vm_service import VmService

    svc = VmService(db, registry)
    svc.resize(svc.get_vm(user_id, vm_id), payload.plan_id)
    db.commit()
    return None


@router.delete("/{vm_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_vm(
    vm_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user_id: int = Depends(require_api_user),
):
    from lobster.services.vm_service import VmService

    svc = VmService(db, registry)
    svc.delete(svc.get_vm(user_id, vm_id))
    db.commit()
    svc.dispatch_pending()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{vm_id}/ips", response_model=schemas.VMAddressesResponse)
def list_addresses(
    vm_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user_id: int = Depends(require_api_user),
):
    from lobster.services.vm_service import VmService

    svc = VmService(db, registry)
    addresses = svc.load_addresses(svc.get_vm(user_id, vm_id))
    return schemas.VMAddressesResponse(addresses=[address_out(address) for address in addresses])


@router.post("/{vm_id}/ips/add")
def add_address(
    vm_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user_id: int = Depends(require_api_user),
):
    from lobster.services.vm_service import VmService

    svc = VmService(db, registry)
    svc.add_address(svc.get_vm(user_id, vm_id))
    db.commit()
    return None


@router.post("/{vm_id}/ips/remove")
def remove_address(
    vm_id: int,
    payload: schemas.VMAddressRemoveRequest,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user_id: int = Depends(require_api_user),
):
    from lobster.services.vm_service import VmService

    svc = VmService(db, registry)
    svc.remove_address(svc.get_vm(user_id, vm_id), payload.ip, payload.private_ip)
    db.commit()
    return None


@router.post("/{vm_id}/ips/{ip}/rdns")
def set_rdns(
    vm_id: int,
    ip: str,
    payload: schemas.VMAddressRdnsRequest,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user_id: int = Depends(require_api_user),
):
    from lobster.services.vm_service import VmService

    svc = VmService(db, registry)
    svc.set_rdns(svc.get_vm(user_id, vm_id), ip, payload.hostname)
    db.commit()
    return None
