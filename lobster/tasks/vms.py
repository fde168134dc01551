"""
VM Tasks: fire-and-forget provider work for the VM lifecycle.

Every task catches its own failures and reports them to the admin; nothing is
re-raised to the broker.
"""

import logging
import time

from celery import shared_task

from lobster.db import SessionLocal
from lobster.metrics import VMS_PROVISIONED, observe_job

logger = logging.getLogger(__name__)


@shared_task
def provision_vm(vm_id: int, image_identification: str) -> dict:
    """Create the VM at the provider and mark the row active or errored."""
    from lobster.drivers.registry import get_default_registry
    from lobster.errors import ProviderError
    from lobster.models.vm import VirtualMachine, VmStatus
    from lobster.services import email as email_service

    start = time.monotonic()
    with SessionLocal() as db:
        vm = db.get(VirtualMachine, vm_id)
        if vm is None:
            logger.warning("provision_vm: vm %d not found", vm_id)
            return {"success": False, "error": "Not found"}

        driver = get_default_registry().get(vm.region)
        try:
            identification = driver.vm_create(vm, image_identification)
            if not identification:
                raise RuntimeError("driver returned an empty identification")
        except Exception as exc:
            vm.status = VmStatus.error
            db.commit()
            VMS_PROVISIONED.labels(status="error").inc()
            observe_job("provision_vm", "error", time.monotonic() - start)
            email_service.report_error(ProviderError("create", exc, vm.id), "failed to create VM")
            email_service.mail_wrap(db, vm.user_id, "vmCreateError", {"id": vm.id, "name": vm.name}, cc_admin=True)
            return {"success": False, "error": str(exc)}

        vm.identification = identification
        vm.status = VmStatus.active
        db.commit()
        logger.info("Provisioned vm %d as %s", vm.id, identification)
        VMS_PROVISIONED.labels(status="success").inc()
        observe_job("provision_vm", "success", time.monotonic() - start)
        email_service.mail_wrap(db, vm.user_id, "vmCreate", {"id": vm.id, "name": vm.name}, cc_admin=True)
        return {"success": True, "identification": identification}


@shared_task
def delete_vm_at_provider(vm_id: int, region: str, identification: str, metadata: dict) -> dict:
    """Delete a VM whose row is already gone, from a snapshot of its fields."""
    from lobster.drivers.registry import get_default_registry
    from lobster.errors import ProviderError
    from lobster.models.vm import VirtualMachine, VmMetadata
    from lobster.services import email as email_service

    vm = VirtualMachine(
        id=vm_id,
        region=region,
        identification=identification,
        metadata_entries=[VmMetadata(k=k, v=v) for k, v in metadata.items()],
    )
    try:
        get_default_registry().get(region).vm_delete(vm)
    except Exception as exc:
        email_service.report_error(ProviderError("delete", exc, vm_id, identification), "failed to delete VM")
        return {"success": False, "error": str(exc)}
    logger.info("Deleted vm %d (%s) at provider", vm_id, identification)
    return {"success": True}


@shared_task
def suspend_vm(vm_id: int) -> dict:
    """Stop a suspended VM and schedule a check that it went offline."""
    from lobster.config import settings
    from lobster.drivers.registry import get_default_registry
    from lobster.errors import ProviderError
    from lobster.models.vm import VirtualMachine
    from lobster.services import email as email_service

    with SessionLocal() as db:
        vm = db.get(VirtualMachine, vm_id)
        if vm is None:
            return {"success": False, "error": "Not found"}
        try:
            get_default_registry().get(vm.region).vm_stop(vm)
            db.commit()
        except Exception as exc:
            email_service.report_error(ProviderError("stop", exc, vm.id, vm.identification), "failed to stop suspended VM")
            return {"success": False, "error": str(exc)}

    verify_vm_offline.apply_async(args=[vm_id], countdown=settings.suspend_verify_delay_seconds)
    return {"success": True}


@shared_task
def verify_vm_offline(vm_id: int) -> bool:
    from lobster.drivers.registry import get_default_registry
    from lobster.errors import ProviderError
    from lobster.models.vm import VirtualMachine
    from lobster.services import email as email_service

    with SessionLocal() as db:
        vm = db.get(VirtualMachine, vm_id)
        if vm is None:
            return False
        try:
            info = get_default_registry().get(vm.region).vm_info(vm)
        except Exception as exc:
            email_service.report_error(
                ProviderError("info", exc, vm.id, vm.identification), "failed to verify suspended VM"
            )
            return False
        if info.status != "Offline":
            email_service.report_error(
                RuntimeError(f"VM status is {info.status!r} after suspension"),
                "suspended VM did not go offline",
                f"vm_id={vm.id}",
            )
            return False
        return True
