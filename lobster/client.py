"""Client for the signed JSON API of a lobster control plane."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time

import httpx
from pydantic import BaseModel

from lobster.schemas import api as schemas

logger = logging.getLogger(__name__)


class LobsterClientError(Exception):
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")


def sign_request(api_key: str, path: str, nonce: int, body: bytes) -> str:
    """Hex HMAC-SHA512 over ``path|nonce|body``."""
    message = f"{path}|{nonce}|".encode() + body
    return hmac.new(api_key.encode(), message, hashlib.sha512).hexdigest()


def authorization_header(api_id: str, api_key: str, path: str, nonce: int, body: bytes) -> str:
    signature = sign_request(api_key, path, nonce, body)
    return f"lobster {api_id}:{api_key[:64]}:{nonce}:{signature}"


class LobsterClient:
    def __init__(
        self,
        url: str,
        api_id: str,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        # url points at the API root, e.g. https://example.com/api/
        self.url = url.rstrip("/") + "/"
        self.api_id = api_id
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _request(self, method: str, path: str, payload: BaseModel | None = None) -> dict | None:
        body = payload.model_dump_json().encode() if payload is not None else b""
        nonce = time.time_ns()
        headers = {"Authorization": authorization_header(self.api_id, self.api_key, path, nonce, body)}
        if body:
            headers["Content-Type"] = "application/json"
        with httpx.Client(timeout=self.timeout, transport=self.transport) as http_client:
            resp = http_client.request(method, self.url + path, content=body, headers=headers)
        if resp.status_code < 200 or resp.status_code > 204:
            raise LobsterClientError(resp.status_code, resp.text)
        if not resp.content:
            return None
        return json.loads(resp.content)

    def vm_list(self) -> list[schemas.VirtualMachine]:
        data = self._request("GET", "vms")
        return schemas.VMListResponse.model_validate(data or {}).vms

    def vm_create(self, name: str, plan_id: int, image_id: int) -> int:
        data = self._request("POST", "vms", schemas.VMCreateRequest(name=name, plan_id=plan_id, image_id=image_id))
        return schemas.VMCreateResponse.model_validate(data).id

    def vm_info(self, vm_id: int) -> schemas.VMInfoResponse:
        return schemas.VMInfoResponse.model_validate(self._request("GET", f"vms/{vm_id}"))

    def vm_action(self, vm_id: int, action: str, value: str = "") -> dict | None:
        return self._request("POST", f"vms/{vm_id}/action", schemas.VMActionRequest(action=action, value=value))

    def vm_vnc(self, vm_id: int) -> str:
        data = self.vm_action(vm_id, "vnc")
        return schemas.VMVncResponse.model_validate(data).url

    def vm_snapshot(self, vm_id: int, name: str) -> int:
        data = self.vm_action(vm_id, "snapshot", name)
        return schemas.VMSnapshotResponse.model_validate(data).id

    def vm_reimage(self, vm_id: int, image_id: int) -> None:
        self._request("POST", f"vms/{vm_id}/reimage", schemas.VMReimageRequest(image_id=image_id))

    def vm_resize(self, vm_id: int, plan_id: int) -> None:
        self._request("POST", f"vms/{vm_id}/resize", schemas.VMResizeRequest(plan_id=plan_id))

    def vm_delete(self, vm_id: int) -> None:
        self._request("DELETE", f"vms/{vm_id}")

    def vm_addresses(self, vm_id: int) -> list[schemas.IpAddress]:
        data = self._request("GET", f"vms/{vm_id}/ips")
        return schemas.VMAddressesResponse.model_validate(data or {}).addresses

    def vm_add_address(self, vm_id: int) -> None:
        self._request("POST", f"vms/{vm_id}/ips/add")

    def vm_remove_address(self, vm_id: int, ip: str, private_ip: str = "") -> None:
        self._request("POST", f"vms/{vm_id}/ips/remove", schemas.VMAddressRemoveRequest(ip=ip, private_ip=private_ip))

    def vm_set_rdns(self, vm_id: int, ip: str, hostname: str) -> None:
        self._request("POST", f"vms/{vm_id}/ips/{ip}/rdns", schemas.VMAddressRdnsRequest(hostname=hostname))

    def image_list(self) -> list[schemas.Image]:
        data = self._request("GET", "images")
        return schemas.ImageListResponse.model_validate(data or {}).images

    def image_fetch(self, region: str, name: str, url: str, image_format: str) -> int:
        data = self._request(
            "POST",
            "images",
            schemas.ImageFetchRequest(region=region, name=name, url=url, format=image_format),
        )
        return schemas.ImageFetchResponse.model_validate(data).id

    def image_info(self, image_id: int) -> schemas.ImageInfoResponse:
        return schemas.ImageInfoResponse.model_validate(self._request("GET", f"images/{image_id}"))

    def image_delete(self, image_id: int) -> None:
        self._request("DELETE", f"images/{image_id}")

    def plan_list(self) -> list[schemas.Plan]:
        data = self._request("GET", "plans")
        return schemas.PlanListResponse.model_validate(data or {}).plans
