from __future__ import annotations

from pydantic import BaseModel, Field

# requests


class VMCreateRequest(BaseModel):
    name: str
    plan_id: int
    image_id: int


class VMActionRequest(BaseModel):
    action: str
    value: str = ""


class VMReimageRequest(BaseModel):
    image_id: int


class VMResizeRequest(BaseModel):
    plan_id: int


class VMAddressRemoveRequest(BaseModel):
    ip: str
    private_ip: str = ""


class VMAddressRdnsRequest(BaseModel):
    hostname: str


class ImageFetchRequest(BaseModel):
    region: str
    name: str
    url: str
    format: str = "template"


# objects


class VirtualMachine(BaseModel):
    id: int
    plan_id: int
    region: str
    name: str
    status: str
    task_pending: bool
    external_ip: str
    private_ip: str
    created_time: int


class VirtualMachineAction(BaseModel):
    action: str
    name: str
    options: dict[str, str] | None = None
    description: str = ""
    dangerous: bool = False


class VirtualMachineDetails(BaseModel):
    ip: str = ""
    private_ip: str = ""
    status: str = ""
    hostname: str = ""
    bandwidth_used: int = 0
    login_details: str = ""
    details: dict[str, str] = Field(default_factory=dict)
    actions: list[VirtualMachineAction] = Field(default_factory=list)
    can_vnc: bool = False
    can_rename: bool = False
    can_reimage: bool = False
    can_snapshot: bool = False
    can_resize: bool = False
    can_addresses: bool = False


class IpAddress(BaseModel):
    ip: str
    private_ip: str = ""
    can_rdns: bool = False
    hostname: str = ""


class Image(BaseModel):
    id: int
    region: str
    name: str
    status: str


class ImageDetails(BaseModel):
    size: int = 0
    status: str = "unknown"
    details: dict[str, str] = Field(default_factory=dict)


class Plan(BaseModel):
    id: int
    name: str
    price: int
    ram: int
    cpu: int
    storage: int
    bandwidth: int


# responses


class VMListResponse(BaseModel):
    vms: list[VirtualMachine] = Field(default_factory=list)


class VMCreateResponse(BaseModel):
    id: int


class VMInfoResponse(BaseModel):
    vm: VirtualMachine
    details: VirtualMachineDetails


class VMVncResponse(BaseModel):
    url: str


class VMSnapshotResponse(BaseModel):
    id: int


class VMAddressesResponse(BaseModel):
    addresses: list[IpAddress] = Field(default_factory=list)


class ImageListResponse(BaseModel):
    images: list[Image] = Field(default_factory=list)


class ImageFetchResponse(BaseModel):
    id: int


class ImageInfoResponse(BaseModel):
    image: Image
    details: ImageDetails


class PlanListResponse(BaseModel):
    plans: list[Plan] = Field(default_factory=list)
