"""Request and response models for the Kamino HTTP API."""

from pydantic import BaseModel, Field


# --- Pods ---

class PodOut(BaseModel):
    """A live pod."""
    name: str
    resource_group: str
    server_guid: str


class PodListResponse(BaseModel):
    pods: list[PodOut] = Field(default_factory=list)


class TemplateCloneRequest(BaseModel):
    """Provision a pod from a preset template."""
    template: str


class CustomCloneRequest(BaseModel):
    """Provision a pod from a hand-picked set of VM images."""
    name: str
    vms: list[str] = Field(default_factory=list)
    nat: bool = False


class PodCreatedResponse(BaseModel):
    pod_id: str


class PodDeletedResponse(BaseModel):
    status: str = "deleted"
    pod_id: str


# --- Templates ---

class TemplateListResponse(BaseModel):
    templates: list[str] = Field(default_factory=list)


class CustomTemplateGroupOut(BaseModel):
    name: str
    vms: list[str] = Field(default_factory=list)


class CustomTemplateListResponse(BaseModel):
    groups: list[CustomTemplateGroupOut] = Field(default_factory=list)


class RefreshResponse(BaseModel):
    """Result of reloading the template catalog."""
    templates: int
    failed: list[str] = Field(default_factory=list)


# --- Admin bulk operations ---

class BulkCloneRequest(BaseModel):
    template: str
    usernames: list[str] = Field(default_factory=list)


class BulkFilterRequest(BaseModel):
    """Select pods whose name contains any of the filters."""
    filters: list[str] = Field(default_factory=list)


class BulkRevertRequest(BulkFilterRequest):
    snapshot: str = "Base"


class BulkPowerRequest(BulkFilterRequest):
    power_on: bool


class BulkResponse(BaseModel):
    """Targets (pods or VMs) handled by a bulk operation."""
    handled: list[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: str
    category: str
    failed: list[str] | None = None
