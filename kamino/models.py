"""Data model shared by the catalog, provisioner and lifecycle manager."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

# Substring that marks a VM as a pod router
ROUTER_MARKER = "PodRouter"


class ObjectKind(str, Enum):
    """Platform object kinds the core handles."""
    VM = "vm"
    FOLDER = "folder"
    RESOURCE_POOL = "resource_pool"
    NETWORK = "network"


@dataclass(frozen=True)
class ObjectRef:
    """Reference to one platform object.

    ``moid`` is the platform's managed object id; ``name`` is cached from
    the lookup that produced the reference.
    """
    kind: ObjectKind
    moid: str
    name: str

    @property
    def is_vm(self) -> bool:
        return self.kind is ObjectKind.VM

    @property
    def is_folder(self) -> bool:
        return self.kind is ObjectKind.FOLDER


@dataclass(frozen=True)
class PortGroupRange:
    """Half-open range [start, end) of port group numbers."""
    start: int
    end: int

    def __contains__(self, number: int) -> bool:
        return self.start <= number < self.end

    def overlaps(self, other: PortGroupRange) -> bool:
        return self.start < other.end and other.start < self.end

    def __iter__(self):
        return iter(range(self.start, self.end))


@dataclass(frozen=True)
class VMDescriptor:
    """A VM owned by a template (catalog) or a pod (live instance)."""
    name: str
    ref: ObjectRef
    username: str = ""
    password: str = ""
    is_router: bool = False
    is_hidden: bool = False
    guest_os: str = ""

    def __repr__(self) -> str:
        # Keep guest credentials out of logs
        return (
            f"VMDescriptor(name={self.name!r}, is_router={self.is_router}, "
            f"is_hidden={self.is_hidden}, guest_os={self.guest_os!r})"
        )


@dataclass(frozen=True)
class Template:
    """A catalog entry used to stamp out pods."""
    name: str
    source_pool: ObjectRef
    vms: tuple[VMDescriptor, ...] = ()
    natted: bool = False
    no_router: bool = False
    competition_pod: bool = False
    admin_only: bool = False
    wan_network: ObjectRef | None = None

    @property
    def router(self) -> VMDescriptor | None:
        for vm in self.vms:
            if vm.is_router:
                return vm
        return None

    @property
    def hidden_vms(self) -> list[VMDescriptor]:
        return [vm for vm in self.vms if vm.is_hidden]


@dataclass
class CustomTemplateGroup:
    """A folder of standalone VM images selectable for custom pods."""
    name: str
    vms: list[str] = field(default_factory=list)


@dataclass
class Pod:
    """A live pod, reconstructed from its resource pool."""
    name: str
    resource_group: str
    server_guid: str
