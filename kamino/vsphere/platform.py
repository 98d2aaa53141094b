"""Platform client interface used by the provisioning core.

All methods are blocking. Mutating calls start a platform task and wait
for it; a failed call or task raises PlatformTaskError. Lookups raise
ObjectNotFoundError when nothing matches, so callers can tell "no such
object" apart from other failures.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from kamino.models import ObjectRef


class Platform(ABC):
    """Abstract base class for virtualization platform clients."""

    @property
    @abstractmethod
    def instance_uuid(self) -> str:
        """Unique id of the platform server instance."""
        ...

    # --- Resource pools ---

    @abstractmethod
    def find_resource_pool(self, path: str) -> ObjectRef:
        ...

    @abstractmethod
    def list_resource_pools(self, pattern: str) -> list[ObjectRef]:
        """Resource pools whose name matches a glob pattern.

        Raises ObjectNotFoundError when nothing matches.
        """
        ...

    @abstractmethod
    def child_resource_pools(self, pool: ObjectRef) -> list[ObjectRef]:
        ...

    @abstractmethod
    def resource_pool_vms(self, pool: ObjectRef) -> list[ObjectRef]:
        ...

    @abstractmethod
    def create_resource_pool(self, parent: ObjectRef, name: str) -> ObjectRef:
        ...

    # --- Folders ---

    @abstractmethod
    def find_folder(self, path: str) -> ObjectRef:
        ...

    @abstractmethod
    def create_folder(self, parent: ObjectRef, name: str) -> ObjectRef:
        ...

    @abstractmethod
    def folder_children(self, folder: ObjectRef) -> list[ObjectRef]:
        """Direct children of a folder, of any supported kind."""
        ...

    # --- Networks ---

    @abstractmethod
    def find_network(self, name: str) -> ObjectRef:
        ...

    @abstractmethod
    def list_networks(self, pattern: str) -> list[ObjectRef]:
        """Networks whose name matches a glob pattern.

        Raises ObjectNotFoundError when nothing matches.
        """
        ...

    @abstractmethod
    def create_port_group(self, name: str, vlan_id: int) -> ObjectRef:
        """Create a distributed port group on the main switch."""
        ...

    # --- Generic ---

    @abstractmethod
    def destroy(self, ref: ObjectRef) -> None:
        """Destroy a resource pool, folder or network."""
        ...

    @abstractmethod
    def get_attributes(self, ref: ObjectRef) -> dict[str, str]:
        """Custom attributes of an object as {name: value}."""
        ...

    @abstractmethod
    def find_role(self, name: str) -> int:
        ...

    @abstractmethod
    def set_permission(
        self,
        ref: ObjectRef,
        principal: str,
        role_id: int,
        propagate: bool = True,
    ) -> None:
        ...

    # --- Virtual machines ---

    @abstractmethod
    def find_vm(self, path: str) -> ObjectRef:
        ...

    @abstractmethod
    def guest_os(self, vm: ObjectRef) -> str:
        ...

    @abstractmethod
    def power_on(self, vm: ObjectRef) -> None:
        ...

    @abstractmethod
    def power_off(self, vm: ObjectRef) -> None:
        ...

    @abstractmethod
    def has_snapshot(self, vm: ObjectRef, name: str) -> bool:
        ...

    @abstractmethod
    def create_snapshot(self, vm: ObjectRef, name: str) -> None:
        ...

    @abstractmethod
    def remove_snapshot(self, vm: ObjectRef, name: str) -> None:
        ...

    @abstractmethod
    def revert_snapshot(self, vm: ObjectRef, name: str) -> None:
        ...

    @abstractmethod
    def clone_vm(
        self,
        source: ObjectRef,
        folder: ObjectRef,
        name: str,
        pool: ObjectRef,
        *,
        snapshot: str | None = None,
        network: ObjectRef | None = None,
    ) -> ObjectRef:
        """Clone a VM into a folder and resource pool.

        Args:
            snapshot: Create a linked clone from this snapshot when set,
                otherwise a full clone.
            network: Attach "Network adapter 1" of the clone to this network.
        """
        ...

    @abstractmethod
    def connect_adapters(self, vm: ObjectRef, adapters: dict[str, ObjectRef]) -> None:
        """Reconfigure network adapters, keyed by device label."""
        ...

    @abstractmethod
    def guest_tools_running(self, vm: ObjectRef) -> bool:
        ...

    @abstractmethod
    def start_program(
        self,
        vm: ObjectRef,
        username: str,
        password: str,
        program_path: str,
        arguments: str,
    ) -> int:
        """Start a program in the guest and return its pid.

        Raises GuestAuthenticationError when the guest rejects the login.
        """
        ...
