from __future__ import annotations

import fnmatch
import itertools
import threading

import pytest

from kamino.config import settings
from kamino.errors import (
    GuestAuthenticationError,
    ObjectNotFoundError,
    PlatformTaskError,
)
from kamino.models import ObjectKind, ObjectRef, PortGroupRange
from kamino.network.portgroups import PortGroupAllocator
from kamino.vsphere.platform import Platform

_KIND_LABELS = {
    ObjectKind.VM: "VM",
    ObjectKind.FOLDER: "Folder",
    ObjectKind.RESOURCE_POOL: "Resource pool",
    ObjectKind.NETWORK: "Network",
}


class FakePlatform(Platform):
    """In-memory inventory implementing the Platform contract.

    Objects are looked up by name. ``failures`` maps a method name to the
    object names that method should fail for (PlatformTaskError). destroy()
    is keyed per kind, e.g. "destroy_network".
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self.objects: dict[ObjectKind, dict[str, ObjectRef]] = {kind: {} for kind in ObjectKind}
        self.parent: dict[str, str] = {}  # moid -> parent moid (pool or folder)
        self.pool_of: dict[str, str] = {}  # vm moid -> pool moid
        self.attributes: dict[str, dict[str, str]] = {}
        self.snapshots: dict[str, list[str]] = {}
        self.powered: dict[str, bool] = {}
        self.vlans: dict[str, int] = {}
        self.roles: dict[str, int] = {}
        self.permissions: list[tuple[str, str, int, bool]] = []
        self.clones: list[dict] = []
        self.adapters: dict[str, dict[str, str]] = {}
        self.programs: list[dict] = []
        self.destroyed: list[str] = []
        self.failures: dict[str, set[str]] = {}
        self.tools_running = True
        self.auth_failures = 0

    # --- Test helpers ---

    def _add(self, kind: ObjectKind, name: str, parent: ObjectRef | None = None) -> ObjectRef:
        with self._lock:
            ref = ObjectRef(kind=kind, moid=f"{kind.value}-{next(self._ids)}", name=name)
            self.objects[kind][name] = ref
            if parent is not None:
                self.parent[ref.moid] = parent.moid
            return ref

    def add_pool(self, name: str, parent: ObjectRef | None = None, attributes: dict | None = None) -> ObjectRef:
        ref = self._add(ObjectKind.RESOURCE_POOL, name, parent)
        self.attributes[ref.moid] = dict(attributes or {})
        return ref

    def add_folder(self, name: str, parent: ObjectRef | None = None) -> ObjectRef:
        return self._add(ObjectKind.FOLDER, name, parent)

    def add_network(self, name: str) -> ObjectRef:
        return self._add(ObjectKind.NETWORK, name)

    def add_vm(
        self,
        name: str,
        pool: ObjectRef | None = None,
        folder: ObjectRef | None = None,
        attributes: dict | None = None,
    ) -> ObjectRef:
        ref = self._add(ObjectKind.VM, name, folder)
        with self._lock:
            if pool is not None:
                self.pool_of[ref.moid] = pool.moid
            self.attributes[ref.moid] = dict(attributes or {})
            self.snapshots[ref.moid] = []
            self.powered[ref.moid] = False
        return ref

    def get(self, kind: ObjectKind, name: str) -> ObjectRef:
        return self.objects[kind][name]

    def vm_names(self) -> set[str]:
        return set(self.objects[ObjectKind.VM])

    def fail(self, method: str, *names: str) -> None:
        self.failures.setdefault(method, set()).update(names)

    def _check(self, method: str, name: str) -> None:
        if name in self.failures.get(method, ()):
            raise PlatformTaskError(f"{method} failed for {name}")

    def _lookup(self, kind: ObjectKind, name: str) -> ObjectRef:
        ref = self.objects[kind].get(name)
        if ref is None:
            raise ObjectNotFoundError(_KIND_LABELS[kind], name)
        return ref

    def _list(self, kind: ObjectKind, pattern: str) -> list[ObjectRef]:
        with self._lock:
            matches = [r for n, r in self.objects[kind].items() if fnmatch.fnmatchcase(n, pattern)]
        if not matches:
            raise ObjectNotFoundError(_KIND_LABELS[kind], pattern)
        return matches

    def _children(self, parent: ObjectRef, kind: ObjectKind) -> list[ObjectRef]:
        with self._lock:
            return [r for r in self.objects[kind].values() if self.parent.get(r.moid) == parent.moid]

    # --- Platform contract ---

    @property
    def instance_uuid(self) -> str:
        return "fake-vcenter-uuid"

    def find_resource_pool(self, path: str) -> ObjectRef:
        return self._lookup(ObjectKind.RESOURCE_POOL, path)

    def list_resource_pools(self, pattern: str) -> list[ObjectRef]:
        return self._list(ObjectKind.RESOURCE_POOL, pattern)

    def child_resource_pools(self, pool: ObjectRef) -> list[ObjectRef]:
        return self._children(pool, ObjectKind.RESOURCE_POOL)

    def resource_pool_vms(self, pool: ObjectRef) -> list[ObjectRef]:
        with self._lock:
            return [
                r for r in self.objects[ObjectKind.VM].values()
                if self.pool_of.get(r.moid) == pool.moid
            ]

    def create_resource_pool(self, parent: ObjectRef, name: str) -> ObjectRef:
        self._check("create_resource_pool", name)
        return self.add_pool(name, parent)

    def find_folder(self, path: str) -> ObjectRef:
        return self._lookup(ObjectKind.FOLDER, path)

    def create_folder(self, parent: ObjectRef, name: str) -> ObjectRef:
        self._check("create_folder", name)
        return self.add_folder(name, parent)

    def folder_children(self, folder: ObjectRef) -> list[ObjectRef]:
        return self._children(folder, ObjectKind.FOLDER) + self._children(folder, ObjectKind.VM)

    def find_network(self, name: str) -> ObjectRef:
        return self._lookup(ObjectKind.NETWORK, name)

    def list_networks(self, pattern: str) -> list[ObjectRef]:
        return self._list(ObjectKind.NETWORK, pattern)

    def create_port_group(self, name: str, vlan_id: int) -> ObjectRef:
        self._check("create_port_group", name)
        ref = self.add_network(name)
        self.vlans[name] = vlan_id
        return ref

    def destroy(self, ref: ObjectRef) -> None:
        self._check(f"destroy_{ref.kind.value}", ref.name)
        with self._lock:
            self.objects[ref.kind].pop(ref.name, None)
            if ref.kind is ObjectKind.FOLDER:
                for vm in list(self.objects[ObjectKind.VM].values()):
                    if self.parent.get(vm.moid) == ref.moid:
                        self.objects[ObjectKind.VM].pop(vm.name, None)
            self.destroyed.append(ref.name)

    def get_attributes(self, ref: ObjectRef) -> dict[str, str]:
        self._check("get_attributes", ref.name)
        return dict(self.attributes.get(ref.moid, {}))

    def find_role(self, name: str) -> int:
        if name not in self.roles:
            raise ObjectNotFoundError("Role", name)
        return self.roles[name]

    def set_permission(self, ref: ObjectRef, principal: str, role_id: int, propagate: bool = True) -> None:
        self._check("set_permission", ref.name)
        with self._lock:
            self.permissions.append((ref.name, principal, role_id, propagate))

    def find_vm(self, path: str) -> ObjectRef:
        return self._lookup(ObjectKind.VM, path)

    def guest_os(self, vm: ObjectRef) -> str:
        return "otherLinux64Guest"

    def power_on(self, vm: ObjectRef) -> None:
        self._check("power_on", vm.name)
        self.powered[vm.moid] = True

    def power_off(self, vm: ObjectRef) -> None:
        self._check("power_off", vm.name)
        self.powered[vm.moid] = False

    def has_snapshot(self, vm: ObjectRef, name: str) -> bool:
        return name in self.snapshots.get(vm.moid, [])

    def create_snapshot(self, vm: ObjectRef, name: str) -> None:
        self._check("create_snapshot", vm.name)
        with self._lock:
            self.snapshots.setdefault(vm.moid, []).append(name)

    def remove_snapshot(self, vm: ObjectRef, name: str) -> None:
        with self._lock:
            if name not in self.snapshots.get(vm.moid, []):
                raise ObjectNotFoundError("Snapshot", name)
            self.snapshots[vm.moid].remove(name)

    def revert_snapshot(self, vm: ObjectRef, name: str) -> None:
        self._check("revert_snapshot", vm.name)
        if name not in self.snapshots.get(vm.moid, []):
            raise ObjectNotFoundError("Snapshot", name)

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
        self._check("clone_vm", source.name)
        if snapshot is not None and not self.has_snapshot(source, snapshot):
            raise PlatformTaskError(f"Snapshot {snapshot} not found on {source.name}")
        ref = self.add_vm(name, pool=pool, folder=folder)
        with self._lock:
            self.clones.append({
                "source": source.name,
                "name": name,
                "folder": folder.name,
                "pool": pool.name,
                "snapshot": snapshot,
                "network": network.name if network is not None else None,
            })
        return ref

    def connect_adapters(self, vm: ObjectRef, adapters: dict[str, ObjectRef]) -> None:
        self._check("connect_adapters", vm.name)
        self.adapters[vm.name] = {label: net.name for label, net in adapters.items()}

    def guest_tools_running(self, vm: ObjectRef) -> bool:
        return self.tools_running

    def start_program(
        self,
        vm: ObjectRef,
        username: str,
        password: str,
        program_path: str,
        arguments: str,
    ) -> int:
        with self._lock:
            if self.auth_failures > 0:
                self.auth_failures -= 1
                raise GuestAuthenticationError(f"Guest login to {vm.name} rejected")
            self.programs.append({
                "vm": vm.name,
                "username": username,
                "path": program_path,
                "arguments": arguments,
            })
        return 4242


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    """Short guest timings and a fixed inventory layout for every test."""
    monkeypatch.setattr(settings, "guest_ready_timeout", 2.0)
    monkeypatch.setattr(settings, "guest_poll_interval", 0.01)
    monkeypatch.setattr(settings, "guest_auth_retries", 2)
    monkeypatch.setattr(settings, "guest_auth_backoff", 0.01)
    monkeypatch.setattr(settings, "max_pod_limit", 5)
    monkeypatch.setattr(settings, "max_custom_vms", 10)
    monkeypatch.setattr(settings, "api_secret", "")
    monkeypatch.setattr(settings, "domain", "KAMINO")
    monkeypatch.setattr(settings, "router_program", "/bin/bash")
    monkeypatch.setattr(settings, "router_program_args", "/root/nat.sh {octet} {network}")
    monkeypatch.setattr(settings, "router_username", "root")
    monkeypatch.setattr(settings, "router_password", "router-pw")
    yield


@pytest.fixture()
def platform() -> FakePlatform:
    """Empty fake platform."""
    return FakePlatform()


@pytest.fixture()
def inventory(platform: FakePlatform) -> FakePlatform:
    """Fake platform populated with the default inventory layout.

    Templates:
    - web: natted, no router yet (the catalog creates one), web-db hidden
    - basic: noRouter
    - comp: competition pod, admin only, ships its own router
    Custom template group "Linux" holds ubuntu and kali.
    """
    templates_pool = platform.add_pool(settings.template_resource_pool)
    platform.add_pool(settings.target_resource_pool)
    platform.add_pool(settings.competition_resource_pool)

    template_folder = platform.add_folder(settings.template_folder)
    platform.add_folder(settings.destination_folder)

    platform.add_network(settings.default_wan_port_group)
    platform.add_network(settings.competition_wan_port_group)

    platform.add_vm(settings.router_path)
    platform.add_vm(settings.natted_router_path)

    platform.roles.update({
        settings.clone_role: 10,
        settings.custom_clone_role: 11,
        settings.no_access_role: -5,
    })

    web = platform.add_pool(
        "web", templates_pool, attributes={"goclone.template.natted": "true"}
    )
    platform.add_vm(
        "web-server",
        pool=web,
        attributes={"goclone.vm.username": "student", "goclone.vm.password": "pw"},
    )
    platform.add_vm("web-db", pool=web, attributes={"goclone.vm.isHidden": "True"})

    basic = platform.add_pool(
        "basic", templates_pool, attributes={"goclone.template.noRouter": "true"}
    )
    platform.add_vm("basic-box", pool=basic)

    comp = platform.add_pool(
        "comp",
        templates_pool,
        attributes={
            "goclone.template.competitionPod": "true",
            "goclone.template.adminOnly": "true",
        },
    )
    platform.add_vm("comp-box", pool=comp)
    platform.add_vm("comp-PodRouter", pool=comp)

    linux = platform.add_folder("Linux", template_folder)
    platform.add_vm("ubuntu", folder=linux)
    platform.add_vm("kali", folder=linux)

    return platform


@pytest.fixture()
def allocator(platform: FakePlatform) -> PortGroupAllocator:
    return PortGroupAllocator(
        platform,
        standard=PortGroupRange(settings.starting_port_group, settings.ending_port_group),
        competition=PortGroupRange(
            settings.competition_start_port_group, settings.competition_end_port_group
        ),
        suffix=settings.port_group_suffix,
    )
