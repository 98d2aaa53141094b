"""vSphere platform client built on pyVmomi.

Implements the Platform interface against a live vCenter. Every call is
blocking; the async core runs them with asyncio.to_thread. Tasks are
waited on with pyVim's WaitForTask and vSphere faults are translated
into PlatformTaskError / ObjectNotFoundError at this boundary.
"""

from __future__ import annotations

import fnmatch
import logging
from typing import Any

from pyVim.connect import Disconnect, SmartConnect
from pyVim.task import WaitForTask
from pyVmomi import vim, vmodl

from kamino.config import Settings
from kamino.errors import (
    GuestAuthenticationError,
    ObjectNotFoundError,
    PlatformTaskError,
)
from kamino.models import ObjectKind, ObjectRef
from kamino.vsphere.platform import Platform

logger = logging.getLogger(__name__)

_VIM_TYPES: dict[ObjectKind, Any] = {
    ObjectKind.VM: vim.VirtualMachine,
    ObjectKind.FOLDER: vim.Folder,
    ObjectKind.RESOURCE_POOL: vim.ResourcePool,
    ObjectKind.NETWORK: vim.Network,
}

_KIND_LABELS = {
    ObjectKind.VM: "VM",
    ObjectKind.FOLDER: "Folder",
    ObjectKind.RESOURCE_POOL: "Resource pool",
    ObjectKind.NETWORK: "Network",
}

GUEST_TOOLS_RUNNING = "guestToolsRunning"

# Distributed port groups are not plain vim.Network managed objects
DV_PORTGROUP_MOID_PREFIX = "dvportgroup-"


def _kind_of(obj: Any) -> ObjectKind | None:
    """Map a managed object to its ObjectKind, None for unsupported kinds."""
    if isinstance(obj, vim.VirtualMachine):
        return ObjectKind.VM
    if isinstance(obj, vim.Folder):
        return ObjectKind.FOLDER
    if isinstance(obj, vim.ResourcePool):
        return ObjectKind.RESOURCE_POOL
    if isinstance(obj, vim.Network):
        return ObjectKind.NETWORK
    return None


def _fault_message(fault: Exception) -> str:
    return getattr(fault, "msg", None) or str(fault)


class VSpherePlatform(Platform):
    """Platform implementation for VMware vCenter."""

    def __init__(self, service_instance: Any, settings: Settings):
        self._si = service_instance
        self._settings = settings
        self._content = service_instance.RetrieveContent()

        self._datacenter = self._find_managed(vim.Datacenter, settings.datacenter, self._content.rootFolder)
        self._datastore = self._find_managed(vim.Datastore, settings.datastore)
        self._dvs = self._find_managed(vim.DistributedVirtualSwitch, settings.distributed_switch)
        logger.info(
            f"Connected to vCenter {settings.vcenter_host} "
            f"(datacenter={settings.datacenter}, switch={settings.distributed_switch})"
        )

    @classmethod
    def connect(cls, settings: Settings) -> "VSpherePlatform":
        """Open a session against vCenter and resolve the fixed inventory."""
        try:
            si = SmartConnect(
                host=settings.vcenter_host,
                user=settings.vcenter_username,
                pwd=settings.vcenter_password,
                port=settings.vcenter_port,
                disableSslCertValidation=not settings.vcenter_verify_ssl,
            )
        except (vmodl.MethodFault, OSError) as e:
            raise PlatformTaskError(
                f"vCenter connection to {settings.vcenter_host} failed: {_fault_message(e)}"
            ) from e
        return cls(si, settings)

    def close(self) -> None:
        Disconnect(self._si)

    @property
    def instance_uuid(self) -> str:
        return self._content.about.instanceUuid

    # --- Internal helpers ---

    def _ref(self, obj: Any) -> ObjectRef:
        kind = _kind_of(obj)
        if kind is None:
            raise PlatformTaskError(f"Unsupported object type {type(obj).__name__}")
        return ObjectRef(kind=kind, moid=obj._moId, name=obj.name)

    def _obj(self, ref: ObjectRef) -> Any:
        vimtype = _VIM_TYPES[ref.kind]
        if ref.kind is ObjectKind.NETWORK and ref.moid.startswith(DV_PORTGROUP_MOID_PREFIX):
            vimtype = vim.dvs.DistributedVirtualPortgroup
        return vimtype(ref.moid, self._si._stub)

    def _view(self, vimtype: Any, root: Any = None) -> list[Any]:
        if root is None:
            root = self._datacenter
        view = self._content.viewManager.CreateContainerView(root, [vimtype], True)
        try:
            return list(view.view)
        finally:
            view.Destroy()

    def _find_managed(self, vimtype: Any, path: str, root: Any = None) -> Any:
        """Find one object by inventory path or by name (last path element)."""
        name = path.rstrip("/").rsplit("/", 1)[-1]
        for obj in self._view(vimtype, root):
            if obj.name == name:
                return obj
        raise ObjectNotFoundError(vimtype.__name__.rsplit(".", 1)[-1], path)

    def _find(self, kind: ObjectKind, path: str) -> ObjectRef:
        try:
            return self._ref(self._find_managed(_VIM_TYPES[kind], path))
        except ObjectNotFoundError:
            raise ObjectNotFoundError(_KIND_LABELS[kind], path) from None

    def _list(self, kind: ObjectKind, pattern: str) -> list[ObjectRef]:
        matches = [
            self._ref(obj)
            for obj in self._view(_VIM_TYPES[kind])
            if fnmatch.fnmatchcase(obj.name, pattern)
        ]
        if not matches:
            raise ObjectNotFoundError(_KIND_LABELS[kind], pattern)
        return matches

    def _wait(self, task: Any, action: str) -> Any:
        try:
            WaitForTask(task)
        except vmodl.MethodFault as e:
            raise PlatformTaskError(f"{action} failed: {_fault_message(e)}") from e
        return task.info.result

    def _find_snapshot(self, vm: Any, name: str) -> Any | None:
        if vm.snapshot is None:
            return None
        pending = list(vm.snapshot.rootSnapshotList)
        while pending:
            node = pending.pop()
            if node.name == name:
                return node.snapshot
            pending.extend(node.childSnapshotList)
        return None

    def _nic_change(self, vm: Any, label: str, network: ObjectRef) -> Any:
        portgroup = self._obj(network)
        for device in vm.config.hardware.device:
            if isinstance(device, vim.vm.device.VirtualEthernetCard) and device.deviceInfo.label == label:
                device.backing = vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo(
                    port=vim.dvs.PortConnection(
                        portgroupKey=portgroup.key,
                        switchUuid=self._dvs.uuid,
                    )
                )
                return vim.vm.device.VirtualDeviceSpec(
                    operation=vim.vm.device.VirtualDeviceSpec.Operation.edit,
                    device=device,
                )
        raise ObjectNotFoundError("Network adapter", f"{vm.name}/{label}")

    # --- Resource pools ---

    def find_resource_pool(self, path: str) -> ObjectRef:
        return self._find(ObjectKind.RESOURCE_POOL, path)

    def list_resource_pools(self, pattern: str) -> list[ObjectRef]:
        return self._list(ObjectKind.RESOURCE_POOL, pattern)

    def child_resource_pools(self, pool: ObjectRef) -> list[ObjectRef]:
        return [self._ref(child) for child in self._obj(pool).resourcePool]

    def resource_pool_vms(self, pool: ObjectRef) -> list[ObjectRef]:
        return [self._ref(vm) for vm in self._obj(pool).vm]

    def create_resource_pool(self, parent: ObjectRef, name: str) -> ObjectRef:
        allocation = vim.ResourceAllocationInfo(
            shares=vim.SharesInfo(level=vim.SharesInfo.Level.normal, shares=0),
            reservation=0,
            limit=-1,
            expandableReservation=True,
        )
        spec = vim.ResourceConfigSpec(cpuAllocation=allocation, memoryAllocation=allocation)
        try:
            child = self._obj(parent).CreateResourcePool(name=name, spec=spec)
        except vmodl.MethodFault as e:
            raise PlatformTaskError(f"Creating resource pool {name} failed: {_fault_message(e)}") from e
        return self._ref(child)

    # --- Folders ---

    def find_folder(self, path: str) -> ObjectRef:
        return self._find(ObjectKind.FOLDER, path)

    def create_folder(self, parent: ObjectRef, name: str) -> ObjectRef:
        try:
            folder = self._obj(parent).CreateFolder(name)
        except vmodl.MethodFault as e:
            raise PlatformTaskError(f"Creating folder {name} failed: {_fault_message(e)}") from e
        return self._ref(folder)

    def folder_children(self, folder: ObjectRef) -> list[ObjectRef]:
        return [
            self._ref(child)
            for child in self._obj(folder).childEntity
            if _kind_of(child) is not None
        ]

    # --- Networks ---

    def find_network(self, name: str) -> ObjectRef:
        return self._find(ObjectKind.NETWORK, name)

    def list_networks(self, pattern: str) -> list[ObjectRef]:
        return self._list(ObjectKind.NETWORK, pattern)

    def create_port_group(self, name: str, vlan_id: int) -> ObjectRef:
        port_config = vim.dvs.VmwareDistributedVirtualSwitch.VmwarePortConfigPolicy(
            vlan=vim.dvs.VmwareDistributedVirtualSwitch.VlanIdSpec(vlanId=vlan_id, inherited=False)
        )
        spec = vim.dvs.DistributedVirtualPortgroup.ConfigSpec(
            name=name,
            type=vim.dvs.DistributedVirtualPortgroup.PortgroupType.earlyBinding,
            numPorts=128,
            defaultPortConfig=port_config,
        )
        self._wait(self._dvs.AddDVPortgroup_Task([spec]), f"Creating port group {name}")
        return self.find_network(name)

    # --- Generic ---

    def destroy(self, ref: ObjectRef) -> None:
        self._wait(self._obj(ref).Destroy_Task(), f"Destroying {ref.kind.value} {ref.name}")

    def get_attributes(self, ref: ObjectRef) -> dict[str, str]:
        field_names = {f.key: f.name for f in self._content.customFieldsManager.field or []}
        attributes = {}
        for value in self._obj(ref).customValue or []:
            name = field_names.get(value.key)
            if name is not None:
                attributes[name] = getattr(value, "value", "")
        return attributes

    def find_role(self, name: str) -> int:
        for role in self._content.authorizationManager.roleList:
            if role.name == name:
                return role.roleId
        raise ObjectNotFoundError("Role", name)

    def set_permission(
        self,
        ref: ObjectRef,
        principal: str,
        role_id: int,
        propagate: bool = True,
    ) -> None:
        permission = vim.AuthorizationManager.Permission(
            principal=principal,
            group=False,
            roleId=role_id,
            propagate=propagate,
        )
        try:
            self._content.authorizationManager.SetEntityPermissions(
                entity=self._obj(ref), permission=[permission]
            )
        except vmodl.MethodFault as e:
            raise PlatformTaskError(
                f"Assigning role {role_id} to {principal} on {ref.name} failed: {_fault_message(e)}"
            ) from e

    # --- Virtual machines ---

    def find_vm(self, path: str) -> ObjectRef:
        return self._find(ObjectKind.VM, path)

    def guest_os(self, vm: ObjectRef) -> str:
        config = self._obj(vm).config
        return config.guestFullName if config else ""

    def power_on(self, vm: ObjectRef) -> None:
        self._wait(self._obj(vm).PowerOnVM_Task(), f"Powering on {vm.name}")

    def power_off(self, vm: ObjectRef) -> None:
        self._wait(self._obj(vm).PowerOffVM_Task(), f"Powering off {vm.name}")

    def has_snapshot(self, vm: ObjectRef, name: str) -> bool:
        return self._find_snapshot(self._obj(vm), name) is not None

    def create_snapshot(self, vm: ObjectRef, name: str) -> None:
        task = self._obj(vm).CreateSnapshot_Task(name=name, description="", memory=False, quiesce=False)
        self._wait(task, f"Snapshot {name} of {vm.name}")

    def remove_snapshot(self, vm: ObjectRef, name: str) -> None:
        snapshot = self._find_snapshot(self._obj(vm), name)
        if snapshot is None:
            raise ObjectNotFoundError("Snapshot", f"{vm.name}/{name}")
        task = snapshot.RemoveSnapshot_Task(removeChildren=True, consolidate=True)
        self._wait(task, f"Removing snapshot {name} of {vm.name}")

    def revert_snapshot(self, vm: ObjectRef, name: str) -> None:
        snapshot = self._find_snapshot(self._obj(vm), name)
        if snapshot is None:
            raise ObjectNotFoundError("Snapshot", f"{vm.name}/{name}")
        self._wait(snapshot.RevertToSnapshot_Task(suppressPowerOn=True), f"Reverting {vm.name} to {name}")

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
        source_vm = self._obj(source)
        relocate = vim.vm.RelocateSpec(datastore=self._datastore, pool=self._obj(pool))
        spec = vim.vm.CloneSpec(location=relocate, powerOn=False, template=False)

        if snapshot is not None:
            snapshot_obj = self._find_snapshot(source_vm, snapshot)
            if snapshot_obj is None:
                raise ObjectNotFoundError("Snapshot", f"{source.name}/{snapshot}")
            relocate.diskMoveType = "createNewChildDiskBacking"
            spec.snapshot = snapshot_obj

        if network is not None:
            spec.config = vim.vm.ConfigSpec(
                deviceChange=[self._nic_change(source_vm, "Network adapter 1", network)]
            )

        task = source_vm.CloneVM_Task(folder=self._obj(folder), name=name, spec=spec)
        return self._ref(self._wait(task, f"Cloning {source.name} to {name}"))

    def connect_adapters(self, vm: ObjectRef, adapters: dict[str, ObjectRef]) -> None:
        vm_obj = self._obj(vm)
        changes = [self._nic_change(vm_obj, label, network) for label, network in adapters.items()]
        task = vm_obj.ReconfigVM_Task(spec=vim.vm.ConfigSpec(deviceChange=changes))
        self._wait(task, f"Reconfiguring networks of {vm.name}")

    def guest_tools_running(self, vm: ObjectRef) -> bool:
        guest = self._obj(vm).guest
        return guest is not None and guest.toolsRunningStatus == GUEST_TOOLS_RUNNING

    def start_program(
        self,
        vm: ObjectRef,
        username: str,
        password: str,
        program_path: str,
        arguments: str,
    ) -> int:
        process_manager = self._content.guestOperationsManager.processManager
        credentials = vim.vm.guest.NamePasswordAuthentication(username=username, password=password)
        spec = vim.vm.guest.ProcessManager.ProgramSpec(programPath=program_path, arguments=arguments)
        try:
            return process_manager.StartProgramInGuest(vm=self._obj(vm), auth=credentials, spec=spec)
        except (vim.fault.InvalidGuestLogin, vim.fault.GuestAuthenticationChallenge) as e:
            raise GuestAuthenticationError(
                f"Failed to authenticate to guest {vm.name}: {_fault_message(e)}"
            ) from e
        except vmodl.MethodFault as e:
            raise PlatformTaskError(f"Running {program_path} on {vm.name} failed: {_fault_message(e)}") from e
