"""Pod provisioning.

A pod is stamped out in a fixed order: admission control, port group
number reservation, containers (resource pool, port group, VM folder),
concurrent clones, router wiring, NAT program, Base snapshots, then
permissions. A failure before the port group exists gives the reserved
number back once no resource pool named after it is left behind;
anything later leaves the partial pod in place for an admin to destroy
(which releases the number).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from kamino.catalog import CLONE_SNAPSHOT, TemplateCatalog
from kamino.config import settings
from kamino.errors import (
    BulkOperationError,
    ObjectNotFoundError,
    PodLimitExceededError,
    PodValidationError,
)
from kamino.metrics import track_operation
from kamino.models import ObjectRef, PortGroupRange, Template
from kamino.naming import (
    POD_ID_SEPARATOR,
    clone_name,
    is_pod_owner,
    owner_pattern,
    pod_id,
    port_group_name,
    router_name,
)
from kamino.network.portgroups import PortGroupAllocator
from kamino.utils.async_tasks import first_error, gather_bounded
from kamino.vsphere.platform import Platform
from kamino.vsphere.vm import VMHandle

logger = logging.getLogger(__name__)

# Snapshot taken on every clone once the pod is wired up
BASE_SNAPSHOT = "Base"

# Octets a NAT router can hand out per range
MAX_NAT_OFFSET = 255


def nat_octet(number: int, standard: PortGroupRange, competition: PortGroupRange) -> int:
    """Third octet the router NAT program uses for a pod network.

    The octet is the 1-based offset of ``number`` within its range.

    Raises:
        PodValidationError: number is in neither range, or too far from
            the start of its range to fit in one octet
    """
    for pg_range in (standard, competition):
        if number in pg_range:
            offset = number - pg_range.start
            if offset > MAX_NAT_OFFSET:
                break
            return offset + 1
    raise PodValidationError(f"Port group {number} out of range for NAT")


def network_prefix(network_id: str) -> str:
    """First two octets of a network id ("172.16.0.0" -> "172.16")."""
    octets = network_id.split(".")
    if len(octets) < 2:
        raise PodValidationError(f"Invalid network id '{network_id}'")
    return ".".join(octets[:2])


def router_program_arguments(template: str, octet: int, prefix: str) -> str:
    """Fill the router program argument template."""
    return template.format(octet=octet, network=prefix)


def principal(username: str) -> str:
    return f"{settings.domain}\\{username}"


@dataclass
class PodContainers:
    """Platform containers created for one pod."""
    pod_id: str
    number: int
    resource_pool: ObjectRef
    port_group: ObjectRef
    folder: ObjectRef


class PodProvisioner:
    """Creates pods from catalog templates or ad-hoc VM selections."""

    def __init__(
        self,
        platform: Platform,
        catalog: TemplateCatalog,
        allocator: PortGroupAllocator,
    ):
        self._platform = platform
        self._catalog = catalog
        self._allocator = allocator

    # --- Admission control ---

    async def count_pods(self, username: str) -> int:
        try:
            pools = await asyncio.to_thread(
                self._platform.list_resource_pools, owner_pattern(username)
            )
        except ObjectNotFoundError:
            return 0
        return sum(1 for pool in pools if is_pod_owner(pool.name, username))

    async def check_pod_limit(self, username: str) -> None:
        """Raise PodLimitExceededError when the user is at the pod limit."""
        count = await self.count_pods(username)
        if count >= settings.max_pod_limit:
            raise PodLimitExceededError(username, settings.max_pod_limit)

    # --- Containers ---

    async def _ensure_resource_pool(self, name: str, competition: bool) -> tuple[ObjectRef, bool]:
        """Find or create the pod's resource pool.

        Returns the pool and whether this call created it.
        """
        try:
            pool = await asyncio.to_thread(self._platform.find_resource_pool, name)
            logger.info(f"Reusing existing resource pool {name}")
            return pool, False
        except ObjectNotFoundError:
            pass
        parent_path = (
            settings.competition_resource_pool if competition else settings.target_resource_pool
        )
        parent = await asyncio.to_thread(self._platform.find_resource_pool, parent_path)
        pool = await asyncio.to_thread(self._platform.create_resource_pool, parent, name)
        return pool, True

    async def _remove_pool(self, pool: ObjectRef) -> bool:
        try:
            await asyncio.to_thread(self._platform.destroy, pool)
        except Exception as e:
            logger.error(f"Error removing resource pool {pool.name}: {e}")
            return False
        return True

    async def _create_containers(
        self, number: int, pod_name: str, username: str, competition: bool
    ) -> PodContainers:
        identifier = pod_id(number, pod_name, username)

        try:
            pool, created = await self._ensure_resource_pool(identifier, competition)
        except Exception:
            logger.error(f"Error creating containers for {identifier}, releasing port group {number}")
            self._allocator.release(number)
            raise

        try:
            port_group = await asyncio.to_thread(
                self._platform.create_port_group,
                port_group_name(number, settings.port_group_suffix),
                number,
            )
        except Exception:
            # A pool named after the number pins it until the pod is torn down
            if created and await self._remove_pool(pool):
                logger.error(f"Error creating port group for {identifier}, releasing port group {number}")
                self._allocator.release(number)
            else:
                logger.error(f"Error creating port group for {identifier}, keeping {number} reserved")
            raise

        destination = await asyncio.to_thread(
            self._platform.find_folder, settings.destination_folder
        )
        folder = await asyncio.to_thread(self._platform.create_folder, destination, identifier)
        logger.info(f"Created containers for {identifier}")
        return PodContainers(
            pod_id=identifier,
            number=number,
            resource_pool=pool,
            port_group=port_group,
            folder=folder,
        )

    # --- Shared steps ---

    async def _pod_vms(self, folder: ObjectRef) -> list[VMHandle]:
        children = await asyncio.to_thread(self._platform.folder_children, folder)
        return [VMHandle(self._platform, child) for child in children if child.is_vm]

    async def _wire_router(
        self,
        router: VMHandle,
        wan: ObjectRef,
        containers: PodContainers,
        natted: bool,
        competition: bool,
    ) -> None:
        await router.power_on()
        await router.configure_router_networks(wan, containers.port_group)
        if not natted:
            return

        octet = nat_octet(
            containers.number, self._allocator.standard, self._allocator.competition
        )
        network_id = settings.competition_network_id if competition else settings.default_network_id
        arguments = router_program_arguments(
            settings.router_program_args, octet, network_prefix(network_id)
        )
        await router.run_program(
            settings.router_program,
            arguments,
            settings.router_username,
            settings.router_password,
        )

    async def _snapshot_all(self, vms: list[VMHandle]) -> None:
        results = await gather_bounded(
            (vm.create_snapshot(BASE_SNAPSHOT) for vm in vms),
            settings.max_concurrent_tasks,
        )
        error = first_error(results)
        if error is not None:
            logger.error(f"Error setting {BASE_SNAPSHOT} snapshot: {error}")
            raise error

    async def _grant(self, ref: ObjectRef, username: str, role_name: str) -> None:
        role_id = await asyncio.to_thread(self._platform.find_role, role_name)
        await asyncio.to_thread(
            self._platform.set_permission, ref, principal(username), role_id, True
        )

    async def _hide_vms(self, template: Template, vms: list[VMHandle], number: int, username: str) -> None:
        """Assign the no-access role on each hidden VM's clone."""
        hidden = {clone_name(number, vm.name) for vm in template.hidden_vms}
        targets = [vm for vm in vms if vm.name in hidden]
        if not targets:
            return

        role_id = await asyncio.to_thread(self._platform.find_role, settings.no_access_role)
        results = await gather_bounded(
            (
                asyncio.to_thread(
                    self._platform.set_permission, vm.ref, principal(username), role_id, True
                )
                for vm in targets
            ),
            settings.max_concurrent_tasks,
        )
        error = first_error(results)
        if error is not None:
            raise error
        logger.info(f"Hid {len(targets)} VMs from {username}")

    # --- Template pods ---

    async def provision_from_template(self, template_id: str, username: str) -> str:
        """Create a pod from a catalog template.

        Returns:
            The new pod identifier
        """
        with track_operation("provision_template"):
            if not username:
                raise PodValidationError("Username is required")
            template = self._catalog.get(template_id)
            await self.check_pod_limit(username)

            number = self._allocator.reserve(competition=template.competition_pod)
            containers = await self._create_containers(
                number, template.name, username, template.competition_pod
            )
            logger.info(f"Provisioning {containers.pod_id} from template {template.name}")

            sources = [VMHandle.from_descriptor(self._platform, vm) for vm in template.vms]
            results = await gather_bounded(
                (
                    source.clone(
                        containers.folder,
                        clone_name(number, source.name),
                        containers.resource_pool,
                        snapshot=CLONE_SNAPSHOT,
                        network=containers.port_group,
                    )
                    for source in sources
                ),
                settings.max_concurrent_tasks,
            )
            error = first_error(results)
            if error is not None:
                logger.error(f"Error cloning VMs for {containers.pod_id}: {error}")
                raise error

            vms = await self._pod_vms(containers.folder)

            if not template.no_router:
                router = next((vm for vm in vms if vm.is_router), None)
                if router is None:
                    raise ObjectNotFoundError("Router", containers.pod_id)
                if template.competition_pod:
                    wan = await asyncio.to_thread(
                        self._platform.find_network, settings.competition_wan_port_group
                    )
                else:
                    wan = template.wan_network
                await self._wire_router(
                    router, wan, containers, template.natted, template.competition_pod
                )

            await self._snapshot_all(vms)
            await self._grant(containers.folder, username, settings.clone_role)
            await self._hide_vms(template, vms, number, username)

            logger.info(f"Provisioned pod {containers.pod_id}")
            return containers.pod_id

    async def bulk_provision(self, template_id: str, usernames: list[str]) -> list[str]:
        """Provision one template for many users concurrently.

        Returns:
            Pod identifiers created, when every user succeeded

        Raises:
            BulkOperationError: listing the usernames that failed
        """
        users = [u for u in dict.fromkeys(usernames) if u]
        if not users:
            raise PodValidationError("No usernames given")

        results = await gather_bounded(
            (self.provision_from_template(template_id, user) for user in users),
            settings.max_concurrent_tasks,
        )

        created, failed = [], []
        for user, result in zip(users, results):
            if isinstance(result, BaseException):
                logger.error(f"Error cloning {template_id} for {user}: {result}")
                failed.append(user)
            else:
                created.append(result)

        if failed:
            raise BulkOperationError(
                f"Failed to clone {template_id} for {len(failed)} of {len(users)} users", failed
            )
        return created

    # --- Custom pods ---

    def _validate_custom(self, pod_name: str, vm_names: list[str], username: str) -> None:
        if not pod_name:
            raise PodValidationError("Pod name is required")
        if POD_ID_SEPARATOR in pod_name:
            raise PodValidationError(f"Pod name cannot contain '{POD_ID_SEPARATOR}'")
        if not vm_names:
            raise PodValidationError("At least one VM is required")
        if len(vm_names) > settings.max_custom_vms:
            raise PodValidationError(f"At most {settings.max_custom_vms} VMs can be cloned")
        if not username:
            raise PodValidationError("Username is required")

    async def provision_custom(
        self,
        pod_name: str,
        vm_names: list[str],
        natted: bool,
        username: str,
    ) -> str:
        """Create a pod from an ad-hoc selection of VM images.

        Returns:
            The new pod identifier
        """
        with track_operation("provision_custom"):
            self._validate_custom(pod_name, vm_names, username)
            await self.check_pod_limit(username)

            number = self._allocator.reserve()
            containers = await self._create_containers(number, pod_name, username, competition=False)
            logger.info(f"Provisioning custom pod {containers.pod_id} with {len(vm_names)} VMs")

            sources = [
                VMHandle(self._platform, await asyncio.to_thread(self._platform.find_vm, name))
                for name in vm_names
            ]
            results = await gather_bounded(
                (
                    source.clone(
                        containers.folder,
                        clone_name(number, source.name),
                        containers.resource_pool,
                        network=containers.port_group,
                    )
                    for source in sources
                ),
                settings.max_concurrent_tasks,
            )
            error = first_error(results)
            if error is not None:
                logger.error(f"Error cloning VMs for {containers.pod_id}: {error}")
                raise error

            router = next((vm for vm in results if vm.is_router), None)
            if router is None and natted:
                router = await self._create_custom_router(containers, pod_name)

            if router is not None:
                wan = await asyncio.to_thread(
                    self._platform.find_network, settings.default_wan_port_group
                )
                await self._wire_router(router, wan, containers, natted, competition=False)

            await self._snapshot_all(await self._pod_vms(containers.folder))
            await self._grant(containers.folder, username, settings.custom_clone_role)

            logger.info(f"Provisioned custom pod {containers.pod_id}")
            return containers.pod_id

    async def _create_custom_router(self, containers: PodContainers, pod_name: str) -> VMHandle:
        source_ref = await asyncio.to_thread(self._platform.find_vm, settings.natted_router_path)
        source = VMHandle(self._platform, source_ref, is_router=True)
        name = router_name(clone_name(containers.number, pod_name), natted=True)
        return await source.clone(containers.folder, name, containers.resource_pool)

