"""Pod teardown, listing and bulk administration."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from kamino.config import settings
from kamino.errors import BulkOperationError, ObjectNotFoundError, PodPermissionError
from kamino.metrics import track_operation
from kamino.models import ObjectRef, Pod
from kamino.naming import is_pod_owner, owner_pattern, parse_port_group_number, port_group_name
from kamino.network.portgroups import PortGroupAllocator
from kamino.utils.async_tasks import gather_bounded
from kamino.vsphere.platform import Platform
from kamino.vsphere.vm import VMHandle

logger = logging.getLogger(__name__)


def match_filters(names: list[str], filters: list[str]) -> list[str]:
    """Names containing any non-empty filter, each listed once, in order."""
    active = [f for f in filters if f]
    return [name for name in names if any(f in name for f in active)]


class PodLifecycleManager:
    """Destroys pods and runs best-effort operations across many pods."""

    def __init__(self, platform: Platform, allocator: PortGroupAllocator):
        self._platform = platform
        self._allocator = allocator

    # --- Destroy ---

    async def destroy(self, pod_id: str) -> None:
        """Tear down a pod's resource pool, folder and port group.

        A missing folder is tolerated (logged); a missing resource pool or
        port group surfaces. The port group number is released last.
        """
        with track_operation("destroy"):
            number = parse_port_group_number(pod_id)

            pool = await asyncio.to_thread(self._platform.find_resource_pool, pod_id)
            try:
                await asyncio.to_thread(self._platform.destroy, pool)
            except Exception as e:
                logger.error(f"Error destroying resource pool {pod_id}: {e}")

            try:
                folder = await asyncio.to_thread(self._platform.find_folder, pod_id)
            except ObjectNotFoundError as e:
                logger.warning(f"Error finding folder: {e}")
            else:
                await self._destroy_folder(folder)

            network = await asyncio.to_thread(
                self._platform.find_network, port_group_name(number, settings.port_group_suffix)
            )
            await asyncio.to_thread(self._platform.destroy, network)

            self._allocator.release(number)
            logger.info(f"Destroyed pod {pod_id}")

    async def _destroy_folder(self, folder: ObjectRef) -> None:
        children = await asyncio.to_thread(self._platform.folder_children, folder)
        for child in children:
            if not child.is_vm:
                continue
            try:
                await asyncio.to_thread(self._platform.power_off, child)
            except Exception as e:
                logger.warning(f"Error powering off {child.name}: {e}")
        await asyncio.to_thread(self._platform.destroy, folder)

    async def destroy_owned(self, pod_id: str, username: str) -> None:
        """Destroy a pod after checking the caller owns it."""
        if not is_pod_owner(pod_id, username):
            raise PodPermissionError(f"User {username} does not own pod {pod_id}")
        await self.destroy(pod_id)

    # --- Listing ---

    def _to_pod(self, pool: ObjectRef) -> Pod:
        return Pod(
            name=pool.name,
            resource_group=pool.moid,
            server_guid=self._platform.instance_uuid,
        )

    async def _pools_under(self, path: str) -> list[ObjectRef]:
        parent = await asyncio.to_thread(self._platform.find_resource_pool, path)
        return await asyncio.to_thread(self._platform.child_resource_pools, parent)

    async def list_pods(self, owner: str) -> list[Pod]:
        """Pods owned by a user."""
        try:
            pools = await asyncio.to_thread(
                self._platform.list_resource_pools, owner_pattern(owner)
            )
        except ObjectNotFoundError:
            return []
        return [self._to_pod(pool) for pool in pools if is_pod_owner(pool.name, owner)]

    async def list_all_pods(self) -> list[Pod]:
        """Every pod under the standard and competition target pools."""
        pools = await self._pools_under(settings.target_resource_pool)
        pools += await self._pools_under(settings.competition_resource_pool)
        return [self._to_pod(pool) for pool in pools]

    # --- Bulk operations ---

    async def _matching_pods(self, filters: list[str]) -> list[str]:
        pods = await self.list_all_pods()
        return match_filters([pod.name for pod in pods], filters)

    async def _pod_vms(self, pod_id: str) -> list[VMHandle]:
        folder = await asyncio.to_thread(self._platform.find_folder, pod_id)
        children = await asyncio.to_thread(self._platform.folder_children, folder)
        return [VMHandle(self._platform, child) for child in children if child.is_vm]

    async def _run_bulk(
        self,
        operation: str,
        targets: list[str],
        action: Callable[[str], Awaitable[None]],
        failed: list[str] | None = None,
    ) -> list[str]:
        results = await gather_bounded(
            (action(target) for target in targets), settings.max_concurrent_tasks
        )
        failed = list(failed or [])
        for target, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error(f"Error during bulk {operation} of {target}: {result}")
                failed.append(target)

        if failed:
            raise BulkOperationError(
                f"Bulk {operation} failed for {len(failed)} of {len(targets)} targets", failed
            )
        logger.info(f"Bulk {operation} handled {len(targets)} targets")
        return targets

    async def bulk_delete(self, filters: list[str]) -> list[str]:
        """Destroy every pod whose name contains one of the filters.

        Returns:
            The pods destroyed

        Raises:
            BulkOperationError: listing the pods that failed
        """
        with track_operation("bulk_delete"):
            pods = await self._matching_pods(filters)
            return await self._run_bulk("delete", pods, self.destroy)

    async def _matching_vms(
        self, filters: list[str], skip_routers: bool
    ) -> tuple[dict[str, VMHandle], list[str]]:
        """VMs of the matching pods, plus pods whose VMs could not be listed."""
        vms: dict[str, VMHandle] = {}
        unreadable = []
        for pod in await self._matching_pods(filters):
            try:
                pod_vms = await self._pod_vms(pod)
            except Exception as e:
                logger.error(f"Error listing VMs of {pod}: {e}")
                unreadable.append(pod)
                continue
            for vm in pod_vms:
                if skip_routers and vm.is_router:
                    continue
                vms[vm.name] = vm
        return vms, unreadable

    async def bulk_revert(self, filters: list[str], snapshot: str = "Base") -> list[str]:
        """Revert every non-router VM of the matching pods to a snapshot.

        Returns:
            The VMs reverted

        Raises:
            BulkOperationError: listing the VMs that failed
        """
        with track_operation("bulk_revert"):
            vms, unreadable = await self._matching_vms(filters, skip_routers=True)

            async def _revert(name: str) -> None:
                await vms[name].revert_snapshot(snapshot)

            return await self._run_bulk("revert", list(vms), _revert, unreadable)

    async def bulk_power(self, filters: list[str], power_on: bool) -> list[str]:
        """Power every VM of the matching pods on or off.

        Returns:
            The VMs handled

        Raises:
            BulkOperationError: listing the VMs that failed
        """
        with track_operation("bulk_power"):
            vms, unreadable = await self._matching_vms(filters, skip_routers=False)

            async def _power(name: str) -> None:
                vm = vms[name]
                await (vm.power_on() if power_on else vm.power_off())

            return await self._run_bulk("power", list(vms), _power, unreadable)
