"""Template catalog.

Preset templates are child resource pools of the configured template
pool. Behaviour flags live in custom attributes on the pool, guest
credentials and visibility in custom attributes on each VM. Loading a
template also (re)takes the golden snapshot every pod clone starts from.

The catalog map is rebuilt on every refresh and swapped in as a whole;
provisioning calls only ever read it.
"""

from __future__ import annotations

import asyncio
import logging

from kamino.config import settings
from kamino.errors import ObjectNotFoundError, PodValidationError
from kamino.models import ROUTER_MARKER, CustomTemplateGroup, ObjectRef, Template, VMDescriptor
from kamino.naming import POD_ID_SEPARATOR, router_name
from kamino.utils.async_tasks import first_error, gather_bounded
from kamino.vsphere.platform import Platform
from kamino.vsphere.vm import VMHandle

logger = logging.getLogger(__name__)

# Snapshot every template VM is cloned from
CLONE_SNAPSHOT = "SnapshotForCloning"

# Custom attribute keys
ATTR_NATTED = "goclone.template.natted"
ATTR_NO_ROUTER = "goclone.template.noRouter"
ATTR_COMPETITION_POD = "goclone.template.competitionPod"
ATTR_ADMIN_ONLY = "goclone.template.adminOnly"
ATTR_VM_USERNAME = "goclone.vm.username"
ATTR_VM_PASSWORD = "goclone.vm.password"
ATTR_VM_HIDDEN = "goclone.vm.isHidden"


def _flag(attributes: dict[str, str], key: str) -> bool:
    return attributes.get(key) == "true"


class TemplateCatalog:
    """In-memory map of template name -> Template."""

    def __init__(self, platform: Platform):
        self._platform = platform
        self._templates: dict[str, Template] = {}

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._templates

    def __len__(self) -> int:
        return len(self._templates)

    def get(self, template_id: str) -> Template:
        template = self._templates.get(template_id)
        if template is None:
            raise ObjectNotFoundError("Template", template_id)
        return template

    def templates(self) -> dict[str, Template]:
        """Current catalog snapshot."""
        return dict(self._templates)

    def list_preset_templates(self, is_admin: bool = False) -> list[str]:
        """Names of preset templates visible to the caller."""
        return sorted(
            name
            for name, template in self._templates.items()
            if is_admin or not template.admin_only
        )

    async def refresh(self) -> list[str]:
        """Reload every preset template from the platform.

        A template that fails to load keeps its previous entry (if any);
        the others are unaffected. Templates no longer on the platform are
        dropped.

        Returns:
            Names of templates that failed to load
        """
        parent = await asyncio.to_thread(
            self._platform.find_resource_pool, settings.template_resource_pool
        )
        pools = await asyncio.to_thread(self._platform.child_resource_pools, parent)
        wan = await asyncio.to_thread(self._platform.find_network, settings.default_wan_port_group)

        previous = self._templates
        templates: dict[str, Template] = {}
        failed: list[str] = []

        for pool in pools:
            try:
                templates[pool.name] = await self._load_template(pool, wan)
                logger.info(f"Loaded template {pool.name}")
            except Exception as e:
                logger.error(f"Error loading template {pool.name}: {e}")
                failed.append(pool.name)
                if pool.name in previous:
                    templates[pool.name] = previous[pool.name]

        self._templates = templates
        logger.info(f"Template catalog refreshed: {len(templates)} templates, {len(failed)} failed")
        return failed

    async def _load_template(self, pool: ObjectRef, wan: ObjectRef) -> Template:
        if POD_ID_SEPARATOR in pool.name:
            raise PodValidationError(
                f"Template name {pool.name} must not contain '{POD_ID_SEPARATOR}'"
            )
        attributes = await asyncio.to_thread(self._platform.get_attributes, pool)
        natted = _flag(attributes, ATTR_NATTED)
        no_router = _flag(attributes, ATTR_NO_ROUTER)

        vm_refs = await asyncio.to_thread(self._platform.resource_pool_vms, pool)
        if not no_router and not any(ROUTER_MARKER in ref.name for ref in vm_refs):
            vm_refs.append(await self._create_router(pool, natted))

        vms = [await self._describe_vm(ref) for ref in vm_refs]
        routers = [vm.name for vm in vms if vm.is_router]
        if not no_router and len(routers) != 1:
            raise PodValidationError(
                f"Template {pool.name} must have exactly one router, found {routers}"
            )

        await self._take_clone_snapshots(vms)

        return Template(
            name=pool.name,
            source_pool=pool,
            vms=tuple(vms),
            natted=natted,
            no_router=no_router,
            competition_pod=_flag(attributes, ATTR_COMPETITION_POD),
            admin_only=_flag(attributes, ATTR_ADMIN_ONLY),
            wan_network=wan,
        )

    async def _create_router(self, pool: ObjectRef, natted: bool) -> ObjectRef:
        source_path = settings.natted_router_path if natted else settings.router_path
        source = await asyncio.to_thread(self._platform.find_vm, source_path)
        folder = await asyncio.to_thread(self._platform.find_folder, settings.template_folder)
        name = router_name(pool.name, natted)
        logger.info(f"Template {pool.name} has no router, cloning {source_path} as {name}")
        return await asyncio.to_thread(self._platform.clone_vm, source, folder, name, pool)

    async def _describe_vm(self, ref: ObjectRef) -> VMDescriptor:
        attributes = await asyncio.to_thread(self._platform.get_attributes, ref)
        guest_os = await asyncio.to_thread(self._platform.guest_os, ref)
        return VMDescriptor(
            name=ref.name,
            ref=ref,
            username=attributes.get(ATTR_VM_USERNAME, ""),
            password=attributes.get(ATTR_VM_PASSWORD, ""),
            is_router=ROUTER_MARKER in ref.name,
            is_hidden="true" in attributes.get(ATTR_VM_HIDDEN, "").lower(),
            guest_os=guest_os,
        )

    async def _take_clone_snapshots(self, vms: list[VMDescriptor]) -> None:
        """(Re)create the golden snapshot on every VM concurrently."""

        async def _retake(vm: VMHandle) -> None:
            if await vm.has_snapshot(CLONE_SNAPSHOT):
                await vm.remove_snapshot(CLONE_SNAPSHOT)
            await vm.create_snapshot(CLONE_SNAPSHOT)

        results = await gather_bounded(
            (_retake(VMHandle.from_descriptor(self._platform, vm)) for vm in vms),
            settings.max_concurrent_tasks,
        )
        error = first_error(results)
        if error is not None:
            raise error

    async def list_custom_template_groups(self) -> list[CustomTemplateGroup]:
        """Folders of standalone VM images under the template folder."""
        root = await asyncio.to_thread(self._platform.find_folder, settings.template_folder)
        children = await asyncio.to_thread(self._platform.folder_children, root)

        groups = []
        for child in children:
            if not child.is_folder:
                continue
            members = await asyncio.to_thread(self._platform.folder_children, child)
            groups.append(
                CustomTemplateGroup(name=child.name, vms=[m.name for m in members if m.is_vm])
            )
        return groups
