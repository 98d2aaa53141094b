"""Tests for the template catalog."""
from __future__ import annotations

import pytest

from kamino.catalog import CLONE_SNAPSHOT, TemplateCatalog
from kamino.errors import ObjectNotFoundError
from kamino.models import ObjectKind


@pytest.mark.asyncio
async def test_refresh_loads_every_template(inventory) -> None:
    catalog = TemplateCatalog(inventory)

    failed = await catalog.refresh()

    assert failed == []
    assert len(catalog) == 3
    web = catalog.get("web")
    assert web.natted is True
    assert web.no_router is False
    assert web.competition_pod is False
    assert web.wan_network.name == "WAN"

    comp = catalog.get("comp")
    assert comp.competition_pod is True
    assert comp.admin_only is True


@pytest.mark.asyncio
async def test_refresh_reads_vm_attributes(inventory) -> None:
    catalog = TemplateCatalog(inventory)
    await catalog.refresh()

    vms = {vm.name: vm for vm in catalog.get("web").vms}
    assert vms["web-server"].username == "student"
    assert vms["web-server"].password == "pw"
    assert vms["web-server"].is_hidden is False
    # isHidden match is case-insensitive
    assert vms["web-db"].is_hidden is True
    assert "pw" not in repr(vms["web-server"])


@pytest.mark.asyncio
async def test_refresh_creates_missing_router(inventory) -> None:
    catalog = TemplateCatalog(inventory)
    await catalog.refresh()

    router = catalog.get("web").router
    assert router is not None
    assert router.name == "web-Natted-PodRouter"

    clone = next(c for c in inventory.clones if c["name"] == "web-Natted-PodRouter")
    assert clone["source"] == "NattedPodRouter"
    assert clone["folder"] == "Templates"
    assert clone["pool"] == "web"


@pytest.mark.asyncio
async def test_refresh_keeps_existing_router(inventory) -> None:
    catalog = TemplateCatalog(inventory)
    await catalog.refresh()

    assert catalog.get("comp").router.name == "comp-PodRouter"
    assert not any(c["pool"] == "comp" for c in inventory.clones)


@pytest.mark.asyncio
async def test_router_invariant(inventory) -> None:
    catalog = TemplateCatalog(inventory)
    await catalog.refresh()

    for template in catalog.templates().values():
        routers = [vm for vm in template.vms if vm.is_router]
        if not template.no_router:
            assert len(routers) == 1

    assert catalog.get("basic").router is None


@pytest.mark.asyncio
async def test_refresh_retakes_clone_snapshot(inventory) -> None:
    web_server = inventory.get(ObjectKind.VM, "web-server")
    inventory.snapshots[web_server.moid] = [CLONE_SNAPSHOT]

    catalog = TemplateCatalog(inventory)
    await catalog.refresh()

    for template in catalog.templates().values():
        for vm in template.vms:
            assert inventory.snapshots[vm.ref.moid] == [CLONE_SNAPSHOT]


@pytest.mark.asyncio
async def test_refresh_failure_is_isolated(inventory) -> None:
    catalog = TemplateCatalog(inventory)
    inventory.fail("create_snapshot", "basic-box")

    failed = await catalog.refresh()

    assert failed == ["basic"]
    assert "basic" not in catalog
    assert "web" in catalog
    assert "comp" in catalog


@pytest.mark.asyncio
async def test_template_name_with_separator_rejected(inventory) -> None:
    inventory.add_pool("red_team", inventory.get(ObjectKind.RESOURCE_POOL, "Templates"))
    catalog = TemplateCatalog(inventory)

    failed = await catalog.refresh()

    assert failed == ["red_team"]
    assert "red_team" not in catalog
    assert len(catalog) == 3


@pytest.mark.asyncio
async def test_failed_template_keeps_previous_entry(inventory) -> None:
    catalog = TemplateCatalog(inventory)
    await catalog.refresh()
    previous = catalog.get("basic")

    inventory.fail("get_attributes", "basic")
    failed = await catalog.refresh()

    assert failed == ["basic"]
    assert catalog.get("basic") is previous


@pytest.mark.asyncio
async def test_refresh_isolates_unexpected_errors(inventory, monkeypatch) -> None:
    catalog = TemplateCatalog(inventory)
    read_attributes = inventory.get_attributes

    def get_attributes(ref):
        if ref.name == "basic":
            raise RuntimeError("ManagedObjectNotFound")
        return read_attributes(ref)

    monkeypatch.setattr(inventory, "get_attributes", get_attributes)

    failed = await catalog.refresh()

    assert failed == ["basic"]
    assert catalog.list_preset_templates(is_admin=True) == ["comp", "web"]


@pytest.mark.asyncio
async def test_refresh_requires_template_pool(platform) -> None:
    catalog = TemplateCatalog(platform)
    with pytest.raises(ObjectNotFoundError):
        await catalog.refresh()


@pytest.mark.asyncio
async def test_preset_listing_hides_admin_only(inventory) -> None:
    catalog = TemplateCatalog(inventory)
    await catalog.refresh()

    assert catalog.list_preset_templates(is_admin=False) == ["basic", "web"]
    assert catalog.list_preset_templates(is_admin=True) == ["basic", "comp", "web"]


def test_get_unknown_template(platform) -> None:
    catalog = TemplateCatalog(platform)
    with pytest.raises(ObjectNotFoundError, match="nope"):
        catalog.get("nope")


@pytest.mark.asyncio
async def test_custom_template_groups(inventory) -> None:
    catalog = TemplateCatalog(inventory)
    # Router clones land in the template folder and must not show up as groups
    await catalog.refresh()

    groups = await catalog.list_custom_template_groups()

    assert [g.name for g in groups] == ["Linux"]
    assert sorted(groups[0].vms) == ["kali", "ubuntu"]
