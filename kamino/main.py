"""Kamino HTTP service.

Thin FastAPI surface over the provisioning core. Caller identity comes
from a trusted gateway in the X-Kamino-User / X-Kamino-Admin headers;
the whole surface can additionally be guarded by a shared bearer secret.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from kamino import __version__
from kamino.catalog import TemplateCatalog
from kamino.config import settings
from kamino.errors import BulkOperationError, ErrorCategory, KaminoError
from kamino.lifecycle import PodLifecycleManager
from kamino.logging_config import setup_logging
from kamino.metrics import get_metrics
from kamino.network.portgroups import PortGroupAllocator
from kamino.provisioner import PodProvisioner
from kamino.schemas import (
    BulkCloneRequest,
    BulkFilterRequest,
    BulkPowerRequest,
    BulkResponse,
    BulkRevertRequest,
    CustomCloneRequest,
    CustomTemplateGroupOut,
    CustomTemplateListResponse,
    PodCreatedResponse,
    PodDeletedResponse,
    PodListResponse,
    PodOut,
    RefreshResponse,
    TemplateCloneRequest,
    TemplateListResponse,
)
from kamino.utils.async_tasks import safe_create_task
from kamino.vsphere.platform import Platform

setup_logging()

logger = logging.getLogger(__name__)

STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.ADMISSION: 409,
    ErrorCategory.AUTHORIZATION: 403,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.PLATFORM: 502,
    ErrorCategory.TIMEOUT: 504,
    ErrorCategory.EXHAUSTED: 409,
}


@dataclass
class Services:
    """Core components shared by every request."""
    platform: Platform
    allocator: PortGroupAllocator
    catalog: TemplateCatalog
    provisioner: PodProvisioner
    lifecycle: PodLifecycleManager


async def start_services(platform: Platform) -> Services:
    """Build the core and load its state from the platform.

    Failing to read the taken port groups or the template pool is fatal.
    """
    allocator = PortGroupAllocator.from_settings(platform)
    await asyncio.to_thread(allocator.resync)

    catalog = TemplateCatalog(platform)
    failed = await catalog.refresh()
    if failed:
        logger.warning(f"Templates failed to load at startup: {failed}")

    return Services(
        platform=platform,
        allocator=allocator,
        catalog=catalog,
        provisioner=PodProvisioner(platform, catalog, allocator),
        lifecycle=PodLifecycleManager(platform, allocator),
    )


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """Require ``Authorization: Bearer <api_secret>`` when a secret is set."""

    EXEMPT_PATHS = {"/health", "/metrics"}

    async def dispatch(self, request: Request, call_next):
        secret = settings.api_secret
        if not secret or request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)

        header = request.headers.get("Authorization")
        if not header:
            return JSONResponse(status_code=403, content={"detail": "Missing authorization header"})
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not hmac.compare_digest(token, secret):
            return JSONResponse(status_code=403, content={"detail": "Invalid authorization token"})
        return await call_next(request)


# --- Dependencies ---

def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return services


def current_user(x_kamino_user: str = Header(default="")) -> str:
    if not x_kamino_user:
        raise HTTPException(status_code=401, detail="Missing X-Kamino-User header")
    return x_kamino_user


def is_admin(x_kamino_admin: str = Header(default="")) -> bool:
    return x_kamino_admin.lower() == "true"


def require_admin(admin: bool = Depends(is_admin)) -> None:
    if not admin:
        raise HTTPException(status_code=403, detail="Admin access required")


# --- Routes ---

api = APIRouter(prefix="/api/v1")
admin = APIRouter(prefix="/api/v1/admin", dependencies=[Depends(require_admin)])


@api.get("/pods", response_model=PodListResponse)
async def list_pods(
    username: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    pods = await services.lifecycle.list_pods(username)
    return PodListResponse(pods=[PodOut(**vars(pod)) for pod in pods])


@api.delete("/pods/{pod_id}", response_model=PodDeletedResponse)
async def delete_pod(
    pod_id: str,
    username: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    await services.lifecycle.destroy_owned(pod_id, username)
    return PodDeletedResponse(pod_id=pod_id)


@api.get("/templates", response_model=TemplateListResponse)
async def list_templates(
    admin_caller: bool = Depends(is_admin),
    services: Services = Depends(get_services),
):
    return TemplateListResponse(templates=services.catalog.list_preset_templates(admin_caller))


@api.get("/templates/custom", response_model=CustomTemplateListResponse)
async def list_custom_templates(services: Services = Depends(get_services)):
    groups = await services.catalog.list_custom_template_groups()
    return CustomTemplateListResponse(
        groups=[CustomTemplateGroupOut(name=g.name, vms=g.vms) for g in groups]
    )


@api.post("/pods/template", response_model=PodCreatedResponse)
async def clone_template(
    body: TemplateCloneRequest,
    username: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    pod_id = await services.provisioner.provision_from_template(body.template, username)
    return PodCreatedResponse(pod_id=pod_id)


@api.post("/pods/custom", response_model=PodCreatedResponse)
async def clone_custom(
    body: CustomCloneRequest,
    username: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    pod_id = await services.provisioner.provision_custom(body.name, body.vms, body.nat, username)
    return PodCreatedResponse(pod_id=pod_id)


@admin.get("/pods", response_model=PodListResponse)
async def admin_list_pods(services: Services = Depends(get_services)):
    pods = await services.lifecycle.list_all_pods()
    return PodListResponse(pods=[PodOut(**vars(pod)) for pod in pods])


@admin.delete("/pods/{pod_id}", response_model=PodDeletedResponse)
async def admin_delete_pod(pod_id: str, services: Services = Depends(get_services)):
    await services.lifecycle.destroy(pod_id)
    return PodDeletedResponse(pod_id=pod_id)


@admin.post("/templates/refresh", response_model=RefreshResponse)
async def refresh_templates(services: Services = Depends(get_services)):
    failed = await services.catalog.refresh()
    return RefreshResponse(templates=len(services.catalog), failed=failed)


@admin.post("/pods/bulk", response_model=BulkResponse)
async def bulk_clone(body: BulkCloneRequest, services: Services = Depends(get_services)):
    created = await services.provisioner.bulk_provision(body.template, body.usernames)
    return BulkResponse(handled=created)


@admin.post("/pods/bulk-delete", response_model=BulkResponse)
async def bulk_delete(body: BulkFilterRequest, services: Services = Depends(get_services)):
    return BulkResponse(handled=await services.lifecycle.bulk_delete(body.filters))


@admin.post("/pods/revert", response_model=BulkResponse)
async def bulk_revert(body: BulkRevertRequest, services: Services = Depends(get_services)):
    return BulkResponse(handled=await services.lifecycle.bulk_revert(body.filters, body.snapshot))


@admin.post("/pods/power", response_model=BulkResponse)
async def bulk_power(body: BulkPowerRequest, services: Services = Depends(get_services)):
    return BulkResponse(handled=await services.lifecycle.bulk_power(body.filters, body.power_on))


# --- Application ---

def create_app(platform: Platform | None = None) -> FastAPI:
    """Build the application.

    Without ``platform`` the lifespan connects to vCenter from settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Kamino {__version__} starting...")
        owned = platform is None
        if owned:
            from kamino.vsphere.client import VSpherePlatform
            active = await asyncio.to_thread(VSpherePlatform.connect, settings)
        else:
            active = platform

        services = await start_services(active)
        app.state.services = services
        resync_task = safe_create_task(
            services.allocator.run_resync_loop(), name="port_group_resync"
        )

        yield

        resync_task.cancel()
        try:
            await resync_task
        except asyncio.CancelledError:
            pass
        app.state.services = None
        if owned:
            active.close()
        logger.info("Kamino shutting down")

    app = FastAPI(title="Kamino", version=__version__, lifespan=lifespan)
    app.add_middleware(BearerAuthMiddleware)

    @app.exception_handler(KaminoError)
    async def kamino_error_handler(request: Request, exc: KaminoError):
        status = 400 if isinstance(exc, BulkOperationError) else STATUS_BY_CATEGORY[exc.category]
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.get("/health")
    def health(request: Request):
        """Basic health check."""
        services = getattr(request.app.state, "services", None)
        return {
            "status": "ok" if services is not None else "starting",
            "version": __version__,
            "templates": len(services.catalog) if services is not None else 0,
            "port_groups_reserved": (
                len(services.allocator.allocations()) if services is not None else 0
            ),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/metrics")
    def metrics():
        """Prometheus metrics endpoint."""
        content, content_type = get_metrics()
        return Response(content=content, media_type=content_type)

    app.include_router(api)
    app.include_router(admin)
    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
