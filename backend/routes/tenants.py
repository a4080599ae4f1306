"""
Accruals Hub - Tenants Router

Tenant registration, activation and configuration checks.
"""

from fastapi import APIRouter, HTTPException
from typing import Optional
from pydantic import BaseModel
import logging

from services.errors import HubError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenants", tags=["tenants"])

# Registry and provisioning saga - set by main app
registry = None
provisioning = None

def set_dependencies(tenant_registry, saga):
    global registry, provisioning
    registry = tenant_registry
    provisioning = saga


def _http_error(e: HubError) -> HTTPException:
    return HTTPException(status_code=e.http_status, detail=e.to_dict())


# ==================== MODELS ====================

class TenantCreate(BaseModel):
    name: str
    intake_label: str


class TenantUpdate(BaseModel):
    intake_label: Optional[str] = None
    status: Optional[str] = None


# ==================== ENDPOINTS ====================

@router.get("")
async def list_tenants(active_only: bool = False):
    """List registered tenants."""
    try:
        tenants = await (registry.get_active() if active_only else registry.get_all())
    except HubError as e:
        raise _http_error(e)
    return {"tenants": [t.to_dict() for t in tenants], "total": len(tenants)}


@router.post("")
async def create_tenant(req: TenantCreate):
    """Provision a tenant: folders, record store and registry row."""
    try:
        tenant = await provisioning.provision(req.name, req.intake_label)
    except HubError as e:
        logger.warning("Tenant provisioning rejected: %s", e.message)
        raise _http_error(e)
    return {"success": True, "tenant": tenant.to_dict()}


@router.get("/by-label/{label}")
async def get_tenant_by_label(label: str):
    tenant = await registry.get_by_label(label)
    if tenant is None:
        raise HTTPException(status_code=404, detail=f"No tenant for label: {label}")
    return tenant.to_dict()


@router.get("/{name}")
async def get_tenant(name: str):
    tenant = await registry.get_by_name(name)
    if tenant is None:
        raise HTTPException(status_code=404, detail=f"Tenant not found: {name}")
    return tenant.to_dict()


@router.patch("/{name}")
async def update_tenant(name: str, req: TenantUpdate):
    try:
        tenant = await registry.update(name, intake_label=req.intake_label, status=req.status)
    except HubError as e:
        raise _http_error(e)
    return {"success": True, "tenant": tenant.to_dict()}


@router.post("/{name}/activate")
async def activate_tenant(name: str):
    try:
        tenant = await registry.activate(name)
    except HubError as e:
        raise _http_error(e)
    return {"success": True, "tenant": tenant.to_dict()}


@router.post("/{name}/deactivate")
async def deactivate_tenant(name: str):
    try:
        tenant = await registry.deactivate(name)
    except HubError as e:
        raise _http_error(e)
    return {"success": True, "tenant": tenant.to_dict()}


@router.get("/{name}/validate")
async def validate_tenant(name: str):
    """Check folders, record store and required tables."""
    try:
        tenant = await registry.require(name)
        report = await registry.validate_configuration(tenant)
    except HubError as e:
        raise _http_error(e)
    return report
