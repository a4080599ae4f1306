"""
Accruals Hub - Tenant Registry

Tenants are rows of the Tenants table in the master record store. Names and
intake labels are matched case-insensitively. Tenants are never removed, only
deactivated.
"""

import logging
from typing import Optional, Dict, List, Any

from services.blob_store import BlobStore
from services.errors import ErrorCode, HubError
from services.hub_config import (
    FOLDER_ACCRUALS,
    FOLDER_BILLS,
    FOLDER_BUFFER,
    FOLDER_INFLOW,
    FOLDER_MONTHS,
    FOLDER_OUTFLOW,
    FOLDER_SPREADSHEETS,
    MASTER_STORE_ID,
    READ_LOCK_TIMEOUT_SECONDS,
    REGISTRY_TABLE,
    UPDATE_LOCK_TIMEOUT_SECONDS,
)
from services.record_store import RecordStore
from services.records import (
    REGISTRY_COLUMNS,
    TABLE_HEADERS,
    Tenant,
    TenantFolders,
    TenantStatus,
    now_iso,
)
from services.tenant_lease import LeaseManager, REGISTRY_RESOURCE

logger = logging.getLogger(__name__)


class TenantRegistry:
    """Read and update tenant registrations."""

    def __init__(
        self,
        record_store: RecordStore,
        blob_store: BlobStore,
        lease_manager: LeaseManager,
        master_store_id: str = MASTER_STORE_ID
    ):
        self.record_store = record_store
        self.blob_store = blob_store
        self.lease_manager = lease_manager
        self.master_store_id = master_store_id
        self._folder_cache: Dict[str, TenantFolders] = {}

    async def initialize(self) -> None:
        """Create the master store and registry table when missing."""
        await self.record_store.create_store("Accruals Master", store_id=self.master_store_id)
        if await self.record_store.ensure_table(self.master_store_id, REGISTRY_TABLE, REGISTRY_COLUMNS):
            logger.info("Created tenant registry table in %s", self.master_store_id)

    # =========================================================================
    # READS
    # =========================================================================

    async def read_all_unlocked(self) -> List[Tenant]:
        """Registry rows without taking the lease (caller already holds it)."""
        headers = await self.record_store.get_headers(self.master_store_id, REGISTRY_TABLE)
        missing = [h for h in ("Tenant Name", "Intake Label", "Root Folder ID", "Store ID") if h not in headers]
        if missing:
            raise HubError(
                ErrorCode.SYSTEM_ERROR,
                f"Registry table is missing required headers: {', '.join(missing)}"
            )

        tenants = []
        for row in await self.record_store.read_rows(self.master_store_id, REGISTRY_TABLE):
            tenant = Tenant.from_row(row)
            if tenant.name:
                tenants.append(tenant)
        return tenants

    async def get_all(self) -> List[Tenant]:
        async with self.lease_manager.lease(REGISTRY_RESOURCE, READ_LOCK_TIMEOUT_SECONDS):
            return await self.read_all_unlocked()

    async def get_active(self) -> List[Tenant]:
        return [t for t in await self.get_all() if t.is_active]

    @staticmethod
    def _match(tenants: List[Tenant], attribute: str, value: str) -> Optional[Tenant]:
        wanted = (value or "").strip().lower()
        for tenant in tenants:
            if getattr(tenant, attribute).lower() == wanted:
                return tenant
        return None

    async def get_by_name(self, name: str) -> Optional[Tenant]:
        return self._match(await self.get_all(), "name", name)

    async def get_by_label(self, label: str) -> Optional[Tenant]:
        return self._match(await self.get_all(), "intake_label", label)

    async def require(self, name: str) -> Tenant:
        tenant = await self.get_by_name(name)
        if tenant is None:
            raise HubError(ErrorCode.INVALID_INPUT, f"Tenant not found: {name}")
        return tenant

    # =========================================================================
    # UPDATES
    # =========================================================================

    async def update(
        self,
        name: str,
        intake_label: Optional[str] = None,
        status: Optional[str] = None
    ) -> Tenant:
        if status is not None and status not in [s.value for s in TenantStatus]:
            raise HubError(ErrorCode.INVALID_INPUT, f"Invalid tenant status: {status}")

        async with self.lease_manager.lease(REGISTRY_RESOURCE, UPDATE_LOCK_TIMEOUT_SECONDS):
            tenants = await self.read_all_unlocked()
            tenant = self._match(tenants, "name", name)
            if tenant is None:
                raise HubError(ErrorCode.INVALID_INPUT, f"Tenant not found: {name}")

            updates = {"Last Modified": now_iso()}
            if intake_label is not None:
                other = self._match(tenants, "intake_label", intake_label)
                if other is not None and other.name != tenant.name:
                    raise HubError(ErrorCode.DUPLICATE_TENANT, f"Intake label already in use: {intake_label}")
                updates["Intake Label"] = intake_label.strip()
            if status is not None:
                updates["Status"] = status

            row = await self.record_store.update_cells(
                self.master_store_id, REGISTRY_TABLE, tenant.record_id, updates
            )

        logger.info("Updated tenant %s: %s", tenant.name, sorted(updates))
        return Tenant.from_row(row)

    async def activate(self, name: str) -> Tenant:
        return await self.update(name, status=TenantStatus.ACTIVE.value)

    async def deactivate(self, name: str) -> Tenant:
        return await self.update(name, status=TenantStatus.INACTIVE.value)

    # =========================================================================
    # FOLDERS & VALIDATION
    # =========================================================================

    async def get_folder_structure(self, tenant: Tenant, refresh: bool = False) -> TenantFolders:
        """
        Resolve the tenant's folder ids by name under its root folder.

        Raises:
            HubError: FILE_NOT_FOUND naming the first missing folder
        """
        key = tenant.name.lower()
        if not refresh and key in self._folder_cache:
            return self._folder_cache[key]

        if not await self.blob_store.folder_exists(tenant.root_folder_id):
            raise HubError(ErrorCode.FILE_NOT_FOUND, f"Root folder not accessible for tenant {tenant.name}")

        async def child(parent: str, name: str) -> str:
            folder_id = await self.blob_store.find_folder(parent, name)
            if not folder_id:
                raise HubError(
                    ErrorCode.FILE_NOT_FOUND,
                    f"Folder '{name}' not found for tenant {tenant.name}"
                )
            return folder_id

        folders = TenantFolders(root=tenant.root_folder_id)
        folders.accruals = await child(folders.root, FOLDER_ACCRUALS)
        folders.bills = await child(folders.accruals, FOLDER_BILLS)
        folders.buffer = await child(folders.bills, FOLDER_BUFFER)
        folders.months = await child(folders.bills, FOLDER_MONTHS)
        folders.inflow = await child(folders.months, FOLDER_INFLOW)
        folders.outflow = await child(folders.months, FOLDER_OUTFLOW)
        folders.spreadsheets = await child(folders.root, FOLDER_SPREADSHEETS)

        self._folder_cache[key] = folders
        return folders

    def forget_folders(self, tenant_name: str) -> None:
        self._folder_cache.pop(tenant_name.lower(), None)

    async def validate_configuration(self, tenant: Tenant) -> Dict[str, Any]:
        """Check folder access, record store access and required tables."""
        errors: List[str] = []
        warnings: List[str] = []

        try:
            await self.get_folder_structure(tenant, refresh=True)
        except HubError as e:
            errors.append(e.message)

        if not await self.record_store.store_exists(tenant.store_id):
            errors.append(f"Record store not accessible: {tenant.store_id}")
        else:
            tables = await self.record_store.list_tables(tenant.store_id)
            for table in TABLE_HEADERS:
                if table not in tables:
                    errors.append(f"Missing required table: {table}")

        if not tenant.intake_label:
            warnings.append("No intake label configured")
        if not tenant.is_active:
            warnings.append("Tenant is inactive")

        return {
            "tenant": tenant.name,
            "is_valid": not errors,
            "errors": errors,
            "warnings": warnings,
        }
