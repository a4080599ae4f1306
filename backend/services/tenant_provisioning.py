"""
Accruals Hub - Tenant Provisioning

Creating a tenant touches the blob store, a new record store and the registry,
none of which share a transaction. Provisioning therefore runs as a saga:
every created resource pushes a compensating action, and any failure unwinds
the stack newest first before the original error is raised.

Steps:
    1. validate name and intake label
    2. take the registry lease, reject duplicates
    3. create root folder and subtree
    4. create record store and its four tables
    5. re-check duplicates, append registry row
    6. verify the tenant resolves and validates
"""

import logging
import re
from typing import Awaitable, Callable, List, Tuple

from services.blob_store import BlobStore
from services.errors import ErrorCode, HubError, as_hub_error
from services.hub_config import (
    FOLDER_ACCRUALS,
    FOLDER_BILLS,
    FOLDER_BUFFER,
    FOLDER_INFLOW,
    FOLDER_MONTHS,
    FOLDER_OUTFLOW,
    FOLDER_SPREADSHEETS,
    LOCK_TIMEOUT_SECONDS,
    REGISTRY_TABLE,
    ROOT_FOLDER_PREFIX,
    STORE_NAME_SUFFIX,
)
from services.record_store import RecordStore
from services.records import TABLE_HEADERS, Tenant, TenantStatus, now_iso
from services.tenant_lease import LeaseManager, REGISTRY_RESOURCE
from services.tenant_registry import TenantRegistry

logger = logging.getLogger(__name__)


TENANT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 _.-]{0,49}$")


class CompensationStack:
    """LIFO list of undo actions."""

    def __init__(self):
        self._actions: List[Tuple[str, Callable[[], Awaitable]]] = []

    def push(self, description: str, action: Callable[[], Awaitable]) -> None:
        self._actions.append((description, action))

    def __len__(self) -> int:
        return len(self._actions)

    async def unwind(self) -> List[str]:
        """Run every action newest first. Returns descriptions of actions that failed."""
        failures = []
        while self._actions:
            description, action = self._actions.pop()
            try:
                await action()
                logger.info("Rollback: %s", description)
            except Exception as e:
                logger.error("Rollback step '%s' failed: %s", description, e)
                failures.append(description)
        return failures


class ProvisioningSaga:
    """Creates tenants with compensating rollback."""

    def __init__(
        self,
        registry: TenantRegistry,
        record_store: RecordStore,
        blob_store: BlobStore,
        lease_manager: LeaseManager
    ):
        self.registry = registry
        self.record_store = record_store
        self.blob_store = blob_store
        self.lease_manager = lease_manager

    @staticmethod
    def validate_input(name: str, intake_label: str) -> Tuple[str, str]:
        name = (name or "").strip()
        intake_label = (intake_label or "").strip()
        if not name or not TENANT_NAME_PATTERN.match(name):
            raise HubError(
                ErrorCode.INVALID_INPUT,
                "Tenant name must be 1-50 characters of letters, digits, spaces, '.', '_' or '-'"
            )
        if not intake_label:
            raise HubError(ErrorCode.INVALID_INPUT, "Intake label is required")
        return name, intake_label

    @staticmethod
    def _check_duplicates(tenants: List[Tenant], name: str, intake_label: str) -> None:
        for tenant in tenants:
            if tenant.name.lower() == name.lower():
                raise HubError(ErrorCode.DUPLICATE_TENANT, f"Tenant '{name}' already exists")
            if tenant.intake_label.lower() == intake_label.lower():
                raise HubError(
                    ErrorCode.DUPLICATE_TENANT,
                    f"Intake label '{intake_label}' is already used by tenant '{tenant.name}'"
                )

    async def provision(self, name: str, intake_label: str) -> Tenant:
        """
        Create a tenant with its folders, record store and registry row.

        Raises:
            HubError: INVALID_INPUT, DUPLICATE_TENANT, or the failing step's
            error after every created resource was rolled back
        """
        name, intake_label = self.validate_input(name, intake_label)
        stack = CompensationStack()

        async with self.lease_manager.lease(REGISTRY_RESOURCE, LOCK_TIMEOUT_SECONDS):
            try:
                self._check_duplicates(await self.registry.read_all_unlocked(), name, intake_label)

                root_id = await self._create_folders(name, stack)
                store_id = await self._create_store(name, stack)

                # Another writer may have registered the name while folders were created
                self._check_duplicates(await self.registry.read_all_unlocked(), name, intake_label)

                timestamp = now_iso()
                tenant = Tenant(
                    name=name,
                    intake_label=intake_label,
                    root_folder_id=root_id,
                    store_id=store_id,
                    status=TenantStatus.ACTIVE.value,
                    created_at=timestamp,
                    last_modified=timestamp,
                )
                row = await self.record_store.append_row(
                    self.registry.master_store_id, REGISTRY_TABLE, tenant.to_values()
                )
                tenant.record_id = row.record_id
                stack.push(
                    "remove registry row",
                    lambda: self.record_store.delete_row(self.registry.master_store_id, REGISTRY_TABLE, row.record_id)
                )

                await self._verify(tenant)

            except Exception as e:
                error = as_hub_error(e)
                logger.error("Provisioning of tenant '%s' failed: %s. Rolling back %d steps", name, error.message, len(stack))
                failures = await stack.unwind()
                self.registry.forget_folders(name)
                if failures:
                    error.details["rollback_failures"] = failures
                if error is e:
                    raise
                raise error from e

        logger.info("Provisioned tenant %s (store %s)", name, tenant.store_id)
        return tenant

    async def _create_folders(self, name: str, stack: CompensationStack) -> str:
        root_id = await self.blob_store.create_folder(None, f"{ROOT_FOLDER_PREFIX}{name}")
        # Trashing the root takes the whole subtree with it
        stack.push("trash root folder", lambda: self.blob_store.trash(root_id))

        accruals = await self.blob_store.ensure_folder(root_id, FOLDER_ACCRUALS)
        bills = await self.blob_store.ensure_folder(accruals, FOLDER_BILLS)
        await self.blob_store.ensure_folder(bills, FOLDER_BUFFER)
        months = await self.blob_store.ensure_folder(bills, FOLDER_MONTHS)
        await self.blob_store.ensure_folder(months, FOLDER_INFLOW)
        await self.blob_store.ensure_folder(months, FOLDER_OUTFLOW)
        await self.blob_store.ensure_folder(root_id, FOLDER_SPREADSHEETS)
        return root_id

    async def _create_store(self, name: str, stack: CompensationStack) -> str:
        store_id = await self.record_store.create_store(f"{name}{STORE_NAME_SUFFIX}")
        stack.push("delete record store", lambda: self.record_store.delete_store(store_id))
        await self.record_store.ensure_tables(store_id, TABLE_HEADERS)
        return store_id

    async def _verify(self, tenant: Tenant) -> None:
        registered = TenantRegistry._match(await self.registry.read_all_unlocked(), "name", tenant.name)
        if registered is None:
            raise HubError(ErrorCode.SYSTEM_ERROR, f"Tenant '{tenant.name}' not found after registration")

        report = await self.registry.validate_configuration(tenant)
        if not report["is_valid"]:
            raise HubError(
                ErrorCode.SYSTEM_ERROR,
                f"Tenant verification failed: {'; '.join(report['errors'])}",
                {"errors": report["errors"]}
            )
