"""
Accruals Hub - Synchronization Engine

Applies lifecycle MutationPlans to a tenant's record store and blob store
under the tenant lease.

Per plan:
- the Working row is re-read and must still have the plan's expected status,
  otherwise the plan is skipped as stale
- mutations run in order; appends are skipped (not failed) when the blob
  reference already exists in the plan's dedupe tables
- every applied step pushes a compensation; when a later step fails the
  compensations run newest first and the error is raised to the caller
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any, Awaitable, Callable

from services.blob_store import BlobStore
from services.errors import ErrorCode, HubError, as_hub_error
from services.hub_config import LOCK_TIMEOUT_SECONDS
from services.lifecycle import Mutation, MutationKind, MutationPlan
from services.record_store import RecordStore
from services.records import (
    COL_FILE_URL,
    DOWNSTREAM_TABLES,
    StoreRow,
    StoreTable,
    Tenant,
    WorkingRecord,
)
from services.tenant_lease import LeaseManager, TenantLease, tenant_resource

logger = logging.getLogger(__name__)


Compensation = Callable[[], Awaitable[Any]]


@dataclass
class PlanResult:
    """What happened to one plan."""
    action: str
    record_id: Optional[str]
    applied: bool = False
    stale: bool = False
    duplicates: int = 0
    steps_applied: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.stale

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "record_id": self.record_id,
            "applied": self.applied,
            "stale": self.stale,
            "duplicates": self.duplicates,
            "steps_applied": self.steps_applied,
            "warnings": self.warnings,
        }


class SyncSession:
    """Store access while the tenant lease is held."""

    def __init__(self, engine: "SyncEngine", tenant: Tenant, lease: TenantLease):
        self.engine = engine
        self.tenant = tenant
        self.lease = lease
        self.store = engine.record_store
        self.blobs = engine.blob_store

    @property
    def store_id(self) -> str:
        return self.tenant.store_id

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def read_working(self) -> List[WorkingRecord]:
        rows = await self.store.read_rows(self.store_id, StoreTable.WORKING.value)
        return [WorkingRecord.from_row(row) for row in rows]

    async def get_working(self, record_id: str) -> Optional[WorkingRecord]:
        row = await self.store.get_row(self.store_id, StoreTable.WORKING.value, record_id)
        return WorkingRecord.from_row(row) if row else None

    async def read_table(self, table: str) -> List[StoreRow]:
        return await self.store.read_rows(self.store_id, table)

    async def find_placement(self, blob_ref: str) -> Optional[Dict[str, Any]]:
        """Downstream table holding this blob reference, with its classification."""
        for table in DOWNSTREAM_TABLES:
            rows = await self.store.find_rows(self.store_id, table, COL_FILE_URL, blob_ref)
            if rows:
                row = rows[0]
                transaction_type = row.get("Inflow/Outflow Status").strip().lower()
                if not transaction_type and table != StoreTable.PENDING.value:
                    transaction_type = "outflow" if table == StoreTable.OUTFLOW.value else "inflow"
                return {
                    "table": table,
                    "transaction_type": transaction_type or "inflow",
                    "document_type": row.get("Document Type") or "other",
                }
        return None

    async def clear_table(self, table: str) -> int:
        return await self.store.clear_table(self.store_id, table)

    # -------------------------------------------------------------------------
    # Plan execution
    # -------------------------------------------------------------------------

    async def apply(self, plan: MutationPlan) -> PlanResult:
        """
        Apply one plan.

        Raises:
            HubError: the failing step's error, after compensation
        """
        result = PlanResult(action=plan.action, record_id=plan.record_id)

        if plan.record_id and plan.expected_status:
            current = await self.get_working(plan.record_id)
            if current is None or current.status != plan.expected_status:
                logger.info(
                    "Skipping stale %s plan for %s (expected %s, found %s)",
                    plan.action, plan.record_id, plan.expected_status,
                    current.status if current else "missing"
                )
                result.stale = True
                return result

        compensations: List[tuple] = []

        for mutation in plan.mutations:
            try:
                compensation = await self._apply_mutation(mutation, result)
            except Exception as e:
                error = as_hub_error(e)
                if mutation.optional:
                    logger.warning("Optional step '%s' failed: %s", mutation.description, error.message)
                    result.warnings.append(f"{mutation.description}: {error.message}")
                    continue

                logger.error(
                    "Step '%s' of %s plan failed for %s: %s",
                    mutation.description, plan.action, plan.record_id, error.message
                )
                await self._rollback(compensations)
                if error is e:
                    raise
                raise error from e

            result.steps_applied += 1
            if compensation is not None:
                compensations.append((mutation.description, compensation))

        result.applied = True
        return result

    async def _rollback(self, compensations: List[tuple]) -> None:
        for description, compensation in reversed(compensations):
            try:
                await compensation()
                logger.info("Rolled back: %s", description)
            except Exception as e:
                logger.error("Rollback of '%s' failed: %s", description, e)

    async def _apply_mutation(self, m: Mutation, result: PlanResult) -> Optional[Compensation]:
        store, store_id = self.store, self.store_id

        if m.kind == MutationKind.UPDATE_ROW:
            before = await store.get_row(store_id, m.table, m.record_id)
            if before is None:
                raise HubError(ErrorCode.FILE_NOT_FOUND, f"Row {m.record_id} no longer exists in {m.table}")
            await store.update_cells(store_id, m.table, m.record_id, m.values)
            previous = {column: before.get(column) for column in m.values}
            return lambda: store.update_cells(store_id, m.table, m.record_id, previous)

        if m.kind == MutationKind.APPEND_ROW:
            blob_ref = m.values.get(COL_FILE_URL, "")
            for table in m.dedupe_tables:
                if await store.find_rows(store_id, table, COL_FILE_URL, blob_ref):
                    logger.info("Duplicate %s already in %s, skipping insert into %s", blob_ref, table, m.table)
                    result.duplicates += 1
                    return None
            row = await store.append_row(store_id, m.table, m.values)
            return lambda: store.delete_row(store_id, m.table, row.record_id)

        if m.kind == MutationKind.DELETE_ROW:
            before = await store.get_row(store_id, m.table, m.record_id)
            if before is None:
                return None
            await store.delete_row(store_id, m.table, m.record_id)
            return lambda: store.append_row(store_id, m.table, before.values)

        if m.kind == MutationKind.DELETE_ROWS:
            removed = await store.delete_rows_where(store_id, m.table, m.match_column, m.match_value)
            if not removed:
                return None

            async def restore_rows():
                for row in sorted(removed, key=lambda r: r.position):
                    await store.append_row(store_id, m.table, row.values)
            return restore_rows

        if m.kind == MutationKind.MOVE_BLOB:
            try:
                info = await self.blobs.get_blob(m.blob_ref)
            except HubError as e:
                if e.code == ErrorCode.FILE_NOT_FOUND and m.missing_ok:
                    return None
                raise
            if info.folder_id == m.folder_id:
                return None
            if m.only_from_folders and info.folder_id not in m.only_from_folders:
                return None
            await self.blobs.move(m.blob_ref, m.folder_id)
            original_folder = info.folder_id
            return lambda: self.blobs.move(m.blob_ref, original_folder)

        if m.kind == MutationKind.RENAME_BLOB:
            info = await self.blobs.get_blob(m.blob_ref)
            if info.name == m.new_name:
                return None
            await self.blobs.rename(m.blob_ref, m.new_name)
            original_name = info.name
            return lambda: self.blobs.rename(m.blob_ref, original_name)

        raise HubError(ErrorCode.INVALID_INPUT, f"Unknown mutation kind: {m.kind}")


class SyncEngine:
    """Entry point for locked access to a tenant's stores."""

    def __init__(
        self,
        record_store: RecordStore,
        blob_store: BlobStore,
        lease_manager: LeaseManager,
        lock_timeout: float = LOCK_TIMEOUT_SECONDS
    ):
        self.record_store = record_store
        self.blob_store = blob_store
        self.lease_manager = lease_manager
        self.lock_timeout = lock_timeout

    @asynccontextmanager
    async def session(self, tenant: Tenant, timeout: Optional[float] = None):
        """Hold the tenant lease for the body of the with-block."""
        timeout = self.lock_timeout if timeout is None else timeout
        async with self.lease_manager.lease(tenant_resource(tenant.name), timeout) as lease:
            yield SyncSession(self, tenant, lease)

    async def apply(self, tenant: Tenant, plan: MutationPlan, timeout: Optional[float] = None) -> PlanResult:
        """Apply a single plan under its own lease."""
        async with self.session(tenant, timeout) as session:
            return await session.apply(plan)
