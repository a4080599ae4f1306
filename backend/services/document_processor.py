"""
Accruals Hub - Document Processor

Command surface for the lifecycle. Each command resolves the tenant, reads
what it needs under the tenant lease and drives the sync engine:

- process_enrichment:        enrich eligible Working rows with the AI service
- process_all_tenants:       process_enrichment for every active tenant
- reconcile_buffer_changes:  apply operator deletions and reactivations
- promote_to_categories:     move pending rows into Inflow / Outflow
- retry_failed:              put Failed rows back in the enrichment queue

Plus read-only reporting and maintenance helpers used by the dashboard.

Per-record failures are collected in the batch result and never abort the
batch. A SYSTEM_ERROR (lease timeout, broken store) stops the batch.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, List, Any

from services.enrichment import EnrichmentPipeline
from services.errors import ErrorCode, HubError, as_hub_error
from services.hub_config import (
    BATCH_DELAY_SECONDS,
    CLEANUP_OLDER_THAN_DAYS,
    CONFIDENCE_THRESHOLD,
    MAX_PROCESSING_ATTEMPTS,
    TENANT_DELAY_SECONDS,
    perform_health_check,
)
from services.lifecycle import HistoryKind, LifecycleEngine, PendingChange
from services.records import (
    COL_CONFIDENCE,
    COL_FILE_URL,
    COL_FLOW_STATUS,
    COL_PROCESSING_DATE,
    TABLE_HEADERS,
    RecordStatus,
    StoreRow,
    StoreTable,
    Tenant,
    TenantFolders,
    TransactionType,
    WorkingRecord,
)
from services.sync_engine import SyncEngine, SyncSession
from services.tenant_registry import TenantRegistry

logger = logging.getLogger(__name__)


# =============================================================================
# RESULTS
# =============================================================================

class Outcome:
    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"
    REACTIVATED = "reactivated"
    DELETED = "deleted"


@dataclass
class BatchResult:
    """Result of one command run."""
    operation: str
    tenant: Optional[str]
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    completed_at: str = ""
    success: bool = True
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    reactivated: int = 0
    deleted: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None

    def record(self, outcome: str, record_id: Optional[str], name: str = "", message: str = "", **extra) -> None:
        """Count an outcome and keep a detail line for it."""
        if outcome == Outcome.PROCESSED:
            self.processed += 1
        elif outcome == Outcome.SKIPPED:
            self.skipped += 1
        elif outcome == Outcome.FAILED:
            self.failed += 1
        elif outcome == Outcome.REACTIVATED:
            self.reactivated += 1
        elif outcome == Outcome.DELETED:
            self.deleted += 1

        detail = {"record_id": record_id, "name": name, "outcome": outcome}
        if message:
            detail["message"] = message
        detail.update(extra)
        self.details.append(detail)

    def abort(self, error: HubError) -> None:
        self.success = False
        self.error = error.to_dict()

    def finish(self) -> "BatchResult":
        self.completed_at = datetime.now(timezone.utc).isoformat()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "tenant": self.tenant,
            "success": self.success,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "reactivated": self.reactivated,
            "deleted": self.deleted,
            "stats": self.stats,
            "details": self.details[:500],  # Limit payload size
            "error": self.error,
        }


@dataclass
class EnrichmentStats:
    """Classification statistics for one enrichment run."""
    inflow: int = 0
    outflow: int = 0
    high_confidence: int = 0
    confidences: List[float] = field(default_factory=list)

    def record(self, transaction_type: str, confidence: float) -> None:
        if transaction_type == TransactionType.OUTFLOW.value:
            self.outflow += 1
        else:
            self.inflow += 1
        if confidence >= CONFIDENCE_THRESHOLD:
            self.high_confidence += 1
        self.confidences.append(confidence)

    def to_dict(self) -> Dict[str, Any]:
        average = sum(self.confidences) / len(self.confidences) if self.confidences else 0.0
        return {
            "inflow": self.inflow,
            "outflow": self.outflow,
            "high_confidence": self.high_confidence,
            "average_confidence": round(average, 3),
        }


def _parse_confidence(value: str) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_iso(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat((value or "").replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# =============================================================================
# PROCESSOR
# =============================================================================

class DocumentProcessor:
    """Runs lifecycle commands for tenants."""

    def __init__(
        self,
        registry: TenantRegistry,
        sync_engine: SyncEngine,
        pipeline: EnrichmentPipeline,
        batch_delay: float = BATCH_DELAY_SECONDS,
        tenant_delay: float = TENANT_DELAY_SECONDS,
        max_attempts: int = MAX_PROCESSING_ATTEMPTS,
        sleep=asyncio.sleep
    ):
        self.registry = registry
        self.sync = sync_engine
        self.pipeline = pipeline
        self.batch_delay = batch_delay
        self.tenant_delay = tenant_delay
        self.max_attempts = max_attempts
        self._sleep = sleep

    async def _resolve(self, tenant_name: str, require_active: bool = True, need_folders: bool = True):
        if not tenant_name or not tenant_name.strip():
            raise HubError(ErrorCode.INVALID_INPUT, "Tenant name is required")
        tenant = await self.registry.require(tenant_name)
        if require_active and not tenant.is_active:
            raise HubError(ErrorCode.INVALID_INPUT, f"Tenant is inactive: {tenant.name}")
        folders = await self.registry.get_folder_structure(tenant) if need_folders else None
        return tenant, folders

    # =========================================================================
    # ENRICHMENT
    # =========================================================================

    async def process_enrichment(self, tenant_name: str) -> BatchResult:
        """Enrich every eligible Working row of one tenant."""
        tenant, _ = await self._resolve(tenant_name)
        result = BatchResult(operation="process_enrichment", tenant=tenant.name)
        stats = EnrichmentStats()

        async with self.sync.session(tenant) as session:
            records = await session.read_working()

        now = datetime.now(timezone.utc)
        candidates = [
            r for r in records
            if LifecycleEngine.is_enrichment_candidate(r, self.max_attempts, now)
        ]
        result.stats["candidates"] = len(candidates)
        result.stats["exhausted"] = sum(1 for r in records if r.attempts >= self.max_attempts)
        logger.info("Tenant %s: %d of %d working rows eligible for enrichment", tenant.name, len(candidates), len(records))

        for index, record in enumerate(candidates):
            if index > 0:
                await self._sleep(self.batch_delay)
            try:
                await self._enrich_one(tenant, record, result, stats)
            except HubError as e:
                if e.code == ErrorCode.SYSTEM_ERROR:
                    logger.error("Enrichment batch for %s stopped: %s", tenant.name, e.message)
                    result.abort(e)
                    break
                result.record(Outcome.FAILED, record.record_id, record.original_name, e.message, code=e.code.value)

        result.stats.update(stats.to_dict())
        logger.info(
            "Tenant %s enrichment done: %d processed, %d failed, %d skipped",
            tenant.name, result.processed, result.failed, result.skipped
        )
        return result.finish()

    async def _enrich_one(
        self,
        tenant: Tenant,
        record: WorkingRecord,
        result: BatchResult,
        stats: EnrichmentStats
    ) -> None:
        # Claim the row under the lease
        async with self.sync.session(tenant) as session:
            fresh = await session.get_working(record.record_id)
            if fresh is None or not LifecycleEngine.is_enrichment_candidate(fresh, self.max_attempts):
                result.record(Outcome.SKIPPED, record.record_id, record.original_name, "No longer eligible")
                return
            placement = await session.find_placement(fresh.blob_ref)
            if placement:
                result.record(
                    Outcome.SKIPPED, fresh.record_id, fresh.original_name,
                    f"Already present in {placement['table']}"
                )
                return
            claimed = await session.apply(LifecycleEngine.plan_enrichment_start(fresh))
            if claimed.stale:
                result.record(Outcome.SKIPPED, fresh.record_id, fresh.original_name, "Changed before processing")
                return

        # AI call runs without the lease
        error: Optional[HubError] = None
        outcome = None
        try:
            outcome = await self.pipeline.enrich(fresh)
        except Exception as e:
            error = as_hub_error(e, ErrorCode.PROCESSING_FAILED)
            logger.error("AI processing failed for %s: %s", fresh.original_name, error.message)

        async with self.sync.session(tenant) as session:
            current = await session.get_working(fresh.record_id)
            if current is None or current.status != RecordStatus.PROCESSING.value:
                result.record(Outcome.SKIPPED, fresh.record_id, fresh.original_name, "Changed during processing")
                return

            if outcome is not None:
                try:
                    applied = await session.apply(LifecycleEngine.plan_enrichment_success(
                        current, outcome.fields, outcome.derived_name, outcome.model_name
                    ))
                except HubError as e:
                    error = e
                else:
                    stats.record(outcome.fields.transaction_type, outcome.fields.confidence)
                    result.record(
                        Outcome.PROCESSED, current.record_id, current.original_name,
                        derived_name=outcome.derived_name,
                        transaction_type=outcome.fields.transaction_type,
                        confidence=outcome.fields.confidence,
                        duplicate=applied.duplicates > 0,
                    )
                    return

            await session.apply(LifecycleEngine.plan_enrichment_failure(current, error))
            result.record(Outcome.FAILED, current.record_id, current.original_name, error.message, code=error.code.value)

    async def process_all_tenants(self) -> BatchResult:
        """Run enrichment for every active tenant, one after another."""
        result = BatchResult(operation="process_all_tenants", tenant=None)
        tenants = await self.registry.get_active()
        logger.info("Processing %d active tenants", len(tenants))

        for index, tenant in enumerate(tenants):
            if index > 0:
                await self._sleep(self.tenant_delay)
            try:
                tenant_result = await self.process_enrichment(tenant.name)
            except HubError as e:
                logger.error("Processing tenant %s failed: %s", tenant.name, e.message)
                result.failed += 1
                result.details.append({"tenant": tenant.name, "success": False, "error": e.to_dict()})
                continue

            result.processed += tenant_result.processed
            result.skipped += tenant_result.skipped
            result.failed += tenant_result.failed
            result.details.append({
                "tenant": tenant.name,
                "success": tenant_result.success,
                "processed": tenant_result.processed,
                "skipped": tenant_result.skipped,
                "failed": tenant_result.failed,
                "stats": tenant_result.stats,
            })

        result.stats["tenants"] = len(tenants)
        return result.finish()

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def reconcile_buffer_changes(self, tenant_name: str) -> BatchResult:
        """
        Apply operator deletions first, then reactivations, in one locked batch.
        """
        tenant, folders = await self._resolve(tenant_name)
        result = BatchResult(operation="reconcile_buffer_changes", tenant=tenant.name)

        async with self.sync.session(tenant) as session:
            records = await session.read_working()
            deletions = [r for r in records if LifecycleEngine.classify_pending_change(r) == PendingChange.DELETION]
            reactivations = [r for r in records if LifecycleEngine.classify_pending_change(r) == PendingChange.REACTIVATION]
            logger.info(
                "Tenant %s: %d deletions, %d reactivations pending",
                tenant.name, len(deletions), len(reactivations)
            )

            try:
                for record in deletions:
                    await self._apply_deletion(session, folders, record, result)
                for record in reactivations:
                    await self._apply_reactivation(session, folders, record, result)
            except HubError as e:
                logger.error("Reconciliation for %s stopped: %s", tenant.name, e.message)
                result.abort(e)

        return result.finish()

    async def _apply_deletion(self, session: SyncSession, folders: TenantFolders, record: WorkingRecord, result: BatchResult):
        try:
            placement = await session.find_placement(record.blob_ref) if record.blob_ref else None
            plan = LifecycleEngine.plan_deletion(record, folders, placement)
            applied = await session.apply(plan)
        except HubError as e:
            if e.code == ErrorCode.SYSTEM_ERROR:
                raise
            logger.error("Deletion of %s failed: %s", record.original_name, e.message)
            result.record(Outcome.FAILED, record.record_id, record.original_name, e.message, code=e.code.value, change="deletion")
            return

        if applied.stale:
            result.record(Outcome.SKIPPED, record.record_id, record.original_name, "Changed before deletion", change="deletion")
        else:
            result.record(Outcome.DELETED, record.record_id, record.original_name, change="deletion")

    async def _apply_reactivation(self, session: SyncSession, folders: TenantFolders, record: WorkingRecord, result: BatchResult):
        marker = LifecycleEngine.last_marker(record.history) or {}
        placement = {}
        if marker.get("kind") == HistoryKind.DELETED.value:
            placement = marker.get("metadata", {}).get("placement") or {}

        restored = None
        if record.has_enrichment:
            restored = EnrichmentPipeline.restore(
                record,
                transaction_type=placement.get("transaction_type", TransactionType.INFLOW.value),
                document_type=placement.get("document_type", "other"),
            )

        try:
            applied = await session.apply(LifecycleEngine.plan_reactivation(record, folders, restored))
        except HubError as e:
            if e.code == ErrorCode.SYSTEM_ERROR:
                raise
            logger.error("Reactivation of %s failed: %s", record.original_name, e.message)
            result.record(Outcome.FAILED, record.record_id, record.original_name, e.message, code=e.code.value, change="reactivation")
            return

        if applied.stale:
            result.record(Outcome.SKIPPED, record.record_id, record.original_name, "Changed before reactivation", change="reactivation")
        else:
            result.record(
                Outcome.REACTIVATED, record.record_id, record.original_name,
                change="reactivation", restored=restored is not None, duplicate=applied.duplicates > 0
            )

    async def get_pending_changes(self, tenant_name: str) -> Dict[str, Any]:
        """Preview what reconcile_buffer_changes would do."""
        tenant, _ = await self._resolve(tenant_name, require_active=False, need_folders=False)
        async with self.sync.session(tenant) as session:
            records = await session.read_working()

        deletions, reactivations = [], []
        for record in records:
            change = LifecycleEngine.classify_pending_change(record)
            if change == PendingChange.DELETION:
                entry = record.to_dict()
                entry["missing_reason"] = not (record.reason or "").strip()
                deletions.append(entry)
            elif change == PendingChange.REACTIVATION:
                entry = record.to_dict()
                entry["can_restore"] = record.has_enrichment
                reactivations.append(entry)

        return {
            "tenant": tenant.name,
            "deletions": deletions,
            "reactivations": reactivations,
            "has_changes": bool(deletions or reactivations),
            "summary": f"{len(deletions)} deletions, {len(reactivations)} reactivations pending",
        }

    # =========================================================================
    # CATEGORIZATION
    # =========================================================================

    async def promote_to_categories(self, tenant_name: str) -> BatchResult:
        """
        Move every pending row into its category table. The pending table is
        cleared afterwards only when no row failed.
        """
        tenant, folders = await self._resolve(tenant_name)
        result = BatchResult(operation="promote_to_categories", tenant=tenant.name)
        counts = {TransactionType.INFLOW.value: 0, TransactionType.OUTFLOW.value: 0}

        async with self.sync.session(tenant) as session:
            pending_rows = await session.read_table(StoreTable.PENDING.value)

            for row in pending_rows:
                name = row.get("File Name")
                if row.is_empty() or not row.get(COL_FILE_URL).strip():
                    result.record(Outcome.SKIPPED, row.record_id, name, "Incomplete pending row")
                    continue
                try:
                    applied = await session.apply(LifecycleEngine.plan_promotion(row, folders))
                except HubError as e:
                    if e.code == ErrorCode.SYSTEM_ERROR:
                        logger.error("Promotion batch for %s stopped: %s", tenant.name, e.message)
                        result.abort(e)
                        break
                    logger.error("Promotion of %s failed: %s", name, e.message)
                    result.record(Outcome.FAILED, row.record_id, name, e.message, code=e.code.value)
                    continue

                transaction_type = row.get(COL_FLOW_STATUS).strip().lower()
                if applied.duplicates:
                    result.record(Outcome.SKIPPED, row.record_id, name, "Already categorized", transaction_type=transaction_type)
                else:
                    counts[transaction_type] += 1
                    result.record(Outcome.PROCESSED, row.record_id, name, transaction_type=transaction_type)

            if result.success and result.failed == 0:
                result.stats["cleared"] = await session.clear_table(StoreTable.PENDING.value)
            else:
                result.stats["cleared"] = 0
                logger.warning(
                    "Tenant %s: promotion incomplete (%d failed), pending table left in place",
                    tenant.name, result.failed
                )

        result.stats.update(counts)
        return result.finish()

    # =========================================================================
    # RETRY
    # =========================================================================

    async def retry_failed(self, tenant_name: str) -> BatchResult:
        """Reset every Failed row to Active with zero attempts."""
        tenant, _ = await self._resolve(tenant_name)
        result = BatchResult(operation="retry_failed", tenant=tenant.name)

        async with self.sync.session(tenant) as session:
            for record in await session.read_working():
                if record.status != RecordStatus.FAILED.value:
                    continue
                try:
                    applied = await session.apply(LifecycleEngine.plan_retry(record))
                except HubError as e:
                    if e.code == ErrorCode.SYSTEM_ERROR:
                        logger.error("Retry batch for %s stopped: %s", tenant.name, e.message)
                        result.abort(e)
                        break
                    result.record(Outcome.FAILED, record.record_id, record.original_name, e.message, code=e.code.value)
                    continue
                outcome = Outcome.SKIPPED if applied.stale else Outcome.PROCESSED
                result.record(outcome, record.record_id, record.original_name)

        logger.info("Tenant %s: %d failed rows queued for retry", tenant.name, result.processed)
        return result.finish()

    # =========================================================================
    # REPORTING
    # =========================================================================

    async def _snapshot(self, tenant: Tenant) -> Dict[str, List]:
        async with self.sync.session(tenant) as session:
            snapshot = {"working": await session.read_working()}
            for table in (StoreTable.PENDING.value, StoreTable.INFLOW.value, StoreTable.OUTFLOW.value):
                snapshot[table] = await session.read_table(table)
        return snapshot

    async def get_processing_stats(self, tenant_name: str) -> Dict[str, Any]:
        tenant, _ = await self._resolve(tenant_name, require_active=False, need_folders=False)
        snapshot = await self._snapshot(tenant)
        working: List[WorkingRecord] = snapshot["working"]
        pending: List[StoreRow] = snapshot[StoreTable.PENDING.value]

        by_status: Dict[str, int] = {}
        for record in working:
            by_status[record.status] = by_status.get(record.status, 0) + 1

        confidences = [c for c in (_parse_confidence(r.get(COL_CONFIDENCE)) for r in pending) if c is not None]

        return {
            "tenant": tenant.name,
            "total_files": len(working),
            "by_status": by_status,
            "enriched": sum(1 for r in working if r.has_enrichment),
            "exhausted": sum(1 for r in working if r.attempts >= self.max_attempts),
            "pending_categorization": len(pending),
            "pending_inflow": sum(1 for r in pending if r.get(COL_FLOW_STATUS) == TransactionType.INFLOW.value),
            "pending_outflow": sum(1 for r in pending if r.get(COL_FLOW_STATUS) == TransactionType.OUTFLOW.value),
            "high_confidence": sum(1 for c in confidences if c >= CONFIDENCE_THRESHOLD),
            "average_confidence": round(sum(confidences) / len(confidences), 3) if confidences else 0.0,
        }

    async def analyze_processing_quality(self, tenant_name: str) -> Dict[str, Any]:
        """Grade classification quality from confidences and failure rate."""
        tenant, _ = await self._resolve(tenant_name, require_active=False, need_folders=False)
        snapshot = await self._snapshot(tenant)
        working: List[WorkingRecord] = snapshot["working"]

        confidences = []
        for table in (StoreTable.PENDING.value, StoreTable.INFLOW.value, StoreTable.OUTFLOW.value):
            for row in snapshot[table]:
                value = _parse_confidence(row.get(COL_CONFIDENCE))
                if value is not None:
                    confidences.append(value)

        attempted = [r for r in working if r.attempts > 0 or r.status == RecordStatus.FAILED.value]
        failed = [r for r in working if r.status == RecordStatus.FAILED.value]
        failure_rate = len(failed) / len(attempted) if attempted else 0.0
        average = sum(confidences) / len(confidences) if confidences else 0.0
        low_confidence = sum(1 for c in confidences if c < CONFIDENCE_THRESHOLD)

        if average >= 0.9 and failure_rate <= 0.05:
            quality = "excellent"
        elif average >= 0.8 and failure_rate <= 0.10:
            quality = "good"
        elif average >= 0.6 and failure_rate <= 0.20:
            quality = "fair"
        else:
            quality = "poor"

        recommendations = []
        if failure_rate > 0.10:
            recommendations.append("High failure rate: check file types and sizes, then retry failed documents")
        if confidences and average < 0.8:
            recommendations.append("Low average confidence: review extracted fields before promoting")
        if low_confidence:
            recommendations.append(f"{low_confidence} documents below confidence {CONFIDENCE_THRESHOLD}: spot-check them")
        if not confidences:
            recommendations.append("No classified documents yet")

        return {
            "tenant": tenant.name,
            "quality": quality,
            "average_confidence": round(average, 3),
            "failure_rate": round(failure_rate, 3),
            "classified": len(confidences),
            "low_confidence": low_confidence,
            "failed": len(failed),
            "recommendations": recommendations,
        }

    async def get_store_statistics(self, tenant_name: str) -> Dict[str, Any]:
        tenant, _ = await self._resolve(tenant_name, require_active=False, need_folders=False)
        snapshot = await self._snapshot(tenant)
        working: List[WorkingRecord] = snapshot["working"]

        by_status = {status.value: 0 for status in RecordStatus}
        for record in working:
            by_status[record.status] = by_status.get(record.status, 0) + 1

        return {
            "tenant": tenant.name,
            "working": {"total": len(working), "by_status": by_status},
            "pending_categorization": len(snapshot[StoreTable.PENDING.value]),
            "inflow": len(snapshot[StoreTable.INFLOW.value]),
            "outflow": len(snapshot[StoreTable.OUTFLOW.value]),
        }

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    async def validate_and_repair_structure(self, tenant_name: str) -> Dict[str, Any]:
        """Recreate missing tables and add missing columns."""
        tenant, _ = await self._resolve(tenant_name, require_active=False, need_folders=False)
        store = self.sync.record_store
        errors: List[str] = []
        warnings: List[str] = []
        repairs: List[str] = []

        if not await store.store_exists(tenant.store_id):
            errors.append(f"Record store not accessible: {tenant.store_id}")
            return {"is_valid": False, "errors": errors, "warnings": warnings, "repairs": repairs}

        async with self.sync.session(tenant):
            tables = await store.list_tables(tenant.store_id)
            for table, expected in TABLE_HEADERS.items():
                if table not in tables:
                    await store.ensure_table(tenant.store_id, table, expected)
                    repairs.append(f"Created missing table {table}")
                    continue

                headers = await store.get_headers(tenant.store_id, table)
                missing = [h for h in expected if h not in headers]
                extra = [h for h in headers if h not in expected]
                if missing:
                    await store.set_headers(tenant.store_id, table, headers + missing)
                    repairs.append(f"Added columns to {table}: {', '.join(missing)}")
                if extra:
                    warnings.append(f"Unexpected columns in {table}: {', '.join(extra)}")

        logger.info("Structure check for %s: %d repairs, %d warnings", tenant.name, len(repairs), len(warnings))
        return {"is_valid": not errors, "errors": errors, "warnings": warnings, "repairs": repairs}

    async def cleanup_old_pending(self, tenant_name: str, days_old: int = CLEANUP_OLDER_THAN_DAYS) -> Dict[str, Any]:
        """Remove pending rows whose processing date is older than days_old."""
        if days_old < 1:
            raise HubError(ErrorCode.INVALID_INPUT, "days_old must be at least 1")
        tenant, _ = await self._resolve(tenant_name, require_active=False, need_folders=False)
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_old)
        store = self.sync.record_store
        removed = 0

        async with self.sync.session(tenant) as session:
            rows = await session.read_table(StoreTable.PENDING.value)
            for row in sorted(rows, key=lambda r: r.position, reverse=True):
                processed_at = _parse_iso(row.get(COL_PROCESSING_DATE))
                if processed_at and processed_at < cutoff:
                    if await store.delete_row(tenant.store_id, StoreTable.PENDING.value, row.record_id):
                        removed += 1

        logger.info("Removed %d pending rows older than %d days for %s", removed, days_old, tenant.name)
        return {"tenant": tenant.name, "removed": removed, "cutoff": cutoff.isoformat()}

    async def cleanup_empty_rows(self, tenant_name: str) -> Dict[str, Any]:
        tenant, _ = await self._resolve(tenant_name, require_active=False, need_folders=False)
        store = self.sync.record_store
        removed: Dict[str, int] = {}

        async with self.sync.session(tenant) as session:
            for table in TABLE_HEADERS:
                count = 0
                rows = await session.read_table(table)
                for row in sorted(rows, key=lambda r: r.position, reverse=True):
                    if row.is_empty() and await store.delete_row(tenant.store_id, table, row.record_id):
                        count += 1
                removed[table] = count

        return {"tenant": tenant.name, "removed": removed, "total": sum(removed.values())}

    # =========================================================================
    # SYSTEM
    # =========================================================================

    async def get_system_status(self) -> Dict[str, Any]:
        """Health check plus per-tenant configuration and pending changes."""
        try:
            tenants = await self.registry.get_all()
            registry_ok = True
        except HubError as e:
            logger.error("Tenant registry unavailable: %s", e.message)
            tenants, registry_ok = [], False

        health = perform_health_check(registry_ok=registry_ok)
        tenant_reports = []
        total_deletions = total_reactivations = 0

        for tenant in tenants:
            report = {"name": tenant.name, "status": tenant.status}
            report["configuration"] = await self.registry.validate_configuration(tenant)
            if report["configuration"]["is_valid"]:
                try:
                    changes = await self.get_pending_changes(tenant.name)
                    report["pending_deletions"] = len(changes["deletions"])
                    report["pending_reactivations"] = len(changes["reactivations"])
                    total_deletions += report["pending_deletions"]
                    total_reactivations += report["pending_reactivations"]
                except HubError as e:
                    report["error"] = e.to_dict()
            tenant_reports.append(report)

        return {
            "health": health,
            "tenants": tenant_reports,
            "total_tenants": len(tenants),
            "active_tenants": sum(1 for t in tenants if t.is_active),
            "pending_deletions": total_deletions,
            "pending_reactivations": total_reactivations,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
