"""
Accruals Hub - Document Lifecycle State Machine

Deterministic rules for how a Working record moves between states and which
store and blob mutations each move requires. This module is pure business
logic: it reads typed records and returns MutationPlans; the sync engine is
what applies them.

States:
    Active      - waiting for enrichment, or enriched and placed downstream
    Processing  - an enrichment call is in flight
    Failed      - enrichment failed; operator retry puts it back to Active
    Deleted     - operator deleted it; downstream rows are removed

Deletion and reactivation are requested by editing the Working row's Status
and Reason cells. The reconciliation pass detects them with
classify_pending_change(): the last Deleted/Reactivated marker in the row's
transition history decides, and rows that have no marker yet fall back to the
"Deleted: " reason prefix.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, List, Tuple, Any
import logging

from services.errors import ErrorCode, HubError
from services.hub_config import MAX_PROCESSING_ATTEMPTS, OPERATION_TIMEOUT_SECONDS
from services.records import (
    COL_ATTEMPTS,
    COL_CHANGED_NAME,
    COL_FILE_URL,
    COL_HISTORY,
    COL_INVOICE_NUMBER,
    COL_LAST_MODIFIED,
    COL_REASON,
    COL_STATUS,
    DOWNSTREAM_TABLES,
    EnrichedFields,
    RecordStatus,
    StoreRow,
    StoreTable,
    TenantFolders,
    WorkingRecord,
    build_category_values,
    build_pending_values,
    category_table_for,
    encode_history,
    now_iso,
)

logger = logging.getLogger(__name__)


DELETED_PREFIX = "Deleted: "
REACTIVATED_PREFIX = "Reactivated on "
FAILED_PREFIX = "AI Processing Failed: "
RETRY_PREFIX = "Retry requested on "

# Oldest entries are dropped beyond this many
HISTORY_LIMIT = 50


# =============================================================================
# EVENTS & TRANSITIONS
# =============================================================================

class LifecycleEvent(str, Enum):
    """Events that move a record between states."""
    ENRICH_STARTED = "enrich_started"
    ENRICH_SUCCEEDED = "enrich_succeeded"
    ENRICH_FAILED = "enrich_failed"
    RETRY_REQUESTED = "retry_requested"
    DELETE_REQUESTED = "delete_requested"
    REACTIVATED = "reactivated"


class HistoryKind(str, Enum):
    """Tags of transition history entries."""
    DELETED = "Deleted"
    REACTIVATED = "Reactivated"
    ENRICHED = "Enriched"
    FAILED = "Failed"
    RETRY_REQUESTED = "RetryRequested"


class PendingChange(str, Enum):
    DELETION = "deletion"
    REACTIVATION = "reactivation"


LIFECYCLE_TRANSITIONS = {
    RecordStatus.ACTIVE.value: {
        LifecycleEvent.ENRICH_STARTED.value: RecordStatus.PROCESSING.value,
        LifecycleEvent.DELETE_REQUESTED.value: RecordStatus.DELETED.value,
    },
    RecordStatus.PROCESSING.value: {
        LifecycleEvent.ENRICH_SUCCEEDED.value: RecordStatus.ACTIVE.value,
        LifecycleEvent.ENRICH_FAILED.value: RecordStatus.FAILED.value,
        LifecycleEvent.DELETE_REQUESTED.value: RecordStatus.DELETED.value,
    },
    RecordStatus.FAILED.value: {
        LifecycleEvent.RETRY_REQUESTED.value: RecordStatus.ACTIVE.value,
        LifecycleEvent.DELETE_REQUESTED.value: RecordStatus.DELETED.value,
    },
    RecordStatus.DELETED.value: {
        LifecycleEvent.REACTIVATED.value: RecordStatus.ACTIVE.value,
    },
}


class TransitionHistoryEntry:
    """Represents a single entry in a record's transition history."""

    def __init__(
        self,
        kind: str,
        from_status: Optional[str],
        to_status: str,
        event: str,
        justification: Optional[str] = None,
        metadata: Optional[Dict] = None,
        at: Optional[str] = None
    ):
        self.kind = kind.value if isinstance(kind, HistoryKind) else kind
        self.at = at or now_iso()
        self.from_status = from_status
        self.to_status = to_status
        self.event = event
        self.justification = justification
        self.metadata = metadata or {}

    def to_dict(self) -> Dict:
        entry = {
            "kind": self.kind,
            "at": self.at,
            "from": self.from_status,
            "to": self.to_status,
            "event": self.event,
        }
        if self.justification is not None:
            entry["justification"] = self.justification
        if self.metadata:
            entry["metadata"] = self.metadata
        return entry


# =============================================================================
# MUTATION PLANS
# =============================================================================

class MutationKind(str, Enum):
    UPDATE_ROW = "update_row"
    APPEND_ROW = "append_row"
    DELETE_ROW = "delete_row"
    DELETE_ROWS = "delete_rows"
    MOVE_BLOB = "move_blob"
    RENAME_BLOB = "rename_blob"


@dataclass
class Mutation:
    """One store or blob change inside a plan."""
    kind: MutationKind
    table: Optional[str] = None
    record_id: Optional[str] = None
    values: Dict[str, str] = field(default_factory=dict)
    match_column: Optional[str] = None
    match_value: Optional[str] = None
    # APPEND_ROW: skip the insert when the blob ref already exists in any of these
    dedupe_tables: List[str] = field(default_factory=list)
    blob_ref: Optional[str] = None
    folder_id: Optional[str] = None
    # MOVE_BLOB: only move when the blob currently sits in one of these folders
    only_from_folders: List[str] = field(default_factory=list)
    missing_ok: bool = False
    new_name: Optional[str] = None
    # A failing optional step is logged and skipped instead of failing the plan
    optional: bool = False
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "table": self.table,
            "record_id": self.record_id,
            "blob_ref": self.blob_ref,
            "description": self.description,
        }


@dataclass
class MutationPlan:
    """Ordered mutations for one record, applied atomically by the sync engine."""
    action: str
    record_id: Optional[str]
    mutations: List[Mutation] = field(default_factory=list)
    # Working row must still have this status when the plan is applied
    expected_status: Optional[str] = None
    history_entry: Optional[TransitionHistoryEntry] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "record_id": self.record_id,
            "expected_status": self.expected_status,
            "mutations": [m.to_dict() for m in self.mutations],
        }


# =============================================================================
# LIFECYCLE ENGINE
# =============================================================================

def _ts() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _parse_iso(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class LifecycleEngine:
    """
    Pure lifecycle rules. No direct store or blob calls.
    """

    @staticmethod
    def can_transition(current_status: Optional[str], event: str) -> Tuple[bool, Optional[str], str]:
        """
        Check if a transition is valid.

        Returns:
            (can_transition, next_status, reason)
        """
        current_key = current_status.value if isinstance(current_status, RecordStatus) else current_status
        event_key = event.value if isinstance(event, LifecycleEvent) else event

        status_transitions = LIFECYCLE_TRANSITIONS.get(current_key)
        if status_transitions is None:
            return (False, None, f"No transitions defined for status '{current_key}'")

        next_status = status_transitions.get(event_key)
        if next_status is None:
            valid_events = list(status_transitions.keys())
            return (False, None, f"Event '{event_key}' not valid for status '{current_key}'. Valid: {valid_events}")

        return (True, next_status, "Transition allowed")

    @staticmethod
    def _require(current_status: str, event: LifecycleEvent, record: WorkingRecord) -> str:
        allowed, next_status, reason = LifecycleEngine.can_transition(current_status, event)
        if not allowed:
            logger.warning("Invalid lifecycle transition: record=%s, %s", record.record_id, reason)
            raise HubError(ErrorCode.INVALID_INPUT, reason, {"record_id": record.record_id})
        return next_status

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    @staticmethod
    def last_marker(history: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Most recent Deleted or Reactivated entry."""
        for entry in reversed(history or []):
            if entry.get("kind") in (HistoryKind.DELETED.value, HistoryKind.REACTIVATED.value):
                return entry
        return None

    @staticmethod
    def classify_pending_change(record: WorkingRecord) -> Optional[PendingChange]:
        """
        Deletion is only detected on Deleted rows and reactivation only on
        Active rows, so a row never matches both.
        """
        marker = LifecycleEngine.last_marker(record.history)
        deleted_marker = marker is not None and marker.get("kind") == HistoryKind.DELETED.value
        reason_deleted = (record.reason or "").startswith(DELETED_PREFIX)

        if record.status == RecordStatus.DELETED.value:
            already_processed = deleted_marker if marker is not None else reason_deleted
            return None if already_processed else PendingChange.DELETION

        if record.status == RecordStatus.ACTIVE.value:
            was_deleted = deleted_marker if marker is not None else reason_deleted
            return PendingChange.REACTIVATION if was_deleted else None

        return None

    @staticmethod
    def prior_status(record: WorkingRecord) -> str:
        """Status the record held before the operator's edit."""
        for entry in reversed(record.history or []):
            if entry.get("to"):
                return entry["to"]
        return RecordStatus.ACTIVE.value

    @staticmethod
    def is_stale_processing(record: WorkingRecord, now: Optional[datetime] = None) -> bool:
        if record.status != RecordStatus.PROCESSING.value:
            return False
        modified = _parse_iso(record.last_modified)
        if modified is None:
            return True
        now = now or datetime.now(timezone.utc)
        return (now - modified).total_seconds() > OPERATION_TIMEOUT_SECONDS

    @staticmethod
    def is_enrichment_candidate(
        record: WorkingRecord,
        max_attempts: int = MAX_PROCESSING_ATTEMPTS,
        now: Optional[datetime] = None
    ) -> bool:
        """
        Working-set filter for the enrichment pass. Records at the attempt
        ceiling are excluded whatever their status.
        """
        if record.attempts >= max_attempts:
            return False
        if not record.original_name or not record.blob_ref:
            return False
        if record.has_enrichment:
            return False
        if record.status == RecordStatus.ACTIVE.value:
            return LifecycleEngine.classify_pending_change(record) is None
        return LifecycleEngine.is_stale_processing(record, now)

    # -------------------------------------------------------------------------
    # Working row updates
    # -------------------------------------------------------------------------

    @staticmethod
    def working_update(
        record: WorkingRecord,
        to_status: str,
        reason: str,
        entry: Optional[TransitionHistoryEntry] = None,
        extra: Optional[Dict[str, Any]] = None
    ) -> Mutation:
        """Single row update carrying status, reason and history together."""
        history = list(record.history)
        if entry is not None:
            history.append(entry.to_dict())
        history = history[-HISTORY_LIMIT:]

        values = {
            COL_STATUS: to_status,
            COL_REASON: reason,
            COL_HISTORY: encode_history(history),
            COL_LAST_MODIFIED: now_iso(),
        }
        values.update(extra or {})
        return Mutation(
            kind=MutationKind.UPDATE_ROW,
            table=StoreTable.WORKING.value,
            record_id=record.record_id,
            values={k: str(v) for k, v in values.items()},
            description=f"Working row -> {to_status}",
        )

    # -------------------------------------------------------------------------
    # Plan builders
    # -------------------------------------------------------------------------

    @staticmethod
    def plan_enrichment_start(record: WorkingRecord) -> MutationPlan:
        current = RecordStatus.ACTIVE.value if LifecycleEngine.is_stale_processing(record) else record.status
        next_status = LifecycleEngine._require(current, LifecycleEvent.ENRICH_STARTED, record)
        return MutationPlan(
            action="enrich_start",
            record_id=record.record_id,
            expected_status=record.status,
            mutations=[Mutation(
                kind=MutationKind.UPDATE_ROW,
                table=StoreTable.WORKING.value,
                record_id=record.record_id,
                values={COL_STATUS: next_status, COL_LAST_MODIFIED: now_iso()},
                description="Working row -> Processing",
            )],
        )

    @staticmethod
    def plan_enrichment_success(
        record: WorkingRecord,
        fields: EnrichedFields,
        derived_name: str,
        model_name: str = ""
    ) -> MutationPlan:
        """Rename blob, add pending row, then record the fields on the Working row."""
        next_status = LifecycleEngine._require(record.status, LifecycleEvent.ENRICH_SUCCEEDED, record)
        entry = TransitionHistoryEntry(
            kind=HistoryKind.ENRICHED,
            from_status=record.status,
            to_status=next_status,
            event=LifecycleEvent.ENRICH_SUCCEEDED.value,
            metadata={
                "derived_name": derived_name,
                "transaction_type": fields.transaction_type,
                "confidence": fields.confidence,
                "model": model_name,
            },
        )
        return MutationPlan(
            action="enrich",
            record_id=record.record_id,
            expected_status=RecordStatus.PROCESSING.value,
            history_entry=entry,
            mutations=[
                Mutation(
                    kind=MutationKind.RENAME_BLOB,
                    blob_ref=record.blob_ref,
                    new_name=derived_name,
                    optional=True,
                    description="Rename blob to derived name",
                ),
                Mutation(
                    kind=MutationKind.APPEND_ROW,
                    table=StoreTable.PENDING.value,
                    values=build_pending_values(record, fields, derived_name),
                    dedupe_tables=list(DOWNSTREAM_TABLES),
                    description="Add pending categorization row",
                ),
                LifecycleEngine.working_update(
                    record, next_status, record.reason, entry,
                    extra={
                        COL_CHANGED_NAME: derived_name,
                        COL_INVOICE_NUMBER: fields.invoice_number,
                        COL_ATTEMPTS: record.attempts + 1,
                    },
                ),
            ],
        )

    @staticmethod
    def plan_enrichment_failure(record: WorkingRecord, error: HubError) -> MutationPlan:
        next_status = LifecycleEngine._require(record.status, LifecycleEvent.ENRICH_FAILED, record)
        entry = TransitionHistoryEntry(
            kind=HistoryKind.FAILED,
            from_status=record.status,
            to_status=next_status,
            event=LifecycleEvent.ENRICH_FAILED.value,
            metadata={"code": error.code.value, "message": error.message},
        )
        reason = f"{FAILED_PREFIX}{error.message} ({_ts()})"
        return MutationPlan(
            action="enrich_failed",
            record_id=record.record_id,
            expected_status=RecordStatus.PROCESSING.value,
            history_entry=entry,
            mutations=[
                LifecycleEngine.working_update(
                    record, next_status, reason, entry,
                    extra={COL_ATTEMPTS: record.attempts + 1},
                ),
            ],
        )

    @staticmethod
    def plan_retry(record: WorkingRecord) -> MutationPlan:
        next_status = LifecycleEngine._require(record.status, LifecycleEvent.RETRY_REQUESTED, record)
        entry = TransitionHistoryEntry(
            kind=HistoryKind.RETRY_REQUESTED,
            from_status=record.status,
            to_status=next_status,
            event=LifecycleEvent.RETRY_REQUESTED.value,
            metadata={"previous_attempts": record.attempts},
        )
        return MutationPlan(
            action="retry",
            record_id=record.record_id,
            expected_status=RecordStatus.FAILED.value,
            history_entry=entry,
            mutations=[
                LifecycleEngine.working_update(
                    record, next_status, f"{RETRY_PREFIX}{_ts()}", entry,
                    extra={COL_ATTEMPTS: 0},
                ),
            ],
        )

    @staticmethod
    def plan_deletion(
        record: WorkingRecord,
        folders: TenantFolders,
        placement: Optional[Dict[str, Any]] = None
    ) -> MutationPlan:
        """
        Blob back to staging, downstream rows removed, Working row updated last.

        Raises:
            HubError: INVALID_INPUT when the operator gave no reason
        """
        justification = (record.reason or "").strip()
        if not justification:
            raise HubError(
                ErrorCode.INVALID_INPUT,
                "Deletion reason is required",
                {"record_id": record.record_id, "file": record.original_name}
            )

        prior = LifecycleEngine.prior_status(record)
        if prior == RecordStatus.DELETED.value:
            prior = RecordStatus.ACTIVE.value
        next_status = LifecycleEngine._require(prior, LifecycleEvent.DELETE_REQUESTED, record)

        entry = TransitionHistoryEntry(
            kind=HistoryKind.DELETED,
            from_status=prior,
            to_status=next_status,
            event=LifecycleEvent.DELETE_REQUESTED.value,
            justification=justification,
            metadata={"placement": placement} if placement else None,
        )

        mutations = []
        if record.blob_ref:
            mutations.append(Mutation(
                kind=MutationKind.MOVE_BLOB,
                blob_ref=record.blob_ref,
                folder_id=folders.buffer,
                only_from_folders=[f for f in (folders.inflow, folders.outflow) if f],
                missing_ok=True,
                description="Move blob out of category folders",
            ))
        for table in DOWNSTREAM_TABLES:
            mutations.append(Mutation(
                kind=MutationKind.DELETE_ROWS,
                table=table,
                match_column=COL_FILE_URL,
                match_value=record.blob_ref,
                description=f"Remove {table} rows",
            ))
        mutations.append(LifecycleEngine.working_update(
            record, next_status, f"{DELETED_PREFIX}{justification} ({_ts()})", entry,
        ))

        return MutationPlan(
            action="delete",
            record_id=record.record_id,
            expected_status=RecordStatus.DELETED.value,
            history_entry=entry,
            mutations=mutations,
        )

    @staticmethod
    def plan_reactivation(
        record: WorkingRecord,
        folders: TenantFolders,
        restored: Optional[EnrichedFields] = None
    ) -> MutationPlan:
        """
        Blob into staging, pending row restored when the fields can be rebuilt,
        then the Working row.
        """
        next_status = LifecycleEngine._require(RecordStatus.DELETED.value, LifecycleEvent.REACTIVATED, record)
        entry = TransitionHistoryEntry(
            kind=HistoryKind.REACTIVATED,
            from_status=RecordStatus.DELETED.value,
            to_status=next_status,
            event=LifecycleEvent.REACTIVATED.value,
            metadata={"restored": restored is not None},
        )

        mutations = [
            Mutation(
                kind=MutationKind.MOVE_BLOB,
                blob_ref=record.blob_ref,
                folder_id=folders.buffer,
                description="Restore blob to staging",
            ),
        ]
        if restored is not None:
            mutations.append(Mutation(
                kind=MutationKind.APPEND_ROW,
                table=StoreTable.PENDING.value,
                values=build_pending_values(record, restored, record.derived_name),
                dedupe_tables=list(DOWNSTREAM_TABLES),
                description="Restore pending categorization row",
            ))
        mutations.append(LifecycleEngine.working_update(
            record, next_status, f"{REACTIVATED_PREFIX}{_ts()}. Previous: {record.reason}", entry,
            extra={COL_ATTEMPTS: 0},
        ))

        return MutationPlan(
            action="reactivate",
            record_id=record.record_id,
            expected_status=RecordStatus.ACTIVE.value,
            history_entry=entry,
            mutations=mutations,
        )

    @staticmethod
    def plan_promotion(pending: StoreRow, folders: TenantFolders) -> MutationPlan:
        """
        Category row appended, blob moved to the category folder, pending row
        removed.

        Raises:
            HubError: INVALID_INPUT when the transaction type is unknown
        """
        transaction_type = pending.get("Inflow/Outflow Status").strip().lower()
        table = category_table_for(transaction_type)
        if table is None:
            raise HubError(
                ErrorCode.INVALID_INPUT,
                f"Unknown transaction type '{transaction_type}'",
                {"file": pending.get("File Name")}
            )

        return MutationPlan(
            action="promote",
            record_id=None,
            mutations=[
                Mutation(
                    kind=MutationKind.APPEND_ROW,
                    table=table,
                    values=build_category_values(pending),
                    dedupe_tables=[table],
                    description=f"Add {table} row",
                ),
                Mutation(
                    kind=MutationKind.MOVE_BLOB,
                    blob_ref=pending.get(COL_FILE_URL),
                    folder_id=folders.category_folder(transaction_type),
                    description=f"Move blob to {table} folder",
                ),
                Mutation(
                    kind=MutationKind.DELETE_ROW,
                    table=StoreTable.PENDING.value,
                    record_id=pending.record_id,
                    description="Remove pending row",
                ),
            ],
        )
