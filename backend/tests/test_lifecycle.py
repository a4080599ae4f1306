"""
Unit tests for the Document Lifecycle State Machine.
Tests transitions, pending change detection and mutation plans in services/lifecycle.py
"""
import pytest
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from services.errors import ErrorCode, HubError
from services.lifecycle import (
    DELETED_PREFIX,
    HISTORY_LIMIT,
    REACTIVATED_PREFIX,
    HistoryKind,
    LifecycleEngine,
    LifecycleEvent,
    MutationKind,
    PendingChange,
    TransitionHistoryEntry,
)
from services.records import (
    COL_ATTEMPTS,
    COL_CHANGED_NAME,
    COL_FILE_URL,
    COL_HISTORY,
    COL_STATUS,
    DOWNSTREAM_TABLES,
    EnrichedFields,
    RecordStatus,
    StoreRow,
    StoreTable,
    TenantFolders,
    WorkingRecord,
)


FOLDERS = TenantFolders(
    root="root", buffer="buffer", inflow="inflow", outflow="outflow",
    accruals="accruals", bills="bills", months="months", spreadsheets="sheets",
)

FIELDS = EnrichedFields(
    date="2024-01-05",
    vendor_name="Acme_Co",
    invoice_number="INV-9",
    amount="100.00",
    document_type="invoice",
    transaction_type="outflow",
    confidence=0.92,
)


def _record(**overrides):
    values = dict(
        record_id="rec-1",
        position=2,
        original_name="scan.pdf",
        blob_ref="https://files.local/file/d/blob123456/view",
        blob_id="blob123456",
        status=RecordStatus.ACTIVE.value,
        last_modified=datetime.now(timezone.utc).isoformat(),
    )
    values.update(overrides)
    return WorkingRecord(**values)


def _marker(kind, **extra):
    entry = {"kind": kind, "at": "2024-01-01T00:00:00+00:00", "from": "Active", "to": "Deleted", "event": "x"}
    entry.update(extra)
    return entry


def _history(mutation):
    return json.loads(mutation.values[COL_HISTORY])


class TestTransitions:
    """Allowed and rejected state transitions."""

    def test_active_to_processing(self):
        ok, next_status, _ = LifecycleEngine.can_transition("Active", LifecycleEvent.ENRICH_STARTED)
        assert ok
        assert next_status == "Processing"

    def test_processing_outcomes(self):
        assert LifecycleEngine.can_transition("Processing", "enrich_succeeded")[1] == "Active"
        assert LifecycleEngine.can_transition("Processing", "enrich_failed")[1] == "Failed"

    def test_failed_retry(self):
        assert LifecycleEngine.can_transition(RecordStatus.FAILED, LifecycleEvent.RETRY_REQUESTED)[1] == "Active"

    def test_any_live_state_can_be_deleted(self):
        for status in ("Active", "Processing", "Failed"):
            ok, next_status, _ = LifecycleEngine.can_transition(status, "delete_requested")
            assert ok, status
            assert next_status == "Deleted"

    def test_deleted_only_reactivates(self):
        assert LifecycleEngine.can_transition("Deleted", "reactivated")[1] == "Active"
        ok, _, reason = LifecycleEngine.can_transition("Deleted", "enrich_started")
        assert not ok
        assert "not valid" in reason

    def test_unknown_status(self):
        ok, next_status, reason = LifecycleEngine.can_transition("Archived", "reactivated")
        assert not ok
        assert next_status is None
        assert "No transitions" in reason


class TestHistoryEntry:
    """Structured history entries."""

    def test_deleted_entry_shape(self):
        entry = TransitionHistoryEntry(
            kind=HistoryKind.DELETED,
            from_status="Active",
            to_status="Deleted",
            event="delete_requested",
            justification="duplicate",
            metadata={"placement": {"table": "Inflow"}},
        ).to_dict()
        assert entry["kind"] == "Deleted"
        assert entry["from"] == "Active"
        assert entry["to"] == "Deleted"
        assert entry["justification"] == "duplicate"
        assert entry["metadata"]["placement"]["table"] == "Inflow"
        assert entry["at"]

    def test_optional_keys_omitted(self):
        entry = TransitionHistoryEntry("Reactivated", "Deleted", "Active", "reactivated").to_dict()
        assert "justification" not in entry
        assert "metadata" not in entry


class TestPendingChangeDetection:
    """Reconciliation detects deletions and reactivations from row state."""

    def test_fresh_deletion(self):
        """Operator set Deleted and a reason; no marker yet."""
        record = _record(status="Deleted", reason="duplicate upload")
        assert LifecycleEngine.classify_pending_change(record) == PendingChange.DELETION

    def test_processed_deletion_not_detected_again(self):
        record = _record(status="Deleted", reason="Deleted: dup", history=[_marker("Deleted")])
        assert LifecycleEngine.classify_pending_change(record) is None

    def test_legacy_processed_deletion_uses_reason_prefix(self):
        """Rows without history fall back to the reason prefix."""
        record = _record(status="Deleted", reason="Deleted: dup (2024-01-01)")
        assert LifecycleEngine.classify_pending_change(record) is None

    def test_reason_prefix_needs_the_space(self):
        """A reason starting "Deleted:" without the space is operator text."""
        assert LifecycleEngine.classify_pending_change(_record(status="Deleted", reason="Deleted:dup")) == PendingChange.DELETION
        assert LifecycleEngine.classify_pending_change(_record(status="Active", reason="Deleted:dup")) is None

    def test_reactivation(self):
        record = _record(status="Active", reason="Deleted: dup", history=[_marker("Deleted")])
        assert LifecycleEngine.classify_pending_change(record) == PendingChange.REACTIVATION

    def test_legacy_reactivation(self):
        record = _record(status="Active", reason="Deleted: dup (2024-01-01)")
        assert LifecycleEngine.classify_pending_change(record) == PendingChange.REACTIVATION

    def test_marker_wins_over_reason(self):
        """A Reactivated marker means the reason text is stale."""
        record = _record(
            status="Active",
            reason="Deleted: leftover text",
            history=[_marker("Deleted"), _marker("Reactivated", to="Active")],
        )
        assert LifecycleEngine.classify_pending_change(record) is None

    def test_delete_after_reactivation(self):
        record = _record(
            status="Deleted",
            reason="wrong tenant",
            history=[_marker("Deleted"), _marker("Reactivated", to="Active")],
        )
        assert LifecycleEngine.classify_pending_change(record) == PendingChange.DELETION

    def test_other_states_have_no_change(self):
        assert LifecycleEngine.classify_pending_change(_record(status="Failed", reason="Deleted: x")) is None
        assert LifecycleEngine.classify_pending_change(_record(status="Processing")) is None

    def test_ordinary_active_row(self):
        assert LifecycleEngine.classify_pending_change(_record()) is None


class TestEnrichmentCandidates:
    """Working-set filter for the enrichment pass."""

    def test_new_active_row(self):
        assert LifecycleEngine.is_enrichment_candidate(_record())

    def test_attempt_ceiling_excluded(self):
        """attempts == max is excluded, whatever the status."""
        for status in ("Active", "Processing", "Failed"):
            record = _record(status=status, attempts=3, last_modified="")
            assert not LifecycleEngine.is_enrichment_candidate(record, max_attempts=3), status

    def test_below_ceiling(self):
        assert LifecycleEngine.is_enrichment_candidate(_record(attempts=2), max_attempts=3)

    def test_enriched_row_excluded(self):
        record = _record(derived_name="2024-01-05_Acme_Co_INV-9_100.00.pdf", invoice_number="INV-9")
        assert not LifecycleEngine.is_enrichment_candidate(record)

    def test_missing_name_or_ref(self):
        assert not LifecycleEngine.is_enrichment_candidate(_record(original_name=""))
        assert not LifecycleEngine.is_enrichment_candidate(_record(blob_ref=""))

    def test_pending_reactivation_excluded(self):
        record = _record(reason="Deleted: dup", history=[_marker("Deleted")])
        assert not LifecycleEngine.is_enrichment_candidate(record)

    def test_failed_and_deleted_excluded(self):
        assert not LifecycleEngine.is_enrichment_candidate(_record(status="Failed"))
        assert not LifecycleEngine.is_enrichment_candidate(_record(status="Deleted", reason="x"))

    def test_stale_processing_recovered(self):
        """A Processing row left behind by a crashed batch comes back."""
        old = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
        assert LifecycleEngine.is_enrichment_candidate(_record(status="Processing", last_modified=old))

    def test_fresh_processing_left_alone(self):
        assert not LifecycleEngine.is_enrichment_candidate(_record(status="Processing"))


class TestEnrichmentPlans:
    """Plans built around an enrichment call."""

    def test_start_plan(self):
        plan = LifecycleEngine.plan_enrichment_start(_record())
        assert plan.expected_status == "Active"
        assert plan.mutations[0].values[COL_STATUS] == "Processing"

    def test_start_rejected_for_failed(self):
        with pytest.raises(HubError) as exc:
            LifecycleEngine.plan_enrichment_start(_record(status="Failed"))
        assert exc.value.code == ErrorCode.INVALID_INPUT

    def test_success_plan_order(self):
        """Rename, then pending row, then the Working row."""
        record = _record(status="Processing", attempts=1)
        plan = LifecycleEngine.plan_enrichment_success(record, FIELDS, "2024-01-05_Acme_Co_INV-9_100.00.pdf")
        kinds = [m.kind for m in plan.mutations]
        assert kinds == [MutationKind.RENAME_BLOB, MutationKind.APPEND_ROW, MutationKind.UPDATE_ROW]
        assert plan.mutations[0].optional
        assert plan.mutations[1].table == StoreTable.PENDING.value
        assert plan.mutations[1].dedupe_tables == DOWNSTREAM_TABLES
        working = plan.mutations[2]
        assert working.values[COL_STATUS] == "Active"
        assert working.values[COL_CHANGED_NAME] == "2024-01-05_Acme_Co_INV-9_100.00.pdf"
        assert working.values[COL_ATTEMPTS] == "2"
        assert _history(working)[-1]["kind"] == "Enriched"
        assert plan.expected_status == "Processing"

    def test_failure_plan(self):
        record = _record(status="Processing", attempts=2)
        plan = LifecycleEngine.plan_enrichment_failure(record, HubError(ErrorCode.PROCESSING_FAILED, "no json"))
        working = plan.mutations[0]
        assert working.values[COL_STATUS] == "Failed"
        assert working.values[COL_ATTEMPTS] == "3"
        assert "no json" in working.values["Reason"]
        assert _history(working)[-1]["metadata"]["code"] == "PROCESSING_FAILED"

    def test_retry_plan_resets_attempts(self):
        plan = LifecycleEngine.plan_retry(_record(status="Failed", attempts=3))
        assert plan.mutations[0].values[COL_STATUS] == "Active"
        assert plan.mutations[0].values[COL_ATTEMPTS] == "0"

    def test_retry_only_from_failed(self):
        with pytest.raises(HubError):
            LifecycleEngine.plan_retry(_record(status="Active"))

    def test_history_is_capped(self):
        history = [_marker("Enriched") for _ in range(HISTORY_LIMIT)]
        plan = LifecycleEngine.plan_retry(_record(status="Failed", history=history))
        assert len(_history(plan.mutations[0])) == HISTORY_LIMIT


class TestDeletionAndReactivationPlans:
    """Plans applied by the reconciliation pass."""

    def test_deletion_requires_reason(self):
        with pytest.raises(HubError) as exc:
            LifecycleEngine.plan_deletion(_record(status="Deleted", reason="  "), FOLDERS)
        assert exc.value.code == ErrorCode.INVALID_INPUT

    def test_deletion_plan(self):
        """Blob out of category folders, downstream rows removed, Working row last."""
        record = _record(status="Deleted", reason="duplicate")
        placement = {"table": "Outflow", "transaction_type": "outflow", "document_type": "invoice"}
        plan = LifecycleEngine.plan_deletion(record, FOLDERS, placement)

        move = plan.mutations[0]
        assert move.kind == MutationKind.MOVE_BLOB
        assert move.folder_id == "buffer"
        assert move.only_from_folders == ["inflow", "outflow"]
        assert move.missing_ok

        deletes = plan.mutations[1:4]
        assert [m.table for m in deletes] == DOWNSTREAM_TABLES
        assert all(m.kind == MutationKind.DELETE_ROWS for m in deletes)
        assert all(m.match_column == COL_FILE_URL and m.match_value == record.blob_ref for m in deletes)

        working = plan.mutations[-1]
        assert working.values[COL_STATUS] == "Deleted"
        assert working.values["Reason"].startswith(DELETED_PREFIX + "duplicate")
        entry = _history(working)[-1]
        assert entry["kind"] == "Deleted"
        assert entry["justification"] == "duplicate"
        assert entry["metadata"]["placement"] == placement
        assert plan.expected_status == "Deleted"

    def test_deletion_without_blob_ref(self):
        plan = LifecycleEngine.plan_deletion(_record(status="Deleted", reason="x", blob_ref=""), FOLDERS)
        assert plan.mutations[0].kind == MutationKind.DELETE_ROWS

    def test_reactivation_plan_with_restore(self):
        record = _record(
            status="Active",
            reason="Deleted: duplicate",
            derived_name="2024-01-05_Acme_Co_INV-9_100.00.pdf",
            invoice_number="INV-9",
            attempts=3,
            history=[_marker("Deleted")],
        )
        plan = LifecycleEngine.plan_reactivation(record, FOLDERS, FIELDS)
        kinds = [m.kind for m in plan.mutations]
        assert kinds == [MutationKind.MOVE_BLOB, MutationKind.APPEND_ROW, MutationKind.UPDATE_ROW]
        assert plan.mutations[0].folder_id == "buffer"
        working = plan.mutations[-1]
        assert working.values["Reason"].startswith(REACTIVATED_PREFIX)
        assert working.values["Reason"].endswith("Previous: Deleted: duplicate")
        assert working.values[COL_ATTEMPTS] == "0"
        entry = _history(working)[-1]
        assert entry["kind"] == "Reactivated"
        assert entry["metadata"]["restored"] is True

    def test_reactivation_without_restore(self):
        record = _record(status="Active", reason="Deleted: x", history=[_marker("Deleted")])
        plan = LifecycleEngine.plan_reactivation(record, FOLDERS)
        assert [m.kind for m in plan.mutations] == [MutationKind.MOVE_BLOB, MutationKind.UPDATE_ROW]


class TestPromotionPlan:
    """Pending rows promoted to a category table."""

    def _pending(self, flow):
        return StoreRow(record_id="p-1", position=2, values={
            "File Name": "2024-01-05_Acme_Co_INV-9_100.00.pdf",
            "File URL": "https://files.local/file/d/blob123456/view",
            "Inflow/Outflow Status": flow,
            "Amount": "100.00",
        })

    def test_outflow_promotion(self):
        plan = LifecycleEngine.plan_promotion(self._pending("outflow"), FOLDERS)
        append, move, delete = plan.mutations
        assert append.table == "Outflow"
        assert append.dedupe_tables == ["Outflow"]
        assert append.values["Amount"] == "100.00"
        assert append.values["Moved Date"]
        assert move.folder_id == "outflow"
        assert delete.kind == MutationKind.DELETE_ROW
        assert delete.record_id == "p-1"

    def test_inflow_is_case_insensitive(self):
        plan = LifecycleEngine.plan_promotion(self._pending(" Inflow "), FOLDERS)
        assert plan.mutations[0].table == "Inflow"
        assert plan.mutations[1].folder_id == "inflow"

    def test_unknown_type_rejected(self):
        with pytest.raises(HubError) as exc:
            LifecycleEngine.plan_promotion(self._pending("sideways"), FOLDERS)
        assert exc.value.code == ErrorCode.INVALID_INPUT
