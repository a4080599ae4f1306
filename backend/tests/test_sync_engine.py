"""
Unit tests for the Synchronization Engine and tenant leases.
Tests plan application, duplicate skipping, rollback and lease blocking
"""
import pytest
import asyncio
from pathlib import Path
import sys
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from services.errors import ErrorCode, HubError
from services.lifecycle import LifecycleEngine, Mutation, MutationKind, MutationPlan
from services.records import StoreTable
from services.tenant_lease import InProcessLeaseManager, tenant_resource

from hub_fixtures import build_hub


def _pending_append(blob_ref, dedupe=None):
    return Mutation(
        kind=MutationKind.APPEND_ROW,
        table=StoreTable.PENDING.value,
        values={"File URL": blob_ref, "File Name": "doc.pdf", "Inflow/Outflow Status": "inflow"},
        dedupe_tables=dedupe if dedupe is not None else ["PendingCategorization", "Inflow", "Outflow"],
        description="Add pending row",
    )


@pytest.mark.asyncio
class TestPlanApplication:
    """SyncSession.apply semantics."""

    async def test_plan_applied_in_order(self):
        hub = await build_hub()
        record, blob = await hub.add_document("scan.pdf")
        plan = MutationPlan(action="test", record_id=record.record_id, mutations=[
            _pending_append(record.blob_ref),
            Mutation(kind=MutationKind.UPDATE_ROW, table="Working", record_id=record.record_id,
                     values={"Status": "Failed"}, description="Working row"),
        ])
        result = await hub.sync.apply(hub.tenant, plan)
        assert result.applied
        assert result.steps_applied == 2
        assert len(await hub.rows("PendingCategorization")) == 1
        assert (await hub.record(record.record_id)).status == "Failed"

    async def test_duplicate_append_skipped(self):
        """An insert whose blob ref already exists downstream is a no-op."""
        hub = await build_hub()
        record, _ = await hub.add_document("scan.pdf")
        await hub.records.append_row(hub.tenant.store_id, "Inflow", {"File URL": record.blob_ref})

        result = await hub.sync.apply(hub.tenant, MutationPlan(
            action="test", record_id=None, mutations=[_pending_append(record.blob_ref)]
        ))
        assert result.applied
        assert result.duplicates == 1
        assert await hub.rows("PendingCategorization") == []

    async def test_failure_rolls_back_earlier_steps(self):
        """A failing step undoes everything the plan already did."""
        hub = await build_hub()
        record, blob = await hub.add_document("scan.pdf")
        plan = MutationPlan(action="test", record_id=None, mutations=[
            Mutation(kind=MutationKind.UPDATE_ROW, table="Working", record_id=record.record_id,
                     values={"Reason": "changed"}, description="Working row"),
            _pending_append(record.blob_ref),
            Mutation(kind=MutationKind.MOVE_BLOB, blob_ref=record.blob_ref,
                     folder_id=hub.folders.inflow, description="Move blob"),
            Mutation(kind=MutationKind.UPDATE_ROW, table="Working", record_id="missing",
                     values={"Status": "Active"}, description="Missing row"),
        ])
        with pytest.raises(HubError) as exc:
            await hub.sync.apply(hub.tenant, plan)
        assert exc.value.code == ErrorCode.FILE_NOT_FOUND

        assert await hub.rows("PendingCategorization") == []
        assert (await hub.record(record.record_id)).reason == ""
        assert (await hub.blobs.get_blob(blob.blob_id)).folder_id == hub.folders.buffer

    async def test_deleted_rows_restored_on_rollback(self):
        hub = await build_hub()
        record, _ = await hub.add_document("scan.pdf")
        await hub.records.append_row(hub.tenant.store_id, "Outflow", {"File URL": record.blob_ref, "Amount": "5.00"})
        plan = MutationPlan(action="test", record_id=None, mutations=[
            Mutation(kind=MutationKind.DELETE_ROWS, table="Outflow", match_column="File URL",
                     match_value=record.blob_ref, description="Remove outflow rows"),
            Mutation(kind=MutationKind.MOVE_BLOB, blob_ref=record.blob_ref, folder_id="nowhere",
                     description="Move to missing folder"),
        ])
        with pytest.raises(HubError):
            await hub.sync.apply(hub.tenant, plan)
        rows = await hub.rows("Outflow")
        assert len(rows) == 1
        assert rows[0].get("Amount") == "5.00"

    async def test_optional_step_failure_is_a_warning(self):
        hub = await build_hub()
        record, _ = await hub.add_document("scan.pdf")
        plan = MutationPlan(action="test", record_id=None, mutations=[
            Mutation(kind=MutationKind.RENAME_BLOB, blob_ref="https://files.local/file/d/gone12345/view",
                     new_name="x.pdf", optional=True, description="Rename blob"),
            _pending_append(record.blob_ref),
        ])
        result = await hub.sync.apply(hub.tenant, plan)
        assert result.applied
        assert len(result.warnings) == 1
        assert len(await hub.rows("PendingCategorization")) == 1

    async def test_stale_plan_skipped(self):
        """A plan built for a status the row no longer has changes nothing."""
        hub = await build_hub()
        record, _ = await hub.add_document("scan.pdf")
        plan = LifecycleEngine.plan_enrichment_start(record)
        await hub.edit(record.record_id, status="Deleted", reason="dup")

        result = await hub.sync.apply(hub.tenant, plan)
        assert result.stale
        assert not result.applied
        assert (await hub.record(record.record_id)).status == "Deleted"

    async def test_move_only_from_listed_folders(self):
        hub = await build_hub()
        record, blob = await hub.add_document("scan.pdf")
        await hub.blobs.move(blob.blob_id, hub.folders.months)
        plan = MutationPlan(action="test", record_id=None, mutations=[
            Mutation(kind=MutationKind.MOVE_BLOB, blob_ref=record.blob_ref, folder_id=hub.folders.buffer,
                     only_from_folders=[hub.folders.inflow, hub.folders.outflow], description="Move"),
        ])
        await hub.sync.apply(hub.tenant, plan)
        assert (await hub.blobs.get_blob(blob.blob_id)).folder_id == hub.folders.months

    async def test_missing_blob_tolerated_when_allowed(self):
        hub = await build_hub()
        record, blob = await hub.add_document("scan.pdf")
        await hub.blobs.trash(blob.blob_id)
        plan = MutationPlan(action="test", record_id=None, mutations=[
            Mutation(kind=MutationKind.MOVE_BLOB, blob_ref=record.blob_ref, folder_id=hub.folders.buffer,
                     missing_ok=True, description="Move"),
        ])
        result = await hub.sync.apply(hub.tenant, plan)
        assert result.applied

    async def test_find_placement(self):
        hub = await build_hub()
        record, _ = await hub.add_document("scan.pdf")
        await hub.records.append_row(hub.tenant.store_id, "Outflow", {
            "File URL": record.blob_ref, "Document Type": "bill",
        })
        async with hub.sync.session(hub.tenant) as session:
            placement = await session.find_placement(record.blob_ref)
            missing = await session.find_placement("https://files.local/file/d/other12345/view")
        assert placement == {"table": "Outflow", "transaction_type": "outflow", "document_type": "bill"}
        assert missing is None


@pytest.mark.asyncio
class TestTenantLease:
    """Mutual exclusion per tenant."""

    async def test_lease_released_after_error(self):
        leases = InProcessLeaseManager()
        with pytest.raises(RuntimeError):
            async with leases.lease("tenant:acme", timeout=1):
                assert leases.is_held("tenant:acme")
                raise RuntimeError("boom")
        assert not leases.is_held("tenant:acme")

    async def test_timeout_is_retryable_system_error(self):
        leases = InProcessLeaseManager()
        async with leases.lease("tenant:acme", timeout=1):
            with pytest.raises(HubError) as exc:
                async with leases.lease("tenant:acme", timeout=0.05):
                    pass
        assert exc.value.code == ErrorCode.SYSTEM_ERROR
        assert exc.value.retryable
        assert exc.value.details["retryable"] is True

    async def test_tenants_do_not_block_each_other(self):
        leases = InProcessLeaseManager()
        async with leases.lease(tenant_resource("Acme"), timeout=1):
            async with leases.lease(tenant_resource("Globex"), timeout=0.05):
                assert leases.is_held("tenant:globex")

    async def test_resource_name_is_case_insensitive(self):
        assert tenant_resource(" Acme ") == tenant_resource("acme")

    async def test_concurrent_session_sees_committed_state(self):
        """A second session waits for the first and reads its writes."""
        hub = await build_hub()
        record, _ = await hub.add_document("scan.pdf")
        entered = asyncio.Event()
        seen = {}

        async def first():
            async with hub.sync.session(hub.tenant) as session:
                entered.set()
                await asyncio.sleep(0.05)
                await session.store.update_cells(
                    session.store_id, "Working", record.record_id, {"Status": "Failed"}
                )

        async def second():
            await entered.wait()
            assert hub.leases.is_held(tenant_resource(hub.tenant.name))
            async with hub.sync.session(hub.tenant) as session:
                seen["status"] = (await session.get_working(record.record_id)).status

        await asyncio.gather(first(), second())
        assert seen["status"] == "Failed"

    async def test_session_times_out_while_held(self):
        hub = await build_hub(lock_timeout=0.05)
        async with hub.sync.session(hub.tenant):
            with pytest.raises(HubError) as exc:
                async with hub.sync.session(hub.tenant):
                    pass
        assert exc.value.code == ErrorCode.SYSTEM_ERROR
