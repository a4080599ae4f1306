"""
Shared builders for Accruals Hub tests: an in-memory hub with one
provisioned tenant and a scripted AI client.
"""
from datetime import datetime, timezone

from services.ai_client import AIResponse
from services.blob_store import InMemoryBlobStore
from services.document_processor import DocumentProcessor
from services.enrichment import EnrichmentPipeline
from services.record_store import InMemoryRecordStore
from services.records import (
    COL_ATTEMPTS,
    COL_DATE_ADDED,
    COL_FILE_ID,
    COL_FILE_URL,
    COL_ORIGINAL_NAME,
    COL_REASON,
    COL_STATUS,
    StoreTable,
    WorkingRecord,
)
from services.sync_engine import SyncEngine
from services.tenant_lease import InProcessLeaseManager
from services.tenant_provisioning import ProvisioningSaga
from services.tenant_registry import TenantRegistry


DEFAULT_AI_DATA = {
    "date": "2024-01-05",
    "vendorName": "Acme Co",
    "invoiceNumber": "INV-9",
    "amount": "100.00",
    "documentType": "invoice",
    "transactionType": "outflow",
    "confidence": 0.92,
}


async def no_sleep(_seconds):
    return None


class FakeAIClient:
    """Scripted stand-in for GeminiClient. Each call pops the next item."""

    def __init__(self, responses=None, default=None):
        self.responses = list(responses or [])
        self.default = dict(default or DEFAULT_AI_DATA)
        self.calls = []

    async def analyze_document(self, content, mime_type, file_name, size=0, created_at=""):
        self.calls.append(file_name)
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, Exception):
            raise item
        return AIResponse(
            data=dict(item),
            model_name="fake-model",
            timestamp=datetime.now(timezone.utc).isoformat(),
        )


class Hub:
    """In-memory wiring of every service."""

    def __init__(self, ai=None, lock_timeout=30.0):
        self.records = InMemoryRecordStore()
        self.blobs = InMemoryBlobStore()
        self.leases = InProcessLeaseManager()
        self.ai = ai or FakeAIClient()
        self.registry = TenantRegistry(self.records, self.blobs, self.leases, master_store_id="master")
        self.saga = ProvisioningSaga(self.registry, self.records, self.blobs, self.leases)
        self.sync = SyncEngine(self.records, self.blobs, self.leases, lock_timeout=lock_timeout)
        self.pipeline = EnrichmentPipeline(self.blobs, self.ai, retry_delay=0, sleep=no_sleep)
        self.processor = DocumentProcessor(
            self.registry, self.sync, self.pipeline,
            batch_delay=0, tenant_delay=0, sleep=no_sleep
        )
        self.tenant = None
        self.folders = None

    async def working(self):
        rows = await self.records.read_rows(self.tenant.store_id, StoreTable.WORKING.value)
        return [WorkingRecord.from_row(r) for r in rows]

    async def record(self, record_id):
        row = await self.records.get_row(self.tenant.store_id, StoreTable.WORKING.value, record_id)
        return WorkingRecord.from_row(row)

    async def rows(self, table):
        return await self.records.read_rows(self.tenant.store_id, table)

    async def edit(self, record_id, **cells):
        """Simulate an operator editing Working cells."""
        updates = {}
        if "status" in cells:
            updates[COL_STATUS] = cells["status"]
        if "reason" in cells:
            updates[COL_REASON] = cells["reason"]
        if "attempts" in cells:
            updates[COL_ATTEMPTS] = str(cells["attempts"])
        await self.records.update_cells(self.tenant.store_id, StoreTable.WORKING.value, record_id, updates)

    async def add_document(self, name="invoice.pdf", content=b"%PDF-1.4 invoice", content_type="application/pdf", **cells):
        """Drop a document in staging and add its Working row, as intake would."""
        blob = self.blobs.add_blob(self.folders.buffer, name, content, content_type)
        values = {
            COL_ORIGINAL_NAME: name,
            COL_FILE_URL: blob.web_url,
            COL_FILE_ID: blob.blob_id,
            COL_STATUS: "Active",
            COL_REASON: "",
            COL_DATE_ADDED: datetime.now(timezone.utc).isoformat(),
            COL_ATTEMPTS: "0",
        }
        values.update(cells)
        row = await self.records.append_row(self.tenant.store_id, StoreTable.WORKING.value, values)
        return WorkingRecord.from_row(row), blob


async def build_hub(ai=None, tenant_name="Acme", label="acme-invoices", lock_timeout=30.0):
    hub = Hub(ai=ai, lock_timeout=lock_timeout)
    await hub.registry.initialize()
    hub.tenant = await hub.saga.provision(tenant_name, label)
    hub.folders = await hub.registry.get_folder_structure(hub.tenant)
    return hub
