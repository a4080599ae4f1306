"""
Accruals Hub - Record Model

Table layouts and the typed views the services work with:

- Working: one row per inbound document (written by the intake producer)
- PendingCategorization: enriched documents waiting for inflow/outflow placement
- Inflow / Outflow: terminal category tables, immutable once written
- Tenants: the registry table in the master store

Cells are always addressed by header name. Row positions are store-assigned and
never used as identifiers.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, List, Any

logger = logging.getLogger(__name__)


# =============================================================================
# TABLES & COLUMNS
# =============================================================================

class StoreTable(str, Enum):
    """Tables owned by a tenant's record store."""
    WORKING = "Working"
    PENDING = "PendingCategorization"
    INFLOW = "Inflow"
    OUTFLOW = "Outflow"


class RecordStatus(str, Enum):
    """Working row status values."""
    ACTIVE = "Active"
    PROCESSING = "Processing"
    FAILED = "Failed"
    DELETED = "Deleted"


class TransactionType(str, Enum):
    INFLOW = "inflow"
    OUTFLOW = "outflow"


class DocumentType(str, Enum):
    INVOICE = "invoice"
    RECEIPT = "receipt"
    BILL = "bill"
    STATEMENT = "statement"
    CONTRACT = "contract"
    OTHER = "other"


class TenantStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"


# Column names used in code
COL_RECORD_ID = "Record ID"
COL_ORIGINAL_NAME = "Original File Name"
COL_CHANGED_NAME = "Changed File Name"
COL_FILE_URL = "File URL"
COL_FILE_ID = "File ID"
COL_MESSAGE_ID = "Message ID"
COL_INVOICE_NUMBER = "Invoice Number"
COL_STATUS = "Status"
COL_REASON = "Reason"
COL_EMAIL_SUBJECT = "Email Subject"
COL_EMAIL_SENDER = "Email Sender"
COL_DATE_ADDED = "Date Added"
COL_LAST_MODIFIED = "Last Modified"
COL_ATTEMPTS = "Processing Attempts"
COL_HISTORY = "Transition History"

COL_FILE_NAME = "File Name"
COL_UNIQUE_FILE_ID = "Unique File ID"
COL_DRIVE_FILE_ID = "Drive File ID"
COL_FLOW_STATUS = "Inflow/Outflow Status"
COL_DATE = "Date"
COL_VENDOR_NAME = "Vendor Name"
COL_AMOUNT = "Amount"
COL_DOCUMENT_TYPE = "Document Type"
COL_CONFIDENCE = "AI Confidence"
COL_PROCESSING_DATE = "Processing Date"
COL_MOVED_DATE = "Moved Date"

WORKING_COLUMNS = [
    COL_RECORD_ID,
    COL_ORIGINAL_NAME,
    COL_CHANGED_NAME,
    COL_FILE_URL,
    COL_FILE_ID,
    COL_MESSAGE_ID,
    COL_INVOICE_NUMBER,
    COL_STATUS,
    COL_REASON,
    COL_EMAIL_SUBJECT,
    COL_EMAIL_SENDER,
    COL_DATE_ADDED,
    COL_LAST_MODIFIED,
    COL_ATTEMPTS,
    COL_HISTORY,
]

PENDING_COLUMNS = [
    COL_FILE_NAME,
    COL_UNIQUE_FILE_ID,
    COL_DRIVE_FILE_ID,
    COL_FILE_URL,
    COL_MESSAGE_ID,
    COL_EMAIL_SUBJECT,
    COL_EMAIL_SENDER,
    COL_FLOW_STATUS,
    COL_DATE,
    COL_VENDOR_NAME,
    COL_INVOICE_NUMBER,
    COL_AMOUNT,
    COL_DOCUMENT_TYPE,
    COL_CONFIDENCE,
    COL_PROCESSING_DATE,
    COL_LAST_MODIFIED,
]

CATEGORY_COLUMNS = [
    COL_FILE_NAME,
    COL_UNIQUE_FILE_ID,
    COL_DRIVE_FILE_ID,
    COL_FILE_URL,
    COL_MESSAGE_ID,
    COL_EMAIL_SUBJECT,
    COL_EMAIL_SENDER,
    COL_DATE,
    COL_VENDOR_NAME,
    COL_INVOICE_NUMBER,
    COL_AMOUNT,
    COL_DOCUMENT_TYPE,
    COL_CONFIDENCE,
    COL_PROCESSING_DATE,
    COL_MOVED_DATE,
]

TABLE_HEADERS = {
    StoreTable.WORKING.value: WORKING_COLUMNS,
    StoreTable.PENDING.value: PENDING_COLUMNS,
    StoreTable.INFLOW.value: CATEGORY_COLUMNS,
    StoreTable.OUTFLOW.value: CATEGORY_COLUMNS,
}

# Tables a blob reference may be placed in after enrichment
DOWNSTREAM_TABLES = [StoreTable.PENDING.value, StoreTable.INFLOW.value, StoreTable.OUTFLOW.value]

REGISTRY_COLUMNS = [
    "Tenant Name",
    "Intake Label",
    "Root Folder ID",
    "Store ID",
    "Status",
    "Created At",
    "Last Modified",
]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def category_table_for(transaction_type: str) -> str:
    """Category table for a transaction type; None when the type is unknown."""
    if transaction_type == TransactionType.INFLOW.value:
        return StoreTable.INFLOW.value
    if transaction_type == TransactionType.OUTFLOW.value:
        return StoreTable.OUTFLOW.value
    return None


# =============================================================================
# STORE ROWS
# =============================================================================

@dataclass
class StoreRow:
    """One row as returned by a record store."""
    record_id: str
    position: int
    values: Dict[str, str] = field(default_factory=dict)

    def get(self, column: str, default: str = "") -> str:
        value = self.values.get(column)
        if value is None:
            return default
        return str(value)

    def is_empty(self) -> bool:
        return not any(str(v).strip() for v in self.values.values() if v is not None)


# =============================================================================
# ENRICHED FIELDS
# =============================================================================

@dataclass
class EnrichedFields:
    """AI-derived classification for one document. Always fully populated."""
    date: str
    vendor_name: str
    invoice_number: str
    amount: str
    document_type: str
    transaction_type: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "vendor_name": self.vendor_name,
            "invoice_number": self.invoice_number,
            "amount": self.amount,
            "document_type": self.document_type,
            "transaction_type": self.transaction_type,
            "confidence": self.confidence,
        }


# =============================================================================
# TENANT
# =============================================================================

@dataclass
class TenantFolders:
    """Folder ids of a tenant's blob layout."""
    root: str
    accruals: str = ""
    bills: str = ""
    buffer: str = ""
    months: str = ""
    inflow: str = ""
    outflow: str = ""
    spreadsheets: str = ""

    def category_folder(self, transaction_type: str) -> str:
        if transaction_type == TransactionType.OUTFLOW.value:
            return self.outflow
        return self.inflow

    def to_dict(self) -> Dict[str, str]:
        return {
            "root": self.root,
            "accruals": self.accruals,
            "bills": self.bills,
            "buffer": self.buffer,
            "months": self.months,
            "inflow": self.inflow,
            "outflow": self.outflow,
            "spreadsheets": self.spreadsheets,
        }


@dataclass
class Tenant:
    """A tenant as registered in the master store."""
    name: str
    intake_label: str
    root_folder_id: str
    store_id: str
    status: str = TenantStatus.ACTIVE.value
    created_at: str = ""
    last_modified: str = ""
    record_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.ACTIVE.value

    @classmethod
    def from_row(cls, row: StoreRow) -> "Tenant":
        return cls(
            name=row.get("Tenant Name").strip(),
            intake_label=row.get("Intake Label").strip(),
            root_folder_id=row.get("Root Folder ID").strip(),
            store_id=row.get("Store ID").strip(),
            status=row.get("Status").strip() or TenantStatus.ACTIVE.value,
            created_at=row.get("Created At"),
            last_modified=row.get("Last Modified"),
            record_id=row.record_id,
        )

    def to_values(self) -> Dict[str, str]:
        return {
            "Tenant Name": self.name,
            "Intake Label": self.intake_label,
            "Root Folder ID": self.root_folder_id,
            "Store ID": self.store_id,
            "Status": self.status,
            "Created At": self.created_at,
            "Last Modified": self.last_modified,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "intake_label": self.intake_label,
            "root_folder_id": self.root_folder_id,
            "store_id": self.store_id,
            "status": self.status,
            "created_at": self.created_at,
            "last_modified": self.last_modified,
        }


# =============================================================================
# WORKING RECORD
# =============================================================================

def parse_attempts(value: Any) -> int:
    try:
        return max(0, int(str(value).strip() or 0))
    except (TypeError, ValueError):
        return 0


def parse_history(value: Any) -> List[Dict[str, Any]]:
    """Decode the Transition History cell. Malformed content is treated as empty."""
    if isinstance(value, list):
        return value
    if not value:
        return []
    try:
        history = json.loads(value)
    except (TypeError, ValueError):
        logger.warning("Unreadable transition history, ignoring: %.80s", value)
        return []
    return history if isinstance(history, list) else []


@dataclass
class WorkingRecord:
    """Typed view of a Working row."""
    record_id: str
    position: int
    original_name: str = ""
    derived_name: str = ""
    blob_ref: str = ""
    blob_id: str = ""
    message_id: str = ""
    invoice_number: str = ""
    status: str = RecordStatus.ACTIVE.value
    reason: str = ""
    email_subject: str = ""
    email_sender: str = ""
    date_added: str = ""
    last_modified: str = ""
    attempts: int = 0
    history: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: StoreRow) -> "WorkingRecord":
        return cls(
            record_id=row.record_id,
            position=row.position,
            original_name=row.get(COL_ORIGINAL_NAME).strip(),
            derived_name=row.get(COL_CHANGED_NAME).strip(),
            blob_ref=row.get(COL_FILE_URL).strip(),
            blob_id=row.get(COL_FILE_ID).strip(),
            message_id=row.get(COL_MESSAGE_ID),
            invoice_number=row.get(COL_INVOICE_NUMBER).strip(),
            status=row.get(COL_STATUS).strip() or RecordStatus.ACTIVE.value,
            reason=row.get(COL_REASON),
            email_subject=row.get(COL_EMAIL_SUBJECT),
            email_sender=row.get(COL_EMAIL_SENDER),
            date_added=row.get(COL_DATE_ADDED),
            last_modified=row.get(COL_LAST_MODIFIED),
            attempts=parse_attempts(row.values.get(COL_ATTEMPTS)),
            history=parse_history(row.values.get(COL_HISTORY)),
        )

    @property
    def has_enrichment(self) -> bool:
        """True when the row already carries a derived name and invoice number."""
        return bool(
            self.derived_name
            and self.invoice_number
            and self.derived_name != self.original_name
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "original_name": self.original_name,
            "derived_name": self.derived_name,
            "blob_ref": self.blob_ref,
            "status": self.status,
            "reason": self.reason,
            "attempts": self.attempts,
            "last_modified": self.last_modified,
        }


def encode_history(history: List[Dict[str, Any]]) -> str:
    return json.dumps(history, separators=(",", ":"))


# =============================================================================
# DOWNSTREAM ROW BUILDERS
# =============================================================================

def build_pending_values(
    record: WorkingRecord,
    fields: EnrichedFields,
    file_name: str,
    timestamp: Optional[str] = None
) -> Dict[str, str]:
    """PendingCategorization row for an enriched Working record."""
    timestamp = timestamp or now_iso()
    return {
        COL_FILE_NAME: file_name,
        COL_UNIQUE_FILE_ID: record.record_id,
        COL_DRIVE_FILE_ID: record.blob_id,
        COL_FILE_URL: record.blob_ref,
        COL_MESSAGE_ID: record.message_id,
        COL_EMAIL_SUBJECT: record.email_subject,
        COL_EMAIL_SENDER: record.email_sender,
        COL_FLOW_STATUS: fields.transaction_type,
        COL_DATE: fields.date,
        COL_VENDOR_NAME: fields.vendor_name,
        COL_INVOICE_NUMBER: fields.invoice_number,
        COL_AMOUNT: fields.amount,
        COL_DOCUMENT_TYPE: fields.document_type,
        COL_CONFIDENCE: f"{fields.confidence:.2f}",
        COL_PROCESSING_DATE: timestamp,
        COL_LAST_MODIFIED: timestamp,
    }


def build_category_values(pending: StoreRow, timestamp: Optional[str] = None) -> Dict[str, str]:
    """Category row copied from a PendingCategorization row."""
    values = {column: pending.get(column) for column in CATEGORY_COLUMNS if column != COL_MOVED_DATE}
    values[COL_MOVED_DATE] = timestamp or now_iso()
    return values
