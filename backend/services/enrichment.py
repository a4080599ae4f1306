"""
Accruals Hub - Enrichment Pipeline

Turns a Working record's blob into EnrichedFields and a canonical file name:

    1. resolve the blob (FILE_NOT_FOUND when missing)
    2. fail fast on oversize / unsupported types, without calling the AI
    3. call the AI through the retry controller
    4. sanitize every field independently, substituting defaults
    5. derive date_vendor_invoice_amount.ext

The sanitizers never raise: a bad field falls back to its default and the
record still gets a complete set of fields. Only an AI answer without any JSON
object fails the record.
"""

import asyncio
import logging
import math
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Dict, Any

from dateutil import parser as date_parser

from services.ai_client import GeminiClient
from services.blob_store import BlobStore, BlobInfo
from services.errors import ErrorCode, HubError
from services.hub_config import (
    AI_MAX_RETRIES,
    DEFAULT_CONFIDENCE,
    MAX_FILE_SIZE_FOR_AI,
    MAX_FILENAME_LENGTH,
    RETRY_DELAY_SECONDS,
)
from services.records import (
    DocumentType,
    EnrichedFields,
    TransactionType,
    WorkingRecord,
)
from services.retry import retry_with_backoff

logger = logging.getLogger(__name__)


# Confidence recorded for fields rebuilt from a derived file name. This is a
# fixed default, not a score produced by the model.
RESTORED_CONFIDENCE = 0.8

SUPPORTED_MIME_TYPES = [
    "application/pdf",
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/bmp",
    "image/tiff",
    "text/plain",
    "text/csv",
]

INFLOW_SYNONYMS = ["income", "revenue", "payment_received", "credit", "deposit"]
OUTFLOW_SYNONYMS = ["expense", "cost", "payment_made", "debit", "withdrawal", "bill", "purchase"]

UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
NON_ASCII = re.compile(r"[^\x00-\x7f]")
ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
EXTENSION = re.compile(r"\.[A-Za-z][A-Za-z0-9]{0,5}$")


# =============================================================================
# FIELD SANITIZERS
# =============================================================================

def clean_text(value: Any, default: str = "") -> str:
    """Replace unsafe and non-ASCII characters and whitespace with underscores."""
    text = "" if value is None else str(value).strip()
    text = UNSAFE_CHARS.sub("_", text)
    text = NON_ASCII.sub("_", text)
    text = re.sub(r"\s+", "_", text)
    text = re.sub(r"_+", "_", text).strip("_")
    return text or default


def clean_date(value: Any, today: Optional[str] = None) -> str:
    """YYYY-MM-DD; anything unparseable becomes today's date."""
    today = today or datetime.now(timezone.utc).strftime("%Y-%m-%d")
    text = "" if value is None else str(value).strip()
    if not text:
        return today

    if ISO_DATE.match(text):
        try:
            datetime.strptime(text, "%Y-%m-%d")
            return text
        except ValueError:
            return today

    try:
        return date_parser.parse(text).strftime("%Y-%m-%d")
    except (ValueError, OverflowError):
        return today


def clean_amount(value: Any) -> str:
    """
    Normalize an amount to a two-decimal string.

    Currency symbols, separators and whitespace are dropped, parentheses mean
    negative and only the last decimal point is kept:
        "($1,234.50)" -> "-1234.50"
        "abc"         -> "0.00"
    """
    if value is None:
        return "0.00"
    text = str(value).strip()
    negative = "(" in text and ")" in text

    cleaned = re.sub(r"[^0-9.\-]", "", text)
    if cleaned.startswith("-"):
        negative = True
    digits = cleaned.replace("-", "")

    if digits.count(".") > 1:
        last_dot = digits.rfind(".")
        digits = digits[:last_dot].replace(".", "") + digits[last_dot:]

    if not digits.strip("."):
        return "0.00"

    try:
        amount = Decimal(digits).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return "0.00"

    if negative and amount != 0:
        amount = -amount
    return f"{amount:.2f}"


def clean_document_type(value: Any) -> str:
    text = "" if value is None else str(value).strip().lower()
    valid = [d.value for d in DocumentType]
    return text if text in valid else DocumentType.OTHER.value


def clean_transaction_type(value: Any) -> str:
    """inflow/outflow, mapping common synonyms. Unknown values default to inflow."""
    text = "" if value is None else str(value).strip().lower()
    if text in (TransactionType.INFLOW.value, TransactionType.OUTFLOW.value):
        return text

    normalized = re.sub(r"\s+", "_", text)
    for synonym in INFLOW_SYNONYMS:
        if synonym in normalized:
            return TransactionType.INFLOW.value
    for synonym in OUTFLOW_SYNONYMS:
        if synonym in normalized:
            return TransactionType.OUTFLOW.value
    return TransactionType.INFLOW.value


def clean_confidence(value: Any, default: float = DEFAULT_CONFIDENCE) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(confidence):
        return default
    return max(0.0, min(1.0, confidence))


def generate_invoice_id() -> str:
    return uuid.uuid4().hex[:8].upper()


def _pick(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] not in (None, ""):
            return data[key]
    return None


def validate_ai_response(data: Optional[Dict[str, Any]], today: Optional[str] = None) -> EnrichedFields:
    """
    Build EnrichedFields from an AI answer. Each field is sanitized on its own;
    a field that cannot be sanitized takes its default.
    """
    data = data if isinstance(data, dict) else {}

    sanitizers = {
        "date": (lambda: clean_date(_pick(data, "date"), today), lambda: clean_date(None, today)),
        "vendor_name": (
            lambda: clean_text(_pick(data, "vendorName", "vendor_name", "vendor"), "Unknown_Vendor"),
            lambda: "Unknown_Vendor",
        ),
        "invoice_number": (
            lambda: clean_text(_pick(data, "invoiceNumber", "invoice_number"), "") or generate_invoice_id(),
            generate_invoice_id,
        ),
        "amount": (lambda: clean_amount(_pick(data, "amount", "total")), lambda: "0.00"),
        "document_type": (
            lambda: clean_document_type(_pick(data, "documentType", "document_type")),
            lambda: DocumentType.OTHER.value,
        ),
        "transaction_type": (
            lambda: clean_transaction_type(_pick(data, "transactionType", "transaction_type")),
            lambda: TransactionType.INFLOW.value,
        ),
        "confidence": (lambda: clean_confidence(_pick(data, "confidence")), lambda: DEFAULT_CONFIDENCE),
    }

    values = {}
    for name, (sanitize, fallback) in sanitizers.items():
        try:
            values[name] = sanitize()
        except Exception as e:
            logger.warning("Could not sanitize AI field '%s' (%s), using default", name, e)
            values[name] = fallback()

    return EnrichedFields(**values)


# =============================================================================
# FILE NAMES
# =============================================================================

def file_extension(name: str) -> str:
    match = EXTENSION.search(name or "")
    return match.group(0) if match else ""


def clean_filename(name: str) -> str:
    """Make a name safe for blob storage and cap it at the maximum length."""
    cleaned = clean_text(name, "")
    cleaned = cleaned.rstrip(".")
    if len(cleaned) > MAX_FILENAME_LENGTH:
        ext = file_extension(cleaned)
        cleaned = cleaned[:MAX_FILENAME_LENGTH - len(ext)] + ext
    return cleaned or "unnamed_file"


def derive_filename(fields: EnrichedFields, original_name: str) -> str:
    """
    Canonical name date_vendor_invoice_amount.ext, e.g.
    2024-01-05_Acme_Co_INV-9_100.00.pdf
    """
    ext = file_extension(original_name)
    vendor = clean_text(fields.vendor_name, "Unknown")
    invoice = clean_text(fields.invoice_number, "NoInvoice")
    amount = fields.amount or "0.00"

    name = f"{fields.date}_{vendor}_{invoice}_{amount}{ext}"
    if len(name) > MAX_FILENAME_LENGTH:
        name = f"{fields.date}_{vendor[:20]}_{invoice[:15]}_{amount}{ext}"

    return clean_filename(name)


def parse_filename(
    derived_name: str,
    transaction_type: str = TransactionType.INFLOW.value,
    document_type: str = DocumentType.OTHER.value
) -> Optional[EnrichedFields]:
    """
    Rebuild EnrichedFields from a derived name.

    The date is the first segment, the amount the last and the invoice number
    the one before it; everything in between is the vendor. Returns None when
    the name has fewer than four segments.
    """
    if not derived_name:
        return None
    ext = file_extension(derived_name)
    stem = derived_name[:-len(ext)] if ext else derived_name
    parts = stem.split("_")
    if len(parts) < 4:
        return None

    return EnrichedFields(
        date=clean_date(parts[0]),
        vendor_name=clean_text("_".join(parts[1:-2]), "Unknown_Vendor"),
        invoice_number=clean_text(parts[-2], "") or generate_invoice_id(),
        amount=clean_amount(parts[-1]),
        document_type=clean_document_type(document_type),
        transaction_type=clean_transaction_type(transaction_type),
        confidence=RESTORED_CONFIDENCE,
    )


def is_supported_mime_type(mime_type: str) -> bool:
    mime_type = (mime_type or "").lower()
    return any(supported in mime_type for supported in SUPPORTED_MIME_TYPES)


# =============================================================================
# PIPELINE
# =============================================================================

@dataclass
class EnrichmentResult:
    """Outcome of a successful enrichment."""
    fields: EnrichedFields
    derived_name: str
    blob: BlobInfo
    model_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fields": self.fields.to_dict(),
            "derived_name": self.derived_name,
            "blob_id": self.blob.blob_id,
            "model_name": self.model_name,
        }


class EnrichmentPipeline:
    """Classifies Working records with the AI service."""

    def __init__(
        self,
        blob_store: BlobStore,
        ai_client: GeminiClient,
        max_retries: int = AI_MAX_RETRIES,
        retry_delay: float = RETRY_DELAY_SECONDS,
        sleep=asyncio.sleep
    ):
        self.blob_store = blob_store
        self.ai_client = ai_client
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    async def enrich(self, record: WorkingRecord) -> EnrichmentResult:
        """
        Enrich one record. No store is written here.

        Raises:
            HubError: FILE_NOT_FOUND, PROCESSING_FAILED or API_LIMIT_EXCEEDED
        """
        blob = await self.blob_store.get_blob(record.blob_ref)

        if blob.size > MAX_FILE_SIZE_FOR_AI:
            raise HubError(
                ErrorCode.PROCESSING_FAILED,
                f"File too large for AI processing: {blob.size / 1024 / 1024:.2f}MB"
            )
        if not is_supported_mime_type(blob.content_type):
            raise HubError(ErrorCode.PROCESSING_FAILED, f"Unsupported file type: {blob.content_type}")

        content = await self.blob_store.get_content(record.blob_ref)
        file_name = record.original_name or blob.name

        response = await retry_with_backoff(
            lambda: self.ai_client.analyze_document(
                content, blob.content_type, file_name, blob.size, blob.created_at
            ),
            max_retries=self.max_retries,
            base_delay=self.retry_delay,
            context=f"AI processing {file_name}",
            sleep=self._sleep,
        )

        fields = validate_ai_response(response.data)
        derived_name = derive_filename(fields, file_name)
        logger.info("Enriched %s -> %s (confidence %.2f)", file_name, derived_name, fields.confidence)

        return EnrichmentResult(
            fields=fields,
            derived_name=derived_name,
            blob=blob,
            model_name=response.model_name,
        )

    @staticmethod
    def restore(
        record: WorkingRecord,
        transaction_type: str = TransactionType.INFLOW.value,
        document_type: str = DocumentType.OTHER.value
    ) -> Optional[EnrichedFields]:
        """
        EnrichedFields rebuilt from the record's derived name, without an AI call.
        A derived name that no longer parses falls back to default fields with
        the stored invoice number.
        """
        if not record.has_enrichment:
            return None
        fields = parse_filename(record.derived_name, transaction_type, document_type)
        if fields is None:
            logger.warning("Derived name %r does not parse, restoring %s with defaults", record.derived_name, record.original_name)
            fields = validate_ai_response({
                "invoiceNumber": record.invoice_number,
                "transactionType": transaction_type,
                "documentType": document_type,
            })
            fields.confidence = RESTORED_CONFIDENCE
        elif record.invoice_number:
            fields.invoice_number = clean_text(record.invoice_number, fields.invoice_number)
        return fields
