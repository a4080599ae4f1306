"""
Accruals Hub - AI Classification Client

Sends a document to Gemini's generateContent endpoint with a fixed extraction
prompt and returns the first JSON object found in the model's answer.

Request shape:
- images: prompt text + inline base64 image data
- PDFs: prompt text + a descriptive rendering of the file metadata
- text/csv: prompt text + the decoded content

Error mapping:
- non-200 response              -> API_LIMIT_EXCEEDED
- no candidates / no JSON block -> PROCESSING_FAILED
"""

import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Any

import httpx

from services.errors import ErrorCode, HubError
from services.hub_config import (
    GEMINI_API_BASE,
    GEMINI_MODEL,
    GEMINI_TIMEOUT_SECONDS,
    get_gemini_api_key,
)

logger = logging.getLogger(__name__)


DOCUMENT_ANALYSIS_PROMPT = """
You are a financial document analysis expert. Analyze this document and extract the following information with high accuracy:

1. Document Date (YYYY-MM-DD format) - Look for invoice date, bill date, or document date
2. Vendor/Company Name - The company or person issuing this document
3. Invoice/Document Number - Any reference number, invoice number, or bill number
4. Total Amount (numerical value only) - The main amount due or paid
5. Document Type - classify as: invoice, receipt, bill, statement, contract, other
6. Transaction Type - determine if this represents:
   - "inflow" (money coming IN to the business - customer payments, sales, income)
   - "outflow" (money going OUT of the business - bills, expenses, purchases)
7. Confidence Level (0.0 to 1.0) - Your confidence in the accuracy of the extraction

Important guidelines:
- For transaction type: invoices TO customers = inflow, bills FROM vendors = outflow
- Use YYYY-MM-DD format for dates only
- Extract only numerical values for amounts (no currency symbols)
- Be conservative with confidence - use lower values if uncertain
- If information is unclear or missing, use empty string for text fields and 0 for numerical fields

Return ONLY valid JSON in this exact format (no other text):
{
  "date": "YYYY-MM-DD",
  "vendorName": "vendor name",
  "invoiceNumber": "invoice number",
  "amount": "123.45",
  "documentType": "invoice|receipt|bill|statement|contract|other",
  "transactionType": "inflow|outflow",
  "confidence": 0.95
}
"""

GENERATION_CONFIG = {
    "temperature": 0.1,
    "topK": 1,
    "topP": 1,
    "maxOutputTokens": 2048,
}


@dataclass
class AIResponse:
    """Parsed answer of one classification call."""
    data: Dict[str, Any]
    model_name: str
    timestamp: str
    raw_response: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "model_name": self.model_name,
            "timestamp": self.timestamp,
        }


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """First {...} block in free text, or None."""
    if not text:
        return None
    json_start = text.find("{")
    json_end = text.rfind("}") + 1
    if json_start < 0 or json_end <= json_start:
        return None
    try:
        parsed = json.loads(text[json_start:json_end])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def describe_pdf(file_name: str, size: int, created_at: str, mime_type: str) -> str:
    """Text rendering used for PDFs, which are not sent inline."""
    return "\n".join([
        f"PDF Document: {file_name}",
        f"File Size: {size} bytes",
        f"Date Created: {created_at}",
        f"MIME Type: {mime_type}",
        "",
        "Please analyze this financial document based on its filename and extract "
        "the date, vendor, invoice number, amount, document type and transaction type.",
    ])


def build_payload(
    content: bytes,
    mime_type: str,
    file_name: str,
    size: int = 0,
    created_at: str = ""
) -> Dict[str, Any]:
    """generateContent request body for one document."""
    if mime_type.startswith("image/"):
        parts = [
            {"text": DOCUMENT_ANALYSIS_PROMPT},
            {
                "inline_data": {
                    "mime_type": mime_type,
                    "data": base64.b64encode(content).decode("ascii"),
                }
            },
        ]
    else:
        if mime_type == "application/pdf":
            rendered = describe_pdf(file_name, size or len(content), created_at, mime_type)
        else:
            try:
                rendered = content.decode("utf-8")
            except UnicodeDecodeError as e:
                rendered = f"File: {file_name} ({mime_type}) - Content extraction failed: {e}"
        parts = [{"text": DOCUMENT_ANALYSIS_PROMPT + "\n\nDocument content:\n" + rendered}]

    return {
        "contents": [{"parts": parts}],
        "generationConfig": dict(GENERATION_CONFIG),
    }


class GeminiClient:
    """Thin async client for Gemini generateContent."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = GEMINI_MODEL,
        timeout: float = GEMINI_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self._api_key = api_key
        self.model = model
        self.timeout = timeout
        self._transport = transport

    @property
    def api_key(self) -> str:
        return self._api_key or get_gemini_api_key()

    def endpoint(self) -> str:
        return f"{GEMINI_API_BASE}/{self.model}:generateContent"

    async def analyze_document(
        self,
        content: bytes,
        mime_type: str,
        file_name: str,
        size: int = 0,
        created_at: str = ""
    ) -> AIResponse:
        """
        Classify one document.

        Raises:
            HubError: API_LIMIT_EXCEEDED on a non-200 answer,
            PROCESSING_FAILED when no JSON object comes back.
        """
        payload = build_payload(content, mime_type, file_name, size, created_at)
        logger.debug("Calling Gemini for %s (%s)", file_name, mime_type)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                resp = await client.post(
                    self.endpoint(),
                    params={"key": self.api_key},
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
            except httpx.HTTPError as e:
                raise HubError(ErrorCode.API_LIMIT_EXCEEDED, f"Gemini request failed: {e}") from e

        if resp.status_code != 200:
            try:
                message = resp.json().get("error", {}).get("message", resp.text)
            except ValueError:
                message = resp.text
            raise HubError(
                ErrorCode.API_LIMIT_EXCEEDED,
                f"Gemini API error: {message}",
                {"status_code": resp.status_code}
            )

        body = resp.json()
        try:
            text = body["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise HubError(ErrorCode.PROCESSING_FAILED, "Invalid AI response structure")

        data = extract_json_object(text)
        if data is None:
            raise HubError(ErrorCode.PROCESSING_FAILED, "No valid JSON found in AI response")

        return AIResponse(
            data=data,
            model_name=self.model,
            timestamp=datetime.now(timezone.utc).isoformat(),
            raw_response=text[:2000],
        )
