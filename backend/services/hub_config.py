"""
Accruals Hub - Configuration

All runtime settings for the accruals document hub. Values are read from the
environment (optionally from a .env file) once at import time and exposed as
module constants, so services and tests can patch them individually.

Backends:
- RECORD_BACKEND: "memory" (default) or "mongo"
- BLOB_BACKEND:   "memory" (default) or "graph"
"""

import os
from datetime import datetime, timezone
from typing import Dict, Any, List

from dotenv import load_dotenv

load_dotenv()


# =============================================================================
# DATABASE
# =============================================================================

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "accruals_hub")

RECORD_BACKEND = os.environ.get("RECORD_BACKEND", "memory").lower()
BLOB_BACKEND = os.environ.get("BLOB_BACKEND", "memory").lower()

# Store that holds the tenant registry table
MASTER_STORE_ID = os.environ.get("MASTER_STORE_ID", "accruals_master")
REGISTRY_TABLE = "Tenants"


# =============================================================================
# AI SETTINGS
# =============================================================================

GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-1.5-flash")
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"
GEMINI_TIMEOUT_SECONDS = 60.0

AI_MAX_RETRIES = 3
CONFIDENCE_THRESHOLD = 0.7
DEFAULT_CONFIDENCE = 0.8
MAX_FILE_SIZE_FOR_AI = 10 * 1024 * 1024  # 10MB


# =============================================================================
# MICROSOFT GRAPH (blob storage)
# =============================================================================

GRAPH_TENANT_ID = os.environ.get("GRAPH_TENANT_ID", "")
GRAPH_CLIENT_ID = os.environ.get("GRAPH_CLIENT_ID", "")
GRAPH_CLIENT_SECRET = os.environ.get("GRAPH_CLIENT_SECRET", "")
GRAPH_DRIVE_ID = os.environ.get("GRAPH_DRIVE_ID", "")


# =============================================================================
# PROCESSING SETTINGS
# =============================================================================

MAX_PROCESSING_ATTEMPTS = int(os.environ.get("MAX_PROCESSING_ATTEMPTS", "3"))
RETRY_DELAY_SECONDS = 2.0
BATCH_DELAY_SECONDS = float(os.environ.get("BATCH_DELAY_SECONDS", "1.5"))
TENANT_DELAY_SECONDS = RETRY_DELAY_SECONDS * 2
OPERATION_TIMEOUT_SECONDS = 300
CLEANUP_OLDER_THAN_DAYS = 30

# Lease timeouts (seconds)
LOCK_TIMEOUT_SECONDS = float(os.environ.get("LOCK_TIMEOUT_SECONDS", "30"))
READ_LOCK_TIMEOUT_SECONDS = 5.0
UPDATE_LOCK_TIMEOUT_SECONDS = 10.0
LEASE_TTL_SECONDS = OPERATION_TIMEOUT_SECONDS

MAX_FILENAME_LENGTH = 100


# =============================================================================
# FOLDER LAYOUT
# =============================================================================

ROOT_FOLDER_PREFIX = "Tenant-"
STORE_NAME_SUFFIX = "_Processing"

FOLDER_ACCRUALS = "Accruals"
FOLDER_BILLS = "Bills and Invoices"
FOLDER_BUFFER = "Buffer"
FOLDER_MONTHS = "Months"
FOLDER_INFLOW = "Inflow"
FOLDER_OUTFLOW = "Outflow"
FOLDER_SPREADSHEETS = "Spreadsheets"


# =============================================================================
# HELPERS
# =============================================================================

def get_gemini_api_key() -> str:
    """Return the Gemini API key, raising INVALID_INPUT when it is not configured."""
    from services.errors import ErrorCode, HubError

    api_key = os.environ.get("GEMINI_API_KEY", "")
    if not api_key:
        raise HubError(ErrorCode.INVALID_INPUT, "Gemini API key not configured. Set GEMINI_API_KEY.")
    return api_key


def is_graph_configured() -> bool:
    return all([GRAPH_TENANT_ID, GRAPH_CLIENT_ID, GRAPH_CLIENT_SECRET, GRAPH_DRIVE_ID])


def perform_health_check(registry_ok: bool = True) -> Dict[str, Any]:
    """
    Check that the hub is configured well enough to process documents.

    Returns:
        dict with status (healthy | degraded | unhealthy), the individual
        checks and any issues found.
    """
    checks: Dict[str, Any] = {}
    issues: List[str] = []

    checks["gemini_api_key"] = bool(os.environ.get("GEMINI_API_KEY"))
    if not checks["gemini_api_key"]:
        issues.append("Gemini API key not configured")

    checks["registry"] = registry_ok
    if not registry_ok:
        issues.append("Tenant registry not accessible")

    checks["blob_backend"] = BLOB_BACKEND
    if BLOB_BACKEND == "graph" and not is_graph_configured():
        issues.append("Graph blob backend selected but credentials are incomplete")

    if not issues:
        status = "healthy"
    elif not registry_ok:
        status = "unhealthy"
    else:
        status = "degraded"

    return {
        "status": status,
        "checks": checks,
        "issues": issues,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
