"""
Accruals Hub - Lifecycle Router

Enrichment, reconciliation, categorization and retry commands, plus the
per-tenant reporting and maintenance endpoints.
"""

from fastapi import APIRouter, HTTPException, Query
import logging

from services.errors import HubError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["lifecycle"])

# Document processor - set by main app
processor = None

def set_dependencies(document_processor):
    global processor
    processor = document_processor


async def _run(operation, *args, **kwargs):
    try:
        return await operation(*args, **kwargs)
    except HubError as e:
        logger.warning("%s failed: %s %s", operation.__name__, e.code.value, e.message)
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


# ==================== COMMANDS ====================

@router.post("/tenants/{name}/enrich")
async def process_enrichment(name: str):
    """Enrich eligible documents with AI classification."""
    result = await _run(processor.process_enrichment, name)
    return result.to_dict()


@router.post("/process-all")
async def process_all_tenants():
    """Run enrichment for every active tenant."""
    result = await _run(processor.process_all_tenants)
    return result.to_dict()


@router.post("/tenants/{name}/reconcile")
async def reconcile_buffer_changes(name: str):
    """Apply pending deletions and reactivations from the working table."""
    result = await _run(processor.reconcile_buffer_changes, name)
    return result.to_dict()


@router.post("/tenants/{name}/promote")
async def promote_to_categories(name: str):
    """Move pending documents into the inflow and outflow tables."""
    result = await _run(processor.promote_to_categories, name)
    return result.to_dict()


@router.post("/tenants/{name}/retry")
async def retry_failed(name: str):
    """Queue failed documents for another enrichment attempt."""
    result = await _run(processor.retry_failed, name)
    return result.to_dict()


# ==================== REPORTING ====================

@router.get("/tenants/{name}/pending-changes")
async def get_pending_changes(name: str):
    return await _run(processor.get_pending_changes, name)


@router.get("/tenants/{name}/stats")
async def get_processing_stats(name: str):
    return await _run(processor.get_processing_stats, name)


@router.get("/tenants/{name}/quality")
async def analyze_processing_quality(name: str):
    return await _run(processor.analyze_processing_quality, name)


@router.get("/tenants/{name}/statistics")
async def get_store_statistics(name: str):
    return await _run(processor.get_store_statistics, name)


# ==================== MAINTENANCE ====================

@router.post("/tenants/{name}/repair")
async def validate_and_repair_structure(name: str):
    return await _run(processor.validate_and_repair_structure, name)


@router.post("/tenants/{name}/cleanup")
async def cleanup(name: str, days_old: int = Query(30, ge=1), empty_rows: bool = Query(False)):
    """Remove old pending rows, and optionally empty rows in every table."""
    result = {"pending": await _run(processor.cleanup_old_pending, name, days_old)}
    if empty_rows:
        result["empty_rows"] = await _run(processor.cleanup_empty_rows, name)
    return result


@router.get("/status")
async def get_system_status():
    """Health, configuration and pending changes across tenants."""
    return await _run(processor.get_system_status)
