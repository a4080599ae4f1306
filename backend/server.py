"""
Accruals Hub - Main Server

Entry point. Routes are organized in /routes/, lifecycle logic in /services/.
Backends are picked from configuration at startup.
"""

from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
load_dotenv()  # Load .env file before any os.environ calls
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
import logging

# ==================== ROUTERS ====================
from routes import tenants, lifecycle

# ==================== SERVICES ====================
from services import hub_config
from services.ai_client import GeminiClient
from services.blob_store import GraphBlobStore, InMemoryBlobStore
from services.document_processor import DocumentProcessor
from services.enrichment import EnrichmentPipeline
from services.record_store import InMemoryRecordStore, MongoRecordStore
from services.sync_engine import SyncEngine
from services.tenant_lease import InProcessLeaseManager, MongoLeaseManager
from services.tenant_provisioning import ProvisioningSaga
from services.tenant_registry import TenantRegistry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

mongo_client = None
processor = None


def build_blob_store():
    if hub_config.BLOB_BACKEND == "graph":
        if not hub_config.is_graph_configured():
            raise RuntimeError("BLOB_BACKEND=graph requires GRAPH_TENANT_ID, GRAPH_CLIENT_ID, GRAPH_CLIENT_SECRET and GRAPH_DRIVE_ID")
        return GraphBlobStore(
            hub_config.GRAPH_TENANT_ID,
            hub_config.GRAPH_CLIENT_ID,
            hub_config.GRAPH_CLIENT_SECRET,
            hub_config.GRAPH_DRIVE_ID,
        )
    logger.warning("Using in-memory blob store; documents are not persisted")
    return InMemoryBlobStore()


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global mongo_client, processor

    # Startup
    logger.info("Starting Accruals Hub...")

    if hub_config.RECORD_BACKEND == "mongo":
        mongo_client = AsyncIOMotorClient(hub_config.MONGO_URL)
        db = mongo_client[hub_config.DB_NAME]
        record_store = MongoRecordStore(db)
        await record_store.create_indexes()
        lease_manager = MongoLeaseManager(db)
    else:
        logger.warning("Using in-memory record store; tables are not persisted")
        record_store = InMemoryRecordStore()
        lease_manager = InProcessLeaseManager()

    blob_store = build_blob_store()

    registry = TenantRegistry(record_store, blob_store, lease_manager)
    await registry.initialize()

    sync_engine = SyncEngine(record_store, blob_store, lease_manager)
    pipeline = EnrichmentPipeline(blob_store, GeminiClient())
    processor = DocumentProcessor(registry, sync_engine, pipeline)

    # Initialize routers
    tenants.set_dependencies(registry, ProvisioningSaga(registry, record_store, blob_store, lease_manager))
    lifecycle.set_dependencies(processor)

    logger.info("Accruals Hub started (records=%s, blobs=%s)", hub_config.RECORD_BACKEND, hub_config.BLOB_BACKEND)

    yield

    # Shutdown
    logger.info("Shutting down Accruals Hub...")
    if mongo_client:
        mongo_client.close()


# ==================== APP SETUP ====================
app = FastAPI(
    title="Accruals Hub",
    description="Financial document enrichment, reconciliation and categorization",
    version="1.0.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API Router with /api prefix
api_router = APIRouter(prefix="/api")

api_router.include_router(tenants.router)
api_router.include_router(lifecycle.router)


# ==================== ROOT ENDPOINTS ====================
@app.get("/")
async def root():
    return {
        "service": "Accruals Hub",
        "version": "1.0.0",
        "status": "running"
    }


@api_router.get("/health")
async def health():
    """Configuration health check."""
    return hub_config.perform_health_check()


# Mount to app
app.include_router(api_router)
