from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from dotenv import load_dotenv
load_dotenv()  # Load .env file before any os.environ calls
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
import httpx
from pathlib import Path

from routes import crm_migration_router, validation_exception_handler
from services.crm import CRMClientFactory, RateLimiterRegistry
from services.crm.crm_client import CRM_REQUEST_TIMEOUT
from services.migration import (
    MigrationJobManager, MigrationJobStore, MongoMigrationJobStore, InMemoryMigrationJobStore,
    AccountValidator, AccountAnalyzer, ExportService
)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# MongoDB connection (optional: without it jobs live in process memory)
mongo_url = os.environ.get('MONGO_URL')
client = AsyncIOMotorClient(mongo_url) if mongo_url else None
db = client[os.environ.get('DB_NAME', 'crm_migration_hub')] if client is not None else None


def build_job_store() -> MigrationJobStore:
    if db is None:
        logger.warning("MONGO_URL not set; migration jobs will be kept in memory only")
        return InMemoryMigrationJobStore()
    return MongoMigrationJobStore(db)


def add_api_routes(app: FastAPI) -> None:
    """Mount the API routers. Must run before the app starts serving."""
    app.include_router(crm_migration_router, prefix="/api")
    app.add_exception_handler(RequestValidationError, validation_exception_handler)


def configure_migration_services(app: FastAPI, store: MigrationJobStore, client_factory: CRMClientFactory) -> MigrationJobManager:
    """Construct the migration components and attach them to app.state for the routers."""
    validator = AccountValidator(client_factory)
    manager = MigrationJobManager(store, client_factory, validator=validator)
    app.state.client_factory = client_factory
    app.state.account_validator = validator
    app.state.account_analyzer = AccountAnalyzer(client_factory)
    app.state.export_service = ExportService(client_factory)
    app.state.migration_manager = manager
    return manager


# ==================== APP SETUP ====================

app = FastAPI(title="CRM Migration Hub")

add_api_routes(app)

@app.get("/api/health")
async def health_check():
    """Liveness check for container orchestration."""
    return {"status": "healthy", "service": "crm-migration-hub"}

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    store = build_job_store()
    if isinstance(store, MongoMigrationJobStore):
        await store.ensure_indexes()

    http_client = httpx.AsyncClient(timeout=CRM_REQUEST_TIMEOUT)
    client_factory = CRMClientFactory(RateLimiterRegistry(), http_client=http_client)
    manager = configure_migration_services(app, store, client_factory)

    recovered = await manager.recover_jobs()
    logger.info("CRM Migration Hub started. Store: %s, recovered jobs: %s",
                type(store).__name__, recovered)


@app.on_event("shutdown")
async def shutdown_db_client():
    manager = getattr(app.state, "migration_manager", None)
    if manager is not None:
        await manager.shutdown()
    client_factory = getattr(app.state, "client_factory", None)
    if client_factory is not None:
        await client_factory.aclose()
    if client is not None:
        client.close()
