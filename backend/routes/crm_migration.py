"""
CRM Migration Hub - Migration API Routes

Endpoints for moving a CRM account's data to another account:
- Credential validation and source analysis
- JSON export of a source account
- Starting, polling and cancelling migration jobs
- Job history

Every response is `{success, data}` or `{success: false, error}`.
"""

import logging
from typing import Optional, Dict, Any
from fastapi import APIRouter, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from services.crm import AccountCredentials
from services.migration import (
    MigrationJobManager,
    MigrationOptions,
    AccountValidator,
    AccountAnalyzer,
    ExportService,
    parse_data_counts,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/migration", tags=["CRM Migration"])


# =============================================================================
# DEPENDENCIES (wired onto app.state by server.py at startup)
# =============================================================================

def get_manager(request: Request) -> MigrationJobManager:
    return request.app.state.migration_manager


def get_validator(request: Request) -> AccountValidator:
    return request.app.state.account_validator


def get_analyzer(request: Request) -> AccountAnalyzer:
    return request.app.state.account_analyzer


def get_exporter(request: Request) -> ExportService:
    return request.app.state.export_service


# =============================================================================
# MODELS
# =============================================================================

class AccountPayload(BaseModel):
    apiKey: Optional[str] = None
    locationId: Optional[str] = None
    accountName: Optional[str] = None


class ValidateRequest(BaseModel):
    sourceAccount: Optional[AccountPayload] = None
    destinationAccount: Optional[AccountPayload] = None


class SourceRequest(BaseModel):
    sourceAccount: Optional[AccountPayload] = None


class StartMigrationRequest(BaseModel):
    sourceAccount: Optional[AccountPayload] = None
    destinationAccount: Optional[AccountPayload] = None
    options: Optional[Dict[str, Any]] = None
    dataCounts: Optional[Dict[str, Any]] = None


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed or wrongly-typed bodies get the API's 400 error shape instead of FastAPI's 422."""
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    logger.warning("Invalid request body for %s: %s", request.url.path, problems)
    return _error(400, "Invalid request: " + "; ".join(problems))


def _credentials(account: Optional[AccountPayload], label: str) -> AccountCredentials:
    try:
        return AccountCredentials.from_dict(account.model_dump() if account else None)
    except ValueError:
        raise ValueError(f"{label} credentials (apiKey, locationId) are required")


# =============================================================================
# ACCOUNT ENDPOINTS
# =============================================================================

@router.post("/validate")
async def validate_accounts(body: ValidateRequest, validator: AccountValidator = Depends(get_validator)):
    """Check that both accounts' credentials work."""
    try:
        source = _credentials(body.sourceAccount, "Source account")
        destination = _credentials(body.destinationAccount, "Destination account")
    except ValueError as e:
        return _error(400, str(e))

    try:
        result = await validator.validate_accounts(source, destination)
    except Exception as e:
        logger.exception("Account validation failed")
        return _error(500, f"Validation failed: {e}")
    return {"success": True, "data": result.to_dict()}


@router.post("/analyze")
async def analyze_source(body: SourceRequest, analyzer: AccountAnalyzer = Depends(get_analyzer)):
    """Per-category record counts and estimated duration for the source account."""
    try:
        source = _credentials(body.sourceAccount, "Source account")
    except ValueError as e:
        return _error(400, str(e))

    try:
        result = await analyzer.analyze_source_account(source)
    except Exception as e:
        logger.exception("Account analysis failed")
        return _error(500, f"Analysis failed: {e}")
    return {"success": True, "data": result.to_dict()}


@router.post("/export")
async def export_source(body: SourceRequest, exporter: ExportService = Depends(get_exporter)):
    """Full JSON snapshot of the source account."""
    try:
        source = _credentials(body.sourceAccount, "Source account")
    except ValueError as e:
        return _error(400, str(e))

    try:
        document = await exporter.export_to_json(source)
    except Exception as e:
        logger.exception("Account export failed")
        return _error(500, f"Export failed: {e}")
    return {"success": True, "data": document}


# =============================================================================
# JOB ENDPOINTS
# =============================================================================

@router.post("/start")
async def start_migration(body: StartMigrationRequest, manager: MigrationJobManager = Depends(get_manager)):
    """
    Create a migration job and run it in the background.

    Returns as soon as the job is persisted as pending; poll /status/{jobId}.
    """
    try:
        source = _credentials(body.sourceAccount, "Source account")
        destination = _credentials(body.destinationAccount, "Destination account")
        options = MigrationOptions.from_dict(body.options)
        job = await manager.create_migration_job(
            source, destination, options, parse_data_counts(body.dataCounts)
        )
    except ValueError as e:
        return _error(400, str(e))
    except Exception as e:
        logger.exception("Failed to create migration job")
        return _error(500, f"Failed to start migration: {e}")

    manager.submit(job.id)
    return {
        "success": True,
        "data": {
            "jobId": job.id,
            "status": job.status.value,
            "message": "Migration started"
        }
    }


@router.get("/status/{job_id}")
async def get_migration_status(job_id: str, manager: MigrationJobManager = Depends(get_manager)):
    try:
        job = await manager.get_migration_job(job_id)
    except Exception as e:
        logger.exception("Failed to load migration job %s", job_id)
        return _error(500, f"Failed to load migration job: {e}")
    if job is None:
        return _error(404, "Migration job not found")
    return {"success": True, "data": job.to_dict()}


@router.delete("/status/{job_id}")
async def cancel_migration(job_id: str, manager: MigrationJobManager = Depends(get_manager)):
    """Request cancellation. Repeating it, or cancelling a finished job, still succeeds."""
    try:
        job = await manager.cancel_migration(job_id)
    except Exception as e:
        logger.exception("Failed to cancel migration job %s", job_id)
        return _error(500, f"Failed to cancel migration: {e}")
    if job is None:
        return _error(404, "Migration job not found")

    if job.is_terminal:
        message = f"Migration already {job.status.value}"
    else:
        message = "Migration cancellation requested"
    return {"success": True, "message": message}


@router.get("/history")
async def get_migration_history(manager: MigrationJobManager = Depends(get_manager)):
    try:
        entries = await manager.get_migration_history()
    except Exception as e:
        logger.exception("Failed to load migration history")
        return _error(500, f"Failed to load migration history: {e}")
    return {"success": True, "data": [entry.to_dict() for entry in entries]}
