"""
CRM Migration Hub - Account Migration Module

Copies a CRM account's data from a source location to a destination location
through the platform's rate-limited API.

Components:
- AccountValidator: credential checks for both accounts
- AccountAnalyzer: per-category record counts and a duration estimate
- CategoryTransferWorker: generic per-category transfer driven by an adapter
- MigrationJobManager: job state machine, background execution, cancellation
- ExportService: read-only JSON snapshot of a source account
- MigrationJobStore: MongoDB / in-memory persistence for jobs and history
"""

from .models import (
    MigrationCategory,
    ConflictPolicy,
    MigrationStatus,
    CategoryStatus,
    MigrationOptions,
    CategoryProgress,
    MigrationJob,
    MigrationHistoryEntry,
    InvalidTransitionError,
    JobNotFoundError,
    parse_data_counts,
)
from .categories import CategoryAdapter, CATEGORY_ADAPTERS, get_adapter, build_adapters
from .worker import CategoryTransferWorker, TransferResult
from .validator import AccountValidator, ValidationResult
from .analyzer import AccountAnalyzer, AnalysisResult
from .export import ExportService
from .job_store import MigrationJobStore, MongoMigrationJobStore, InMemoryMigrationJobStore
from .job_manager import MigrationJobManager

__all__ = [
    'MigrationCategory',
    'ConflictPolicy',
    'MigrationStatus',
    'CategoryStatus',
    'MigrationOptions',
    'CategoryProgress',
    'MigrationJob',
    'MigrationHistoryEntry',
    'InvalidTransitionError',
    'JobNotFoundError',
    'parse_data_counts',
    'CategoryAdapter',
    'CATEGORY_ADAPTERS',
    'get_adapter',
    'build_adapters',
    'CategoryTransferWorker',
    'TransferResult',
    'AccountValidator',
    'ValidationResult',
    'AccountAnalyzer',
    'AnalysisResult',
    'ExportService',
    'MigrationJobStore',
    'MongoMigrationJobStore',
    'InMemoryMigrationJobStore',
    'MigrationJobManager',
]
