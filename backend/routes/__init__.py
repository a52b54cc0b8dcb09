"""
CRM Migration Hub - Routes Package

API routers for the Migration Hub.
"""

from .crm_migration import router as crm_migration_router, validation_exception_handler

__all__ = [
    'crm_migration_router',
    'validation_exception_handler',
]
