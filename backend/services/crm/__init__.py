"""
CRM Migration Hub - CRM Platform Integration

Components:
- crm_client.py: authenticated API client with retry/backoff and error taxonomy
- rate_limiter.py: per-account token bucket shared by concurrent callers

Usage:
    from services.crm import CRMClientFactory, AccountCredentials

    factory = CRMClientFactory()
    client = factory.for_account(AccountCredentials(api_key, location_id))
    location = await client.get_location()
"""

from .crm_client import (
    AccountCredentials,
    CRMClient,
    CRMClientFactory,
    CRMError,
    CRMAuthError,
    CRMValidationError,
    CRMRateLimitError,
    CRMTransportError,
)
from .rate_limiter import TokenBucket, RateLimiterRegistry

__all__ = [
    'AccountCredentials',
    'CRMClient',
    'CRMClientFactory',
    'CRMError',
    'CRMAuthError',
    'CRMValidationError',
    'CRMRateLimitError',
    'CRMTransportError',
    'TokenBucket',
    'RateLimiterRegistry',
]
