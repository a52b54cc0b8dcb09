"""
CRM Migration Hub - Migration Settings

Tunables for the migration subsystem, read once from the environment.
"""

import os
import json
import logging
from typing import Dict, List

logger = logging.getLogger(__name__)

# =============================================================================
# PAGING
# =============================================================================

MIGRATION_PAGE_SIZE = int(os.environ.get("MIGRATION_PAGE_SIZE", "100"))
MIGRATION_MAX_PAGES = int(os.environ.get("MIGRATION_MAX_PAGES", "500"))
MIGRATION_ANALYSIS_MAX_PAGES = int(os.environ.get("MIGRATION_ANALYSIS_MAX_PAGES", "20"))

# =============================================================================
# CONCURRENCY
# =============================================================================

MIGRATION_MAX_CONCURRENT_CATEGORIES = int(os.environ.get("MIGRATION_MAX_CONCURRENT_CATEGORIES", "3"))
MIGRATION_MAX_CONCURRENT_JOBS = int(os.environ.get("MIGRATION_MAX_CONCURRENT_JOBS", "2"))
MIGRATION_CANCEL_POLL_SECONDS = float(os.environ.get("MIGRATION_CANCEL_POLL_SECONDS", "2.0"))
MIGRATION_STALE_PENDING_MINUTES = int(os.environ.get("MIGRATION_STALE_PENDING_MINUTES", "10"))

# =============================================================================
# ERROR RECORDING
# =============================================================================

MIGRATION_MAX_ERRORS_PER_CATEGORY = int(os.environ.get("MIGRATION_MAX_ERRORS_PER_CATEGORY", "100"))
MIGRATION_MAX_ERROR_LENGTH = int(os.environ.get("MIGRATION_MAX_ERROR_LENGTH", "300"))

# =============================================================================
# ESTIMATION
# =============================================================================

# Seconds per record, per category. Writes that fan out server-side
# (workflows, calendars) are slower than plain records.
DEFAULT_SECONDS_PER_RECORD: Dict[str, float] = {
    "contacts": 0.5,
    "calendars": 2.0,
    "workflows": 3.0,
    "opportunities": 0.5,
    "forms": 2.0,
    "surveys": 2.0,
    "tags": 0.2,
    "users": 1.0,
    "companies": 0.5,
}


def _load_json_env(name: str) -> Dict:
    raw = os.environ.get(name)
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Ignoring %s: invalid JSON (%s)", name, str(e))
        return {}
    if not isinstance(value, dict):
        logger.warning("Ignoring %s: expected a JSON object", name)
        return {}
    return value


def load_seconds_per_record() -> Dict[str, float]:
    rates = dict(DEFAULT_SECONDS_PER_RECORD)
    for category, seconds in _load_json_env("MIGRATION_SECONDS_PER_RECORD").items():
        try:
            rates[category] = float(seconds)
        except (TypeError, ValueError):
            logger.warning("Ignoring seconds-per-record override for %s: %r", category, seconds)
    return rates


def load_natural_key_overrides() -> Dict[str, List[str]]:
    """
    Per-category natural key field paths from MIGRATION_NATURAL_KEYS, e.g.
    {"contacts": ["email"], "opportunities": ["name", "contact.email"]}
    """
    overrides: Dict[str, List[str]] = {}
    for category, fields in _load_json_env("MIGRATION_NATURAL_KEYS").items():
        if isinstance(fields, str):
            fields = [fields]
        if isinstance(fields, list) and fields and all(isinstance(f, str) for f in fields):
            overrides[category] = fields
        else:
            logger.warning("Ignoring natural key override for %s: %r", category, fields)
    return overrides


MIGRATION_SECONDS_PER_RECORD = load_seconds_per_record()
MIGRATION_NATURAL_KEYS = load_natural_key_overrides()
