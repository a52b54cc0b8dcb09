"""
CRM Migration Hub - Account Validator

Checks that source and destination credentials authenticate and resolve to
reachable locations. One read-only location lookup per side; both sides are
checked concurrently and independently. Never raises for credential or
transport problems: they are reported in `errors`.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Tuple

from ..crm import AccountCredentials, CRMClientFactory, CRMError

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    source_ok: bool = False
    destination_ok: bool = False
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    source_location_name: Optional[str] = None
    destination_location_name: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.source_ok and self.destination_ok

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "sourceOk": self.source_ok,
            "destinationOk": self.destination_ok,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "sourceLocationName": self.source_location_name,
            "destinationLocationName": self.destination_location_name
        }


class AccountValidator:
    """Credential checks for a source/destination pair."""

    def __init__(self, client_factory: CRMClientFactory):
        self.client_factory = client_factory

    async def check_account(self, credentials: AccountCredentials) -> Tuple[bool, Optional[str], Optional[str]]:
        """Returns (ok, location_name, error)."""
        client = self.client_factory.for_account(credentials)
        try:
            location = await client.get_location()
        except CRMError as e:
            return False, None, str(e)
        except Exception as e:
            logger.exception("Unexpected error validating location %s", credentials.location_id)
            return False, None, f"Unexpected error: {e}"
        return True, location.get("name"), None

    async def validate_accounts(
        self,
        source: AccountCredentials,
        destination: AccountCredentials
    ) -> ValidationResult:
        (source_ok, source_name, source_error), (dest_ok, dest_name, dest_error) = await asyncio.gather(
            self.check_account(source),
            self.check_account(destination)
        )

        result = ValidationResult(
            source_ok=source_ok,
            destination_ok=dest_ok,
            source_location_name=source_name,
            destination_location_name=dest_name
        )
        if source_error:
            result.errors.append(f"Source account: {source_error}")
        if dest_error:
            result.errors.append(f"Destination account: {dest_error}")
        if source.location_id == destination.location_id:
            result.warnings.append("Source and destination are the same location")

        logger.info("Validated accounts %s -> %s: valid=%s",
                    source.location_id, destination.location_id, result.is_valid)
        return result
