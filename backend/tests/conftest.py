import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from fake_crm import (  # noqa: E402
    FakeCRMServer, contact, SOURCE_KEY, DEST_KEY, SOURCE_LOCATION, DEST_LOCATION
)
from services.crm import AccountCredentials  # noqa: E402


@pytest.fixture
def fake_crm():
    """Source account with 3 contacts, destination with 1 of them already present."""
    server = FakeCRMServer()
    server.add_account(
        SOURCE_KEY, SOURCE_LOCATION, "Source Studio",
        contacts=[
            contact("ann@example.com", 1),
            contact("bob@example.com", 2),
            contact("cat@example.com", 3),
        ]
    )
    server.add_account(
        DEST_KEY, DEST_LOCATION, "Destination Studio",
        contacts=[{"id": "dst-1", "email": "BOB@example.com", "firstName": "Robert"}]
    )
    return server


@pytest.fixture
def source_credentials():
    return AccountCredentials(api_key=SOURCE_KEY, location_id=SOURCE_LOCATION)


@pytest.fixture
def destination_credentials():
    return AccountCredentials(api_key=DEST_KEY, location_id=DEST_LOCATION)
