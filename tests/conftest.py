"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from suppressor.config import Config  # noqa: E402

SUB1 = "00000000-0000-0000-0000-000000000001"
SUB2 = "00000000-0000-0000-0000-000000000002"
MAINTENANCE_ID = (
    f"/subscriptions/{SUB1}/resourceGroups/rg-maintenance"
    "/providers/Microsoft.Maintenance/maintenanceConfigurations/mc-weekly-patching"
)
SUPPRESSION_RESOURCE_GROUP = "rg-alert-suppression"


@pytest.fixture
def config() -> Config:
    """Handler configuration used by most tests."""
    return Config(
        suppression_resource_group=SUPPRESSION_RESOURCE_GROUP,
        operation_timeout_seconds=5,
    )
