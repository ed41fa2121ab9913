"""Pytest configuration and fixtures."""

import shutil
import tempfile

import pytest


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    temp_path = tempfile.mkdtemp()
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def sample_time_entry():
    """Sample time entry record envelope."""
    return {
        "id": "entry-1",
        "type": "timeEntry",
        "data": {
            "id": "entry-1",
            "description": "Write report",
            "projectId": "project-1",
            "startTime": "2024-01-15T14:00:00Z",
            "endTime": "2024-01-15T15:00:00Z",
            "tags": ["writing"],
        },
        "lastModified": 1705327200000,
    }


@pytest.fixture
def sample_local_data(sample_time_entry):
    """Local collections keyed by record type."""
    return {
        "timeEntry": [sample_time_entry],
        "project": [
            {
                "id": "project-1",
                "type": "project",
                "data": {"id": "project-1", "name": "Reports", "color": "#667eea"},
                "lastModified": 1705320000000,
            }
        ],
        "windowRule": [],
    }


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
    config.addinivalue_line("markers", "unit: mark test as unit test")
