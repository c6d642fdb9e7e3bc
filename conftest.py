"""
Configuration file for pytest.

This file configures pytest to properly load environment variables
and provides fixtures for external services.
"""
import os
import pytest
import dotenv

# Load environment variables from .env file
dotenv.load_dotenv()


@pytest.fixture(scope="session")
def postgres_url():
    """PostgreSQL URL for integration tests, or skip when none is configured."""
    url = os.getenv("TEST_POSTGRES_URL")
    if not url or not url.strip():
        pytest.skip("TEST_POSTGRES_URL not set")
    return url
