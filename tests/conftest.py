"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Make the clusternet package importable without installation
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Make the in-memory Azure fakes importable as azure_mock
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from clusternet.security import FORBIDDEN_CREDENTIAL_ENV_VARS  # noqa: E402


@pytest.fixture(autouse=True)
def _no_host_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep credential variables of the host shell out of every test."""
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        monkeypatch.delenv(env_var, raising=False)
