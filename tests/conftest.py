"""Root test configuration for allowsync.

Turns off structlog logger caching so ``structlog.testing.capture_logs`` sees
the module-level loggers, and clears ALLOWSYNC_* environment variables so a
developer's shell cannot leak overrides into config tests.
"""

import os

import pytest

from allowsync.utils.logger import configure_logging

configure_logging(log_level="DEBUG", json_output=True, cache_loggers=False)


@pytest.fixture(autouse=True)
def clean_allowsync_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove every ALLOWSYNC_* variable for the duration of a test."""
    for name in list(os.environ):
        if name.startswith("ALLOWSYNC_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def allow_file(tmp_path) -> str:
    """Path of a not-yet-existing allow-list file inside tmp_path."""
    return str(tmp_path / "github-hooks.allow")
