"""Error taxonomy for allowsync.

Every error carries the ``stage`` it came from so a failed cycle can be
logged with enough context to tell which step broke:

  ConfigError : ``config``  fatal, process exits before the loop starts
  LoadError   : ``load``    fatal, allow-list file cannot be opened at startup
  FetchError  : ``fetch``   recoverable, isolated to one cycle
  PersistError: ``persist`` recoverable, allow-list write failed
  HookError   : ``hook``    recoverable, persisted state is kept
"""

from __future__ import annotations

from typing import Optional


class AllowSyncError(Exception):
    """Base class for all allowsync errors."""

    stage: str = "unknown"

    def __init__(self, message: str, detail: Optional[str] = None) -> None:
        self.detail = detail
        full = message
        if detail:
            full = f"{message}: {detail}"
        super().__init__(full)


class ConfigError(AllowSyncError):
    """Configuration file missing, unreadable, unparsable or incomplete."""

    stage = "config"


class LoadError(AllowSyncError):
    """Allow-list file could not be opened or read at startup."""

    stage = "load"


class FetchError(AllowSyncError):
    """Transport failure, non-success status or undeserializable body.

    ``status_code`` is set when the server answered with a non-2xx status.
    """

    stage = "fetch"

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message, detail)


class PersistError(AllowSyncError):
    """Writing the allow-list file failed."""

    stage = "persist"


class HookError(AllowSyncError):
    """after_update_hook could not be launched or did not exit with 0.

    ``exit_code`` is None when the process could not be launched or was
    terminated by a signal.
    """

    stage = "hook"

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        exit_code: Optional[int] = None,
    ) -> None:
        self.exit_code = exit_code
        super().__init__(message, detail)


__all__ = [
    "AllowSyncError",
    "ConfigError",
    "FetchError",
    "HookError",
    "LoadError",
    "PersistError",
]
