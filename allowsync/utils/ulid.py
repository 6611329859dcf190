"""ULID generation utility for allowsync.

Provides ``generate_ulid()``, used as the ``cycle_id`` correlation key bound
to every log line of one reconciliation cycle. ULIDs sort by creation time,
so cycle ids in the log read in order.

Uses the `python-ulid` library (see pyproject.toml); do NOT hand-roll ULID generation.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Example::

        cycle_id = generate_ulid()
        # "01KJ0JRVHYA7KX32VPN5ZSCTMV"
        assert len(cycle_id) == 26
    """
    return str(ULID())
