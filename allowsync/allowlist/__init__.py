"""allowsync allow-list store.

Public API:
    AllowListStore     : durable holder of the current CIDR set
    parse_cidr         : parse one CIDR in standard textual notation
    parse_allowlist    : parse `allow <CIDR>;` file content (fail-closed)
    serialize_allowlist: render a CIDR set in the same grammar
"""
from allowsync.allowlist.store import (
    CIDR,
    AllowListStore,
    AllowlistParseError,
    parse_allowlist,
    parse_cidr,
    serialize_allowlist,
)

__all__ = [
    "CIDR",
    "AllowListStore",
    "AllowlistParseError",
    "parse_allowlist",
    "parse_cidr",
    "serialize_allowlist",
]
