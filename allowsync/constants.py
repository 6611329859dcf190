"""Shared constants for allowsync.

Endpoints, headers, file grammar tokens and config defaults live here.
No magic strings in other modules; import from here.
"""

# ─── Upstream source (GitHub meta API) ───────────────────────────────────────

# Authoritative source of the webhook delivery address ranges.
GITHUB_API_META_URL: str = "https://api.github.com/meta"

# GitHub recommends pinning the media type on every REST call.
ACCEPT_HEADER_VALUE: str = "application/vnd.github+json"

# GitHub rejects requests without a User-Agent.
USER_AGENT: str = "allowsync"

# Field of the meta document holding the CIDR array.
DEFAULT_META_FIELD: str = "hooks"

# Total request timeout (seconds) for one fetch.
DEFAULT_FETCH_TIMEOUT: float = 30.0

# ─── Allow-list file grammar ─────────────────────────────────────────────────

# One entry per line: `allow <CIDR>;`
ALLOW_KEYWORD: str = "allow "
ENTRY_TERMINATOR: str = ";"

# ─── Hook execution ──────────────────────────────────────────────────────────

# Command interpreter used for after_update_hook.
HOOK_SHELL: str = "bash"
