"""GitHub meta API client for allowsync.

Fetches ``GET https://api.github.com/meta`` and returns the CIDR ranges of
one of its arrays (``hooks``, the webhook delivery addresses, by default) as a
candidate allow-list.

Key properties:
  - One shared httpx.AsyncClient per fetcher, reused across cycles
  - Every failure (transport, non-2xx status, bad JSON, bad CIDR) is raised
    as FetchError; nothing partial is ever returned
  - CIDR strings are validated with the same parser the allow-list store uses,
    so anything fetched can be written and read back
  - The token is sent as ``Authorization: token <token>`` and never logged
"""

from __future__ import annotations

from typing import Annotated, Any, Optional

import httpx
from pydantic import AfterValidator, StrictStr, TypeAdapter, ValidationError

from allowsync.allowlist.store import CIDR, parse_cidr
from allowsync.constants import (
    ACCEPT_HEADER_VALUE,
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_META_FIELD,
    GITHUB_API_META_URL,
    USER_AGENT,
)
from allowsync.errors import FetchError
from allowsync.utils.logger import get_logger

logger = get_logger(__name__)

# Upper bound on response text copied into a FetchError message.
_MAX_ERROR_BODY_CHARS = 512

_CIDR_LIST = TypeAdapter(list[Annotated[StrictStr, AfterValidator(parse_cidr)]])


# ─── httpx.AsyncClient factory ────────────────────────────────────────────────


def create_http_client(timeout: float = DEFAULT_FETCH_TIMEOUT) -> httpx.AsyncClient:
    """Create the httpx.AsyncClient used for meta API requests.

    Created once per MetaFetcher and closed by MetaFetcher.aclose().

    Args:
        timeout: Total request timeout in seconds.
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        follow_redirects=True,
    )


# ─── Response parsing ─────────────────────────────────────────────────────────


def parse_meta_document(document: Any, field: str = DEFAULT_META_FIELD) -> frozenset[CIDR]:
    """Extract the CIDR set from a decoded meta document.

    Raises:
        FetchError: document is not an object, ``field`` is missing, or it is
            not an array of valid CIDR strings.
    """
    if not isinstance(document, dict):
        raise FetchError(
            "Failed to deserialize GitHub meta information",
            f"expected a JSON object, got {type(document).__name__}",
        )
    if field not in document:
        raise FetchError(
            "Failed to deserialize GitHub meta information",
            f"missing field '{field}'",
        )
    try:
        cidrs = _CIDR_LIST.validate_python(document[field])
    except ValidationError as exc:
        raise FetchError(
            "Failed to deserialize GitHub meta information",
            f"field '{field}': {exc.errors()[0]['msg']}",
        ) from exc
    return frozenset(cidrs)


# ─── MetaFetcher ──────────────────────────────────────────────────────────────


class MetaFetcher:
    """Callable fetch collaborator: ``await fetcher()`` -> frozenset of CIDRs.

    Usage:
        async with MetaFetcher(token=config.token) as fetcher:
            candidate = await fetcher()

    Args:
        token:  GitHub API token.
        url:    Meta endpoint (GitHub Enterprise Server exposes its own).
        field:  Name of the CIDR array to read from the document.
        timeout: Total request timeout in seconds (ignored if ``client`` given).
        client: Pre-built httpx.AsyncClient (tests inject MockTransport here).
    """

    def __init__(
        self,
        token: str,
        url: str = GITHUB_API_META_URL,
        field: str = DEFAULT_META_FIELD,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.field = field
        self._headers = {
            "Accept": ACCEPT_HEADER_VALUE,
            "Authorization": f"token {token}",
            "User-Agent": USER_AGENT,
        }
        self._client = client if client is not None else create_http_client(timeout)

    async def __call__(self) -> frozenset[CIDR]:
        """Fetch the meta document and return its CIDR set.

        Raises:
            FetchError: transport failure, non-2xx status or malformed body.
        """
        try:
            response = await self._client.get(self.url, headers=self._headers)
        except httpx.HTTPError as exc:
            raise FetchError(
                "Failed to fetch GitHub meta information",
                f"{type(exc).__name__}: {exc}",
            ) from exc

        if not response.is_success:
            raise FetchError(
                f"GitHub API responded with code {response.status_code}",
                f"text: {response.text[:_MAX_ERROR_BODY_CHARS]}",
                status_code=response.status_code,
            )

        try:
            document = response.json()
        except ValueError as exc:
            raise FetchError(
                "Failed to deserialize GitHub meta information", str(exc)
            ) from exc

        cidrs = parse_meta_document(document, self.field)
        logger.debug("Meta information fetched", url=self.url, field=self.field, count=len(cidrs))
        return cidrs

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "MetaFetcher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
