"""allowsync fetch collaborator: candidate allow-list from the GitHub meta API."""
from allowsync.fetch.meta import MetaFetcher, create_http_client, parse_meta_document

__all__ = ["MetaFetcher", "create_http_client", "parse_meta_document"]
