"""allowsync: keeps an nginx allow-list in sync with an upstream CIDR source."""

__version__ = "0.1.0"
