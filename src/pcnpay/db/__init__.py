"""Database pool and schema management."""

from pcnpay.db.pool import close_pool, get_pool

__all__ = ["close_pool", "get_pool"]
