"""Storage adapters for the attribution core (SQLAlchemy, Redis)."""

from .redis_cache import RedisSharedCache
from .sql_store import SqlEventStore, SqlWeightsStore

__all__ = ["RedisSharedCache", "SqlEventStore", "SqlWeightsStore"]
