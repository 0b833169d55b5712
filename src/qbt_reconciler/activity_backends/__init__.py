"""
Activity store backend implementations

Available backends:
- SQLite: File-based store (default)
- Redis: Shared store for several reconciler processes
"""

from qbt_reconciler.activity import ActivityStore
from qbt_reconciler.activity_backends.sqlite_store import SQLiteActivityStore
from qbt_reconciler.activity_backends.redis_store import RedisActivityStore

__all__ = ['SQLiteActivityStore', 'RedisActivityStore', 'create_activity_store']


def create_activity_store(backend: str = 'sqlite', **kwargs) -> ActivityStore:
    """
    Factory function to create activity store backends

    Args:
        backend: Backend type ('sqlite' or 'redis')
        **kwargs: Backend-specific configuration

    Returns:
        ActivityStore instance

    Raises:
        ValueError: If backend is unknown
    """
    if backend == 'sqlite':
        sqlite_path = kwargs.get('sqlite_path', '/config/qbt-reconciler.db')
        return SQLiteActivityStore(db_path=sqlite_path)

    elif backend == 'redis':
        redis_url = kwargs.get('redis_url', 'redis://localhost:6379/0')
        return RedisActivityStore(redis_url=redis_url)

    else:
        raise ValueError(f"Unknown activity backend: {backend}. Available: sqlite, redis")
