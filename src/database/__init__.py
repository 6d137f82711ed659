"""
Database Package

Pooled Postgres connectivity for the KRX valuation collector.
"""

from src.database.connection import (
    PostgresConnection,
    init_global_pool,
    get_global_pool,
    close_global_pool,
    check_database_health,
)

__all__ = [
    "PostgresConnection",
    "init_global_pool",
    "get_global_pool",
    "close_global_pool",
    "check_database_health",
]
