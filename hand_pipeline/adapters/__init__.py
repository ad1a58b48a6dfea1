"""
State store adapters.

This module provides the abstract state store interface and concrete
implementations for the supported backends (Postgres, in-memory).
"""

from .base import StateStore
from .memory_adapter import MemoryStateStore
from .postgres_adapter import PostgresStateStore

__all__ = [
    'StateStore',
    'MemoryStateStore',
    'PostgresStateStore'
]
