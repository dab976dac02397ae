"""Storage entrypoint.

`infra.stores` is the public import entrypoint; each table family lives in its own module.
"""

from .base import BaseStore, create_pool
from .session_store import SessionStore
from .hop_result_store import HopResultStore
from .diagnostic_store import DiagnosticStore

__all__ = [
    "BaseStore",
    "create_pool",
    "SessionStore",
    "HopResultStore",
    "DiagnosticStore",
]
