"""Persistence and shared primitives: models, store, scopes and run guards."""

from .scope import Scope, ScopeKind
from .store import DocumentStore, IndexRow
from .db import create_db_engine, create_session_factory

__all__ = [
    'Scope',
    'ScopeKind',
    'DocumentStore',
    'IndexRow',
    'create_db_engine',
    'create_session_factory',
]
