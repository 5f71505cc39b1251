"""Configuration module for the knowledge-base engine.

Provides settings models and the keyword vocabulary loader.
"""

from .settings import (
    Settings,
    DatabaseSettings,
    ChunkerSettings,
    EmbeddingSettings,
    EmbeddingProvider,
    SyncSettings,
    ProcessingSettings,
    RetrievalSettings,
    IntegritySettings,
    CrawlerSettings,
    LoggingSettings,
)
from .vocabulary import Vocabulary, DocTypePattern, load_vocabulary

__all__ = [
    'Settings',
    'DatabaseSettings',
    'ChunkerSettings',
    'EmbeddingSettings',
    'EmbeddingProvider',
    'SyncSettings',
    'ProcessingSettings',
    'RetrievalSettings',
    'IntegritySettings',
    'CrawlerSettings',
    'LoggingSettings',
    'Vocabulary',
    'DocTypePattern',
    'load_vocabulary',
]
