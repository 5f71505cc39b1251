"""Indexing package for RagKeeper.

Hashing, manifests, embeddings, retrieval and integrity checking.
"""

from .hashing import hash_bytes, hash_text, hash_file
from .manifest import ManifestStore, RefinementManifest, load_refinement_manifest
from .embeddings import EmbeddingBackend, EmbeddingGenerator, OpenAIEmbeddingBackend, build_embedding_backend
from .retrieval import RetrievalEngine, RetrievedChunk, format_chunks_for_prompt
from .integrity import IntegrityChecker, IntegrityReport, IntegrityWarning

__all__ = [
    'hash_bytes',
    'hash_text',
    'hash_file',
    'ManifestStore',
    'RefinementManifest',
    'load_refinement_manifest',
    'EmbeddingBackend',
    'EmbeddingGenerator',
    'OpenAIEmbeddingBackend',
    'build_embedding_backend',
    'RetrievalEngine',
    'RetrievedChunk',
    'format_chunks_for_prompt',
    'IntegrityChecker',
    'IntegrityReport',
    'IntegrityWarning',
]
