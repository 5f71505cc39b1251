"""Shared services for RagKeeper."""
