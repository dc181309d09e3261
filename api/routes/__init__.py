"""
API Routes for the RAG Support Engine.
"""

from . import datasets, consumers, search, context

__all__ = ["datasets", "consumers", "search", "context"]
