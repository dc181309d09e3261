"""
API Module for the RAG Support Engine.

FastAPI application with routes for:
- Dataset management and document ingestion
- Consumer links
- Similarity search and context retrieval
"""

from .main import create_app, app

__all__ = ["create_app", "app"]
