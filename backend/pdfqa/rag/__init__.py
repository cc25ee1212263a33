"""
RAG package — retrieval-augmented answering over one indexed document.
"""

from pdfqa.rag.engine import QueryAnswer, QueryEngine, RetrievedChunk

__all__ = [
    "QueryAnswer",
    "QueryEngine",
    "RetrievedChunk",
]
