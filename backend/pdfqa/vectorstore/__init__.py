from pdfqa.vectorstore.base import SearchHit, VectorIndex
from pdfqa.vectorstore.factory import get_vector_index

__all__ = ["VectorIndex", "SearchHit", "get_vector_index"]
