"""One-shot searches in MongoDB."""

from .client import MongoDbQueryClient, to_sort_clause
from .step import MongoDbSearchStep, SearchOutput

__all__ = [
    "MongoDbQueryClient",
    "MongoDbSearchStep",
    "SearchOutput",
    "to_sort_clause",
]
