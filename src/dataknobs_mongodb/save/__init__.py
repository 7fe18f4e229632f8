"""Bulk inserts into MongoDB."""

from .client import MongoDbSaveQueryClient
from .step import MongoDbSaveStep, build_save_client

__all__ = [
    "MongoDbSaveQueryClient",
    "MongoDbSaveStep",
    "build_save_client",
]
