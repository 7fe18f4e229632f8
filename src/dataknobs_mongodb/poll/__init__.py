"""Polling of a MongoDB collection."""

from .reader import ClosableQueue, MongoDbIterativeReader
from .statement import MongoDbPollStatement, PollStatement
from .step import IterativeDatasourceStep, build_poll_statement, build_poll_step

__all__ = [
    "ClosableQueue",
    "IterativeDatasourceStep",
    "MongoDbIterativeReader",
    "MongoDbPollStatement",
    "PollStatement",
    "build_poll_statement",
    "build_poll_step",
]
