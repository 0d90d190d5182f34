"""
Remote module: the data service interface and an in-memory implementation.
"""

from snapsync.remote.protocol import (
    RemoteDataService,
    ChangeStream,
    Change,
    Predicate,
    Mutation,
    MutationOp,
)
from snapsync.remote.memory import InMemoryDataService, MemoryChangeStream, ServiceError

__all__ = [
    "RemoteDataService",
    "ChangeStream",
    "Change",
    "Predicate",
    "Mutation",
    "MutationOp",
    "InMemoryDataService",
    "MemoryChangeStream",
    "ServiceError",
]
