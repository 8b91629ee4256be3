"""
Storage Gateway Module
"""
from .gateway import StorageGateway
from .memory import InMemoryStorageGateway
from .sql import SqlStorageGateway

__all__ = [
    "StorageGateway",
    "InMemoryStorageGateway",
    "SqlStorageGateway",
]
