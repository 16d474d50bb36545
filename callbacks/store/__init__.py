from .base import RequestNotFound, RequestStore, StoreError
from .memory import InMemoryRequestStore

__all__ = ["InMemoryRequestStore", "RequestNotFound", "RequestStore", "StoreError"]
