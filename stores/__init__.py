"""
Storage collaborators for the chat gateway.
"""
from .base import (
    AccountStore,
    BundleStore,
    ConversationStore,
    DuplicateParentError,
    QuickChatStore,
    ServiceRequestStore,
    StoreBackend,
    StoreError,
)
from .memory_store import create_memory_backend
from .mongo_store import create_mongo_backend


async def create_backend(storage_config) -> StoreBackend:
    """Build the backend selected by `storage.backend`."""
    if storage_config.backend == "mongo":
        return await create_mongo_backend(storage_config)
    return create_memory_backend()


__all__ = [
    'AccountStore',
    'BundleStore',
    'ConversationStore',
    'DuplicateParentError',
    'QuickChatStore',
    'ServiceRequestStore',
    'StoreBackend',
    'StoreError',
    'create_backend',
    'create_memory_backend',
    'create_mongo_backend',
]
