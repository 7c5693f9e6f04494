"""Key-value store access: connection lifecycle and typed command wrapper."""

from erp_gateway.store.client import KeyValueStore
from erp_gateway.store.connection import LinearCappedBackoff, StoreConnection

__all__ = [
    "KeyValueStore",
    "LinearCappedBackoff",
    "StoreConnection",
]
