# storage/__init__.py
# ============================================================================
# TOWN TREASURE GROCERIES — STORAGE MODULE
# ============================================================================
# Payment state (Redis / in-memory) and order store interfaces
# ============================================================================

from storage.base import IOrderStore, IPaymentStateStore
from storage.memory import InMemoryOrderStore, InMemoryPaymentStateStore
from storage.redis_store import RedisConfig, RedisPaymentStateStore

__all__ = [
    "IOrderStore",
    "IPaymentStateStore",
    "InMemoryOrderStore",
    "InMemoryPaymentStateStore",
    "RedisConfig",
    "RedisPaymentStateStore",
]
