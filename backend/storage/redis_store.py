"""
Redis Payment State Store
=========================
Production IPaymentStateStore. Every multi-key or check-then-write step runs
as a Lua script so concurrent handler instances see per-key atomic updates.

Key layout (same CheckoutRequestID, separate namespaces):
    pending_payment:{id}        PendingPayment JSON
    pending_payment:index       ZSET of ids scored by created_at
    payment_status:{id}         PublicStatus HASH
    payment_lock:{id}           processing lock holder

pip install redis
"""

import json
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import redis.asyncio as redis
import structlog

from schemas.payments import PaymentStatus, PendingPayment, PublicStatus, utcnow
from storage.base import IPaymentStateStore

logger = structlog.get_logger().bind(component="redis_state_store")

PENDING_PREFIX = "pending_payment:"
PENDING_INDEX = "pending_payment:index"
STATUS_PREFIX = "payment_status:"
LOCK_PREFIX = "payment_lock:"


# =============================================================================
# LUA SCRIPTS
# =============================================================================

# KEYS: pending, status, index. ARGV: pending JSON, score, id, then status field/value pairs
CREATE_PENDING_LUA = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return 0
end
redis.call('SET', KEYS[1], ARGV[1])
redis.call('ZADD', KEYS[3], ARGV[2], ARGV[3])
redis.call('DEL', KEYS[2])
for i = 4, #ARGV, 2 do
    redis.call('HSET', KEYS[2], ARGV[i], ARGV[i + 1])
end
return 1
"""

RELEASE_LOCK_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

# ARGV: id, status, reason ('' clears), user_id ('' keeps), updated_at
TRANSITION_STATUS_LUA = """
local current = redis.call('HGET', KEYS[1], 'status')
if current and current ~= 'pending' then
    return redis.call('HGETALL', KEYS[1])
end
redis.call('HSET', KEYS[1], 'checkout_request_id', ARGV[1], 'status', ARGV[2], 'updated_at', ARGV[5])
if ARGV[3] == '' then
    redis.call('HDEL', KEYS[1], 'reason')
else
    redis.call('HSET', KEYS[1], 'reason', ARGV[3])
end
if ARGV[4] ~= '' then
    redis.call('HSET', KEYS[1], 'user_id', ARGV[4])
end
return redis.call('HGETALL', KEYS[1])
"""


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class RedisConfig:
    url: str = "redis://localhost:6379/0"
    lock_ttl_seconds: int = 30

    @classmethod
    def from_env(cls) -> "RedisConfig":
        return cls(
            url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            lock_ttl_seconds=int(os.getenv("PAYMENT_LOCK_TTL", "30")),
        )


def _status_fields(status: PublicStatus) -> Dict[str, str]:
    data = status.model_dump(mode="json", exclude_none=True)
    return {key: str(value) for key, value in data.items()}


def _pairs_to_dict(flat: Sequence[str]) -> Dict[str, str]:
    return dict(zip(flat[::2], flat[1::2]))


# =============================================================================
# STORE
# =============================================================================

class RedisPaymentStateStore(IPaymentStateStore):
    """
    Redis-backed pending payments and public statuses.

    The client must be created with decode_responses=True.
    """

    def __init__(self, client: "redis.Redis"):
        self._redis = client
        self._create_pending = client.register_script(CREATE_PENDING_LUA)
        self._release_lock = client.register_script(RELEASE_LOCK_LUA)
        self._transition_status = client.register_script(TRANSITION_STATUS_LUA)

    @classmethod
    async def connect(cls, config: RedisConfig) -> "RedisPaymentStateStore":
        client = redis.from_url(config.url, decode_responses=True)
        await client.ping()
        logger.info("redis_connected", url=config.url.split("@")[-1])
        return cls(client)

    async def close(self):
        await self._redis.aclose()

    # -------------------------------------------------------------------------
    # Pending payments
    # -------------------------------------------------------------------------

    async def create_pending(self, pending: PendingPayment, status: PublicStatus) -> bool:
        args = [
            json.dumps(pending.to_storage()),
            pending.created_at.timestamp(),
            pending.checkout_request_id,
        ]
        for field, value in _status_fields(status).items():
            args.extend([field, value])

        created = await self._create_pending(
            keys=[
                PENDING_PREFIX + pending.checkout_request_id,
                STATUS_PREFIX + status.checkout_request_id,
                PENDING_INDEX,
            ],
            args=args,
        )
        return bool(created)

    async def get_pending(self, checkout_request_id: str) -> Optional[PendingPayment]:
        data = await self._redis.get(PENDING_PREFIX + checkout_request_id)
        if not data:
            return None
        return PendingPayment.model_validate(json.loads(data))

    async def delete_pending(self, checkout_request_id: str) -> bool:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(PENDING_PREFIX + checkout_request_id)
            pipe.zrem(PENDING_INDEX, checkout_request_id)
            deleted, _ = await pipe.execute()
        return bool(deleted)

    async def list_pending(self, created_before: datetime) -> List[PendingPayment]:
        ids = await self._redis.zrangebyscore(PENDING_INDEX, "-inf", created_before.timestamp())
        if not ids:
            return []

        values = await self._redis.mget([PENDING_PREFIX + cid for cid in ids])
        results = []
        for cid, data in zip(ids, values):
            if data is None:
                # Deleted between the two reads
                await self._redis.zrem(PENDING_INDEX, cid)
                continue
            results.append(PendingPayment.model_validate(json.loads(data)))
        return results

    # -------------------------------------------------------------------------
    # Processing lock
    # -------------------------------------------------------------------------

    async def acquire_lock(self, checkout_request_id: str, holder_id: str, ttl_seconds: int) -> bool:
        acquired = await self._redis.set(LOCK_PREFIX + checkout_request_id, holder_id, nx=True, ex=ttl_seconds)
        return bool(acquired)

    async def release_lock(self, checkout_request_id: str, holder_id: str) -> bool:
        released = await self._release_lock(keys=[LOCK_PREFIX + checkout_request_id], args=[holder_id])
        return bool(released)

    # -------------------------------------------------------------------------
    # Public status
    # -------------------------------------------------------------------------

    async def get_status(self, checkout_request_id: str) -> Optional[PublicStatus]:
        data = await self._redis.hgetall(STATUS_PREFIX + checkout_request_id)
        if not data:
            return None
        return PublicStatus.model_validate(data)

    async def transition_status(
        self,
        checkout_request_id: str,
        status: PaymentStatus,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> PublicStatus:
        stored = await self._transition_status(
            keys=[STATUS_PREFIX + checkout_request_id],
            args=[
                checkout_request_id,
                status.value,
                reason or "",
                user_id or "",
                utcnow().isoformat(),
            ],
        )
        return PublicStatus.model_validate(_pairs_to_dict(stored))
