"""
Accruals Hub - Tenant Leases

Mutual exclusion for multi-row mutation sequences. A lease is held on a named
resource (one per tenant, plus one for the tenant registry), acquired with a
bounded wait and released in a finally block. Failing to acquire within the
wait raises a retryable SYSTEM_ERROR; callers never fall back to unlocked
mutation.

Implementations:
- InProcessLeaseManager: asyncio locks, for a single worker process
- MongoLeaseManager: lease documents with an expiry, shared by all workers
"""

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from services.errors import ErrorCode, HubError
from services.hub_config import LOCK_TIMEOUT_SECONDS, LEASE_TTL_SECONDS

logger = logging.getLogger(__name__)


def tenant_resource(tenant_name: str) -> str:
    return f"tenant:{tenant_name.strip().lower()}"


REGISTRY_RESOURCE = "registry"


@dataclass
class TenantLease:
    """A held lease."""
    resource: str
    holder: str
    acquired_at: float
    expires_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "holder": self.holder,
            "acquired_at": self.acquired_at,
            "expires_at": self.expires_at,
        }


def _timeout_error(resource: str, timeout: float) -> HubError:
    return HubError(
        ErrorCode.SYSTEM_ERROR,
        f"Could not acquire lock for {resource} within {timeout:g}s. Another operation is in progress.",
        {"resource": resource, "timeout_seconds": timeout, "retryable": True}
    )


class LeaseManager(ABC):
    """Interface for lease providers."""

    @abstractmethod
    async def acquire(self, resource: str, timeout: float, ttl: float) -> TenantLease:
        pass

    @abstractmethod
    async def release(self, lease: TenantLease) -> None:
        pass

    @asynccontextmanager
    async def lease(self, resource: str, timeout: Optional[float] = None, ttl: Optional[float] = None):
        """Hold `resource` for the body of the with-block."""
        timeout = LOCK_TIMEOUT_SECONDS if timeout is None else timeout
        ttl = LEASE_TTL_SECONDS if ttl is None else ttl
        held = await self.acquire(resource, timeout, ttl)
        logger.debug("Lease acquired: %s by %s", resource, held.holder)
        try:
            yield held
        finally:
            await self.release(held)
            logger.debug("Lease released: %s", resource)


class InProcessLeaseManager(LeaseManager):
    """Leases backed by one asyncio.Lock per resource."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, resource: str) -> asyncio.Lock:
        if resource not in self._locks:
            self._locks[resource] = asyncio.Lock()
        return self._locks[resource]

    def is_held(self, resource: str) -> bool:
        return resource in self._locks and self._locks[resource].locked()

    async def acquire(self, resource: str, timeout: float, ttl: float) -> TenantLease:
        lock = self._lock(resource)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Lock timeout on %s after %.1fs", resource, timeout)
            raise _timeout_error(resource, timeout)

        now = time.time()
        return TenantLease(resource=resource, holder=uuid.uuid4().hex, acquired_at=now, expires_at=now + ttl)

    async def release(self, lease: TenantLease) -> None:
        lock = self._locks.get(lease.resource)
        if lock is not None and lock.locked():
            lock.release()


class MongoLeaseManager(LeaseManager):
    """
    Leases stored in the `tenant_leases` collection:
        {_id: resource, holder, acquired_at, expires_at}

    An expired lease is taken over by the next acquirer, so a crashed worker
    blocks a tenant for at most the lease TTL.
    """

    def __init__(self, db, poll_interval: float = 0.25):
        self.collection = db.tenant_leases
        self.poll_interval = poll_interval

    async def acquire(self, resource: str, timeout: float, ttl: float) -> TenantLease:
        holder = uuid.uuid4().hex
        deadline = time.monotonic() + timeout

        while True:
            now = datetime.now(timezone.utc)
            try:
                doc = await self.collection.find_one_and_update(
                    {"_id": resource, "$or": [{"holder": None}, {"expires_at": {"$lt": now}}]},
                    {"$set": {"holder": holder, "acquired_at": now, "expires_at": now + timedelta(seconds=ttl)}},
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
                if doc and doc.get("holder") == holder:
                    return TenantLease(
                        resource=resource,
                        holder=holder,
                        acquired_at=now.timestamp(),
                        expires_at=now.timestamp() + ttl,
                    )
            except DuplicateKeyError:
                # Held by someone else: the upsert collided with the live lease document
                pass

            if time.monotonic() >= deadline:
                logger.warning("Lock timeout on %s after %.1fs", resource, timeout)
                raise _timeout_error(resource, timeout)
            await asyncio.sleep(self.poll_interval)

    async def release(self, lease: TenantLease) -> None:
        await self.collection.update_one(
            {"_id": lease.resource, "holder": lease.holder},
            {"$set": {"holder": None, "expires_at": datetime.now(timezone.utc)}}
        )
