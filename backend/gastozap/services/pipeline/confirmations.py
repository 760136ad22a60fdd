from __future__ import annotations

import abc
import logging
import uuid
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Optional

from gastozap.services.pipeline.contracts import PendingConfirmation, TransactionRecord

logger = logging.getLogger(__name__)


class ConfirmationStore(abc.ABC):
    @abc.abstractmethod
    async def create(
        self,
        tenant_id: str,
        account_id: str,
        record: TransactionRecord,
        *,
        ttl_seconds: int,
    ) -> PendingConfirmation:
        ...

    @abc.abstractmethod
    async def get(self, confirmation_id: str) -> Optional[PendingConfirmation]:
        ...

    @abc.abstractmethod
    async def remove(self, confirmation_id: str) -> bool:
        ...


class MemoryConfirmationStore(ConfirmationStore):
    """Process-local confirmations; expired ones read as missing."""

    def __init__(self) -> None:
        self._items: dict[str, PendingConfirmation] = {}
        self._lock = Lock()

    async def create(
        self,
        tenant_id: str,
        account_id: str,
        record: TransactionRecord,
        *,
        ttl_seconds: int,
    ) -> PendingConfirmation:
        now = datetime.now(timezone.utc)
        confirmation = PendingConfirmation(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            account_id=account_id,
            record=record,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        with self._lock:
            self._purge_expired(now)
            self._items[confirmation.id] = confirmation
        logger.debug("Pending confirmation %s created for tenant %s", confirmation.id, tenant_id)
        return confirmation

    async def get(self, confirmation_id: str) -> Optional[PendingConfirmation]:
        now = datetime.now(timezone.utc)
        with self._lock:
            item = self._items.get(confirmation_id)
            if item is not None and item.expired(now):
                del self._items[confirmation_id]
                return None
            return item

    async def remove(self, confirmation_id: str) -> bool:
        with self._lock:
            return self._items.pop(confirmation_id, None) is not None

    async def pending(self, tenant_id: str) -> list[PendingConfirmation]:
        now = datetime.now(timezone.utc)
        with self._lock:
            self._purge_expired(now)
            return [c for c in self._items.values() if c.tenant_id == tenant_id]

    async def purge_expired(self) -> int:
        with self._lock:
            return self._purge_expired(datetime.now(timezone.utc))

    def _purge_expired(self, now: datetime) -> int:
        expired = [cid for cid, c in self._items.items() if c.expired(now)]
        for cid in expired:
            del self._items[cid]
        if expired:
            logger.debug("Dropped %d expired confirmations", len(expired))
        return len(expired)
