"""
Lightweight event emission for the notification side-channel.

Events are appended under ``notifications/`` for the external delivery
service (push, SMS) to pick up; formatting and delivery happen there.
Emission never fails the operation that triggered it.
"""

from __future__ import annotations

import logging
from typing import Any

from src.domain.clock import now_ms
from src.domain.enums import NotificationKind
from src.infrastructure.errors import StoreError
from src.infrastructure.repositories import NOTIFICATIONS
from src.infrastructure.tree_store import TreeStore

logger = logging.getLogger(__name__)


class NotificationEmitter:
    def __init__(self, store: TreeStore):
        self.store = store

    async def emit(self, kind: NotificationKind, **payload: Any) -> bool:
        event = {"type": kind.value, "timestamp": now_ms(), **payload}
        try:
            await self.store.push_value(NOTIFICATIONS, event)
        except StoreError as exc:
            logger.warning("Dropped %s notification: %s", kind.value, exc)
            return False
        return True
