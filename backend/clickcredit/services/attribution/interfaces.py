"""
Collaborator interfaces consumed by the attribution core.

WHAT:
    EventStore (durable record of clicks, sales, attributions, posts),
    SharedCache (byte-oriented TTL cache used only by the click cache) and
    WeightsStore (persistence of the learned scoring model).

WHY:
    The core never talks to a database or Redis directly. Production
    implementations live in clickcredit/stores/; tests pass fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from .types import (
    Attribution,
    AttributionStatus,
    ClickEvent,
    ContentPost,
    SaleEvent,
    ScoringWeights,
)


class EventStore(ABC):
    """Durable storage for events and attributions. All methods are async."""

    @abstractmethod
    async def save_click(self, click: ClickEvent) -> str:
        """Persist a click; saving the same click id twice is an upsert."""

    @abstractmethod
    async def save_sale(self, sale: SaleEvent) -> str:
        ...

    @abstractmethod
    async def save_content_post(self, post: ContentPost) -> str:
        ...

    @abstractmethod
    async def save_attribution(self, attribution: Attribution) -> str:
        ...

    @abstractmethod
    async def update_attribution(self, attribution: Attribution) -> None:
        ...

    @abstractmethod
    async def get_attribution(self, attribution_id: str) -> Optional[Attribution]:
        ...

    @abstractmethod
    async def get_click(self, click_id: str) -> Optional[ClickEvent]:
        ...

    @abstractmethod
    async def find_clicks_by_user(
        self,
        user_id: str,
        since: datetime,
        until: Optional[datetime] = None,
        include_attributed: bool = False,
    ) -> List[ClickEvent]:
        """Clicks of one creator in [since, until], newest first."""

    @abstractmethod
    async def find_recent_posts(
        self,
        user_id: str,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> List[ContentPost]:
        ...

    @abstractmethod
    async def find_attributions(
        self,
        user_id: str,
        status: Optional[AttributionStatus] = None,
    ) -> List[Attribution]:
        ...

    @abstractmethod
    async def mark_click_attributed(self, click_id: str, sale_id: str) -> bool:
        """Claim a click for a sale. Returns False when already claimed."""

    @abstractmethod
    async def release_click(self, click_id: str) -> None:
        ...


class SharedCache(ABC):
    """Low-latency shared key/value tier (e.g. Redis)."""

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        ...

    @abstractmethod
    async def set_with_ttl(self, key: str, value: bytes, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...


class WeightsStore(ABC):
    """Persists ScoringWeights so restarts resume the latest learned state."""

    @abstractmethod
    async def load(self) -> Optional[ScoringWeights]:
        """Latest snapshot, or None when nothing was saved yet."""

    @abstractmethod
    async def save(self, weights: ScoringWeights) -> None:
        ...
