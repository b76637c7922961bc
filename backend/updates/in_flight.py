"""
In-Flight Update Registry

Tracks which containers and stacks are currently being updated by the
per-resource auto-update path so the same resource is never updated twice
concurrently.

Architecture:
1. The auto-updater calls try_acquire() before touching a resource
2. A False return means another task already owns it (skip this cycle)
3. release() runs in a finally block once the update is done

The interface exists so a shared store (database row, Redis key, ...) can
replace the in-process dict when several instances run side by side.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class InFlightUpdate:
    """One resource currently being updated."""
    resource_id: str
    resource_type: str
    resource_name: str = ""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            'resource_id': self.resource_id,
            'resource_type': self.resource_type,
            'resource_name': self.resource_name,
            'started_at': self.started_at.isoformat(),
        }


class InFlightRegistry(ABC):
    """Set of resources with an update in progress, keyed by resource ID."""

    @abstractmethod
    async def try_acquire(self, resource_id: str, resource_type: str, resource_name: str = "") -> bool:
        """Register resource_id. Returns False if it is already in flight."""

    @abstractmethod
    async def release(self, resource_id: str) -> None:
        """Remove resource_id (no-op if absent)."""

    @abstractmethod
    async def is_in_flight(self, resource_id: str) -> bool:
        ...

    @abstractmethod
    async def snapshot(self) -> List[InFlightUpdate]:
        """Copy of the current entries."""


class InProcessInFlightRegistry(InFlightRegistry):
    """Dict + asyncio.Lock implementation for a single process."""

    def __init__(self):
        self._entries: Dict[str, InFlightUpdate] = {}
        self._lock = asyncio.Lock()

    async def try_acquire(self, resource_id: str, resource_type: str, resource_name: str = "") -> bool:
        async with self._lock:
            if resource_id in self._entries:
                logger.debug(f"{resource_type} {resource_name or resource_id} already being updated")
                return False
            self._entries[resource_id] = InFlightUpdate(
                resource_id=resource_id,
                resource_type=resource_type,
                resource_name=resource_name,
            )
            logger.debug(f"Registered in-flight update: {resource_type} {resource_name or resource_id}")
            return True

    async def release(self, resource_id: str) -> None:
        async with self._lock:
            if self._entries.pop(resource_id, None) is not None:
                logger.debug(f"Released in-flight update: {resource_id}")

    async def is_in_flight(self, resource_id: str) -> bool:
        async with self._lock:
            return resource_id in self._entries

    async def snapshot(self) -> List[InFlightUpdate]:
        async with self._lock:
            return list(self._entries.values())


# Global singleton instance
_registry: Optional[InFlightRegistry] = None


def get_in_flight_registry() -> InFlightRegistry:
    """Get the global in-flight registry instance."""
    global _registry
    if _registry is None:
        _registry = InProcessInFlightRegistry()
    return _registry


def reset_in_flight_registry() -> None:
    """Drop the global instance (tests)."""
    global _registry
    _registry = None
