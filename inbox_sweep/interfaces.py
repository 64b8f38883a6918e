from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .models import WorkItem


class WorkSource(ABC):
    @abstractmethod
    def list_candidates(self, query: str, limit: Optional[int] = None) -> List[WorkItem]:
        """Items not yet terminal-marked, in a stable order."""
        raise NotImplementedError


class PropertyStore(ABC):
    """Per-user durable key -> string store. No transactions."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_prefix(self, prefix: str) -> Dict[str, str]:
        raise NotImplementedError


class VolatileCache(ABC):
    """Best-effort key -> string cache; entries may vanish early."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def remove(self, key: str) -> None:
        raise NotImplementedError


class SchedulingFacility(ABC):
    @abstractmethod
    def arm(self, entry_point: str, delay_seconds: float) -> str:
        raise NotImplementedError

    @abstractmethod
    def cancel_all(self, entry_point: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def pending(self, entry_point: str) -> List[Dict[str, Any]]:
        raise NotImplementedError


class ClassificationService(ABC):
    def resolve_api_key(self) -> str:
        return ""

    @abstractmethod
    def generate(
        self,
        prompt: str,
        response_schema: Optional[Dict[str, Any]] = None,
        api_key: Optional[str] = None,
    ) -> str:
        """Return raw model text that is expected to be JSON."""
        raise NotImplementedError


class LabelApplier(ABC):
    @abstractmethod
    def apply_terminal_marker(self, item_id: str, ok: bool) -> None:
        raise NotImplementedError

    @abstractmethod
    def apply_outcome_label(self, item_id: str, label: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def create_draft_or_reply(self, item_id: str, text: str, send: bool = False) -> Optional[str]:
        raise NotImplementedError
