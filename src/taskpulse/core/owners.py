# src/taskpulse/core/owners.py

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import ConfigurationError
from .ports import ContextProvider

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Owner:
    """A logical consumer of tasks with its own queue, agent and chat channel."""

    id: str
    name: str
    kind: str = "generic"
    agent_id: str | None = None
    channel_id: str | None = None
    description: str = ""
    auto_dispatch: bool = False
    model_hint: str | None = None
    schedule_context: bool = False

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Owner:
        owner_id = str(raw.get("id") or "").strip()
        if not owner_id:
            raise ConfigurationError(f"Owner without id: {raw!r}")
        return cls(
            id=owner_id,
            name=str(raw.get("name") or owner_id),
            kind=str(raw.get("kind") or "generic"),
            agent_id=raw.get("agent_id"),
            channel_id=raw.get("channel_id"),
            description=str(raw.get("description") or ""),
            auto_dispatch=bool(raw.get("auto_dispatch", False)),
            model_hint=raw.get("model_hint"),
            schedule_context=bool(raw.get("schedule_context", False)),
        )


class OwnerRegistry:
    """
    Explicit owner registry handed to the heartbeat driver at startup.

    Channel -> owner routing for inbound chat messages is derived from here too,
    so there is no separate process-wide map.
    """

    def __init__(self, owners: list[Owner] | None = None) -> None:
        self._owners: dict[str, Owner] = {}
        self._context: dict[str, ContextProvider] = {}
        for owner in owners or []:
            self.register(owner)

    def register(self, owner: Owner, context_provider: ContextProvider | None = None) -> None:
        if owner.id in self._owners:
            logger.warning("Owner %s re-registered; replacing previous entry", owner.id)
        self._owners[owner.id] = owner
        if context_provider is not None:
            self._context[owner.id] = context_provider
        logger.info("Registered owner: %s -> %s (kind=%s)", owner.name, owner.id, owner.kind)

    def set_context_provider(self, owner_id: str, provider: ContextProvider) -> None:
        self.require(owner_id)
        self._context[owner_id] = provider

    def has_context_provider(self, owner_id: str) -> bool:
        return owner_id in self._context

    def get(self, owner_id: str) -> Owner | None:
        return self._owners.get(owner_id)

    def require(self, owner_id: str) -> Owner:
        owner = self._owners.get(owner_id)
        if owner is None:
            raise ConfigurationError(f"Unknown owner: {owner_id}", context={"owner_id": owner_id})
        return owner

    def all(self) -> list[Owner]:
        return list(self._owners.values())

    def __contains__(self, owner_id: object) -> bool:
        return owner_id in self._owners

    def __len__(self) -> int:
        return len(self._owners)

    def by_channel(self, channel_id: str) -> Owner | None:
        for owner in self._owners.values():
            if owner.channel_id and owner.channel_id == channel_id:
                return owner
        return None

    def set_auto_dispatch(self, owner_id: str, enabled: bool) -> Owner:
        owner = self.require(owner_id)
        owner.auto_dispatch = bool(enabled)
        logger.info("Owner auto dispatch toggled owner=%s enabled=%s", owner_id, enabled)
        return owner

    async def context_for(self, owner: Owner, task: Any) -> str:
        provider = self._context.get(owner.id)
        if provider is None:
            return ""
        try:
            return (await provider(owner, task)) or ""
        except Exception:
            logger.exception("Context provider failed owner=%s task=%s", owner.id, getattr(task, "id", None))
            return ""


def load_owners(path: str | Path) -> list[Owner]:
    """
    Read owners from a JSON file: either a list of objects or {"owners": [...]}.

    A missing file yields no owners.
    """
    p = Path(path)
    if not p.exists():
        logger.warning("Owners file not found: %s", p)
        return []
    try:
        data = json.loads(p.read_text("utf-8"))
    except ValueError as e:
        raise ConfigurationError(f"Owners file is not valid JSON: {p}") from e

    items = data.get("owners") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise ConfigurationError(f"Owners file must contain a list of owners: {p}")

    owners = [Owner.from_dict(item) for item in items if isinstance(item, dict)]
    logger.info("Loaded %d owner(s) from %s", len(owners), p)
    return owners
