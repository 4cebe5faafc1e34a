"""
Configuration and user-context providers injected into the orchestrator.

The orchestrator never looks configuration or user state up from ambient globals.
Instead it asks a ConfigProvider for scoring/gameplay snapshots and a
ContextProvider for the acting user's context.

Failure semantics differ on purpose:
- Config unavailable (None or an exception) -> documented defaults, logged
- User context unavailable -> the orchestrator aborts the activity for retry
"""

import asyncio
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from .config import Config
from .schemas import GameplayConfig, UserContext, XPConfig


def merge_over_defaults(model: type, data: Optional[Dict[str, Any]]):
    """Overlay a stored document on the model defaults.

    Keys may use either the stored camelCase aliases or snake_case field names;
    unknown keys are ignored.
    """
    defaults = model().model_dump(by_alias=True)
    if not data:
        return model.model_validate(defaults)

    aliases = {
        name: (field.alias or name) for name, field in model.model_fields.items()
    }
    merged = dict(defaults)
    for key, value in data.items():
        merged[aliases.get(key, key)] = value
    return model.model_validate(merged)


class ConfigProvider(ABC):
    """Source of XPConfig and GameplayConfig snapshots.

    Implementations return None when no configuration is stored; the orchestrator
    then falls back to the model defaults.
    """

    @abstractmethod
    async def get_xp_config(self) -> Optional[XPConfig]:
        pass

    @abstractmethod
    async def get_gameplay_config(self) -> Optional[GameplayConfig]:
        pass


class StaticConfigProvider(ConfigProvider):
    """Serves fixed snapshots.

    An omitted gameplay snapshot uses Config.TERRITORY_EXPIRATION_DAYS, read when
    the provider is built.
    """

    def __init__(
        self,
        xp_config: Optional[XPConfig] = None,
        gameplay_config: Optional[GameplayConfig] = None,
    ):
        self.xp_config = xp_config or XPConfig()
        self.gameplay_config = gameplay_config or GameplayConfig(
            territory_expiration_days=Config.TERRITORY_EXPIRATION_DAYS
        )

    async def get_xp_config(self) -> Optional[XPConfig]:
        return self.xp_config

    async def get_gameplay_config(self) -> Optional[GameplayConfig]:
        return self.gameplay_config


class JsonConfigProvider(ConfigProvider):
    """Reads configuration documents from a JSON file.

    File structure:
    ```json
    {
      "gamification": {"xpPerNewCell": 10, "dailyBaseXPCap": 250},
      "gameplay": {"territoryExpirationDays": 5}
    }
    ```

    Each section is merged over the defaults, so partial documents are fine. A
    missing file or section yields None (the caller falls back to defaults). A
    malformed file raises; the orchestrator logs that and also falls back.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)

    async def _load_section(self, section: str) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        text = await asyncio.to_thread(self.path.read_text, "utf-8")
        payload = json.loads(text)
        value = payload.get(section)
        if value is None:
            return None
        if not isinstance(value, dict):
            raise ValueError(f"Config section '{section}' in {self.path} must be an object")
        return value

    async def get_xp_config(self) -> Optional[XPConfig]:
        data = await self._load_section("gamification")
        if data is None:
            return None
        return merge_over_defaults(XPConfig, data)

    async def get_gameplay_config(self) -> Optional[GameplayConfig]:
        data = await self._load_section("gameplay")
        if data is None:
            return None
        return merge_over_defaults(GameplayConfig, data)


class ContextProvider(ABC):
    """Source of per-user scoring context."""

    @abstractmethod
    async def get_user_context(self, user_id: str) -> Optional[UserContext]:
        """Return the user's context, or None when the user is unknown."""
        pass


class InMemoryContextProvider(ContextProvider):
    """Dict-backed context provider (testing, prototyping, batch replays)."""

    def __init__(self, contexts: Optional[Dict[str, UserContext]] = None):
        self.contexts: Dict[str, UserContext] = dict(contexts or {})

    def set_context(self, context: UserContext) -> None:
        self.contexts[context.user_id] = context

    async def get_user_context(self, user_id: str) -> Optional[UserContext]:
        context = self.contexts.get(user_id)
        return context.model_copy(deep=True) if context is not None else None
