from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from chatrelay.config import Settings
from chatrelay.logging import get_logger
from chatrelay.service.engine import GenerationEngine
from chatrelay.service.errors import UpstreamError

logger = get_logger(__name__)


@dataclass(frozen=True)
class AssistantProfile:
    assistant_id: str
    name: str
    model: str


class AssistantHolder:
    """Process-scoped assistant profile.

    ``initialize`` runs once during startup. A failure is logged and the
    process keeps serving while every turn fails with "assistant unavailable"
    until restart.
    """

    def __init__(self) -> None:
        self._profile: Optional[AssistantProfile] = None
        self._initialized = False

    @property
    def ready(self) -> bool:
        return self._profile is not None

    @property
    def status(self) -> str:
        if self._profile:
            return "ready"
        return "unavailable" if self._initialized else "pending"

    @property
    def profile(self) -> AssistantProfile:
        if self._profile is None:
            raise UpstreamError("assistant unavailable")
        return self._profile

    async def initialize(self, engine: GenerationEngine, settings: Settings) -> Optional[AssistantProfile]:
        if self._initialized:
            return self._profile
        self._initialized = True
        try:
            assistant_id = await engine.create_assistant(
                settings.assistant_name, settings.assistant_instructions, settings.model
            )
        except Exception as exc:
            logger.error(
                "assistant_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        self._profile = AssistantProfile(
            assistant_id=assistant_id, name=settings.assistant_name, model=settings.model
        )
        logger.info("assistant_ready", assistant_id=assistant_id, model=settings.model)
        return self._profile
