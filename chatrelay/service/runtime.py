from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from chatrelay.config import Settings, get_settings, reset_settings_cache
from chatrelay.logging import get_logger
from chatrelay.service.assistant import AssistantHolder
from chatrelay.service.auth import AuthService
from chatrelay.service.engine import GenerationEngine, OpenAIAssistantsEngine, StubEngine
from chatrelay.service.gate import ConnectionGate
from chatrelay.service.locks import KeyedLock
from chatrelay.service.relay import StreamRelay
from chatrelay.service.reporter import ErrorReporter
from chatrelay.service.threads import ThreadRegistry
from chatrelay.storage.memory import MemoryStore
from chatrelay.storage.postgres import PostgresStore
from chatrelay.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of ``url`` with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_engine(settings: Settings) -> GenerationEngine:
    if settings.openai_api_key:
        return OpenAIAssistantsEngine(
            settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout_seconds=settings.engine_timeout_seconds,
        )
    logger.warning("engine_stub_selected", reason="OPENAI_API_KEY not set")
    return StubEngine()


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, engine: Optional[GenerationEngine] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            cache = RedisCache(self.settings.redis_url)
            try:
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="conversation locks are process-local only",
                )

        self.reporter = ErrorReporter()
        self.auth = AuthService(self.store, self.settings)
        self.gate = ConnectionGate(self.auth)
        self.engine = engine or build_engine(self.settings)
        self.assistant = AssistantHolder()
        self.threads = ThreadRegistry(
            self.store, self.engine, KeyedLock("thread", cache=self.cache)
        )
        self.turn_locks = KeyedLock("turn", cache=self.cache)
        self.relay = StreamRelay(
            self.store,
            self.threads,
            self.engine,
            self.assistant,
            self.reporter,
            self.turn_locks,
            self.settings,
        )
        logger.info(
            "runtime_initialized",
            engine=type(self.engine).__name__,
            model=self.settings.model,
            turn_policy=self.settings.turn_policy.value,
            redis_enabled=self.cache is not None,
        )

    async def startup(self) -> None:
        await self.assistant.initialize(self.engine, self.settings)

    async def shutdown(self) -> None:
        await self.engine.close()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            await asyncio.to_thread(self.store.close)
        logger.info("runtime_shutdown")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, engine: Optional[GenerationEngine] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(engine=engine)
        return runtime
