from __future__ import annotations

import asyncio
import contextlib
import re
import uuid
from typing import AsyncIterator, Dict, Iterator, List, Optional, Protocol

import httpx
import openai
from openai import AsyncOpenAI

from chatrelay.logging import get_logger
from chatrelay.service.errors import UpstreamError

logger = get_logger(__name__)

STUB_RESPONSE = "Hello from the stub assistant. Set OPENAI_API_KEY to talk to a real model."

# Run events that end a run without producing a reply
_RUN_FAILURE_EVENTS = {
    "thread.run.failed",
    "thread.run.cancelled",
    "thread.run.expired",
    "thread.run.incomplete",
}


class GenerationEngine(Protocol):
    """Remote text generation with server-side conversation threads."""

    async def create_assistant(self, name: str, instructions: str, model: str) -> str: ...

    async def create_thread(self) -> str: ...

    async def delete_thread(self, thread_ref: str) -> None: ...

    async def add_user_message(self, thread_ref: str, content: str) -> None: ...

    def stream_run(self, thread_ref: str, assistant_id: str) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


class OpenAIAssistantsEngine:
    """Generation engine backed by the OpenAI Assistants API.

    Every call is bounded by ``timeout_seconds``; the SDK's own retries are
    disabled so a failing upstream surfaces once as an ``UpstreamError``.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: Optional[str] = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 10.0)),
            max_retries=0,
        )

    @contextlib.contextmanager
    def _upstream(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (openai.APIError, httpx.HTTPError, asyncio.TimeoutError) as exc:
            logger.warning(
                "engine_call_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise UpstreamError(
                "generation engine unavailable", detail={"operation": operation}
            ) from exc

    async def create_assistant(self, name: str, instructions: str, model: str) -> str:
        with self._upstream("create_assistant"):
            assistant = await self.client.beta.assistants.create(
                name=name, instructions=instructions, model=model
            )
        return assistant.id

    async def create_thread(self) -> str:
        with self._upstream("create_thread"):
            thread = await self.client.beta.threads.create()
        return thread.id

    async def delete_thread(self, thread_ref: str) -> None:
        with self._upstream("delete_thread"):
            await self.client.beta.threads.delete(thread_ref)

    async def add_user_message(self, thread_ref: str, content: str) -> None:
        with self._upstream("add_user_message"):
            await self.client.beta.threads.messages.create(
                thread_id=thread_ref, role="user", content=content
            )

    async def stream_run(self, thread_ref: str, assistant_id: str) -> AsyncIterator[str]:
        """Yield text increments of a new run until the run finishes.

        Closing the iterator early cancels the upstream run.
        """
        run_id: Optional[str] = None
        finished = False
        try:
            with self._upstream("stream_run"):
                async with self.client.beta.threads.runs.stream(
                    thread_id=thread_ref, assistant_id=assistant_id
                ) as stream:
                    async for event in stream:
                        if event.event == "thread.run.created":
                            run_id = event.data.id
                        elif event.event == "thread.message.delta":
                            for block in event.data.delta.content or []:
                                text = getattr(block, "text", None)
                                if block.type == "text" and text and text.value:
                                    yield text.value
                        elif event.event in _RUN_FAILURE_EVENTS:
                            finished = True
                            raise UpstreamError(
                                "generation run did not complete",
                                detail={"status": event.event.rsplit(".", 1)[-1]},
                            )
                        elif event.event == "error":
                            finished = True
                            raise UpstreamError("generation stream error")
            finished = True
        finally:
            if run_id and not finished:
                await self._cancel_run(thread_ref, run_id)

    async def _cancel_run(self, thread_ref: str, run_id: str) -> None:
        try:
            await self.client.beta.threads.runs.cancel(run_id, thread_id=thread_ref)
            logger.info("engine_run_cancelled", thread_ref=thread_ref, run_id=run_id)
        except (openai.APIError, httpx.HTTPError) as exc:
            logger.warning("engine_run_cancel_failed", run_id=run_id, error=str(exc))

    async def close(self) -> None:
        await self.client.close()


class StubEngine:
    """Deterministic in-process engine used without an API key and in tests.

    Streams ``response`` word by word. Created threads and the messages sent
    to them are recorded for inspection.
    """

    def __init__(self, response: str = STUB_RESPONSE, *, delay: float = 0.0) -> None:
        self.response = response
        self.delay = delay
        self.assistants: List[str] = []
        self.threads: Dict[str, List[str]] = {}
        self.deleted_threads: List[str] = []

    async def create_assistant(self, name: str, instructions: str, model: str) -> str:
        assistant_id = f"asst_stub_{len(self.assistants) + 1}"
        self.assistants.append(assistant_id)
        return assistant_id

    async def create_thread(self) -> str:
        thread_ref = f"thread_stub_{uuid.uuid4().hex[:12]}"
        self.threads[thread_ref] = []
        return thread_ref

    async def delete_thread(self, thread_ref: str) -> None:
        self.threads.pop(thread_ref, None)
        self.deleted_threads.append(thread_ref)

    async def add_user_message(self, thread_ref: str, content: str) -> None:
        if thread_ref not in self.threads:
            raise UpstreamError("unknown thread", detail={"thread_ref": thread_ref})
        self.threads[thread_ref].append(content)

    async def stream_run(self, thread_ref: str, assistant_id: str) -> AsyncIterator[str]:
        if thread_ref not in self.threads:
            raise UpstreamError("unknown thread", detail={"thread_ref": thread_ref})
        for piece in re.findall(r"\S+\s*", self.response):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield piece

    async def close(self) -> None:
        return None
