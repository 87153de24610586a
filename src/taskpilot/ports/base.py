"""Narrow interfaces to the external AI services a pipeline consumes."""

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar, runtime_checkable

from taskpilot.errors import CapabilityTimeoutError

T = TypeVar("T")


@runtime_checkable
class TextCompletion(Protocol):
    async def complete(
        self, prompt: str, *, system: str | None = None, json_mode: bool = False
    ) -> str: ...


@runtime_checkable
class VisionCompletion(Protocol):
    async def complete_vision(self, prompt: str, image: bytes, media_type: str) -> str: ...


@runtime_checkable
class ImageGeneration(Protocol):
    async def generate_image(self, prompt: str) -> str: ...


@dataclass(frozen=True)
class SearchHit:
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)
    score: float = 0.0


@runtime_checkable
class EmbedAndSearch(Protocol):
    async def search(self, query: str, k: int) -> list[SearchHit]: ...


async def with_timeout(call: Awaitable[T], seconds: float | None, capability: str) -> T:
    """Await a port call, turning expiry into an ordinary capability error."""
    if seconds is None:
        return await call
    try:
        return await asyncio.wait_for(call, timeout=seconds)
    except asyncio.TimeoutError:
        raise CapabilityTimeoutError(capability, seconds) from None
