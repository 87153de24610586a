import asyncio
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from taskpilot.config import settings
from taskpilot.main import app
from taskpilot.ports.base import SearchHit
from taskpilot.services.container import Services, build_pipelines, get_services
from taskpilot.services.data_store import DataStore, load_data_store

Response = str | Exception | Callable[[str], str]


class ScriptedCompletion:
    """Text and vision completion port answering from a script.

    Responses are consumed in order; the last one repeats. An exception in the
    script is raised instead of returned, a callable is called with the prompt.
    """

    def __init__(self) -> None:
        self._responses: list[Response] = []
        self.calls: list[dict[str, Any]] = []

    def script(self, *responses: Response) -> "ScriptedCompletion":
        self._responses = list(responses)
        return self

    def _next(self, prompt: str) -> str:
        if not self._responses:
            raise AssertionError("unexpected completion call")
        response = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(prompt)
        return response

    async def complete(self, prompt: str, *, system: str | None = None, json_mode: bool = False) -> str:
        self.calls.append({"prompt": prompt, "system": system, "json_mode": json_mode})
        return self._next(prompt)

    async def complete_vision(self, prompt: str, image: bytes, media_type: str) -> str:
        self.calls.append({"prompt": prompt, "image": image, "media_type": media_type})
        return self._next(prompt)


class FakeIndex:
    """Search port returning fixed hits, or raising ``error`` when set."""

    def __init__(self, hits: list[SearchHit] | None = None, error: Exception | None = None) -> None:
        self.hits = hits or []
        self.error = error
        self.queries: list[tuple[str, int]] = []

    async def search(self, query: str, k: int) -> list[SearchHit]:
        self.queries.append((query, k))
        if self.error is not None:
            raise self.error
        return self.hits[:k]


class FakeImages:
    """Image port returning one URL per prompt; prompts in ``failing`` raise."""

    def __init__(self) -> None:
        self.failing: dict[str, Exception] = {}
        self.delay = 0.0
        self.prompts: list[str] = []

    async def generate_image(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if prompt in self.failing:
            raise self.failing[prompt]
        return f"https://img.example/{len(self.prompts)}.png"


@pytest.fixture
def completion() -> ScriptedCompletion:
    return ScriptedCompletion()


@pytest.fixture
def vision() -> ScriptedCompletion:
    return ScriptedCompletion()


@pytest.fixture
def comment_index() -> FakeIndex:
    return FakeIndex()


@pytest.fixture
def task_index() -> FakeIndex:
    return FakeIndex()


@pytest.fixture
def images() -> FakeImages:
    return FakeImages()


@pytest.fixture
def store() -> DataStore:
    return load_data_store(settings.data_dir)


@pytest.fixture
def services(
    store: DataStore,
    completion: ScriptedCompletion,
    vision: ScriptedCompletion,
    comment_index: FakeIndex,
    task_index: FakeIndex,
    images: FakeImages,
) -> Services:
    return build_pipelines(store, completion, vision, comment_index, task_index, settings, images=images)


@pytest.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient]:
    app.dependency_overrides[get_services] = lambda: services

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
