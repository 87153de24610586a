import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from taskpilot.ports.base import SearchHit

log = structlog.get_logger()


class Embedder(Protocol):
    async def embed(self, texts: list[str]) -> list[list[float]]: ...


@dataclass(frozen=True)
class Document:
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryVectorStore:
    """Embedding index populated once at startup and only read afterwards."""

    def __init__(self, embedder: Embedder) -> None:
        self._embedder = embedder
        self._rows: list[tuple[Document, list[float]]] = []

    async def add_documents(self, documents: Iterable[Document]) -> int:
        docs = list(documents)
        vectors = await self._embedder.embed([d.text for d in docs])
        self._rows.extend(zip(docs, vectors))
        log.info("vector_store_loaded", added=len(docs), total=len(self._rows))
        return len(docs)

    def __len__(self) -> int:
        return len(self._rows)

    async def search(self, query: str, k: int) -> list[SearchHit]:
        if not self._rows or k <= 0:
            return []
        [query_vector] = await self._embedder.embed([query])
        scored = [(_cosine_similarity(query_vector, vec), doc) for doc, vec in self._rows]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [
            SearchHit(text=doc.text, metadata=dict(doc.metadata), score=score)
            for score, doc in scored[:k]
        ]
