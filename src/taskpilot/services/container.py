from dataclasses import dataclass

import httpx
import structlog
from fastapi import Request

from taskpilot.config import Settings
from taskpilot.domains.digest import build_digest_pipeline
from taskpilot.domains.receipts import build_match_pipeline, build_receipt_pipeline
from taskpilot.domains.tasks import build_task_query_pipeline
from taskpilot.errors import CapabilityError
from taskpilot.pipeline.executor import Pipeline
from taskpilot.ports.azure_openai import AzureOpenAIClient
from taskpilot.ports.base import EmbedAndSearch, ImageGeneration, TextCompletion, VisionCompletion
from taskpilot.ports.vector_store import Embedder, InMemoryVectorStore
from taskpilot.services.data_store import DataStore, load_data_store

log = structlog.get_logger()


@dataclass(frozen=True)
class Services:
    """Everything the routes need, built once per process and injected."""

    store: DataStore
    task_query: Pipeline
    receipt_parse: Pipeline
    receipt_match: Pipeline
    digest: Pipeline
    batch_concurrency: int | None = None


def build_pipelines(
    store: DataStore,
    completion: TextCompletion,
    vision: VisionCompletion,
    comment_index: EmbedAndSearch,
    task_index: EmbedAndSearch,
    settings: Settings,
    images: ImageGeneration | None = None,
) -> Services:
    timeout = settings.completion_timeout_seconds
    return Services(
        store=store,
        task_query=build_task_query_pipeline(completion, store.tasks, store.users, timeout=timeout),
        receipt_parse=build_receipt_pipeline(vision, timeout=timeout),
        receipt_match=build_match_pipeline(completion, task_index, timeout=timeout),
        digest=build_digest_pipeline(
            completion,
            comment_index,
            images=images if settings.meme_generation_enabled else None,
            k=settings.retrieval_k,
            allow_fallback=settings.generation_fallback,
            meme_timeout=settings.meme_timeout_seconds,
            timeout=timeout,
        ),
        batch_concurrency=settings.batch_concurrency,
    )


async def _load_index(name: str, embedder: Embedder, documents: list, enabled: bool) -> InMemoryVectorStore:
    index = InMemoryVectorStore(embedder)
    if not enabled:
        log.info("vector_store_disabled", index=name)
        return index
    try:
        await index.add_documents(documents)
    except CapabilityError as e:
        # Retrieval steps degrade to empty context against an empty index.
        log.warning("vector_store_unavailable", index=name, error=str(e))
    return index


async def build_services(settings: Settings, http: httpx.AsyncClient) -> Services:
    store = load_data_store(settings.data_dir)
    client = AzureOpenAIClient(
        http,
        endpoint=settings.azure_openai_endpoint,
        api_key=settings.azure_openai_api_key,
        api_version=settings.azure_openai_api_version,
        deployment=settings.azure_openai_deployment,
        vision_deployment=settings.azure_openai_vision_deployment,
        embeddings_deployment=settings.azure_openai_embeddings_deployment,
        image_deployment=settings.azure_openai_image_deployment,
        temperature=settings.completion_temperature,
    )
    comment_index = await _load_index("comments", client, store.comment_documents(), settings.rag_enabled)
    task_index = await _load_index("tasks", client, store.task_documents(), settings.rag_enabled)
    return build_pipelines(store, client, client, comment_index, task_index, settings, images=client)


def get_services(request: Request) -> Services:
    return request.app.state.services
