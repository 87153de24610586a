import base64
from typing import Any

import httpx
import structlog

from taskpilot.errors import CapabilityMalformedResponseError, CapabilityUnreachableError

log = structlog.get_logger()

SUPPORTED_IMAGE_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})


class AzureOpenAIClient:
    """Text, vision, embedding and image calls against an Azure OpenAI resource.

    One instance (and one ``httpx.AsyncClient``) is shared by every pipeline
    invocation; it holds no per-request state.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        endpoint: str,
        api_key: str,
        api_version: str,
        deployment: str,
        vision_deployment: str | None = None,
        embeddings_deployment: str | None = None,
        image_deployment: str | None = None,
        temperature: float = 0.1,
    ) -> None:
        self._http = http
        self._endpoint = endpoint.rstrip("/")
        self._api_key = api_key
        self._api_version = api_version
        self.deployment = deployment
        self.vision_deployment = vision_deployment or deployment
        self.embeddings_deployment = embeddings_deployment
        self.image_deployment = image_deployment
        self.temperature = temperature

    def _url(self, deployment: str, operation: str) -> str:
        return f"{self._endpoint}/openai/deployments/{deployment}/{operation}"

    async def _post(self, capability: str, url: str, body: dict[str, Any]) -> dict[str, Any]:
        if not self._endpoint or not self._api_key:
            raise CapabilityUnreachableError(
                capability,
                "missing Azure OpenAI credentials (AZURE_OPENAI_ENDPOINT, AZURE_OPENAI_API_KEY)",
            )
        try:
            resp = await self._http.post(
                url,
                params={"api-version": self._api_version},
                headers={"api-key": self._api_key},
                json=body,
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CapabilityUnreachableError(
                capability, f"HTTP {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise CapabilityUnreachableError(capability, f"{type(e).__name__}: {e}") from e

        try:
            return resp.json()
        except ValueError as e:
            raise CapabilityMalformedResponseError(capability, "response body is not JSON") from e

    async def _chat(self, capability: str, deployment: str, messages: list[dict[str, Any]], json_mode: bool) -> str:
        body: dict[str, Any] = {"messages": messages, "temperature": self.temperature}
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        data = await self._post(capability, self._url(deployment, "chat/completions"), body)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise CapabilityMalformedResponseError(capability, "no message content in response") from e
        if not content:
            raise CapabilityMalformedResponseError(capability, "empty message content")

        usage = data.get("usage") or {}
        log.debug(
            "completion_received",
            capability=capability,
            deployment=deployment,
            total_tokens=usage.get("total_tokens"),
        )
        return content

    async def complete(self, prompt: str, *, system: str | None = None, json_mode: bool = False) -> str:
        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return await self._chat("text_completion", self.deployment, messages, json_mode)

    async def complete_vision(self, prompt: str, image: bytes, media_type: str) -> str:
        encoded = base64.b64encode(image).decode("ascii")
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": f"data:{media_type};base64,{encoded}"}},
                ],
            }
        ]
        return await self._chat("vision_completion", self.vision_deployment, messages, json_mode=True)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        if not self.embeddings_deployment:
            raise CapabilityUnreachableError("embeddings", "no embeddings deployment configured")

        data = await self._post(
            "embeddings", self._url(self.embeddings_deployment, "embeddings"), {"input": texts}
        )
        try:
            rows = sorted(data["data"], key=lambda row: row["index"])
            return [row["embedding"] for row in rows]
        except (KeyError, TypeError) as e:
            raise CapabilityMalformedResponseError("embeddings", "no embeddings in response") from e

    async def generate_image(self, prompt: str) -> str:
        """Return the URL of one generated image, or a data URL for base64 answers."""
        if not self.image_deployment:
            raise CapabilityUnreachableError("image_generation", "no image deployment configured")

        data = await self._post(
            "image_generation",
            self._url(self.image_deployment, "images/generations"),
            {"prompt": prompt, "n": 1, "size": "1024x1024"},
        )
        try:
            image = data["data"][0]
            url, encoded = image.get("url"), image.get("b64_json")
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise CapabilityMalformedResponseError("image_generation", "no image in response") from e
        if url:
            return url
        if encoded:
            return f"data:image/png;base64,{encoded}"
        raise CapabilityMalformedResponseError("image_generation", "image has neither url nor b64_json")
