from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_env: str = "development"
    log_level: str = "info"

    azure_openai_endpoint: str = ""
    azure_openai_api_key: str = ""
    azure_openai_api_version: str = "2024-08-01-preview"
    azure_openai_deployment: str = "gpt-4o"
    azure_openai_vision_deployment: str = ""
    azure_openai_embeddings_deployment: str = "text-embedding-ada-002"
    azure_openai_image_deployment: str = "dall-e-3"

    completion_timeout_seconds: float = 60.0
    completion_temperature: float = 0.1

    data_dir: Path = Path(__file__).parent / "data"

    rag_enabled: bool = True
    retrieval_k: int = 20
    batch_concurrency: int | None = None

    # Digest emails fall back to the raw model text when it fails the Email schema.
    generation_fallback: bool = True

    # Images for meme spots in digest emails; a spot whose image fails keeps its text fallback.
    meme_generation_enabled: bool = True
    meme_timeout_seconds: float = 30.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @model_validator(mode="after")
    def _normalize_endpoint(self) -> "Settings":
        self.azure_openai_endpoint = self.azure_openai_endpoint.rstrip("/")
        if not self.azure_openai_vision_deployment:
            self.azure_openai_vision_deployment = self.azure_openai_deployment
        return self


settings = Settings()
