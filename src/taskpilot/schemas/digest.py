from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DigestRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)


class BatchItem(BaseModel):
    user: dict[str, Any]
    outcome: dict[str, Any]


class BatchMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_time_ms: float = Field(serialization_alias="totalTimeMs")
    success_count: int = Field(serialization_alias="successCount")
    failure_count: int = Field(serialization_alias="failureCount")


class BatchResponse(BaseModel):
    results: list[BatchItem]
    metadata: BatchMetadata
