from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GenericParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ProcessVideoRequest(GenericParams):
    file_id: str = Field(..., description="The Google Drive id of the video to convert.", alias="fileId")
    user_email: str = Field(
        ..., description="The Workspace user to impersonate when reading the video.", alias="userEmail"
    )
    bucket: Optional[str] = Field(
        None, description="Destination bucket. Defaults to the GCS_BUCKET setting when omitted."
    )

    @field_validator("file_id", "user_email")
    def validate_not_blank(cls, value: str, info):
        value = value.strip()
        if not value:
            raise ValueError(f"{cls.model_fields[info.field_name].alias} is required")
        return value


class OriginalFile(GenericParams):
    id: str
    name: str
    parents: list[str] = Field(default_factory=list)
    mime_type: Optional[str] = Field(None, alias="mimeType")


class ProcessVideoResponse(GenericParams):
    status: Literal["ok", "reused"]
    acting_user: str = Field(..., alias="actingUser")
    original_file: OriginalFile = Field(..., alias="originalFile")
    audio_file: dict[str, Any] = Field(..., alias="audioFile")


class AdmissionStatus(GenericParams):
    active_jobs: int = Field(..., alias="activeJobs")
    max_concurrent_jobs: int = Field(..., alias="maxConcurrentJobs")
    has_capacity: bool = Field(..., alias="hasCapacity")
    memory_usage_mb: float = Field(..., alias="memoryUsageMb")
    memory_limit_mb: Optional[float] = Field(None, alias="memoryLimitMb")
