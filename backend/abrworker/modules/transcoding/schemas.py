"""Pydantic schemas for the transcoding pipeline."""

from pathlib import PurePosixPath
from uuid import UUID
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobDescriptor(BaseModel):
    """Immutable input of one pipeline run.

    Parsed from a queue message body. Accepts both the snake_case field
    names and the camelCase keys used by the upload service.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    job_id: str = Field(..., alias="uploadId", min_length=1, description="Unique upload id")
    source_key: str = Field(..., alias="s3Key", min_length=1, description="Object-store key of the source")
    filename: str = Field(..., min_length=1, description="Original filename")
    has_audio: bool = Field(default=False, alias="hasAudio", description="Extract an audio track")
    owner_id: Optional[str] = Field(default=None, alias="userId")
    parent_id: Optional[str] = Field(default=None, alias="postId")

    @field_validator("filename", mode="before")
    @classmethod
    def _first_filename(cls, value):
        # multipart parsers sometimes hand over a one-element list
        if isinstance(value, (list, tuple)) and value:
            return str(value[0])
        return value

    @property
    def base_name(self) -> str:
        """Filename without directory or extension."""
        return PurePosixPath(self.filename.replace("\\", "/")).stem or self.filename

    @property
    def source_suffix(self) -> str:
        return PurePosixPath(self.filename).suffix or ".mp4"


class AssetRecord(BaseModel):
    """Schema for a derived asset record returned by the metadata store."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    owner_id: Optional[str]
    job_id: str
    url: str
    thumbnail: str
    manifest: Optional[str] = None
