"""Database models and enums for the transcoding pipeline."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from abrworker.core.database import Base


class JobState(str, Enum):
    """States of one job run."""
    QUEUED = "queued"
    LOCK_ACQUIRED = "lock_acquired"
    INPUT_MATERIALIZED = "input_materialized"
    ENCODING = "encoding"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    PACKAGED = "packaged"
    PUBLISHED = "published"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.SKIPPED, JobState.FAILED)

    @property
    def should_ack(self) -> bool:
        """Whether the source message is acknowledged after this state."""
        return self in (JobState.COMPLETED, JobState.SKIPPED)


class ManifestMode(str, Enum):
    """Which manifests the packaging step produces."""
    DASH = "dash"
    HLS = "hls"
    BOTH = "both"
    NONE = "none"

    @property
    def formats(self) -> list["ManifestMode"]:
        if self == ManifestMode.BOTH:
            return [ManifestMode.DASH, ManifestMode.HLS]
        if self == ManifestMode.NONE:
            return []
        return [self]


class ItemKind(str, Enum):
    """Kinds of fan-out work items."""
    RUNG = "rung"
    THUMBNAIL = "thumbnail"
    AUDIO = "audio"


class DerivedAsset(Base):
    """Record of the assets published for one processed upload."""

    __tablename__ = "derived_assets"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    job_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    # Object-store keys
    url: Mapped[str] = mapped_column(String(1024), nullable=False)
    thumbnail: Mapped[str] = mapped_column(String(1024), nullable=False)
    manifest: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<DerivedAsset(id={self.id}, name={self.name}, job_id={self.job_id})>"
