"""Publishing of job outputs to the object store.

Output keys follow `<prefix><job_id>/<owner_id>/<parent_id>/<relative path>`.
"""

import logging
import os
from pathlib import Path
from typing import Optional, Sequence

from abrworker.core.storage import StorageBackend
from abrworker.modules.transcoding.errors import PublishError
from abrworker.modules.transcoding.schemas import JobDescriptor

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".mpd": "application/dash+xml",
    ".m3u8": "application/x-mpegURL",
    ".m4s": "video/iso.segment",
    ".mp4": "video/mp4",
    ".mp3": "audio/mpeg",
    ".jpg": "image/jpeg",
}

LOCK_NAME = ".lock"


def content_type_for(path) -> str:
    """Get the upload content type from a file extension."""
    return CONTENT_TYPES.get(Path(path).suffix.lower(), "application/octet-stream")


def output_prefix(descriptor: JobDescriptor, prefix: str = "processed/") -> str:
    """Get the object-store prefix all outputs of a job are published under."""
    if prefix and not prefix.endswith("/"):
        prefix = f"{prefix}/"
    return f"{prefix}{descriptor.job_id}/{descriptor.owner_id}/{descriptor.parent_id}/"


def output_key(descriptor: JobDescriptor, relative_path: str, prefix: str = "processed/") -> str:
    return f"{output_prefix(descriptor, prefix)}{relative_path}"


def lock_key(descriptor: JobDescriptor, prefix: str = "processed/") -> str:
    """Get the ownership lease key of a job, next to its outputs."""
    return output_key(descriptor, LOCK_NAME, prefix)


def publish_files(
    storage: StorageBackend,
    directory: Path,
    key_prefix: str,
    relative_paths: Sequence[str],
) -> list[str]:
    """Upload the given files below a directory, in order.

    Returns:
        Uploaded keys in upload order

    Raises:
        PublishError: On the first upload that fails
    """
    directory = Path(directory)
    uploaded = []
    total_bytes = 0
    for relative in relative_paths:
        key = f"{key_prefix}{relative}"
        result = storage.upload(
            os.fspath(directory / relative),
            key,
            content_type=content_type_for(relative),
        )
        if not result.success:
            raise PublishError(key, result.error_message or "upload failed")
        uploaded.append(key)
        total_bytes += result.file_size

    logger.info(f"Published {len(uploaded)} file(s), {total_bytes} bytes, under {key_prefix}")
    return uploaded


def publish_directory(
    storage: StorageBackend,
    directory: Path,
    key_prefix: str,
    publish_last: Optional[Sequence[str]] = None,
    hold_back: Optional[Sequence[str]] = None,
) -> list[str]:
    """Upload every file below a directory, keeping relative paths.

    Files named in `publish_last` are uploaded after everything else, so
    their presence in the store implies the rest is already there. Files
    named in `hold_back` are not uploaded at all; the caller publishes
    them later with publish_files.

    Args:
        storage: Target backend
        directory: Local directory to publish
        key_prefix: Key prefix ending in "/"
        publish_last: Relative paths to upload last, in order
        hold_back: Relative paths to leave out

    Returns:
        Uploaded keys in upload order

    Raises:
        PublishError: On the first upload that fails
    """
    directory = Path(directory)
    last = list(publish_last or [])
    skipped = set(hold_back or [])

    files = sorted(
        p.relative_to(directory).as_posix()
        for p in directory.rglob("*")
        if p.is_file()
    )
    files = [f for f in files if f not in skipped]
    ordered = [f for f in files if f not in last] + [f for f in last if f in files]
    return publish_files(storage, directory, key_prefix, ordered)
