"""Adaptive Bitrate (ABR) ladder and encoding profile.

The ladder lists the renditions a job produces; the encoding profile holds
the process-wide encoder tunables shared by every rung of every job.
"""

import json
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Sequence

from abrworker.modules.transcoding.errors import EmptyLadderError


@dataclass(frozen=True)
class RungSpec:
    """A single rung in an ABR ladder."""
    name: str
    scale: str  # ffmpeg filter expression, e.g. "scale=-2:426"
    bitrate: str  # e.g. "400k"
    crf: int
    enabled: bool = True


DEFAULT_LADDER: tuple[RungSpec, ...] = (
    RungSpec(name="240p", scale="scale=-2:426", bitrate="400k", crf=30, enabled=True),
    RungSpec(name="720p", scale="scale=-2:1280", bitrate="2000k", crf=28, enabled=True),
    # Disabled by default for faster processing
    RungSpec(name="1080p", scale="scale=-2:1920", bitrate="4000k", crf=26, enabled=False),
)


@dataclass(frozen=True)
class EncodingProfile:
    """Encoder tunables loaded once at process start."""
    use_gpu: bool = True
    cpu_threads: int = 0  # 0 = let the encoder pick
    preset: str = "ultrafast"
    tune: str = "zerolatency"
    crf: int = 28
    buffer_size: str = "32M"
    max_concurrency: int = 2
    enable_fast_start: bool = True
    keyframe_interval: int = 120  # frames, 4 seconds at 30fps
    bframes: int = 1
    ref_frames: int = 1
    audio_bitrate: str = "128k"


DEFAULT_PROFILE = EncodingProfile()

_ENVIRONMENT_PROFILES = {
    "production": replace(
        DEFAULT_PROFILE,
        use_gpu=True,
        max_concurrency=4,
        preset="fast",
        crf=20,
    ),
    "development": replace(
        DEFAULT_PROFILE,
        use_gpu=False,  # avoid contending for a shared GPU on dev boxes
        max_concurrency=4,
        preset="ultrafast",
        tune="zerolatency",
        crf=30,
        bframes=0,
        ref_frames=1,
        keyframe_interval=120,
    ),
}


def build_encoding_profile(
    environment: str = "development",
    use_gpu: Optional[bool] = None,
    preset: Optional[str] = None,
    tune: Optional[str] = None,
    crf: Optional[int] = None,
    cpu_threads: Optional[int] = None,
    max_concurrency: Optional[int] = None,
    keyframe_interval: Optional[int] = None,
    bframes: Optional[int] = None,
    ref_frames: Optional[int] = None,
    buffer_size: Optional[str] = None,
    enable_fast_start: Optional[bool] = None,
    audio_bitrate: Optional[str] = None,
) -> EncodingProfile:
    """Build the profile for an environment, applying explicit overrides.

    Unknown environments get the base defaults. Arguments left as None keep
    the environment's value.

    Raises:
        ValueError: If an override is out of range
    """
    profile = _ENVIRONMENT_PROFILES.get(environment, DEFAULT_PROFILE)

    overrides = {
        "use_gpu": use_gpu,
        "preset": preset.strip() if preset and preset.strip() else None,
        "tune": tune.strip() if tune and tune.strip() else None,
        "crf": crf,
        "cpu_threads": cpu_threads,
        "max_concurrency": max_concurrency,
        "keyframe_interval": keyframe_interval,
        "bframes": bframes,
        "ref_frames": ref_frames,
        "buffer_size": buffer_size,
        "enable_fast_start": enable_fast_start,
        "audio_bitrate": audio_bitrate,
    }
    profile = replace(profile, **{k: v for k, v in overrides.items() if v is not None})

    if profile.max_concurrency < 1:
        raise ValueError("max_concurrency must be a positive integer")
    if profile.cpu_threads < 0:
        raise ValueError("cpu_threads must be >= 0")
    if profile.keyframe_interval < 1:
        raise ValueError("keyframe_interval must be >= 1")

    return profile


def profile_from_settings(settings) -> EncodingProfile:
    """Build the encoding profile from worker settings."""
    return build_encoding_profile(
        environment=settings.ENVIRONMENT,
        use_gpu=settings.USE_GPU,
        preset=settings.PRESET,
        tune=settings.TUNE,
        crf=settings.CRF,
        cpu_threads=settings.CPU_THREADS,
        max_concurrency=settings.MAX_CONCURRENCY,
        keyframe_interval=settings.KEYFRAME_INTERVAL,
        bframes=settings.BFRAMES,
        ref_frames=settings.REF_FRAMES,
        buffer_size=settings.BUFFER_SIZE,
        enable_fast_start=settings.ENABLE_FAST_START,
        audio_bitrate=settings.AUDIO_BITRATE,
    )


def load_ladder_file(path: str) -> tuple[RungSpec, ...]:
    """Read a ladder from a JSON file holding a list of rung objects."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError(f"Ladder file {path} must contain a JSON list")
    return tuple(
        RungSpec(
            name=str(item["name"]),
            scale=str(item["scale"]),
            bitrate=str(item["bitrate"]),
            crf=int(item["crf"]),
            enabled=bool(item.get("enabled", True)),
        )
        for item in raw
    )


def get_ladder(
    environment: str = "development",
    ladder: Sequence[RungSpec] = DEFAULT_LADDER,
) -> tuple[RungSpec, ...]:
    """Get the ladder for an environment.

    Production enables every rung; other environments keep the per-rung
    enabled flags.
    """
    if environment == "production":
        return tuple(replace(rung, enabled=True) for rung in ladder)
    return tuple(ladder)


def enabled_rungs(ladder: Sequence[RungSpec]) -> tuple[RungSpec, ...]:
    """Get the enabled rungs of a ladder.

    Raises:
        EmptyLadderError: If no rung is enabled
    """
    rungs = tuple(rung for rung in ladder if rung.enabled)
    if not rungs:
        raise EmptyLadderError()
    return rungs


def validate_ladder(ladder: Sequence[RungSpec]) -> tuple[bool, list[str]]:
    """Validate ABR ladder configuration.

    Args:
        ladder: Rungs to validate

    Returns:
        Tuple of (is_valid, error_messages)
    """
    errors = []

    if not any(rung.enabled for rung in ladder):
        errors.append("ABR ladder must have at least one enabled rung")

    names = [rung.name for rung in ladder]
    if len(names) != len(set(names)):
        errors.append("Rung names must be unique")

    for rung in ladder:
        if not rung.scale.startswith("scale="):
            errors.append(f"Rung {rung.name} scale must be a scale= filter")
        if not 0 <= rung.crf <= 51:
            errors.append(f"Rung {rung.name} crf must be between 0 and 51")

    return len(errors) == 0, errors
