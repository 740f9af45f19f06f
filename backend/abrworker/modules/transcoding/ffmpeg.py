"""FFmpeg invocation for rendition encodes and auxiliary extractions.

Every external encoder run happens under a permit of the shared
ConcurrencyLimiter. The video codec is decided once per process by
`detect_codec` and reused for every rung of every job.
"""

import asyncio
import json
import logging
import os
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

from abrworker.core.metrics import ENCODE_DURATION_SECONDS
from abrworker.modules.transcoding.abr import EncodingProfile, RungSpec
from abrworker.modules.transcoding.errors import EncodeCancelled, EncodeError
from abrworker.modules.transcoding.limiter import ConcurrencyLimiter

logger = logging.getLogger(__name__)

SOFTWARE_CODEC = "libx264"
# Probed in order; the first one that can actually encode a frame wins
HARDWARE_CODECS = ("h264_nvenc", "h264_qsv")

THUMBNAIL_NAME = "thumbnail.jpg"
AUDIO_NAME = "audio.mp3"

ProgressCallback = Callable[[str, float], None]


@dataclass
class ProcessResult:
    """Outcome of one external process run."""
    returncode: int
    stdout: str = ""
    stderr_tail: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0


ProcessRunner = Callable[..., Awaitable[ProcessResult]]


async def run_process(
    cmd: Sequence[str],
    on_line: Optional[Callable[[str], None]] = None,
    stderr_lines: int = 20,
) -> ProcessResult:
    """Run an external command to completion.

    stdout lines go to `on_line` when given (and are then not retained);
    stderr is drained concurrently so a chatty process never blocks on a
    full pipe, keeping only its last lines for error reports.

    Raises:
        OSError: If the executable cannot be started
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    kept: list[str] = []
    tail: deque[str] = deque(maxlen=stderr_lines)

    async def read_stdout():
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="ignore").rstrip()
            if on_line is not None:
                on_line(text)
            else:
                kept.append(text)

    async def read_stderr():
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            tail.append(line.decode("utf-8", errors="ignore").rstrip())

    try:
        await asyncio.gather(read_stdout(), read_stderr())
        returncode = await process.wait()
    finally:
        if process.returncode is None:
            process.kill()
            await process.wait()

    return ProcessResult(
        returncode=returncode,
        stdout="\n".join(kept),
        stderr_tail="\n".join(tail),
    )


@dataclass(frozen=True)
class CodecSelection:
    """Video codec decided at process start."""
    codec: str
    hardware: bool = False


async def detect_codec(
    ffmpeg_path: str = "ffmpeg",
    prefer_gpu: bool = True,
    runner: ProcessRunner = run_process,
) -> CodecSelection:
    """Pick the first usable codec from the hardware candidates, else libx264.

    A hardware encoder counts as usable only if ffmpeg lists it and a
    one-frame test encode succeeds, since builds often list encoders the
    host has no device for.
    """
    if not prefer_gpu:
        logger.info(f"GPU disabled, using {SOFTWARE_CODEC}")
        return CodecSelection(codec=SOFTWARE_CODEC)

    try:
        listing = await runner([ffmpeg_path, "-hide_banner", "-encoders"])
    except OSError as e:
        logger.warning(f"Could not list ffmpeg encoders ({e}), using {SOFTWARE_CODEC}")
        return CodecSelection(codec=SOFTWARE_CODEC)

    listed = set()
    for line in listing.stdout.splitlines():
        parts = line.split()
        if len(parts) >= 2:
            listed.add(parts[1])

    for codec in HARDWARE_CODECS:
        if codec not in listed:
            continue
        probe = [
            ffmpeg_path, "-hide_banner", "-loglevel", "error",
            "-f", "lavfi", "-i", "color=black:s=256x256:d=0.1",
            "-frames:v", "1", "-c:v", codec, "-f", "null", "-",
        ]
        try:
            result = await runner(probe)
        except OSError:
            continue
        if result.success:
            logger.info(f"Using hardware encoder {codec}")
            return CodecSelection(codec=codec, hardware=True)
        logger.info(f"Hardware encoder {codec} listed but unusable: {result.stderr_tail[-200:]}")

    logger.info(f"No usable hardware encoder, using {SOFTWARE_CODEC}")
    return CodecSelection(codec=SOFTWARE_CODEC)


class _ProgressReporter:
    """Turns ffmpeg `-progress` output into percentage events."""

    def __init__(self, item: str, duration: float, callback: Optional[ProgressCallback], step: float = 10.0):
        self.item = item
        self.duration = duration
        self.callback = callback
        self.step = step
        self._last = -step

    def feed(self, line: str) -> None:
        if self.duration <= 0 or not line.startswith("out_time_ms="):
            return
        try:
            seconds = int(line.split("=", 1)[1]) / 1_000_000
        except ValueError:
            return
        percent = min(100.0, seconds / self.duration * 100)
        if percent - self._last < self.step and percent < 100.0:
            return
        self._last = percent
        logger.info(f"{self.item}: {percent:.1f}% complete")
        if self.callback is not None:
            self.callback(self.item, percent)


class FFmpegEncoder:
    """Runs ffmpeg for rendition encodes and thumbnail/audio extraction."""

    def __init__(
        self,
        profile: EncodingProfile,
        limiter: ConcurrencyLimiter,
        codec: CodecSelection = CodecSelection(codec=SOFTWARE_CODEC),
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        runner: ProcessRunner = run_process,
    ):
        self.profile = profile
        self.limiter = limiter
        self.codec = codec
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.runner = runner

    def build_encode_command(self, rung: RungSpec, input_path: str, output_path: str) -> list[str]:
        """Build the ffmpeg command for one rung.

        Args:
            rung: Target rung
            input_path: Materialized local input
            output_path: Destination mp4

        Returns:
            FFmpeg command as list of arguments
        """
        profile = self.profile
        cmd = [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-nostats",
            "-i", input_path,
            # Video settings
            "-c:v", self.codec.codec,
            "-vf", rung.scale,
            "-b:v", rung.bitrate,
            "-profile:v", "high",
            "-g", str(profile.keyframe_interval),
            "-keyint_min", str(profile.keyframe_interval),
            "-sc_threshold", "0",
            "-bf", str(profile.bframes),
            "-refs", str(profile.ref_frames),
            "-preset", profile.preset,
            "-tune", profile.tune,
            "-crf", str(rung.crf),
            "-threads", str(profile.cpu_threads),
            "-max_muxing_queue_size", "1024",
            "-bufsize", profile.buffer_size,
            # Audio settings
            "-c:a", "aac",
            "-b:a", profile.audio_bitrate,
        ]

        if profile.enable_fast_start:
            cmd.extend(["-movflags", "faststart"])

        cmd.extend(["-progress", "pipe:1", output_path])
        return cmd

    def build_thumbnail_command(self, input_path: str, output_path: str) -> list[str]:
        """Grab one frame at 1s, 480px wide, aspect ratio kept."""
        return [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-ss", "00:00:01",
            "-i", input_path,
            "-frames:v", "1",
            "-vf", "scale=480:-2",
            output_path,
        ]

    def build_audio_command(self, input_path: str, output_path: str) -> list[str]:
        """Extract the audio track as 192k mp3."""
        return [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-nostats",
            "-i", input_path,
            "-vn",
            "-c:a", "libmp3lame",
            "-b:a", "192k",
            "-f", "mp3",
            "-progress", "pipe:1",
            output_path,
        ]

    async def probe_duration(self, input_path: str) -> float:
        """Get the input duration in seconds, or 0.0 when unknown."""
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            input_path,
        ]
        try:
            result = await self.runner(cmd)
        except OSError as e:
            logger.warning(f"ffprobe unavailable: {e}")
            return 0.0
        if not result.success:
            return 0.0
        try:
            return float(json.loads(result.stdout)["format"]["duration"])
        except (ValueError, KeyError, TypeError):
            return 0.0

    async def encode(
        self,
        rung: RungSpec,
        input_path: str,
        output_dir: str,
        duration: float = 0.0,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Path:
        """Encode one rung of the ladder.

        A failed run may leave a partial output file behind; removing it is
        the job workspace's responsibility. When `cancel` is set by the time a
        permit is granted, the process is never started.

        Raises:
            EncodeCancelled: If the cancel token was set before start
            EncodeError: If the input is unreadable or ffmpeg fails
        """
        output_path = Path(output_dir) / f"{rung.name}.mp4"
        logger.info(f"Encoding {rung.name} with {self.codec.codec}")
        cmd = self.build_encode_command(rung, input_path, str(output_path))
        await self._run(rung.name, cmd, input_path, output_path, duration, progress, cancel)
        return output_path

    async def extract_thumbnail(
        self,
        input_path: str,
        output_dir: str,
        cancel: Optional[asyncio.Event] = None,
    ) -> Path:
        """Write thumbnail.jpg into output_dir.

        Raises:
            EncodeError: If ffmpeg fails
        """
        output_path = Path(output_dir) / THUMBNAIL_NAME
        cmd = self.build_thumbnail_command(input_path, str(output_path))
        await self._run("thumbnail", cmd, input_path, output_path, cancel=cancel)
        return output_path

    async def extract_audio(
        self,
        input_path: str,
        output_dir: str,
        duration: float = 0.0,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Path:
        """Write audio.mp3 into output_dir.

        Raises:
            EncodeError: If ffmpeg fails
        """
        output_path = Path(output_dir) / AUDIO_NAME
        cmd = self.build_audio_command(input_path, str(output_path))
        await self._run("audio", cmd, input_path, output_path, duration, progress, cancel)
        return output_path

    async def _run(
        self,
        item: str,
        cmd: list[str],
        input_path: str,
        output_path: Path,
        duration: float = 0.0,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> None:
        if not os.access(input_path, os.R_OK):
            raise EncodeError(item, f"input {input_path} is not readable")

        reporter = _ProgressReporter(item, duration, progress)
        async with self.limiter.permit():
            if cancel is not None and cancel.is_set():
                raise EncodeCancelled(item)
            started = time.monotonic()
            try:
                result = await self.runner(cmd, on_line=reporter.feed)
            except OSError as e:
                raise EncodeError(item, f"could not start {cmd[0]}: {e}") from e
            finally:
                ENCODE_DURATION_SECONDS.labels(item=item).observe(time.monotonic() - started)

        if not result.success:
            raise EncodeError(
                item,
                f"ffmpeg exited with code {result.returncode}: {result.stderr_tail[-500:]}",
                returncode=result.returncode,
            )
        if not output_path.exists():
            raise EncodeError(item, f"ffmpeg reported success but {output_path.name} is missing")
        logger.info(f"Finished {item}")
