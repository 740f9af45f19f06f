"""DASH/HLS packaging of encoded renditions with MP4Box."""

import logging
import time
from pathlib import Path
from typing import Sequence

from abrworker.core.tracing import create_span
from abrworker.modules.transcoding.errors import PackagingError
from abrworker.modules.transcoding.ffmpeg import ProcessRunner, run_process
from abrworker.modules.transcoding.models import ManifestMode

logger = logging.getLogger(__name__)

# manifest mode -> (MP4Box profile, manifest filename)
MANIFEST_TARGETS = {
    ManifestMode.DASH: ("dashavc264:live", "manifest.mpd"),
    ManifestMode.HLS: ("live", "manifest.m3u8"),
}


class Packager:
    """Segments rendition files into streaming manifests.

    Runs MP4Box once per manifest format of the configured mode, each
    invocation listing the video and audio stream of every rendition so the
    manifest offers all of them as alternative quality levels.
    """

    def __init__(
        self,
        mode: ManifestMode = ManifestMode.BOTH,
        segment_duration_ms: int = 4000,
        mp4box_path: str = "MP4Box",
        delete_renditions: bool = True,
        runner: ProcessRunner = run_process,
    ):
        if segment_duration_ms < 1:
            raise ValueError("segment_duration_ms must be a positive integer")
        self.mode = ManifestMode(mode)
        self.segment_duration_ms = segment_duration_ms
        self.mp4box_path = mp4box_path
        self.delete_renditions = delete_renditions
        self.runner = runner

    def manifest_names(self) -> list[str]:
        """Filenames of the manifests this packager produces."""
        return [MANIFEST_TARGETS[fmt][1] for fmt in self.mode.formats]

    def build_command(
        self,
        manifest_mode: ManifestMode,
        renditions: Sequence[Path],
        output_dir: Path,
    ) -> list[str]:
        """Build the MP4Box command for one manifest format.

        Args:
            manifest_mode: DASH or HLS
            renditions: Muxed rendition files, lowest rung first
            output_dir: Directory receiving the manifest and segments

        Returns:
            MP4Box command as list of arguments
        """
        profile, manifest_name = MANIFEST_TARGETS[manifest_mode]
        cmd = [
            self.mp4box_path,
            "-dash", str(self.segment_duration_ms),
            "-rap",
            "-frag-rap",
            "-profile", profile,
            "-out", str(Path(output_dir) / manifest_name),
        ]
        for rendition in renditions:
            cmd.append(f"{rendition}#video")
            cmd.append(f"{rendition}#audio")
        return cmd

    async def package(self, renditions: Sequence[Path], output_dir: Path) -> list[Path]:
        """Produce every configured manifest from the renditions.

        Returns:
            Paths of the written manifests, empty for ManifestMode.NONE

        Raises:
            PackagingError: If MP4Box cannot be started or exits non-zero
        """
        if not renditions:
            raise PackagingError("all", "no renditions to package")

        output_dir = Path(output_dir)
        manifests = []

        for fmt in self.mode.formats:
            _, manifest_name = MANIFEST_TARGETS[fmt]
            cmd = self.build_command(fmt, renditions, output_dir)
            started = time.monotonic()

            with create_span("packager.segment", attributes={"manifest": manifest_name}):
                try:
                    result = await self.runner(cmd)
                except OSError as e:
                    raise PackagingError(manifest_name, f"could not start {self.mp4box_path}: {e}") from e

            if not result.success:
                raise PackagingError(
                    manifest_name,
                    f"MP4Box exited with code {result.returncode}: {result.stderr_tail[-500:]}",
                )

            logger.info(
                f"Generated {manifest_name} from {len(renditions)} rendition(s) "
                f"in {time.monotonic() - started:.2f}s"
            )
            manifests.append(output_dir / manifest_name)

        if self.delete_renditions and manifests:
            for rendition in renditions:
                Path(rendition).unlink(missing_ok=True)
            logger.info(f"Removed {len(renditions)} intermediate rendition file(s)")

        return manifests
