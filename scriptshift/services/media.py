"""Local media processing: audio extraction, dub track assembly and muxing."""

from __future__ import annotations

import asyncio
import io
import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from pydub import AudioSegment

from scriptshift.config import Settings, get_settings
from scriptshift.errors import MediaError
from scriptshift.models import Segment

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ClipPlacement:
    """Where one synthesized clip lands on the dubbed timeline (seconds)."""

    index: int
    offset: float
    duration: float

    @property
    def end(self) -> float:
        return self.offset + self.duration


def plan_clip_offsets(
    segments: Sequence[Segment], durations: Sequence[float]
) -> tuple[list[ClipPlacement], float]:
    """
    Lay synthesized clips out on a timeline.

    Each clip starts at its segment's start time, or right after the previous
    clip if that one overran; speech is never truncated or overlapped, so a
    long line pushes later lines back.

    Args:
        segments: Translated segments in chronological order
        durations: Duration in seconds of each synthesized clip

    Returns:
        (placements, total track duration in seconds)
    """
    if len(segments) != len(durations):
        raise ValueError(
            f"Got {len(durations)} clip duration(s) for {len(segments)} segment(s)"
        )

    placements: list[ClipPlacement] = []
    cursor = 0.0
    for index, (segment, duration) in enumerate(zip(segments, durations)):
        offset = max(segment.start, cursor)
        placements.append(ClipPlacement(index=index, offset=offset, duration=max(0.0, duration)))
        cursor = offset + max(0.0, duration)

    total = max(cursor, segments[-1].end) if segments else 0.0
    return placements, total


class MediaProcessor:
    """
    Utility class for video/audio processing.

    Extraction and muxing shell out to ffmpeg; track assembly uses pydub.
    Blocking work runs in a worker thread so the event loop keeps serving
    other jobs.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.ffmpeg = self.settings.ffmpeg_binary
        self.timeout = self.settings.ffmpeg_timeout_seconds

    async def extract_audio(self, video_path: Path, audio_path: Path) -> Path:
        """
        Extract the audio stream of a video as MP3.

        Args:
            video_path: Source video
            audio_path: Destination MP3

        Returns:
            Path to the extracted audio

        Raises:
            FileNotFoundError: If the video doesn't exist
            MediaError: If ffmpeg fails
        """
        video_path = Path(video_path)
        if not video_path.exists():
            raise FileNotFoundError(f"Video file not found: {video_path}")

        await asyncio.to_thread(
            self._run_ffmpeg,
            ["-i", str(video_path), "-vn", "-acodec", "libmp3lame", "-q:a", "2", str(audio_path)],
        )
        logger.info(f"Extracted audio: {audio_path}")
        return Path(audio_path)

    async def mux_video(self, video_path: Path, audio_path: Path, output_path: Path) -> Path:
        """
        Replace a video's audio with the dubbed track.

        The video stream is copied untouched and the output is trimmed to the
        shorter of the two streams.
        """
        await asyncio.to_thread(
            self._run_ffmpeg,
            [
                "-i", str(video_path),
                "-i", str(audio_path),
                "-c:v", "copy",
                "-c:a", "aac",
                "-map", "0:v:0",
                "-map", "1:a:0",
                "-shortest",
                str(output_path),
            ],
        )
        logger.info(f"Muxed dubbed audio into video: {output_path}")
        return Path(output_path)

    async def render_track(
        self,
        segments: Sequence[Segment],
        clips: Sequence[bytes],
        output_path: Path,
        *,
        clip_format: str = "mp3",
        output_format: str = "mp3",
    ) -> list[ClipPlacement]:
        """
        Assemble per-segment clips into one dubbed track aligned to the source timing.

        Returns:
            The placement used for every clip
        """
        return await asyncio.to_thread(
            self._render_track, segments, clips, Path(output_path), clip_format, output_format
        )

    def _render_track(
        self,
        segments: Sequence[Segment],
        clips: Sequence[bytes],
        output_path: Path,
        clip_format: str,
        output_format: str,
    ) -> list[ClipPlacement]:
        try:
            audio_clips = [AudioSegment.from_file(io.BytesIO(clip), format=clip_format) for clip in clips]
            placements, total = plan_clip_offsets(
                segments, [len(clip) / 1000.0 for clip in audio_clips]
            )

            frame_rate = audio_clips[0].frame_rate if audio_clips else 44100
            track = AudioSegment.silent(duration=int(round(total * 1000)), frame_rate=frame_rate)
            for placement, clip in zip(placements, audio_clips):
                track = track.overlay(clip, position=int(round(placement.offset * 1000)))

            track.export(str(output_path), format=output_format)
        except Exception as e:
            logger.error(f"Failed to render dubbed track: {e}")
            raise MediaError(f"Dubbed track assembly failed: {e}", provider="pydub") from e

        drift = max((p.offset - s.start for p, s in zip(placements, segments)), default=0.0)
        logger.info(
            f"Rendered dubbed track: {len(placements)} clip(s), {total:.2f}s, max drift {drift:.2f}s"
        )
        return placements

    def _run_ffmpeg(self, args: list[str]) -> None:
        argv = [self.ffmpeg, "-y", "-hide_banner", "-loglevel", "error", *args]
        try:
            subprocess.run(argv, check=True, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise MediaError(f"ffmpeg binary not found: {self.ffmpeg}", provider="ffmpeg") from e
        except subprocess.TimeoutExpired as e:
            raise MediaError(f"ffmpeg timed out after {self.timeout}s", provider="ffmpeg") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()[-2000:]
            raise MediaError(
                f"ffmpeg exited with {e.returncode}: {stderr}", provider="ffmpeg"
            ) from e
