"""
FFmpeg-backed encoding engine.

Probes sources with ffprobe and encodes HLS renditions with ffmpeg, one
subprocess per quality. Each quality succeeds or fails on its own; the master
playlist only lists the qualities that produced output.

Output layout in ``output_dir``:
    master.m3u8
    <quality>.m3u8
    <quality>_0000.ts, <quality>_0001.ts, ...
"""

import asyncio
import json
import logging
import math
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from config import (
    ERROR_DETAIL_MAX_LENGTH,
    FFMPEG_TIMEOUT_BASE_MULTIPLIER,
    FFMPEG_TIMEOUT_MAXIMUM,
    FFMPEG_TIMEOUT_MINIMUM,
    FFMPEG_TIMEOUT_RESOLUTION_MULTIPLIERS,
    FFPROBE_TIMEOUT,
    HLS_SEGMENT_DURATION,
    QUALITY_PRESETS,
    THUMBNAIL_WIDTH,
    QualityPreset,
)
from ingest.contracts import (
    EncodingProgress,
    FailedQuality,
    HLSResult,
    ProgressCallback,
    QualityStartCallback,
    VariantPlaylist,
    VideoMetadata,
)
from ingest.errors import EncodingRejectedError, truncate_error

logger = logging.getLogger(__name__)

MASTER_PLAYLIST_NAME = "master.m3u8"


def select_qualities(source_height: int, presets: Sequence[QualityPreset] = QUALITY_PRESETS) -> List[QualityPreset]:
    """
    Presets at or below the source height.

    Sources smaller than every preset still get the lowest one so the video
    always has something to play.
    """
    selected = [q for q in presets if q.height <= source_height]
    if not selected and presets:
        selected = [min(presets, key=lambda q: q.height)]
    return selected


def calculate_ffmpeg_timeout(duration: float, height: int = 1080) -> float:
    """
    Timeout for one ffmpeg encode, scaled by duration and target height.

    Returns:
        Timeout in seconds, clamped between min and max values
    """
    resolution_multiplier = FFMPEG_TIMEOUT_RESOLUTION_MULTIPLIERS.get(height, 2.0)
    timeout = duration * FFMPEG_TIMEOUT_BASE_MULTIPLIER * resolution_multiplier
    return max(FFMPEG_TIMEOUT_MINIMUM, min(timeout, FFMPEG_TIMEOUT_MAXIMUM))


def variant_playlist_name(quality_name: str) -> str:
    return f"{quality_name}.m3u8"


def segment_files(output_dir: Path, quality_name: str) -> List[Path]:
    return sorted(output_dir.glob(f"{quality_name}_*.ts"))


def render_master_playlist(qualities: Sequence[QualityPreset]) -> str:
    """Master playlist text, highest bandwidth first so players start at the best rendition."""
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", ""]
    for quality in sorted(qualities, key=lambda q: q.bandwidth, reverse=True):
        lines.append(f"#EXT-X-STREAM-INF:BANDWIDTH={quality.bandwidth},RESOLUTION={quality.width}x{quality.height}")
        lines.append(variant_playlist_name(quality.name))
    return "\n".join(lines) + "\n"


def write_master_playlist(output_dir: Path, qualities: Sequence[QualityPreset]) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / MASTER_PLAYLIST_NAME
    path.write_text(render_master_playlist(qualities))
    return path


def _parse_duration(raw) -> float:
    if raw is None:
        raise ValueError("Could not determine video duration")
    try:
        duration = float(raw)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Could not convert duration to float: {raw!r}") from e
    if math.isnan(duration) or math.isinf(duration) or duration <= 0:
        raise ValueError(f"Invalid duration value: {raw}")
    return duration


def _parse_fps(raw: Optional[str]) -> Optional[float]:
    """Parse ffprobe's ``r_frame_rate`` ("30000/1001")."""
    if not raw:
        return None
    try:
        num, _, den = raw.partition("/")
        value = float(num) / float(den or 1)
    except (ValueError, ZeroDivisionError):
        return None
    return round(value, 3) if value > 0 else None


def _opt_int(raw) -> Optional[int]:
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


async def cleanup_ffmpeg_process(process: asyncio.subprocess.Process, context: str = "FFmpeg") -> None:
    """Kill a subprocess that is still running and reap it."""
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            # Exited between the returncode check and kill()
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


async def run_ffmpeg_with_progress(
    cmd: List[str],
    duration: float,
    timeout: float,
    progress_callback: Optional[Callable[[int, Optional[int], Optional[str]], Awaitable[None]]] = None,
    context: str = "FFmpeg",
) -> Tuple[bool, Optional[str]]:
    """
    Run an ffmpeg command that writes ``-progress pipe:1`` output.

    Args:
        cmd: FFmpeg command as list of arguments
        duration: Source duration in seconds (for percent calculation)
        timeout: Kill the process after this many seconds
        progress_callback: Async callback(percent, frames, timemark)
        context: Description for logging

    Returns:
        (success, error_message)
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,  # stderr would fill its pipe and block ffmpeg
    )

    last_percent = 0
    frames: Optional[int] = None
    start_time = asyncio.get_running_loop().time()
    timed_out = False

    async def read_progress():
        nonlocal last_percent, frames
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            key, _, value = line.decode("utf-8", errors="ignore").strip().partition("=")
            if key == "frame":
                frames = _opt_int(value)
            elif key == "out_time_ms":
                try:
                    seconds = int(value) / 1_000_000.0
                except ValueError:
                    continue
                if duration <= 0:
                    continue
                percent = min(100, int(seconds / duration * 100))
                if percent > last_percent:
                    last_percent = percent
                    if progress_callback:
                        timemark = time.strftime("%H:%M:%S", time.gmtime(seconds))
                        await progress_callback(percent, frames, timemark)

    async def timeout_killer():
        nonlocal timed_out
        await asyncio.sleep(timeout)
        timed_out = True
        logger.warning(f"{context} exceeded {timeout:.0f}s limit, killing it")
        try:
            process.kill()
        except ProcessLookupError:
            pass

    timeout_task = asyncio.create_task(timeout_killer())
    try:
        await read_progress()
        await process.wait()
    finally:
        timeout_task.cancel()
        try:
            await timeout_task
        except asyncio.CancelledError:
            pass
        await cleanup_ffmpeg_process(process, context)

    if timed_out:
        elapsed = asyncio.get_running_loop().time() - start_time
        return False, f"{context} timed out after {elapsed:.0f} seconds (limit: {timeout:.0f}s)"

    if process.returncode != 0:
        return False, f"{context} exited with code {process.returncode}"

    return True, None


def build_hls_command(input_path: Path, output_dir: Path, quality: QualityPreset) -> List[str]:
    bitrate_k = int(quality.bitrate.rstrip("k"))
    return [
        "ffmpeg",
        "-y",
        "-i",
        str(input_path),
        "-c:v",
        "libx264",
        "-preset",
        "medium",
        "-crf",
        "23",
        "-b:v",
        quality.bitrate,
        "-maxrate",
        quality.bitrate,
        "-bufsize",
        f"{bitrate_k * 2}k",
        "-vf",
        f"scale=-2:{quality.height}",
        "-c:a",
        "aac",
        "-b:a",
        quality.audio_bitrate,
        "-ac",
        "2",
        "-hls_time",
        str(HLS_SEGMENT_DURATION),
        "-hls_list_size",
        "0",
        "-hls_segment_filename",
        str(output_dir / f"{quality.name}_%04d.ts"),
        "-progress",
        "pipe:1",
        "-f",
        "hls",
        str(output_dir / variant_playlist_name(quality.name)),
    ]


class FFmpegEncodingEngine:
    """Encoding engine that shells out to ffprobe and ffmpeg."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", ffprobe_path: str = "ffprobe"):
        self._ffmpeg = ffmpeg_path
        self._ffprobe = ffprobe_path

    async def extract_metadata(self, path: Path) -> VideoMetadata:
        """
        Probe a source file.

        Raises:
            EncodingRejectedError: If the file has no video stream
            RuntimeError: If ffprobe fails or times out
        """
        cmd = [self._ffprobe, "-v", "quiet", "-print_format", "json", "-show_format", "-show_streams", str(path)]
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=FFPROBE_TIMEOUT)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise RuntimeError(f"ffprobe timed out after {FFPROBE_TIMEOUT}s")

        if process.returncode != 0:
            raise RuntimeError(
                f"ffprobe failed: {truncate_error(stderr.decode('utf-8', errors='ignore'), ERROR_DETAIL_MAX_LENGTH)}"
            )

        data = json.loads(stdout.decode("utf-8", errors="ignore") or "{}")
        video_stream = next((s for s in data.get("streams", []) if s.get("codec_type") == "video"), None)
        if not video_stream:
            raise EncodingRejectedError("No video stream found")

        fmt = data.get("format", {})
        try:
            duration = _parse_duration(fmt.get("duration") or video_stream.get("duration"))
        except ValueError as e:
            raise EncodingRejectedError(str(e)) from e

        return VideoMetadata(
            duration=duration,
            width=int(video_stream.get("width", 0)),
            height=int(video_stream.get("height", 0)),
            codec=video_stream.get("codec_name", "unknown"),
            bitrate=_opt_int(fmt.get("bit_rate")),
            fps=_parse_fps(video_stream.get("r_frame_rate")),
            file_size=_opt_int(fmt.get("size")),
            format=fmt.get("format_name"),
        )

    async def generate_thumbnail(self, path: Path, output_path: Path, timestamp: float, timeout: float = 60.0) -> None:
        """
        Grab one frame as a JPEG.

        Raises:
            RuntimeError: If ffmpeg fails or times out
        """
        output_path.parent.mkdir(parents=True, exist_ok=True)
        # -ss before -i seeks to the nearest keyframe without decoding up to it
        cmd = [
            self._ffmpeg,
            "-y",
            "-ss",
            str(timestamp),
            "-i",
            str(path),
            "-vframes",
            "1",
            "-vf",
            f"scale={THUMBNAIL_WIDTH}:-1",
            str(output_path),
        ]
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise RuntimeError(f"Thumbnail generation timed out after {timeout}s")

        if process.returncode != 0:
            error_msg = truncate_error(stderr.decode("utf-8", errors="ignore"), ERROR_DETAIL_MAX_LENGTH)
            raise RuntimeError(f"Thumbnail generation failed: {error_msg}")

    async def encode_to_hls(
        self,
        path: Path,
        output_dir: Path,
        qualities: Sequence[QualityPreset],
        on_progress: Optional[ProgressCallback] = None,
        duration: Optional[float] = None,
        on_quality_start: Optional[QualityStartCallback] = None,
    ) -> HLSResult:
        """
        Encode each quality independently; a failed quality never stops the others.
        """
        output_dir.mkdir(parents=True, exist_ok=True)
        if duration is None:
            duration = (await self.extract_metadata(path)).duration

        started = time.monotonic()
        succeeded: List[QualityPreset] = []
        result = HLSResult(master_playlist_path=None)

        for quality in qualities:
            async def report(percent: int, frames: Optional[int], timemark: Optional[str], name=quality.name):
                if on_progress:
                    await on_progress(EncodingProgress(quality=name, percent=percent, frames=frames, timemark=timemark))

            if on_quality_start:
                await on_quality_start(quality)
            cmd = build_hls_command(path, output_dir, quality)
            cmd[0] = self._ffmpeg
            timeout = calculate_ffmpeg_timeout(duration, quality.height)
            logger.info(f"Encoding {quality.name} (timeout {timeout:.0f}s)")
            try:
                success, error = await run_ffmpeg_with_progress(
                    cmd, duration, timeout, report, context=f"FFmpeg encode {quality.name}"
                )
            except OSError as e:
                success, error = False, f"FFmpeg encode {quality.name} could not start: {e}"

            playlist = output_dir / variant_playlist_name(quality.name)
            if success and not playlist.exists():
                success, error = False, f"FFmpeg encode {quality.name} produced no playlist"

            if success:
                succeeded.append(quality)
                result.variant_playlists.append(
                    VariantPlaylist(
                        quality=quality.name,
                        playlist_path=playlist,
                        segment_paths=segment_files(output_dir, quality.name),
                    )
                )
            else:
                logger.warning(f"Encoding {quality.name} failed: {error}")
                result.failed_qualities.append(FailedQuality(quality=quality.name, error=error or "unknown error"))

        if succeeded:
            result.master_playlist_path = write_master_playlist(output_dir, succeeded)
        result.encoding_time = time.monotonic() - started
        return result
