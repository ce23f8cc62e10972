"""
Media normalization for uploaded files.
Video (.mov/.mp4) → audio-only MP3 via ffmpeg.
Audio (.mp3/.wav/.m4a) → validated and used as-is.
"""

import logging
import subprocess
from pathlib import Path

from clipnotes.core.security_utils import run_subprocess_capture
from clipnotes.core.error_codes import ValidationError, JobError
from clipnotes.core.url_parse import media_extension
from clipnotes.core.constants import (
    ErrorCode, VIDEO_EXTENSIONS, AUDIO_EXTENSIONS,
    NORM_CHANNELS, NORM_SAMPLE_RATE, NORM_BITRATE, NORM_FORMAT,
)

logger = logging.getLogger(__name__)


def check_supported(media_ref: str) -> str:
    """Return the media extension, or raise ValidationError for anything else."""
    ext = media_extension(media_ref)
    if ext not in VIDEO_EXTENSIONS + AUDIO_EXTENSIONS:
        raise ValidationError(
            "Unsupported file format. Expected .mov, .mp4, .mp3, .wav, or .m4a",
            code=ErrorCode.UNSUPPORTED_MEDIA,
        )
    return ext


def extract_audio(input_path: Path, output_dir: Path) -> Path:
    """
    Drop the video stream and encode mono 16kHz MP3.
    Returns path to the audio file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    output_path = output_dir / f"normalized.{NORM_FORMAT}"

    args = [
        "ffmpeg",
        "-y",                           # overwrite
        "-i", str(input_path),
        "-vn",                          # no video
        "-ar", str(NORM_SAMPLE_RATE),
        "-ac", str(NORM_CHANNELS),
        "-b:a", NORM_BITRATE,
        "-codec:a", "libmp3lame",
        str(output_path),
    ]

    try:
        result = run_subprocess_capture(args, timeout=600)
    except (OSError, subprocess.SubprocessError) as e:
        raise JobError(f"ffmpeg audio extraction failed: {e}", code=ErrorCode.FFMPEG_NORMALIZE)

    if result.returncode != 0:
        stderr = result.stderr or ""
        raise JobError(f"ffmpeg failed (rc={result.returncode}): {stderr[:300]}",
                       code=ErrorCode.FFMPEG_NORMALIZE)

    if not output_path.exists():
        raise JobError("Normalized file not created", code=ErrorCode.FFMPEG_NORMALIZE)

    logger.info("Extracted audio: %s", output_path)
    return output_path


class MediaNormalizer:
    """Turns an uploaded media reference into a local audio file ready for transcription."""

    def __init__(self, store):
        self.store = store

    def normalize(self, media_ref: str, workspace: Path) -> Path:
        ext = check_supported(media_ref)

        source_path = self.store.fetch_to_file(media_ref, workspace / "source" / f"source{ext}")
        if source_path.stat().st_size == 0:
            raise ValidationError("Uploaded media file is empty", code=ErrorCode.UNSUPPORTED_MEDIA)

        if ext in VIDEO_EXTENSIONS:
            logger.info("Detected video file, converting to MP3")
            return extract_audio(source_path, workspace / "normalized")

        logger.info("Detected audio file, using as-is")
        return source_path
