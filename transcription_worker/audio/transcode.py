"""Audio normaliser using ffmpeg.

Converts any ffmpeg-readable input to a compact 16kHz mono MP3 at
32 kbit/s, which keeps uploads to the transcription API small.
"""

import os
import shutil
import subprocess
import tempfile

from transcription_worker.utils.errors import TranscodeError

TARGET_SAMPLE_RATE = 16000
TARGET_CHANNELS = 1
TARGET_BITRATE = "32k"
TARGET_BITRATE_BPS = 32_000

TRANSCODE_TIMEOUT_SECONDS = 600


def _check_ffmpeg_available() -> str:
    """Verify ffmpeg is available on the system.

    Returns:
        Path to the ffmpeg binary.

    Raises:
        TranscodeError: If ffmpeg is not found.
    """
    ffmpeg_path = shutil.which("ffmpeg")
    if ffmpeg_path is None:
        raise TranscodeError("ffmpeg binary not found on PATH")
    return ffmpeg_path


def build_ffmpeg_command(
    ffmpeg_path: str, input_path: str, output_path: str
) -> list[str]:
    """Argument vector for the fixed normalisation parameters."""
    return [
        ffmpeg_path,
        "-y",
        "-i",
        input_path,
        "-ac",
        str(TARGET_CHANNELS),
        "-ar",
        str(TARGET_SAMPLE_RATE),
        "-b:a",
        TARGET_BITRATE,
        output_path,
    ]


def estimate_duration_seconds(mp3_bytes: bytes) -> float:
    """Approximate duration of audio produced by transcode_audio()."""
    return len(mp3_bytes) * 8 / TARGET_BITRATE_BPS


def transcode_audio(audio: bytes) -> bytes:
    """Transcode raw audio bytes to 16kHz mono 32 kbit/s MP3 bytes.

    Blocking: run it in a worker thread from async code.

    Args:
        audio: Input audio in any container ffmpeg can read.

    Returns:
        MP3-encoded bytes.

    Raises:
        TranscodeError: If ffmpeg is missing, exits non-zero, times out,
            or produces no output.
    """
    if not audio:
        raise TranscodeError("Input audio is empty")

    ffmpeg_path = _check_ffmpeg_available()

    with tempfile.TemporaryDirectory(prefix="ffmpeg-") as tmp_dir:
        input_path = os.path.join(tmp_dir, "input")
        output_path = os.path.join(tmp_dir, "output.mp3")

        with open(input_path, "wb") as f:
            f.write(audio)

        cmd = build_ffmpeg_command(ffmpeg_path, input_path, output_path)

        try:
            subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                text=True,
                timeout=TRANSCODE_TIMEOUT_SECONDS,
            )
        except subprocess.CalledProcessError as exc:
            stderr = exc.stderr.strip() if exc.stderr else ""
            raise TranscodeError(
                f"ffmpeg exited with code {exc.returncode}: {stderr}",
                exit_status=exc.returncode,
                stderr=stderr,
            ) from exc
        except subprocess.TimeoutExpired as exc:
            stderr_snippet = ""
            if exc.stderr:
                stderr = exc.stderr
                if isinstance(stderr, bytes):
                    stderr = stderr.decode("utf-8", errors="replace")
                stderr_snippet = f" stderr: {stderr.strip()[:200]}"
            raise TranscodeError(
                f"ffmpeg timed out after {TRANSCODE_TIMEOUT_SECONDS} seconds."
                f"{stderr_snippet}",
            ) from exc
        except OSError as exc:
            raise TranscodeError(f"ffmpeg could not be started: {exc}") from exc

        if not os.path.exists(output_path):
            raise TranscodeError(f"ffmpeg produced no output file: {output_path}")

        with open(output_path, "rb") as f:
            return f.read()
