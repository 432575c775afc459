"""Audio payload validation and container sniffing.

Checks downloaded bytes against size bounds and identifies the container
format from its magic bytes. Unknown formats are tolerated: the
transcription service gets a chance at them, declared as WAV.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from call_bridge.utils.errors import AudioValidationError

logger = logging.getLogger(__name__)

MIN_AUDIO_BYTES = 1000
MAX_AUDIO_BYTES = 25 * 1024 * 1024  # transcription upload limit
MIN_SNIFF_BYTES = 12
DEFAULT_FORMAT = "wav"

SUPPORTED_FORMATS = ("wav", "mp3", "ogg", "flac", "m4a", "webm")


@dataclass(frozen=True)
class AudioCheck:
    """Outcome of validating an audio payload."""

    size_bytes: int
    format: str
    detected: bool


def detect_format(data: bytes) -> str | None:
    """Identify the audio container from its leading bytes.

    Args:
        data: Raw audio bytes.

    Returns:
        One of SUPPORTED_FORMATS, or None if unrecognized or shorter than
        12 bytes.
    """
    if len(data) < MIN_SNIFF_BYTES:
        return None

    if data[0:4] == b"RIFF" and data[8:12] == b"WAVE":
        return "wav"
    if data[0:3] == b"ID3":
        return "mp3"
    if data[0:4] == b"OggS":
        return "ogg"
    if data[0:4] == b"fLaC":
        return "flac"
    if data[4:8] == b"ftyp":
        return "m4a"
    if data[0:4] == b"\x1a\x45\xdf\xa3":
        return "webm"
    # MPEG audio frame sync: 11 set bits
    if data[0] == 0xFF and (data[1] & 0xE0) == 0xE0:
        return "mp3"
    return None


def validate_audio(
    data: bytes,
    min_bytes: int = MIN_AUDIO_BYTES,
    max_bytes: int = MAX_AUDIO_BYTES,
    call_id: str | None = None,
) -> AudioCheck:
    """Enforce size bounds and determine the declared audio format.

    Args:
        data: Raw audio bytes (not modified).
        min_bytes: Smallest accepted payload.
        max_bytes: Largest accepted payload.
        call_id: Call identifier for log records and errors.

    Returns:
        AudioCheck with size, declared format and whether it was detected.

    Raises:
        AudioValidationError: If the payload is too small or too large.
    """
    size = len(data)
    if size < min_bytes:
        raise AudioValidationError(
            f"Audio too small: {size} bytes (minimum {min_bytes})",
            call_id=call_id,
            size_bytes=size,
        )
    if size > max_bytes:
        raise AudioValidationError(
            f"Audio too large: {size} bytes (maximum {max_bytes})",
            call_id=call_id,
            size_bytes=size,
        )

    detected = detect_format(data)
    if detected is None:
        logger.warning(
            "Unrecognized audio format, sending as %s (first bytes: %s)",
            DEFAULT_FORMAT,
            data[:MIN_SNIFF_BYTES].hex(),
            extra={"call_id": call_id},
        )
        return AudioCheck(size_bytes=size, format=DEFAULT_FORMAT, detected=False)

    logger.debug(
        "Detected audio format %s", detected, extra={"call_id": call_id}
    )
    return AudioCheck(size_bytes=size, format=detected, detected=True)
