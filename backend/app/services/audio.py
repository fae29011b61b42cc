"""
SilentLine - Audio & Image Helpers

Raw caller audio arrives as unframed PCM. Generic audio-understanding APIs
need a self-describing container, so each analysis round wraps its PCM in
a WAV header carrying sample rate, channel count and bit depth.
"""

from __future__ import annotations

import io
import wave
from typing import Optional


def pcm_to_wav(
    pcm_bytes: bytes,
    sample_rate: int = 16000,
    channels: int = 1,
    sample_width: int = 2,
) -> bytes:
    """
    Wrap raw little-endian PCM in a WAV container.

    A trailing partial frame (fewer bytes than channels * sample_width) is
    truncated so the header's frame count stays consistent.

    Args:
        pcm_bytes: Raw PCM samples
        sample_rate: Samples per second
        channels: Interleaved channel count
        sample_width: Bytes per sample (2 = 16-bit)

    Returns:
        Complete WAV file bytes
    """
    frame_size = channels * sample_width
    usable = len(pcm_bytes) - (len(pcm_bytes) % frame_size)

    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav_file:
        wav_file.setnchannels(channels)
        wav_file.setsampwidth(sample_width)
        wav_file.setframerate(sample_rate)
        wav_file.writeframes(pcm_bytes[:usable])
    return buffer.getvalue()


def pcm_duration_seconds(
    num_bytes: int,
    sample_rate: int = 16000,
    channels: int = 1,
    sample_width: int = 2,
) -> float:
    return num_bytes / float(sample_rate * channels * sample_width)


def detect_image_mime(data: bytes) -> Optional[str]:
    """Sniff the MIME type of an encoded still frame from its magic bytes."""
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None
