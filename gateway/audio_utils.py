from __future__ import annotations

from typing import Optional

from stt_service.silence import whole_samples


def extract_pcm(data: bytes, min_bytes: int = 100) -> Optional[bytes]:
    """Return the frame as whole 16-bit samples, or None if it is not audio.

    Browsers occasionally push tiny binary frames (keepalives, empty
    processor buffers); anything at or below ``min_bytes`` is treated as
    noise.
    """
    if len(data) <= min_bytes:
        return None
    pcm = whole_samples(data)
    return pcm or None
