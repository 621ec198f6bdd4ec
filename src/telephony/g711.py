from __future__ import annotations

import numpy as np

from relay.errors import TranscodeError

# G.711 mu-law companding constants for 16-bit linear input.
ULAW_BIAS = 0x84
ULAW_CLIP = 32635


def ulaw_decode(ulaw_bytes: bytes) -> np.ndarray:
    """Decode G.711 mu-law bytes to a PCM16 int16 array."""

    data = np.frombuffer(ulaw_bytes, dtype=np.uint8)

    mu = np.bitwise_not(data).astype(np.int32)
    sign = np.bitwise_and(mu, 0x80)
    exponent = np.right_shift(np.bitwise_and(mu, 0x70), 4)
    mantissa = np.bitwise_and(mu, 0x0F)

    magnitude = (((mantissa << 3) + ULAW_BIAS) << exponent) - ULAW_BIAS
    pcm = np.where(sign != 0, -magnitude, magnitude)

    return pcm.astype(np.int16)


def ulaw_encode(pcm16: np.ndarray) -> bytes:
    """Encode a PCM16 int16 array to G.711 mu-law bytes.

    This is a vectorized mu-law encoder suitable for realtime packetization.
    """

    if pcm16.size == 0:
        return b""

    x = pcm16.astype(np.int32)
    sign = (x < 0).astype(np.int32)
    x = np.abs(x)

    x = np.minimum(x, ULAW_CLIP)
    x = x + ULAW_BIAS

    # Find exponent and mantissa.
    exponent = np.zeros_like(x)
    for exp in range(8):
        exponent = np.where(x >= (1 << (exp + 7)), exp, exponent)

    mantissa = (x >> (exponent + 3)) & 0x0F

    ulaw = np.bitwise_not((sign << 7) | (exponent << 4) | mantissa).astype(np.uint8)
    return ulaw.tobytes()


def ulaw_to_pcm16(ulaw_bytes: bytes) -> bytes:
    """Expand mu-law audio to little-endian PCM16 bytes (twice the input length)."""

    return ulaw_decode(ulaw_bytes).astype("<i2").tobytes()


def pcm16_to_ulaw(pcm_bytes: bytes) -> bytes:
    """Compress little-endian PCM16 bytes to mu-law (half the input length).

    Raises:
        TranscodeError: if the buffer does not hold a whole number of samples.
    """

    if len(pcm_bytes) % 2:
        raise TranscodeError(f"PCM16 buffer has odd length {len(pcm_bytes)}")

    return ulaw_encode(np.frombuffer(pcm_bytes, dtype="<i2"))
