#!/usr/bin/env python3
"""Tests for the PCM codec.

Tests: base64 framing, float -> int16 encoding (clamping, asymmetric scale),
       int16 -> PlaybackBuffer decoding (odd bytes, empty input, channels).

Run: python3 test_pcm_codec.py
"""

import asyncio
import os
import struct
import sys
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent))

from pcm_codec import (PLAYBACK_SAMPLE_RATE, base64_decode, base64_encode,
                       decode_inbound, encode_outbound)

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    def decorator(fn):
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        if asyncio.iscoroutinefunction(fn):
            asyncio.run(fn())
        else:
            fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} -- {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} -- {type(e).__name__}: {e}")


def ints(data: bytes) -> list:
    return list(struct.unpack(f"<{len(data) // 2}h", data))


# ======================================================================
# Test Group 1: base64 framing
# ======================================================================

@test("base64 round-trips arbitrary byte sequences")
def test_base64_roundtrip():
    samples = [b"", b"\x00", b"\xff\xfe", bytes(range(256)), os.urandom(4097)]
    for data in samples:
        text = base64_encode(data)
        assert isinstance(text, str)
        assert base64_decode(text) == data, f"Round-trip failed for {len(data)} bytes"


# ======================================================================
# Test Group 2: encode_outbound
# ======================================================================

@test("1.0 encodes to 32767 and -1.0 to -32768")
def test_encode_extremes():
    assert ints(encode_outbound([1.0, -1.0])) == [32767, -32768]


@test("Out-of-range samples are clamped")
def test_encode_clamps():
    assert ints(encode_outbound([1.7, -3.0, 0.0])) == [32767, -32768, 0]


@test("Encoding truncates toward zero with asymmetric scale")
def test_encode_truncates():
    # 0.5 * 32767 = 16383.5 -> 16383 ; -0.5 * 32768 = -16384
    assert ints(encode_outbound([0.5, -0.5])) == [16383, -16384]


@test("Output is little-endian, two bytes per sample")
def test_encode_layout():
    data = encode_outbound(np.zeros(4096, dtype=np.float32))
    assert len(data) == 8192
    assert encode_outbound([1.0]) == b"\xff\x7f"


@test("NaN samples encode as silence")
def test_encode_nan():
    assert ints(encode_outbound([float("nan")])) == [0]


# ======================================================================
# Test Group 3: decode_inbound
# ======================================================================

@test("Empty input decodes to one frame of silence")
def test_decode_empty():
    buf = decode_inbound(b"")
    assert buf.frame_count == 1
    assert buf.channel_count == 1
    assert float(buf.channels[0, 0]) == 0.0
    assert buf.sample_rate == PLAYBACK_SAMPLE_RATE


@test("Single byte decodes to one frame of silence")
def test_decode_one_byte():
    buf = decode_inbound(b"\x7f")
    assert buf.frame_count == 1
    assert float(buf.channels[0, 0]) == 0.0


@test("Odd trailing byte is dropped")
def test_decode_odd_length():
    buf = decode_inbound(struct.pack("<h", 16384) + b"\x01")
    assert buf.frame_count == 1
    assert float(buf.channels[0, 0]) == 0.5


@test("Decoding divides by 32768")
def test_decode_scale():
    buf = decode_inbound(struct.pack("<3h", -32768, 0, 32767))
    values = buf.channels[0].tolist()
    assert values[0] == -1.0
    assert values[1] == 0.0
    assert values[2] == 32767 / 32768
    assert buf.channels.dtype == np.float32


@test("Interleaved stereo is split per channel")
def test_decode_stereo():
    buf = decode_inbound(struct.pack("<4h", 1, 2, 3, 4), channel_count=2)
    assert buf.channel_count == 2
    assert buf.frame_count == 2
    assert (buf.channels[0] * 32768).tolist() == [1.0, 3.0]
    assert (buf.channels[1] * 32768).tolist() == [2.0, 4.0]


@test("Duration follows frame count and sample rate")
def test_decode_duration():
    buf = decode_inbound(b"\x00\x00" * 12000, sample_rate=24000)
    assert buf.duration == 0.5


@test("Encode then decode stays within quantization error")
def test_codec_quantization():
    values = [0.5, -0.5, 0.25, -0.75, 0.123, -0.987, 0.999]
    decoded = decode_inbound(encode_outbound(values)).channels[0]
    for original, back in zip(values, decoded.tolist()):
        # Negative side: < 1/32768. Positive side scales by 32767 on the way
        # out and 32768 on the way back, so allow one extra step.
        assert abs(original - back) <= 2.0 / 32768, f"{original} -> {back}"
        if original < 0:
            assert abs(original - back) < 1.0 / 32768, f"{original} -> {back}"


if __name__ == "__main__":
    print("=" * 60)
    print("PCM Codec Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print(f"\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
