"""
Test the pixel codecs against hand-built blobs.
Covers every format code, palette bounds and truncated input.
"""
import struct

from nanofw.errors import (
    InvalidPaletteIndex,
    OversizedPalette,
    TruncatedInput,
    UnsupportedPixelFormat,
)
from nanofw.pixels import (
    FMT_BGRA8888,
    FMT_GREY4,
    FMT_GREY8,
    FMT_PALETTE16,
    FMT_PALETTE8,
    FMT_RGB565,
    decode_pixels,
    format_name,
    is_supported,
    read_palette,
)
from synthetic_firmware import bgra_payload, expect_error, palette_payload


def main():
    print("=" * 60)
    print("  Pixel Codecs — Test Suite")
    print("=" * 60)
    print()

    test_bgra8888()
    test_rgb565()
    test_grey8()
    test_grey4()
    test_palette8()
    test_palette16()
    test_palette_errors()
    test_unsupported_and_truncated()

    print()
    print("=" * 60)
    print("  ALL TESTS PASSED ✅")
    print("=" * 60)


def test_bgra8888():
    print("── Test: BGRA8888 ──")
    blob = bgra_payload([(10, 20, 30, 40), (255, 0, 128, 0)])
    out = decode_pixels(FMT_BGRA8888, blob, 0, 2, 1)
    assert out == bytes([10, 20, 30, 40, 255, 0, 128, 0])

    # Offset into a larger buffer
    out = decode_pixels(FMT_BGRA8888, b"\xEE" * 5 + blob, 5, 1, 1)
    assert out == bytes([10, 20, 30, 40])
    print("  ✅ BGRA8888: PASS")


def test_rgb565():
    print("── Test: RGB565 ──")
    samples = [0xF800, 0x07E0, 0x001F, 0xFFFF, 0x0000]
    blob = b"".join(struct.pack("<H", s) for s in samples)
    out = decode_pixels(FMT_RGB565, blob, 0, 5, 1)
    assert out[0:4] == bytes([248, 0, 0, 255])
    assert out[4:8] == bytes([0, 252, 0, 255])
    assert out[8:12] == bytes([0, 0, 248, 255])
    # No bit replication: full white stays short of 255
    assert out[12:16] == bytes([248, 252, 248, 255])
    assert out[16:20] == bytes([0, 0, 0, 255])
    print("  ✅ RGB565: PASS")


def test_grey8():
    print("── Test: Grey8 ──")
    out = decode_pixels(FMT_GREY8, bytes([0, 128, 255]), 0, 3, 1)
    assert out == bytes([0, 0, 0, 255, 128, 128, 128, 255, 255, 255, 255, 255])
    print("  ✅ Grey8: PASS")


def test_grey4():
    print("── Test: Grey4 ──")
    # High nibble first, each nibble scaled × 17
    out = decode_pixels(FMT_GREY4, bytes([0xF0, 0x1E]), 0, 2, 2)
    assert len(out) == 16
    values = [out[i] for i in range(0, 16, 4)]
    assert values == [255, 0, 17, 238]
    assert all(out[i + 3] == 255 for i in range(0, 16, 4))

    # Odd pixel count: the last low nibble is padding
    out = decode_pixels(FMT_GREY4, bytes([0x8F, 0x40]), 0, 3, 1)
    assert [out[i] for i in range(0, 12, 4)] == [136, 255, 68]
    print("  ✅ Grey4: PASS")


def test_palette8():
    print("── Test: Palette8 ──")
    palette = [(255, 0, 0, 255), (0, 0, 255, 128)]
    blob = palette_payload(palette, [1, 0, 1])
    out = decode_pixels(FMT_PALETTE8, blob, 0, 3, 1)
    assert out == bytes([0, 0, 255, 128, 255, 0, 0, 255, 0, 0, 255, 128])
    print("  ✅ Palette8: PASS")


def test_palette16():
    print("── Test: Palette16 ──")
    palette = [(i & 0xFF, i >> 8, 0, 255) for i in range(300)]
    blob = palette_payload(palette, [299, 0], index_size=2)
    out = decode_pixels(FMT_PALETTE16, blob, 0, 1, 2)
    assert out[0:4] == bytes([43, 1, 0, 255])
    assert out[4:8] == bytes([0, 0, 0, 255])

    entries, end = read_palette(memoryview(blob), 0)
    assert len(entries) == 300
    assert end == 4 + 300 * 4
    print("  ✅ Palette16: PASS")


def test_palette_errors():
    print("── Test: palette errors ──")
    blob = palette_payload([(1, 2, 3, 4), (5, 6, 7, 8)], [2])
    err = expect_error(InvalidPaletteIndex, decode_pixels, FMT_PALETTE8, blob, 0, 1, 1)
    assert err.index == 2 and err.palette_size == 2

    oversized = struct.pack("<I", 65537)
    err = expect_error(OversizedPalette, decode_pixels, FMT_PALETTE16, oversized, 0, 1, 1)
    assert err.count == 65537

    # Declared palette longer than the buffer
    expect_error(TruncatedInput, decode_pixels, FMT_PALETTE8, struct.pack("<I", 10), 0, 1, 1)
    print("  ✅ palette errors: PASS")


def test_unsupported_and_truncated():
    print("── Test: unsupported / truncated ──")
    err = expect_error(UnsupportedPixelFormat, decode_pixels, 0x1234, b"\x00" * 64, 0, 1, 1)
    assert err.format == 0x1234
    assert "0x1234" in str(err)

    expect_error(TruncatedInput, decode_pixels, FMT_BGRA8888, b"\x00" * 7, 0, 2, 1)
    expect_error(TruncatedInput, decode_pixels, FMT_RGB565, b"\x00" * 3, 0, 2, 1)
    expect_error(TruncatedInput, decode_pixels, FMT_GREY8, b"\x00" * 4, 2, 3, 1)

    assert decode_pixels(FMT_GREY8, b"", 0, 0, 0) == b""
    assert is_supported(FMT_GREY4) and not is_supported(0x0042)
    assert format_name(FMT_RGB565) == "RGB565"
    assert format_name(0x0042) == "0x0042"
    print("  ✅ unsupported / truncated: PASS")


if __name__ == "__main__":
    main()
