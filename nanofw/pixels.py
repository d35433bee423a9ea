"""
Pixel Codecs — Decode raw SilverDB pixel blobs into canonical RGBA8.

Supported formats (format code → layout):
  • 0x1888  BGRA8888   4 bytes/pixel, stored B,G,R,A
  • 0x0565  RGB565     16-bit LE sample, shift-expanded (no bit replication)
  • 0x0008  Grey8      1 byte/pixel
  • 0x0004  Grey4      2 pixels/byte, high nibble first, value × 17
  • 0x0064  Palette8   u32 count + BGRA palette, 1-byte indices
  • 0x0065  Palette16  u32 count + BGRA palette, 2-byte LE indices

Pixels are tightly packed; the row length stored in the image header is
not applied.  The byte-level formats are converted with extended slice
assignment so large images never go through a per-pixel Python loop.
"""

import struct
import logging

from .errors import (
    InvalidPaletteIndex,
    OversizedPalette,
    UnsupportedPixelFormat,
    check_bounds,
)

logger = logging.getLogger(__name__)

FMT_BGRA8888 = 0x1888
FMT_RGB565 = 0x0565
FMT_GREY8 = 0x0008
FMT_GREY4 = 0x0004
FMT_PALETTE8 = 0x0064
FMT_PALETTE16 = 0x0065

FORMAT_NAMES = {
    FMT_BGRA8888: "BGRA8888",
    FMT_RGB565: "RGB565",
    FMT_GREY8: "Grey8",
    FMT_GREY4: "Grey4",
    FMT_PALETTE8: "Palette8",
    FMT_PALETTE16: "Palette16",
}

# Palette16 indices are 16-bit, anything larger cannot be addressed
MAX_PALETTE16_ENTRIES = 65536

# Nibble → 0..255 lookup tables for bytes.translate()
_GREY4_HIGH = bytes((b >> 4) * 17 for b in range(256))
_GREY4_LOW = bytes((b & 0x0F) * 17 for b in range(256))


def is_supported(fmt: int) -> bool:
    return fmt in FORMAT_NAMES


def format_name(fmt: int) -> str:
    return FORMAT_NAMES.get(fmt, f"0x{fmt:04X}")


def decode_pixels(fmt: int, data, offset: int, width: int, height: int) -> bytes:
    """
    Decode one pixel blob starting at `offset` inside `data`.

    Returns an owned RGBA8 buffer of exactly width * height * 4 bytes.
    Raises UnsupportedPixelFormat for unknown codes and TruncatedInput when
    the blob runs past the end of `data`.
    """
    decoder = _DECODERS.get(fmt)
    if decoder is None:
        raise UnsupportedPixelFormat(fmt)
    return bytes(decoder(memoryview(data), offset, width * height))


def _decode_bgra8888(view: memoryview, offset: int, count: int) -> bytearray:
    check_bounds("BGRA8888 pixels", len(view), offset, count * 4)
    src = bytes(view[offset:offset + count * 4])
    out = bytearray(count * 4)
    out[0::4] = src[2::4]
    out[1::4] = src[1::4]
    out[2::4] = src[0::4]
    out[3::4] = src[3::4]
    return out


def _decode_rgb565(view: memoryview, offset: int, count: int) -> bytearray:
    check_bounds("RGB565 pixels", len(view), offset, count * 2)
    out = bytearray(count * 4)
    i = 0
    for (c,) in struct.iter_unpack("<H", view[offset:offset + count * 2]):
        out[i] = (c & 0xF800) >> 8
        out[i + 1] = (c & 0x07E0) >> 3
        out[i + 2] = (c & 0x001F) << 3
        out[i + 3] = 255
        i += 4
    return out


def _grey_to_rgba(values, count: int) -> bytearray:
    out = bytearray(b"\xFF" * (count * 4))
    out[0::4] = values
    out[1::4] = values
    out[2::4] = values
    return out


def _decode_grey8(view: memoryview, offset: int, count: int) -> bytearray:
    check_bounds("Grey8 pixels", len(view), offset, count)
    return _grey_to_rgba(bytes(view[offset:offset + count]), count)


def _decode_grey4(view: memoryview, offset: int, count: int) -> bytearray:
    nbytes = (count + 1) // 2
    check_bounds("Grey4 pixels", len(view), offset, nbytes)
    packed = bytes(view[offset:offset + nbytes])
    samples = bytearray(nbytes * 2)
    samples[0::2] = packed.translate(_GREY4_HIGH)
    samples[1::2] = packed.translate(_GREY4_LOW)
    # Odd pixel counts leave one padding nibble in the last byte
    return _grey_to_rgba(samples[:count], count)


def read_palette(view: memoryview, offset: int, limit=None) -> tuple[list[bytes], int]:
    """
    Read a u32 entry count followed by BGRA entries.

    Returns (RGBA entries, offset just past the palette).
    """
    check_bounds("palette length", len(view), offset, 4)
    (length,) = struct.unpack_from("<I", view, offset)
    if limit is not None and length > limit:
        raise OversizedPalette(length, limit)
    offset += 4
    check_bounds("palette entries", len(view), offset, length * 4)
    raw = bytes(view[offset:offset + length * 4])
    palette = [
        bytes((raw[i + 2], raw[i + 1], raw[i], raw[i + 3]))
        for i in range(0, len(raw), 4)
    ]
    return palette, offset + length * 4


def _lookup(palette: list[bytes], indices) -> bytearray:
    out = bytearray()
    size = len(palette)
    for index in indices:
        if index >= size:
            raise InvalidPaletteIndex(index, size)
        out += palette[index]
    return out


def _decode_palette8(view: memoryview, offset: int, count: int) -> bytearray:
    palette, offset = read_palette(view, offset)
    check_bounds("Palette8 indices", len(view), offset, count)
    return _lookup(palette, bytes(view[offset:offset + count]))


def _decode_palette16(view: memoryview, offset: int, count: int) -> bytearray:
    palette, offset = read_palette(view, offset, limit=MAX_PALETTE16_ENTRIES)
    check_bounds("Palette16 indices", len(view), offset, count * 2)
    indices = (i for (i,) in struct.iter_unpack("<H", view[offset:offset + count * 2]))
    return _lookup(palette, indices)


_DECODERS = {
    FMT_BGRA8888: _decode_bgra8888,
    FMT_RGB565: _decode_rgb565,
    FMT_GREY8: _decode_grey8,
    FMT_GREY4: _decode_grey4,
    FMT_PALETTE8: _decode_palette8,
    FMT_PALETTE16: _decode_palette16,
}
