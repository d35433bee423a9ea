"""
Extraction errors — one exception type per failure class.

Structural failures (container, partition table, signed image, FAT16,
database header) propagate to the caller and abort the stage.  Failures
raised while decoding a single SilverDB entry are caught by the batch
decoder and recorded as skipped entries instead.
"""

from typing import Optional


class ExtractionError(Exception):
    """Top-level exception for this package."""

    def __init__(self, message: str, offset: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.offset = offset

    def __str__(self):
        if self.offset is None:
            return self.message
        return f"{self.message} (at 0x{self.offset:X})"


class FormatMismatch(ExtractionError):
    """Bad magic, tag, version or boot parameters."""


class TruncatedInput(ExtractionError):
    """A region extends past the end of its buffer."""

    def __init__(self, what: str, offset: int, length: int, available: int):
        super().__init__(
            f"{what}: need {length} bytes at 0x{offset:X}, buffer holds {available}",
        )
        self.region = what
        self.length = length
        self.available = available
        self.offset = offset

    def __str__(self):
        return self.message


class EntryNotFound(ExtractionError):
    """A named archive member, partition type or file is missing."""

    def __init__(self, kind: str, name: str):
        super().__init__(f"{kind} not found: {name}")
        self.kind = kind
        self.name = name


class DecompressionError(ExtractionError):
    """The matched archive member could not be decompressed."""


class UnsupportedPixelFormat(ExtractionError):
    def __init__(self, fmt: int):
        super().__init__(f"Unsupported pixel format 0x{fmt:04X}")
        self.format = fmt


class OversizedPalette(ExtractionError):
    def __init__(self, count: int, limit: int):
        super().__init__(f"Palette holds {count} entries, limit is {limit}")
        self.count = count
        self.limit = limit


class InvalidPaletteIndex(ExtractionError):
    def __init__(self, index: int, palette_size: int):
        super().__init__(f"Palette index {index} out of range ({palette_size} entries)")
        self.index = index
        self.palette_size = palette_size


def check_bounds(what: str, buf_len: int, offset: int, length: int):
    """Raise TruncatedInput unless [offset, offset+length) lies inside the buffer."""
    if offset < 0 or length < 0 or offset + length > buf_len:
        raise TruncatedInput(what, offset, length, buf_len)
