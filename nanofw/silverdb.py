"""
SilverDB Reader — Parse SilverImagesDB.LE.bin and decode every image in it.

File layout (all integers little-endian):
  Offset  0: Magic (4 bytes) = 3
  Offset  4: Code page (4 bytes, reserved)
  Offset  8: Table type (4 bytes, reserved)
  Offset 12: Tag (4 bytes) = "paMB"
  Offset 16: File count (4 bytes)
  Offset 20: Reserved (8 bytes)
  Offset 28: File count × reference record (id, offset, size; 4 bytes each)

Reference offsets are relative to the end of the reference table.  Each
image starts with a 32-byte header followed by the raw pixel blob:
  +0  format (2)        +2  reserved (2)     +4  row length (2)
  +6  flags (2)         +8  reserved (4)     +12 reserved (4)
  +16 height (4)        +20 width (4)        +24 file id (4)
  +28 data size (4)     +32 pixel data

A bad entry never aborts the batch: it is recorded in DecodeResult.skipped
and decoding moves on to the next reference.
"""

import time
import struct
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .errors import ExtractionError, FormatMismatch, check_bounds
from .pixels import decode_pixels, format_name

logger = logging.getLogger(__name__)

DB_MAGIC = 3
DB_TAG = b"paMB"

_DB_HEADER = struct.Struct("<I4s4s4sI8s")
_REFERENCE = struct.Struct("<III")
_IMAGE_HEADER = struct.Struct("<HHHHIIIIII")

# Control is handed back to the host every N entries
YIELD_EVERY = 10


@dataclass
class FileReference:
    id: int
    offset: int     # Relative to the end of the reference table
    size: int


@dataclass
class ImageHeader:
    """Per-image header.  row_length and flags are kept but never used for decoding."""
    format: int
    reserved0: int
    row_length: int
    flags: int
    reserved1: int
    reserved2: int
    height: int
    width: int
    file_id: int
    data_size: int
    pixel_offset: int   # Absolute offset of the pixel blob in the database


@dataclass
class DecodedImage:
    id: int
    format: int
    width: int
    height: int
    pixels: bytes       # RGBA8, width * height * 4 bytes

    @property
    def full_id(self) -> str:
        return f"{self.id}_{self.format:04x}"

    @property
    def format_name(self) -> str:
        return format_name(self.format)


@dataclass
class SkippedEntry:
    ref_id: int
    reason: str
    error_type: str


@dataclass
class DecodeResult:
    images: list[DecodedImage] = field(default_factory=list)
    skipped: list[SkippedEntry] = field(default_factory=list)
    total: int = 0
    was_cancelled: bool = False

    @property
    def processed(self) -> int:
        return len(self.images) + len(self.skipped)


@dataclass
class DecodeProgress:
    processed: int = 0
    total: int = 0


class SilverDBReader:
    """
    Parsed view over a SilverDB buffer.

    Usage:
        reader = SilverDBReader(data)
        result = reader.decode_all(on_progress=cb, is_cancelled=flag)
    """

    def __init__(self, data):
        self._data = memoryview(data)
        self.references: list[FileReference] = []
        self.file_count = 0
        self.table_end = 0
        self._parse_header()

    def _parse_header(self):
        size = len(self._data)
        check_bounds("SilverDB header", size, 0, _DB_HEADER.size)
        magic, code_page, table_type, tag, file_count, _ = _DB_HEADER.unpack_from(self._data, 0)

        if magic != DB_MAGIC:
            raise FormatMismatch(f"Invalid SilverDB magic {magic}, expected {DB_MAGIC}", 0)
        if tag != DB_TAG:
            raise FormatMismatch(
                f"Unsupported table type {tag.decode('latin-1')!r}, expected 'paMB'", 12,
            )

        self.file_count = file_count
        offset = _DB_HEADER.size
        check_bounds("SilverDB reference table", size, offset, file_count * _REFERENCE.size)

        for ref_id, ref_offset, ref_size in _REFERENCE.iter_unpack(
            self._data[offset:offset + file_count * _REFERENCE.size]
        ):
            if ref_offset > 0 and ref_size > 0:
                self.references.append(FileReference(ref_id, ref_offset, ref_size))
        self.table_end = offset + file_count * _REFERENCE.size

        logger.info(
            "SilverDB: %d references declared, %d usable, table ends at 0x%X",
            file_count, len(self.references), self.table_end,
        )

    def read_image_header(self, ref: FileReference) -> ImageHeader:
        start = self.table_end + ref.offset
        check_bounds(f"image header for id {ref.id}", len(self._data), start, _IMAGE_HEADER.size)
        fields = _IMAGE_HEADER.unpack_from(self._data, start)
        return ImageHeader(*fields, pixel_offset=start + _IMAGE_HEADER.size)

    def decode_entry(self, ref: FileReference) -> DecodedImage:
        header = self.read_image_header(ref)
        pixels = decode_pixels(
            header.format, self._data, header.pixel_offset, header.width, header.height,
        )
        return DecodedImage(
            id=header.file_id,
            format=header.format,
            width=header.width,
            height=header.height,
            pixels=pixels,
        )

    def decode_all(
        self,
        on_progress: Optional[Callable[[DecodeProgress], None]] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> DecodeResult:
        """
        Decode every usable reference in table order.

        Every YIELD_EVERY entries the loop sleeps for zero seconds so a host
        UI thread gets the GIL.  Cancellation is checked at those points and
        before each entry; a cancelled run returns what was decoded so far.
        """
        total = len(self.references)
        result = DecodeResult(total=total)

        for i, ref in enumerate(self.references):
            if i and i % YIELD_EVERY == 0:
                time.sleep(0)
            if is_cancelled and is_cancelled():
                result.was_cancelled = True
                break

            try:
                image = self.decode_entry(ref)
            except (ExtractionError, struct.error) as e:
                logger.warning("Skipping file id %d: %s", ref.id, e)
                result.skipped.append(SkippedEntry(ref.id, str(e), type(e).__name__))
            else:
                result.images.append(image)

            if on_progress:
                on_progress(DecodeProgress(processed=i + 1, total=total))

        if result.was_cancelled:
            logger.info("SilverDB: cancelled after %d/%d entries", result.processed, total)
        logger.info(
            "SilverDB: decoded %d images, skipped %d", len(result.images), len(result.skipped),
        )
        return result
