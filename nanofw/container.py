"""
IPSW Unpacker — Locate one member of the firmware package (a zip archive)
and return its decompressed contents.
"""

import io
import lzma
import zlib
import logging
import zipfile
from typing import Optional, Union

from .errors import DecompressionError, FormatMismatch

logger = logging.getLogger(__name__)

READ_CHUNK = 1024 * 1024


class IpswUnpacker:
    """
    Usage:
        ipsw = IpswUnpacker(package_bytes)        # or a path
        mse = ipsw.find_and_extract("Firmware.MSE")
    """

    def __init__(self, source: Union[bytes, bytearray, memoryview, str]):
        if isinstance(source, str):
            self._source = source
        else:
            self._source = io.BytesIO(bytes(source))

    def _open(self) -> zipfile.ZipFile:
        try:
            return zipfile.ZipFile(self._source)
        except (zipfile.BadZipFile, OSError) as e:
            raise FormatMismatch(f"Not a readable IPSW archive: {e}") from e

    def entry_names(self) -> list[str]:
        with self._open() as archive:
            return archive.namelist()

    def find_and_extract(self, target: str) -> Optional[bytes]:
        """
        Decompress the first member whose name ends with `target`
        (case-insensitive).  Returns None when no member matches.
        """
        target_upper = target.upper()
        with self._open() as archive:
            for info in archive.infolist():
                if info.is_dir() or not info.filename.upper().endswith(target_upper):
                    continue
                logger.info("Found target file in IPSW: %s (%d → %d bytes)",
                            info.filename, info.compress_size, info.file_size)
                return self._read_member(archive, info)

        logger.info("No member matching %s in IPSW", target)
        return None

    @staticmethod
    def _read_member(archive: zipfile.ZipFile, info: zipfile.ZipInfo) -> bytes:
        chunks = []
        # RuntimeError: encrypted member; OSError: corrupt bz2 stream
        try:
            with archive.open(info) as member:
                while True:
                    chunk = member.read(READ_CHUNK)
                    if not chunk:
                        break
                    chunks.append(chunk)
        except (zipfile.BadZipFile, zlib.error, lzma.LZMAError, EOFError,
                NotImplementedError, RuntimeError, OSError) as e:
            raise DecompressionError(f"Failed to decompress {info.filename}: {e}") from e
        return b"".join(chunks)
