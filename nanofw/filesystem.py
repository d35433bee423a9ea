"""
FAT16 Reader — Read-only access to the resource volume inside rsrc.img1.

Supports:
  • BPB parsing (the subset of fields the firmware volume uses)
  • Fixed root directory + cluster-chained subdirectories
  • Long File Names (LFN); a checksum mismatch is only logged
  • Recursive, case-insensitive file lookup
  • File extraction by cluster-chain traversal

Every read is bounds-checked against the volume buffer.  Cluster chains are
walked with guards: out-of-range links end the chain, file extraction is
bounded by the declared size, and directory walks stop on a revisited
cluster, so a corrupt or cyclic FAT cannot hang the reader.
"""

import struct
import logging
from dataclasses import dataclass
from typing import Iterator, Optional

from .errors import FormatMismatch, check_bounds

logger = logging.getLogger(__name__)

DIR_ENTRY_SIZE = 32
END_OF_CHAIN = 0xFFF8          # FAT16 values >= this terminate a chain
FIRST_DATA_CLUSTER = 2

ATTR_VOLUME_ID = 0x08
ATTR_DIRECTORY = 0x10
ATTR_LFN_MASK = 0x0F

ENTRY_END = 0x00
ENTRY_DELETED = 0xE5
ENTRY_KANJI_E5 = 0x05

# Byte offsets of the 13 UTF-16 code units inside an LFN record
LFN_CHAR_OFFSETS = (1, 3, 5, 7, 9, 14, 16, 18, 20, 22, 24, 28, 30)
LFN_CHECKSUM_OFFSET = 13


@dataclass
class BootParameters:
    """BPB fields + derived volume geometry (byte offsets)."""
    bytes_per_sector: int
    sectors_per_cluster: int
    reserved_sectors: int
    num_fats: int
    root_entries: int
    sectors_per_fat: int

    @property
    def fat_start(self) -> int:
        return self.reserved_sectors * self.bytes_per_sector

    @property
    def fat_size(self) -> int:
        return self.sectors_per_fat * self.bytes_per_sector

    @property
    def root_dir_start(self) -> int:
        return self.fat_start + self.num_fats * self.fat_size

    @property
    def root_dir_sectors(self) -> int:
        return -(-(self.root_entries * DIR_ENTRY_SIZE) // self.bytes_per_sector)

    @property
    def data_area_start(self) -> int:
        return self.root_dir_start + self.root_dir_sectors * self.bytes_per_sector

    @property
    def cluster_size(self) -> int:
        return self.sectors_per_cluster * self.bytes_per_sector


@dataclass
class DirectoryEntry:
    name: str
    short_name: str
    is_directory: bool
    first_cluster: int
    size: int
    attributes: int = 0


def parse_boot_sector(data) -> BootParameters:
    """
    Parse the BPB.

    FAT16 BPB layout:
      Offset 11: BytesPerSector (2 bytes)
      Offset 13: SectorsPerCluster (1 byte)
      Offset 14: ReservedSectorCount (2 bytes)
      Offset 16: NumberOfFATs (1 byte)
      Offset 17: RootEntryCount (2 bytes)
      Offset 22: FATSize16 (2 bytes)
    """
    check_bounds("FAT16 boot sector", len(data), 0, 24)
    boot = BootParameters(
        bytes_per_sector=struct.unpack_from("<H", data, 11)[0],
        sectors_per_cluster=data[13],
        reserved_sectors=struct.unpack_from("<H", data, 14)[0],
        num_fats=data[16],
        root_entries=struct.unpack_from("<H", data, 17)[0],
        sectors_per_fat=struct.unpack_from("<H", data, 22)[0],
    )
    if (boot.bytes_per_sector <= 0 or boot.sectors_per_cluster <= 0
            or boot.reserved_sectors <= 0 or boot.num_fats <= 0
            or boot.sectors_per_fat <= 0):
        raise FormatMismatch(f"Invalid FAT16 boot parameters: {boot}")
    return boot


def short_name_checksum(raw: bytes) -> int:
    """Checksum of the 11-byte 8.3 name, stored in every LFN record."""
    checksum = 0
    for byte in raw[:11]:
        checksum = (((checksum & 1) << 7) | (checksum >> 1)) + byte
        checksum &= 0xFF
    return checksum


def parse_short_name(raw: bytes) -> str:
    """8.3 name → "NAME.EXT" (no dot when the extension is empty)."""
    if raw[0] == ENTRY_KANJI_E5:
        raw = b"\xE5" + raw[1:]
    base = raw[:8].decode("latin-1").strip()
    ext = raw[8:11].decode("latin-1").strip()
    return f"{base}.{ext}" if ext else base


def parse_lfn_fragment(record) -> str:
    chars = []
    for pos in LFN_CHAR_OFFSETS:
        code = struct.unpack_from("<H", record, pos)[0]
        if code in (0x0000, 0xFFFF):
            break
        chars.append(chr(code))
    return "".join(chars)


class Fat16Reader:
    """
    Read-only FAT16 volume over an in-memory buffer.

    Usage:
        fat = Fat16Reader(body)
        entry = fat.find_file_recursive("SilverImagesDB.LE.bin")
        data = fat.extract_file(entry)
    """

    def __init__(self, data):
        self._data = memoryview(data)
        self.boot = parse_boot_sector(self._data)
        self.fat = self._read_fat()

        logger.info(
            "FAT16: sector=%d, cluster=%d (%d bytes), FAT at 0x%X (%d entries), "
            "root at 0x%X (%d entries), data at 0x%X",
            self.boot.bytes_per_sector, self.boot.sectors_per_cluster,
            self.boot.cluster_size, self.boot.fat_start, len(self.fat),
            self.boot.root_dir_start, self.boot.root_entries, self.boot.data_area_start,
        )

    def _read_fat(self) -> tuple[int, ...]:
        start, size = self.boot.fat_start, self.boot.fat_size
        check_bounds("FAT", len(self._data), start, size)
        return struct.unpack_from(f"<{size // 2}H", self._data, start)

    # ─── Cluster chains ──────────────────────────────────────

    def cluster_offset(self, cluster: int) -> int:
        return self.boot.data_area_start + (cluster - FIRST_DATA_CLUSTER) * self.boot.cluster_size

    def next_cluster(self, cluster: int) -> Optional[int]:
        """Follow one FAT link; None marks the end of the chain."""
        if cluster >= len(self.fat):
            return None
        value = self.fat[cluster]
        if value >= END_OF_CHAIN or value < FIRST_DATA_CLUSTER:
            return None
        return value

    def iter_cluster_chain(self, start: int) -> Iterator[int]:
        """
        Yield cluster numbers from `start`, stopping at the end marker or
        at the first cluster already visited.
        """
        if start < FIRST_DATA_CLUSTER or start >= END_OF_CHAIN:
            return
        seen = set()
        cluster: Optional[int] = start
        while cluster is not None and cluster not in seen:
            seen.add(cluster)
            yield cluster
            cluster = self.next_cluster(cluster)

    def _cluster_view(self, cluster: int, length: int) -> memoryview:
        offset = self.cluster_offset(cluster)
        check_bounds(f"cluster {cluster}", len(self._data), offset, length)
        return self._data[offset:offset + length]

    # ─── Directories ─────────────────────────────────────────

    def read_directory(self, start_cluster: int = 0) -> list[DirectoryEntry]:
        """
        List a directory.  Cluster 0 is the fixed root directory region;
        anything else is read cluster by cluster along its chain.
        """
        scan = _DirectoryScan()
        if start_cluster == 0:
            start, end = self.boot.root_dir_start, self.boot.data_area_start
            check_bounds("root directory", len(self._data), start, end - start)
            scan.feed(self._data[start:end])
        else:
            for cluster in self.iter_cluster_chain(start_cluster):
                if scan.feed(self._cluster_view(cluster, self.boot.cluster_size)):
                    break
        return scan.entries

    def find_file_recursive(self, filename: str) -> Optional[DirectoryEntry]:
        """
        Case-insensitive lookup of a file anywhere on the volume.

        Each directory's files are checked before any of its subdirectories
        are entered; subdirectories are searched depth-first in scan order.
        """
        target = filename.upper()
        pending = [0]
        visited = {0}

        while pending:
            entries = self.read_directory(pending.pop())
            for entry in entries:
                if not entry.is_directory and entry.name.upper() == target:
                    logger.info("File found: %s (%d bytes, cluster %d)",
                                entry.name, entry.size, entry.first_cluster)
                    return entry

            subdirs = []
            for entry in entries:
                if not entry.is_directory:
                    continue
                if entry.first_cluster < FIRST_DATA_CLUSTER or entry.first_cluster in visited:
                    logger.debug("Skipping directory %s (cluster %d already visited)",
                                 entry.name, entry.first_cluster)
                    continue
                visited.add(entry.first_cluster)
                subdirs.append(entry.first_cluster)
            # Reversed so the first subdirectory is popped first
            pending.extend(reversed(subdirs))

        logger.info("File not found on volume: %s", filename)
        return None

    def walk(self) -> Iterator[tuple[str, DirectoryEntry]]:
        """Yield (path, entry) for every entry on the volume, parents first."""
        pending = [("", 0)]
        visited = {0}
        while pending:
            prefix, cluster = pending.pop()
            subdirs = []
            for entry in self.read_directory(cluster):
                path = f"{prefix}/{entry.name}"
                yield path, entry
                if (entry.is_directory and entry.first_cluster >= FIRST_DATA_CLUSTER
                        and entry.first_cluster not in visited):
                    visited.add(entry.first_cluster)
                    subdirs.append((path, entry.first_cluster))
            pending.extend(reversed(subdirs))

    # ─── Files ───────────────────────────────────────────────

    def extract_file(self, entry: DirectoryEntry) -> bytes:
        """
        Copy a file's contents out of the volume.

        The result always holds exactly entry.size bytes; if the chain ends
        early the remainder stays zero-filled.  The copy loop is bounded by
        the declared size, never by the chain, so a cyclic FAT terminates.
        """
        if entry.is_directory:
            raise ValueError(f"{entry.name} is a directory")
        # A file can never be larger than the data area holding it
        check_bounds(f"file {entry.name}", len(self._data), self.boot.data_area_start, entry.size)

        content = bytearray(entry.size)
        copied = 0
        cluster = entry.first_cluster
        if cluster < FIRST_DATA_CLUSTER or cluster >= END_OF_CHAIN:
            cluster = None

        while cluster is not None and copied < entry.size:
            length = min(self.boot.cluster_size, entry.size - copied)
            content[copied:copied + length] = self._cluster_view(cluster, length)
            copied += length
            cluster = self.next_cluster(cluster)

        if copied < entry.size:
            logger.warning(
                "Cluster chain of %s ended after %d of %d bytes",
                entry.name, copied, entry.size,
            )
        return bytes(content)


class _DirectoryScan:
    """Accumulates entries across the 32-byte records of one directory."""

    def __init__(self):
        self.entries: list[DirectoryEntry] = []
        self._lfn_parts: list[str] = []
        self._lfn_checksum: Optional[int] = None

    def _reset_lfn(self):
        self._lfn_parts = []
        self._lfn_checksum = None

    def feed(self, region: memoryview) -> bool:
        """Scan one region; returns True once the end-of-directory marker is hit."""
        for pos in range(0, len(region) - DIR_ENTRY_SIZE + 1, DIR_ENTRY_SIZE):
            record = region[pos:pos + DIR_ENTRY_SIZE]
            first = record[0]
            if first == ENTRY_END:
                return True
            if first == ENTRY_DELETED:
                self._reset_lfn()
                continue

            attributes = record[11]
            if attributes & ATTR_LFN_MASK == ATTR_LFN_MASK:
                self._lfn_checksum = record[LFN_CHECKSUM_OFFSET]
                # Fragments are stored last-part-first
                self._lfn_parts.insert(0, parse_lfn_fragment(record))
                continue

            if attributes & ATTR_VOLUME_ID:
                self._reset_lfn()
                continue

            self._add_short_entry(record, attributes)
        return False

    def _add_short_entry(self, record: memoryview, attributes: int):
        raw_name = bytes(record[0:11])
        short_name = parse_short_name(raw_name)
        name = short_name
        if self._lfn_parts:
            name = "".join(self._lfn_parts)
            if self._lfn_checksum != short_name_checksum(raw_name):
                logger.debug("Long name %s does not match the checksum of %s", name, short_name)
        self._reset_lfn()

        if name in (".", "..") or short_name in (".", ".."):
            return
        self.entries.append(DirectoryEntry(
            name=name,
            short_name=short_name,
            is_directory=bool(attributes & ATTR_DIRECTORY),
            first_cluster=struct.unpack_from("<H", record, 26)[0],
            size=struct.unpack_from("<I", record, 28)[0],
            attributes=attributes,
        ))
