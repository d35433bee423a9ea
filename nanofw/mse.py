"""
MSE Reader — Parse the Firmware.MSE partition table and cut out sub-images.

Table layout: 16 slots × 40 bytes starting at 0x5000.
  +0  Target (4 bytes, stored reversed, e.g. "NAND" on disk as "DNAN")
  +4  Type (4 bytes, stored reversed, e.g. "rsrc" on disk as "crsr")
  +8  Reserved (4 bytes)
  +12 Device offset (4 bytes)
  +16 Length (4 bytes)
  +20 Address (4 bytes)
  +24 Entry offset (4 bytes)
  +28 Reserved (4 bytes)
  +32 Version (4 bytes)
  +36 Load address (4 bytes)

A slot whose first word is zero is empty.
"""

import struct
import logging
from dataclasses import dataclass
from typing import Optional

from .errors import check_bounds

logger = logging.getLogger(__name__)

TABLE_OFFSET = 0x5000
NUM_SLOTS = 16
SLOT_SIZE = 40

# Sub-images start 0x1000 past their device offset and carry 0x800 bytes
# of IMG1 header/footer beyond the stored length.
IMAGE_START_PAD = 0x1000
IMAGE_LENGTH_PAD = 0x800

_SLOT = struct.Struct("<4s4s4sIIII4sII")


@dataclass
class Partition:
    slot: int
    target: str
    type: str
    dev_offset: int
    length: int
    address: int
    entry_offset: int
    version: int
    load_address: int

    @property
    def image_start(self) -> int:
        return self.dev_offset + IMAGE_START_PAD

    @property
    def image_length(self) -> int:
        return self.length + IMAGE_LENGTH_PAD


def _reversed_code(raw: bytes) -> str:
    return raw[::-1].decode("ascii", errors="replace")


class MseReader:
    """
    Usage:
        mse = MseReader(firmware_mse)
        rsrc = mse.find_by_type("rsrc")
        img1 = mse.extract(rsrc)
    """

    def __init__(self, data):
        self._data = memoryview(data)
        self.partitions: list[Partition] = []
        self._parse_table()

    def _parse_table(self):
        check_bounds("MSE partition table", len(self._data), TABLE_OFFSET, NUM_SLOTS * SLOT_SIZE)

        for slot in range(NUM_SLOTS):
            offset = TABLE_OFFSET + slot * SLOT_SIZE
            if struct.unpack_from("<I", self._data, offset)[0] == 0:
                continue
            (target, ptype, _, dev_offset, length, address, entry_offset,
             _, version, load_address) = _SLOT.unpack_from(self._data, offset)
            self.partitions.append(Partition(
                slot=slot,
                target=_reversed_code(target),
                type=_reversed_code(ptype),
                dev_offset=dev_offset,
                length=length,
                address=address,
                entry_offset=entry_offset,
                version=version,
                load_address=load_address,
            ))

        for p in self.partitions:
            logger.debug(
                "MSE slot %d: %s/%s dev_offset=0x%X length=0x%X load=0x%X",
                p.slot, p.target, p.type, p.dev_offset, p.length, p.load_address,
            )
        logger.info("MSE: %d partitions (%s)", len(self.partitions),
                    ", ".join(p.type for p in self.partitions))

    def find_by_type(self, ptype: str) -> Optional[Partition]:
        for p in self.partitions:
            if p.type == ptype:
                return p
        return None

    def extract(self, partition: Partition) -> bytes:
        start, length = partition.image_start, partition.image_length
        check_bounds(f"{partition.type}.img1", len(self._data), start, length)
        logger.info("Extracting %s.img1: offset=0x%X, length=0x%X",
                    partition.type, start, length)
        return bytes(self._data[start:start + length])
