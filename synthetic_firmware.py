"""
Synthetic firmware builders for the test scripts.

Every layer of a Nano firmware package can be built from scratch here:
SilverDB databases, FAT16 volumes (with long names), IMG1 containers, MSE
partition tables and the outer IPSW zip.
"""

import io
import re
import struct
import zipfile
from dataclasses import dataclass

from nanofw.filesystem import short_name_checksum

BPS = 512


def expect_error(exc_type, fn, *args, **kwargs):
    """Call fn and return the exception it raises; fail if it raises nothing."""
    try:
        fn(*args, **kwargs)
    except exc_type as e:
        return e
    raise AssertionError(f"{fn.__name__} did not raise {exc_type.__name__}")


# ─────────────────────────────────────────────────────────────
#  SilverDB
# ─────────────────────────────────────────────────────────────

@dataclass
class SyntheticImage:
    ref_id: int
    fmt: int
    width: int
    height: int
    payload: bytes
    file_id: int = -1
    row_length: int = 0

    def blob(self) -> bytes:
        file_id = self.ref_id if self.file_id < 0 else self.file_id
        header = struct.pack(
            "<HHHHIIIIII", self.fmt, 0, self.row_length, 0, 0, 0,
            self.height, self.width, file_id, len(self.payload),
        )
        return header + self.payload


def build_silverdb(images, raw_refs=(), magic=3, tag=b"paMB", lead_pad=16) -> bytes:
    """
    Lay out a database.  `raw_refs` are extra (id, offset, size) records
    appended to the reference table verbatim.
    """
    count = len(images) + len(raw_refs)
    header = struct.pack("<I4s4s4sI8s", magic, b"\x00" * 4, b"\x00" * 4, tag, count, b"\x00" * 8)

    blobs = bytearray(b"\x00" * lead_pad)
    refs = []
    for img in images:
        blob = img.blob()
        refs.append(struct.pack("<III", img.ref_id, len(blobs), len(blob)))
        blobs += blob
    for ref_id, offset, size in raw_refs:
        refs.append(struct.pack("<III", ref_id, offset, size))
    return header + b"".join(refs) + bytes(blobs)


def bgra_payload(rgba_pixels) -> bytes:
    return b"".join(bytes((b, g, r, a)) for r, g, b, a in rgba_pixels)


def palette_payload(rgba_palette, indices, index_size=1) -> bytes:
    out = struct.pack("<I", len(rgba_palette)) + bgra_payload(rgba_palette)
    fmt = "<B" if index_size == 1 else "<H"
    return out + b"".join(struct.pack(fmt, i) for i in indices)


# ─────────────────────────────────────────────────────────────
#  FAT16
# ─────────────────────────────────────────────────────────────

_SHORT_OK = re.compile(r"^[A-Z0-9_]{1,8}(\.[A-Z0-9_]{1,3})?$")


def raw_short_name(name: str) -> bytes:
    base, _, ext = name.partition(".")
    return base.ljust(8).encode("latin-1") + ext.ljust(3).encode("latin-1")


def short_record(raw11: bytes, attributes: int, cluster: int, size: int) -> bytes:
    rec = bytearray(32)
    rec[0:11] = raw11
    rec[11] = attributes
    struct.pack_into("<H", rec, 26, cluster)
    struct.pack_into("<I", rec, 28, size)
    return bytes(rec)


def lfn_records(name: str, checksum: int) -> list[bytes]:
    """LFN records for `name` in on-disk order (last fragment first)."""
    units = list(name.encode("utf-16-le"))
    units = [units[i] | (units[i + 1] << 8) for i in range(0, len(units), 2)]
    chunks = [units[i:i + 13] for i in range(0, len(units), 13)]
    if len(chunks[-1]) < 13:
        chunks[-1] = chunks[-1] + [0x0000] + [0xFFFF] * (12 - len(chunks[-1]))

    records = []
    for seq, chunk in enumerate(chunks, 1):
        rec = bytearray(32)
        rec[0] = seq | (0x40 if seq == len(chunks) else 0)
        rec[11] = 0x0F
        rec[13] = checksum
        for pos, unit in zip((1, 3, 5, 7, 9, 14, 16, 18, 20, 22, 24, 28, 30), chunk):
            struct.pack_into("<H", rec, pos, unit)
        records.append(bytes(rec))
    records.reverse()
    return records


class Fat16Image:
    """
    Minimal FAT16 volume: 1 reserved sector, `num_fats` FAT copies, fixed
    root directory, `num_clusters` data clusters.
    """

    def __init__(self, sectors_per_cluster=1, root_entries=32, sectors_per_fat=2,
                 num_clusters=128, num_fats=2):
        self.spc = sectors_per_cluster
        self.cluster_size = sectors_per_cluster * BPS
        self.root_entries = root_entries
        self.spf = sectors_per_fat
        self.num_fats = num_fats
        self.num_clusters = num_clusters
        self.fat_start = BPS
        self.root_start = self.fat_start + num_fats * sectors_per_fat * BPS
        self.data_start = self.root_start + -(-(root_entries * 32) // BPS) * BPS
        self.fat = [0xFFF8, 0xFFFF] + [0] * (sectors_per_fat * BPS // 2 - 2)
        self.data = bytearray(num_clusters * self.cluster_size)
        self.root = b""
        self.next_free = 2
        self.first_clusters: dict[str, int] = {}
        self._alias = 0

    # ── allocation ──

    def alloc(self, payload: bytes) -> int:
        n = max(1, -(-len(payload) // self.cluster_size))
        first = self.next_free
        chain = list(range(first, first + n))
        self.next_free += n
        for a, b in zip(chain, chain[1:]):
            self.fat[a] = b
        self.fat[chain[-1]] = 0xFFFF
        self.write_chain(first, payload)
        return first

    def write_chain(self, first: int, payload: bytes):
        cluster, pos = first, 0
        while pos < len(payload):
            off = (cluster - 2) * self.cluster_size
            piece = payload[pos:pos + self.cluster_size]
            self.data[off:off + len(piece)] = piece
            pos += self.cluster_size
            cluster = self.fat[cluster]

    # ── directories ──

    def _records_for(self, name: str, attributes: int, cluster: int, size: int) -> list[bytes]:
        if _SHORT_OK.match(name):
            return [short_record(raw_short_name(name), attributes, cluster, size)]
        self._alias += 1
        base, _, ext = name.rpartition(".") if "." in name else (name, "", "")
        stem = re.sub(r"[^A-Z0-9]", "", base.upper())[:5] or "X"
        alias = f"{stem}~{self._alias}"[:8]
        ext = re.sub(r"[^A-Z0-9]", "", ext.upper())[:3]
        raw = alias.ljust(8).encode("latin-1") + ext.ljust(3).encode("latin-1")
        return lfn_records(name, short_name_checksum(raw)) + [
            short_record(raw, attributes, cluster, size)
        ]

    @staticmethod
    def _record_count(name: str) -> int:
        if _SHORT_OK.match(name):
            return 1
        return 1 + -(-len(name) // 13)

    def _dir_bytes(self, tree: dict) -> int:
        return 32 * (2 + sum(self._record_count(n) for n in tree))

    def _write_dir(self, tree: dict, own: int, parent: int, path: str) -> bytes:
        records = []
        if own:
            records.append(short_record(b".".ljust(11), 0x10, own, 0))
            records.append(short_record(b"..".ljust(11), 0x10, parent, 0))
        for name, node in tree.items():
            child_path = f"{path}/{name}"
            if isinstance(node, dict):
                first = self.alloc(b"\x00" * self._dir_bytes(node))
                self.first_clusters[child_path] = first
                self.write_chain(first, self._write_dir(node, first, own, child_path))
                records += self._records_for(name, 0x10, first, 0)
            else:
                first = self.alloc(node) if node else 0
                self.first_clusters[child_path] = first
                records += self._records_for(name, 0x20, first, len(node))
        return b"".join(records)

    def build(self, tree: dict, volume_label: str = "") -> bytes:
        root = b""
        if volume_label:
            root += short_record(volume_label.ljust(11).encode("latin-1"), 0x08, 0, 0)
        root += self._write_dir(tree, 0, 0, "")
        self.set_root(root)
        return self.to_bytes()

    def set_root(self, records: bytes):
        if len(records) > self.root_entries * 32:
            raise ValueError("root directory overflow")
        self.root = records

    # ── serialization ──

    def boot_sector(self) -> bytes:
        boot = bytearray(BPS)
        boot[0:3] = b"\xEB\x3C\x90"
        boot[3:11] = b"MSWIN4.1"
        total = self.data_start // BPS + self.num_clusters * self.spc
        struct.pack_into("<HBHBHHBH", boot, 11, BPS, self.spc, 1, self.num_fats,
                         self.root_entries, total, 0xF8, self.spf)
        boot[54:62] = b"FAT16   "
        boot[510:512] = b"\x55\xAA"
        return bytes(boot)

    def to_bytes(self) -> bytes:
        image = bytearray(self.data_start + len(self.data))
        image[0:BPS] = self.boot_sector()
        fat_bytes = struct.pack(f"<{len(self.fat)}H", *self.fat)
        for i in range(self.num_fats):
            start = self.fat_start + i * self.spf * BPS
            image[start:start + len(fat_bytes)] = fat_bytes
        image[self.root_start:self.root_start + len(self.root)] = self.root
        image[self.data_start:] = self.data
        return bytes(image)


def build_fat16(tree: dict, **kwargs) -> bytes:
    return Fat16Image(**kwargs).build(tree)


# ─────────────────────────────────────────────────────────────
#  IMG1 / MSE / IPSW
# ─────────────────────────────────────────────────────────────

def build_img1(body: bytes, certificate: bytes = b"CERT" * 64, version: bytes = b"2.0",
               signature: bytes = bytes(range(0x80)), magic: bytes = b"8720") -> bytes:
    header = struct.pack(
        "<4s3sBIIIII32sHH16sI",
        magic, version, 4, 0x08000000, len(body), len(body),
        len(body) + 0x80, len(certificate), bytes(range(32)), 1, 2,
        b"\xAB" * 16, 0xDEADBEEF,
    )
    return header.ljust(0x400, b"\x00") + body + signature + certificate


def build_mse(partitions, table_slots=None) -> bytes:
    """
    `partitions` is a list of (target, type, payload).  `table_slots`
    optionally maps each partition to a slot index; other slots stay empty.
    """
    slots = table_slots or list(range(len(partitions)))
    table = bytearray(16 * 40)
    blobs = bytearray()
    cursor = 0x6000

    for (target, ptype, payload), slot in zip(partitions, slots):
        payload = payload.ljust(0x800, b"\x00")
        dev_offset = cursor
        start = dev_offset + 0x1000
        struct.pack_into(
            "<4s4s4sIIII4sII", table, slot * 40,
            target.encode("ascii")[::-1], ptype.encode("ascii")[::-1], b"\x00" * 4,
            dev_offset, len(payload) - 0x800, 0x08000000, 0, b"\x00" * 4,
            0x00010000, 0x08000000,
        )
        end = start + len(payload)
        if len(blobs) < end:
            blobs.extend(b"\x00" * (end - len(blobs)))
        blobs[start:end] = payload
        cursor = -(-end // 0x1000) * 0x1000

    image = bytearray(max(len(blobs), 0x5000 + len(table)))
    image[:len(blobs)] = blobs
    image[0x5000:0x5000 + len(table)] = table
    return bytes(image)


def build_ipsw(members: dict) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as z:
        for name, data in members.items():
            z.writestr(name, data)
    return buf.getvalue()


def build_firmware(database: bytes, db_name: str = "SilverImagesDB.LE.bin") -> bytes:
    """Full chain: IPSW → Firmware.MSE → rsrc IMG1 → FAT16 → database."""
    clusters = -(-len(database) // BPS) + 16
    spf = -(-((clusters + 2) * 2) // BPS)
    volume = Fat16Image(num_clusters=clusters, sectors_per_fat=spf).build({
        "Resources": {
            "Fonts": {"Chicago.ttf": b"font" * 10},
            "Images": {db_name: database},
        },
        "README.TXT": b"nano",
    })
    mse = build_mse([
        ("NAND", "osos", build_img1(b"OS" * 512)),
        ("NAND", "rsrc", build_img1(volume)),
    ])
    return build_ipsw({
        "Restore.plist": b"<plist/>",
        "Firmware/Firmware.MSE": mse,
    })
