"""
Extraction Manager — Chains the format readers from firmware package to
decoded images, with progress, cancellation and reporting.

    IPSW ──► Firmware.MSE ──► rsrc.img1 ──► FAT16 volume ──► SilverDB ──► images
         container        mse          img1          filesystem      silverdb

Each stage consumes the complete output of the previous one.  A structural
failure aborts the run (recorded on the session, then re-raised); per-image
failures only show up in session.skipped.
"""

import json
import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from .container import IpswUnpacker
from .errors import EntryNotFound, ExtractionError
from .filesystem import DirectoryEntry, Fat16Reader
from .img1 import Img1Header, SignedImage, unpack_img1
from .manifest import missing_ids
from .mse import MseReader, Partition
from .silverdb import DecodedImage, DecodeProgress, SilverDBReader, SkippedEntry

logger = logging.getLogger(__name__)

FIRMWARE_ENTRY = "Firmware.MSE"
RESOURCE_PARTITION = "rsrc"
DATABASE_FILENAME = "SilverImagesDB.LE.bin"

STAGE_CONTAINER = "container"
STAGE_PARTITION = "partition"
STAGE_IMG1 = "img1"
STAGE_FILESYSTEM = "filesystem"
STAGE_DATABASE = "database"
STAGES = (STAGE_CONTAINER, STAGE_PARTITION, STAGE_IMG1, STAGE_FILESYSTEM, STAGE_DATABASE)


@dataclass
class ExtractionProgress:
    stage: str = ""
    processed: int = 0
    total: int = 0
    elapsed_time: float = 0.0
    is_running: bool = False
    is_cancelled: bool = False
    status_message: str = "Ready"

    @property
    def progress_percent(self) -> float:
        if self.total == 0:
            return 0.0
        return min(100.0, (self.processed / self.total) * 100)


@dataclass
class ExtractionSession:
    """Everything one extraction run produced."""
    session_id: str
    source: str
    start_stage: str = STAGE_CONTAINER
    start_time: float = 0.0
    end_time: float = 0.0
    partitions: list[Partition] = field(default_factory=list)
    img1_header: Optional[Img1Header] = None
    signed_image: Optional[SignedImage] = None
    database_entry: Optional[DirectoryEntry] = None
    images: list[DecodedImage] = field(default_factory=list)
    skipped: list[SkippedEntry] = field(default_factory=list)
    total_references: int = 0
    missing_ids: list[str] = field(default_factory=list)
    was_cancelled: bool = False
    error: str = ""
    failed_stage: str = ""

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def duration_human(self) -> str:
        d = self.duration
        if d < 60:
            return f"{d:.1f}s"
        return f"{d / 60:.1f}m"

    @property
    def images_by_format(self) -> dict:
        r: dict[str, list] = {}
        for img in self.images:
            r.setdefault(img.format_name, []).append(img)
        return r

    @property
    def summary(self) -> dict:
        return {
            "total_images": len(self.images),
            "skipped": len(self.skipped),
            "references": self.total_references,
            "duration": self.duration_human,
            "cancelled": self.was_cancelled,
            "formats": {fmt: len(imgs) for fmt, imgs in self.images_by_format.items()},
        }


class FirmwareExtractor:
    """High-level driver for the whole decode chain."""

    def __init__(
        self,
        entry_name: str = FIRMWARE_ENTRY,
        partition_type: str = RESOURCE_PARTITION,
        database_name: str = DATABASE_FILENAME,
        manifest: Optional[dict] = None,
    ):
        self.entry_name = entry_name
        self.partition_type = partition_type
        self.database_name = database_name
        self.manifest = manifest
        self.progress = ExtractionProgress()
        self.current_session: Optional[ExtractionSession] = None
        self._thread: Optional[threading.Thread] = None
        self._on_progress: Optional[Callable] = None
        self._on_stage: Optional[Callable] = None
        self._on_complete: Optional[Callable] = None

    def set_callbacks(self, on_progress=None, on_stage=None, on_complete=None):
        self._on_progress = on_progress
        self._on_stage = on_stage
        self._on_complete = on_complete

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def cancel(self):
        self.progress.is_cancelled = True

    # ─── Synchronous entry points ────────────────────────────

    def extract(self, package, source: str = "<memory>") -> ExtractionSession:
        """Full chain starting from IPSW bytes (or a path to the .ipsw)."""
        if isinstance(package, str):
            source = package
        return self.run(package, STAGE_CONTAINER, source)

    def extract_from_mse(self, data, source: str = "<memory>") -> ExtractionSession:
        return self.run(data, STAGE_PARTITION, source)

    def extract_from_img1(self, data, source: str = "<memory>") -> ExtractionSession:
        return self.run(data, STAGE_IMG1, source)

    def extract_from_volume(self, data, source: str = "<memory>") -> ExtractionSession:
        return self.run(data, STAGE_FILESYSTEM, source)

    def extract_from_database(self, data, source: str = "<memory>") -> ExtractionSession:
        return self.run(data, STAGE_DATABASE, source)

    # ─── Background entry point ──────────────────────────────

    def start_extraction(self, data, start_stage: str = STAGE_CONTAINER, source: str = "<memory>"):
        if self.is_running:
            return
        self._reset_progress()
        self._thread = threading.Thread(
            target=self._run_background,
            args=(data, start_stage, source),
            daemon=True,
        )
        self._thread.start()

    def wait(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self, data, start_stage: str = STAGE_CONTAINER, source: str = "<memory>") -> ExtractionSession:
        """Run the chain from `start_stage` on, synchronously."""
        self._reset_progress()
        return self._run(data, start_stage, source)

    def _reset_progress(self):
        # A cancel() issued before the run starts still applies to it
        self.progress = ExtractionProgress(is_cancelled=self.progress.is_cancelled)

    def _run_background(self, data, start_stage, source):
        try:
            self._run(data, start_stage, source)
        except ExtractionError as e:
            logger.error("Extraction failed: %s", e)
        except Exception as e:
            logger.error("Extraction crashed: %s", e, exc_info=True)
            if self.current_session and not self.current_session.error:
                self.current_session.error = str(e)
                self.current_session.end_time = time.time()
        if self._on_complete and self.current_session:
            self._on_complete(self.current_session)

    # ─── Pipeline ────────────────────────────────────────────

    def _run(self, data, start_stage: str, source: str) -> ExtractionSession:
        if start_stage not in STAGES:
            raise ValueError(f"Unknown stage {start_stage!r}, expected one of {STAGES}")

        session = ExtractionSession(
            session_id=f"extract_{int(time.time())}",
            source=source,
            start_stage=start_stage,
            start_time=time.time(),
        )
        self.current_session = session
        self.progress.is_running = True
        self.progress.status_message = "Starting"

        stage = start_stage
        try:
            for stage in STAGES[STAGES.index(start_stage):]:
                if self.progress.is_cancelled:
                    session.was_cancelled = True
                    break
                self._enter_stage(stage)
                data = self._run_stage(stage, data, session)
        except ExtractionError as e:
            session.error = str(e)
            session.failed_stage = stage
            session.end_time = time.time()
            self.progress.is_running = False
            self.progress.status_message = f"Error: {e}"
            logger.error("Stage %s failed: %s", stage, e)
            raise
        finally:
            # Consumed: the next run starts uncancelled
            self.progress.is_cancelled = False

        session.end_time = time.time()
        self.progress.is_running = False
        self.progress.elapsed_time = session.duration
        self.progress.status_message = "Cancelled" if session.was_cancelled else "Done"
        logger.info(
            "Extraction %s in %s: %d images, %d skipped",
            "cancelled" if session.was_cancelled else "finished",
            session.duration_human, len(session.images), len(session.skipped),
        )
        return session

    def _enter_stage(self, stage: str):
        self.progress.stage = stage
        self.progress.status_message = f"Reading {stage}"
        logger.info("── Stage: %s ──", stage)
        if self._on_stage:
            self._on_stage(stage)

    def _run_stage(self, stage: str, data, session: ExtractionSession):
        if stage == STAGE_CONTAINER:
            mse = IpswUnpacker(data).find_and_extract(self.entry_name)
            if mse is None:
                raise EntryNotFound("IPSW entry", self.entry_name)
            return mse

        if stage == STAGE_PARTITION:
            reader = MseReader(data)
            session.partitions = list(reader.partitions)
            partition = reader.find_by_type(self.partition_type)
            if partition is None:
                raise EntryNotFound("MSE partition", self.partition_type)
            return reader.extract(partition)

        if stage == STAGE_IMG1:
            signed = unpack_img1(data)
            session.img1_header = signed.header
            session.signed_image = signed
            return signed.body

        if stage == STAGE_FILESYSTEM:
            volume = Fat16Reader(data)
            entry = volume.find_file_recursive(self.database_name)
            if entry is None:
                raise EntryNotFound("FAT16 file", self.database_name)
            session.database_entry = entry
            return volume.extract_file(entry)

        reader = SilverDBReader(data)
        result = reader.decode_all(
            on_progress=self._handle_decode_progress,
            is_cancelled=lambda: self.progress.is_cancelled,
        )
        session.images = result.images
        session.skipped = result.skipped
        session.total_references = result.total
        session.was_cancelled = result.was_cancelled
        if self.manifest is not None:
            session.missing_ids = missing_ids(result.images, self.manifest)
        return result

    def _handle_decode_progress(self, p: DecodeProgress):
        self.progress.processed = p.processed
        self.progress.total = p.total
        if self.current_session:
            self.progress.elapsed_time = time.time() - self.current_session.start_time
        if self._on_progress:
            self._on_progress(self.progress)

    # ─── Reports ─────────────────────────────────────────────

    def export_report_json(self, filepath: str):
        if not self.current_session:
            return
        s = self.current_session
        report = {
            "session_id": s.session_id,
            "source": s.source,
            "date": time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(s.start_time)),
            "duration": s.duration_human,
            "start_stage": s.start_stage,
            "error": s.error or None,
            "failed_stage": s.failed_stage or None,
            "partitions": [
                {
                    "slot": p.slot,
                    "target": p.target,
                    "type": p.type,
                    "dev_offset_hex": f"0x{p.dev_offset:X}",
                    "length": p.length,
                    "load_address_hex": f"0x{p.load_address:X}",
                }
                for p in s.partitions
            ],
            "img1": s.img1_header.describe() if s.img1_header else None,
            "database": {
                "name": s.database_entry.name,
                "size": s.database_entry.size,
                "first_cluster": s.database_entry.first_cluster,
            } if s.database_entry else None,
            "summary": s.summary,
            "images": [
                {
                    "id": img.full_id,
                    "format": img.format_name,
                    "width": img.width,
                    "height": img.height,
                }
                for img in s.images
            ],
            "skipped": [
                {"id": sk.ref_id, "error": sk.error_type, "reason": sk.reason}
                for sk in s.skipped
            ],
            "missing_ids": s.missing_ids,
        }
        with open(filepath, "w") as f:
            json.dump(report, f, indent=2, default=str)


def extract_images(package, **kwargs) -> list[DecodedImage]:
    """Decode every image in a firmware package; see FirmwareExtractor for kwargs."""
    return FirmwareExtractor(**kwargs).extract(package).images
