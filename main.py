#!/usr/bin/env python3
"""
iPod Nano Firmware Artwork Extractor — Entry Point.

Usage:
    python main.py firmware.ipsw -o artwork/          # Decode + save PNGs
    python main.py firmware.ipsw --preview            # Decode only
    python main.py Firmware.MSE --from mse --list     # Show the FAT16 tree
    python main.py SilverImagesDB.LE.bin --from db -o artwork/
"""

import os
import sys
import time
import logging
import argparse

from nanofw import __version__ as APP_VERSION
from nanofw.errors import ExtractionError
from nanofw.manager import (
    DATABASE_FILENAME,
    FIRMWARE_ENTRY,
    RESOURCE_PARTITION,
    STAGE_CONTAINER,
    STAGE_DATABASE,
    STAGE_FILESYSTEM,
    STAGE_IMG1,
    STAGE_PARTITION,
    ExtractionProgress,
    FirmwareExtractor,
)

INPUT_STAGES = {
    "ipsw": STAGE_CONTAINER,
    "mse": STAGE_PARTITION,
    "img1": STAGE_IMG1,
    "fat": STAGE_FILESYSTEM,
    "db": STAGE_DATABASE,
}


def _configure_logging(args):
    level = logging.INFO
    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_volume(args, data):
    """Run the chain up to the FAT16 volume for --list."""
    from nanofw.container import IpswUnpacker
    from nanofw.errors import EntryNotFound
    from nanofw.filesystem import Fat16Reader
    from nanofw.img1 import unpack_img1
    from nanofw.mse import MseReader

    stage = INPUT_STAGES[args.input_format]
    if stage == STAGE_DATABASE:
        raise SystemExit("--list needs an input that contains a FAT16 volume")
    if stage == STAGE_CONTAINER:
        data = IpswUnpacker(data).find_and_extract(args.entry)
        if data is None:
            raise EntryNotFound("IPSW entry", args.entry)
        stage = STAGE_PARTITION
    if stage == STAGE_PARTITION:
        mse = MseReader(data)
        partition = mse.find_by_type(args.partition)
        if partition is None:
            raise EntryNotFound("MSE partition", args.partition)
        data = mse.extract(partition)
        stage = STAGE_IMG1
    if stage == STAGE_IMG1:
        data = unpack_img1(data).body
    return Fat16Reader(data)


def list_volume(args, data):
    volume = _load_volume(args, data)
    print(f"  {'Size':>10s}  {'Cluster':>7s}  Path")
    print(f"  {'-' * 10}  {'-' * 7}  {'-' * 40}")
    count = 0
    for path, entry in volume.walk():
        size = "<DIR>" if entry.is_directory else _fmt(entry.size)
        print(f"  {size:>10s}  {entry.first_cluster:7d}  {path}")
        count += 1
    print(f"\n  {count} entries")


def cli_mode(args):
    print("=" * 60)
    print(f"  🎨 iPod Nano Artwork Extractor  v{APP_VERSION}")
    print("  IPSW → MSE → IMG1 → FAT16 → SilverDB")
    print("=" * 60)
    print()

    if not os.path.isfile(args.input):
        print(f"Input not found: {args.input}")
        sys.exit(1)
    with open(args.input, "rb") as f:
        data = f.read()

    if args.list:
        list_volume(args, data)
        return

    manifest = None
    if args.manifest:
        from nanofw.manifest import load_manifest
        manifest = load_manifest(args.manifest)

    output_dir = args.output or os.path.join(os.getcwd(), "artwork")

    print(f"Input:      {args.input} ({_fmt(len(data))}, {args.input_format})")
    print(f"Database:   {args.database}")
    print(f"Output:     {output_dir if not args.preview else '(preview)'}")
    print()

    extractor = FirmwareExtractor(
        entry_name=args.entry,
        partition_type=args.partition,
        database_name=args.database,
        manifest=manifest,
    )

    ll = 0

    def on_progress(p: ExtractionProgress):
        nonlocal ll
        pct = p.progress_percent
        bw = 30
        filled = int(bw * pct / 100)
        bar = "█" * filled + "░" * (bw - filled)
        line = f"\r  [{bar}] {pct:5.1f}%  {p.processed}/{p.total} images"
        pad = max(0, ll - len(line))
        sys.stdout.write(line + " " * pad)
        sys.stdout.flush()
        ll = len(line)

    extractor.set_callbacks(on_progress=on_progress)

    start = time.time()
    try:
        session = extractor.run(data, INPUT_STAGES[args.input_format], args.input)
    except KeyboardInterrupt:
        print("\n  Aborted.")
        sys.exit(130)
    elapsed = time.time() - start
    print("\n")

    print(f"{'=' * 60}")
    print(f"  Done in {elapsed:.1f}s — Decoded {len(session.images)} image(s), "
          f"skipped {len(session.skipped)}")
    print(f"{'=' * 60}")

    if session.images:
        print()
        print(f"  {'Format':10s} {'Count':>6s}  {'Pixels':>10s}")
        print(f"  {'-' * 10} {'-' * 6}  {'-' * 10}")
        for name, images in sorted(session.images_by_format.items()):
            px = sum(img.width * img.height for img in images)
            print(f"  {name:10s} {len(images):6d}  {px:10,d}")

    if session.skipped:
        print(f"\n  ⚠️  Skipped entries ({len(session.skipped)}):")
        for sk in session.skipped[:20]:
            print(f"    id {sk.ref_id:<8d} {sk.error_type}: {sk.reason}")
        if len(session.skipped) > 20:
            print(f"    ... {len(session.skipped) - 20} more")

    if session.missing_ids:
        print(f"\n  ⚠️  Missing manifest ids ({len(session.missing_ids)}):")
        print("    " + ", ".join(session.missing_ids))

    if args.dump_img1:
        if session.signed_image is None:
            print("\n  (No IMG1 stage in this run — nothing to dump)")
        else:
            from nanofw.export import save_signed_image_parts
            save_signed_image_parts(session.signed_image, args.dump_img1)
            print(f"\n  IMG1 parts: {args.dump_img1}")

    if not args.preview:
        from nanofw.export import save_images
        paths = save_images(session.images, output_dir)
        report_path = args.report or os.path.join(output_dir, "extraction_report.json")
        extractor.export_report_json(report_path)
        print(f"\n  Saved {len(paths)} PNG(s) to: {output_dir}")
        print(f"  Report: {report_path}")
    else:
        if args.report:
            extractor.export_report_json(args.report)
            print(f"\n  Report: {args.report}")
        print("  (Preview mode — images not saved)")
    print()


def _fmt(n):
    s = float(n)
    for u in ("B", "KB", "MB", "GB"):
        if s < 1024:
            return f"{s:.1f} {u}"
        s /= 1024
    return f"{s:.1f} TB"


def main():
    parser = argparse.ArgumentParser(
        description="Extract artwork from iPod Nano firmware packages.")
    parser.add_argument("input", help="Firmware package or inner layer file")
    parser.add_argument("--from", dest="input_format", choices=sorted(INPUT_STAGES),
                        default="ipsw", help="Layer the input file starts at")
    parser.add_argument("-o", "--output", default="", help="Output directory for PNGs")
    parser.add_argument("--preview", action="store_true", help="Decode without saving")
    parser.add_argument("--manifest", default="", help="Wallpaper manifest JSON to check ids against")
    parser.add_argument("--report", default="", help="Write the JSON report to this path")
    parser.add_argument("--dump-img1", default="", metavar="DIR",
                        help="Write body.bin, sign.bin and cert.bin to DIR")
    parser.add_argument("--list", action="store_true", help="List the FAT16 volume and exit")
    parser.add_argument("--entry", default=FIRMWARE_ENTRY, help="IPSW member to unpack")
    parser.add_argument("--partition", default=RESOURCE_PARTITION, help="MSE partition type")
    parser.add_argument("--database", default=DATABASE_FILENAME, help="Database file on the volume")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Warnings only")
    args = parser.parse_args()

    _configure_logging(args)

    try:
        cli_mode(args)
    except ExtractionError as e:
        print(f"\n  ❌ Extraction failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
