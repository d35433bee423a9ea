"""
Wallpaper manifest — compare decoded images against the ids a device is
expected to ship.

Manifest shape (JSON):
    {
      "wallpapers_by_color": {
        "<color>": {
          "<style>": {"preview": "<id>_<fmt>", "full_res": "<id>_<fmt>"}
        }
      }
    }

Ids use the same "<file id>_<format as 4 hex digits>" form as
DecodedImage.full_id.
"""

import json
import logging
from typing import Iterable

logger = logging.getLogger(__name__)


def load_manifest(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def expected_ids(manifest: dict) -> list[str]:
    ids = []
    for styles in manifest.get("wallpapers_by_color", {}).values():
        for entry in styles.values():
            if not entry:
                continue
            for key in ("preview", "full_res"):
                if entry.get(key):
                    ids.append(entry[key])
    return ids


def missing_ids(images: Iterable, manifest: dict) -> list[str]:
    """Expected ids with no matching decoded image, in manifest order."""
    decoded = {img.full_id for img in images}
    missing = [i for i in expected_ids(manifest) if i not in decoded]
    if missing:
        logger.warning("Missing expected image ids: %s", ", ".join(missing))
    return missing
