# nanofw — iPod Nano firmware artwork extractor
# Pure-Python decoding of the nested formats inside a firmware update package.
#
# Architecture (bottom → top):
#   errors     — Typed failures shared by every layer
#   pixels     — Raw pixel codecs (BGRA8888, RGB565, grey, palettes) → RGBA8
#   silverdb   — SilverImagesDB reference table + per-image headers
#   filesystem — Read-only FAT16 volume (long names, cluster chains)
#   img1       — Signed image container (header, body, signature, cert)
#   mse        — Firmware.MSE partition table
#   container  — Named entry lookup inside the IPSW zip archive
#   manifest   — Expected wallpaper ids vs. decoded images
#   export     — PNG / binary output of decoded results
#   manager    — Orchestrator (stages, progress, cancellation, reports)

__version__ = "0.3.1"
