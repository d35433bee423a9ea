"""
IMG1 Reader — Split a signed firmware image into header, body, signature
and certificate.

Header layout (little-endian, inside a fixed 0x400-byte region):
  Offset  0: Magic (4 bytes)
  Offset  4: Version (3 bytes ASCII) = "2.0"
  Offset  7: Signature format (1 byte)
  Offset  8: Entry point (4 bytes)
  Offset 12: Body length (4 bytes)
  Offset 16: Data length (4 bytes, reserved)
  Offset 20: Footer offset (4 bytes, reserved)
  Offset 24: Footer length (4 bytes), the certificate size
  Offset 28: Salt (32 bytes)
  Offset 60: unk0 (2 bytes), unk1 (2 bytes)
  Offset 64: Header signature (16 bytes)
  Offset 80: Header leftover (4 bytes)

Body starts at 0x400, the 0x80-byte signature follows the body and the
certificate follows the signature.  The signature is extracted only; it is
never verified.
"""

import struct
import logging
from dataclasses import dataclass

from .errors import FormatMismatch, check_bounds

logger = logging.getLogger(__name__)

IMG1_VERSION = "2.0"
HEADER_REGION = 0x400
SIGNATURE_SIZE = 0x80

_HEADER = struct.Struct("<4s3sBIIIII32sHH16sI")


@dataclass
class Img1Header:
    magic: str
    version: str
    signature_format: int
    entry_point: int
    body_length: int
    data_length: int        # Reserved: not needed to locate any region
    footer_offset: int      # Reserved: the footer is located from body_length
    footer_length: int
    salt: bytes
    unk0: int
    unk1: int
    header_signature: bytes
    header_leftover: int

    def describe(self) -> dict:
        return {
            "magic": self.magic,
            "version": self.version,
            "signature_format": self.signature_format,
            "entry_point": f"0x{self.entry_point:08x}",
            "body_length": self.body_length,
            "footer_length": self.footer_length,
            "salt": self.salt.hex(),
            "unk0": self.unk0,
            "unk1": self.unk1,
            "header_signature": self.header_signature.hex(),
            "header_leftover": f"0x{self.header_leftover:08x}",
        }


@dataclass
class SignedImage:
    header: Img1Header
    body: bytes
    signature: bytes
    certificate: bytes


def parse_header(data) -> Img1Header:
    check_bounds("IMG1 header", len(data), 0, _HEADER.size)
    (magic, version, sig_format, entry_point, body_length, data_length,
     footer_offset, footer_length, salt, unk0, unk1, header_sig,
     leftover) = _HEADER.unpack_from(data, 0)

    version = version.decode("ascii", errors="replace")
    if version != IMG1_VERSION:
        raise FormatMismatch(
            f"Unsupported img1 version: {version!r}. Expected {IMG1_VERSION!r}", 4,
        )

    return Img1Header(
        magic=magic.decode("ascii", errors="replace"),
        version=version,
        signature_format=sig_format,
        entry_point=entry_point,
        body_length=body_length,
        data_length=data_length,
        footer_offset=footer_offset,
        footer_length=footer_length,
        salt=salt,
        unk0=unk0,
        unk1=unk1,
        header_signature=header_sig,
        header_leftover=leftover,
    )


def unpack_img1(data) -> SignedImage:
    """Parse the header and copy out body, signature and certificate."""
    view = memoryview(data)
    header = parse_header(view)
    logger.debug("IMG1 header: %s", header.describe())

    body_start = HEADER_REGION
    sign_start = body_start + header.body_length
    cert_start = sign_start + SIGNATURE_SIZE

    check_bounds("IMG1 body", len(view), body_start, header.body_length)
    check_bounds("IMG1 signature", len(view), sign_start, SIGNATURE_SIZE)
    check_bounds("IMG1 certificate", len(view), cert_start, header.footer_length)

    image = SignedImage(
        header=header,
        body=bytes(view[body_start:sign_start]),
        signature=bytes(view[sign_start:cert_start]),
        certificate=bytes(view[cert_start:cert_start + header.footer_length]),
    )
    logger.info(
        "IMG1 %s v%s: body %d bytes, signature %d bytes, certificate %d bytes",
        header.magic, header.version, len(image.body),
        len(image.signature), len(image.certificate),
    )
    return image
