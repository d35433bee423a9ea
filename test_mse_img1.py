"""
Test the MSE partition table and the IMG1 signed-image reader.
"""
import os
import shutil
import struct
import tempfile

from nanofw.errors import FormatMismatch, TruncatedInput
from nanofw.export import save_signed_image_parts
from nanofw.img1 import HEADER_REGION, SIGNATURE_SIZE, parse_header, unpack_img1
from nanofw.mse import NUM_SLOTS, SLOT_SIZE, TABLE_OFFSET, MseReader
from synthetic_firmware import build_img1, build_mse, expect_error


def main():
    print("=" * 60)
    print("  MSE + IMG1 — Test Suite")
    print("=" * 60)
    print()

    test_mse_table()
    test_mse_empty_slots()
    test_mse_extract()
    test_mse_truncated()
    test_img1_split()
    test_img1_version()
    test_img1_truncated()
    test_img1_dump()

    print()
    print("=" * 60)
    print("  ALL TESTS PASSED ✅")
    print("=" * 60)


def test_mse_table():
    print("── Test: MSE table ──")
    mse = MseReader(build_mse([
        ("NAND", "osos", b"\x01" * 0x900),
        ("NAND", "rsrc", b"\x02" * 0x900),
        ("FLSH", "diag", b"\x03" * 0x900),
    ]))
    assert [p.type for p in mse.partitions] == ["osos", "rsrc", "diag"]
    assert [p.target for p in mse.partitions] == ["NAND", "NAND", "FLSH"]

    rsrc = mse.find_by_type("rsrc")
    assert rsrc is not None and rsrc.slot == 1
    assert rsrc.length == 0x100
    assert rsrc.image_start == rsrc.dev_offset + 0x1000
    assert rsrc.image_length == 0x900
    assert rsrc.load_address == 0x08000000
    assert mse.find_by_type("RSRC") is None
    assert mse.find_by_type("none") is None
    print("  ✅ MSE table: PASS")


def test_mse_empty_slots():
    print("── Test: MSE empty slots ──")
    data = bytearray(build_mse(
        [("NAND", "osos", b"\x01" * 0x800), ("NAND", "rsrc", b"\x02" * 0x800)],
        table_slots=[3, 9],
    ))
    mse = MseReader(data)
    assert [p.slot for p in mse.partitions] == [3, 9]

    # Zeroing the first word removes the slot even with the rest intact
    struct.pack_into("<I", data, TABLE_OFFSET + 9 * SLOT_SIZE, 0)
    mse = MseReader(data)
    assert [p.type for p in mse.partitions] == ["osos"]
    assert mse.find_by_type("rsrc") is None
    print("  ✅ MSE empty slots: PASS")


def test_mse_extract():
    print("── Test: MSE extract ──")
    payload = bytes(i & 0xFF for i in range(0xA00))
    mse = MseReader(build_mse([("NAND", "rsrc", payload)]))
    assert mse.extract(mse.find_by_type("rsrc")) == payload
    print("  ✅ MSE extract: PASS")


def test_mse_truncated():
    print("── Test: MSE truncated ──")
    expect_error(TruncatedInput, MseReader, b"\x00" * (TABLE_OFFSET + NUM_SLOTS * SLOT_SIZE - 1))

    data = build_mse([("NAND", "rsrc", b"\x02" * 0x1000)])
    cut = data[:len(data) - 16]
    mse = MseReader(cut)
    expect_error(TruncatedInput, mse.extract, mse.find_by_type("rsrc"))
    print("  ✅ MSE truncated: PASS")


def test_img1_split():
    print("── Test: IMG1 split ──")
    body = b"BODY" * 300
    cert = b"C" * 777
    signed = unpack_img1(build_img1(body, certificate=cert))

    assert signed.body == body
    assert signed.signature == bytes(range(SIGNATURE_SIZE))
    assert signed.certificate == cert
    h = signed.header
    assert h.magic == "8720"
    assert h.version == "2.0"
    assert h.body_length == len(body)
    assert h.footer_length == len(cert)
    assert h.salt == bytes(range(32))
    assert (h.unk0, h.unk1) == (1, 2)

    info = h.describe()
    assert info["entry_point"] == "0x08000000"
    assert info["header_leftover"] == "0xdeadbeef"

    # Trailing padding after the certificate is ignored
    padded = unpack_img1(build_img1(body, certificate=cert) + b"\x00" * 4096)
    assert padded.certificate == cert
    print("  ✅ IMG1 split: PASS")


def test_img1_version():
    print("── Test: IMG1 version ──")
    err = expect_error(FormatMismatch, unpack_img1, build_img1(b"x" * 16, version=b"1.0"))
    assert "1.0" in str(err)
    expect_error(FormatMismatch, parse_header, build_img1(b"x", version=b"2.1"))
    print("  ✅ IMG1 version: PASS")


def test_img1_truncated():
    print("── Test: IMG1 truncated ──")
    data = build_img1(b"B" * 100, certificate=b"C" * 50)
    expect_error(TruncatedInput, unpack_img1, data[:40])
    expect_error(TruncatedInput, unpack_img1, data[:HEADER_REGION + 50])
    expect_error(TruncatedInput, unpack_img1, data[:HEADER_REGION + 100 + 64])
    expect_error(TruncatedInput, unpack_img1, data[:-1])
    print("  ✅ IMG1 truncated: PASS")


def test_img1_dump():
    print("── Test: IMG1 dump ──")
    signed = unpack_img1(build_img1(b"body", certificate=b"cert"))
    tmpdir = tempfile.mkdtemp(prefix="test_img1_")
    try:
        written = save_signed_image_parts(signed, tmpdir)
        assert sorted(os.path.basename(p) for p in written.values()) == [
            "body.bin", "cert.bin", "sign.bin",
        ]
        with open(written["body"], "rb") as f:
            assert f.read() == b"body"
        with open(written["certificate"], "rb") as f:
            assert f.read() == b"cert"
        assert os.path.getsize(written["signature"]) == SIGNATURE_SIZE
        print("  ✅ IMG1 dump: PASS")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
