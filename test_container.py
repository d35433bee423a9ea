"""
Test IPSW member lookup and decompression.
"""
import io
import os
import shutil
import tempfile
import zipfile

from nanofw.container import IpswUnpacker
from nanofw.errors import DecompressionError, FormatMismatch
from synthetic_firmware import build_ipsw, expect_error


def main():
    print("=" * 60)
    print("  IPSW Container — Test Suite")
    print("=" * 60)
    print()

    test_find_member()
    test_suffix_match()
    test_missing_member()
    test_from_path()
    test_bad_archive()
    test_corrupt_member()
    test_encrypted_member()

    print()
    print("=" * 60)
    print("  ALL TESTS PASSED ✅")
    print("=" * 60)


def test_find_member():
    print("── Test: find member ──")
    mse = bytes(i & 0xFF for i in range(200_000))
    ipsw = IpswUnpacker(build_ipsw({
        "Restore.plist": b"<plist/>",
        "Firmware/Firmware.MSE": mse,
    }))
    assert ipsw.entry_names() == ["Restore.plist", "Firmware/Firmware.MSE"]
    assert ipsw.find_and_extract("Firmware.MSE") == mse
    print("  ✅ find member: PASS")


def test_suffix_match():
    print("── Test: suffix match ──")
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as z:
        z.writestr("firmware.mse/", b"")            # Directory entry
        z.writestr("a/FIRMWARE.MSE", b"first")
        z.writestr("b/Firmware.MSE", b"second")
    ipsw = IpswUnpacker(buf.getvalue())
    assert ipsw.find_and_extract("firmware.mse") == b"first"
    assert ipsw.find_and_extract("MSE") == b"first"
    print("  ✅ suffix match: PASS")


def test_missing_member():
    print("── Test: missing member ──")
    ipsw = IpswUnpacker(build_ipsw({"Restore.plist": b"x"}))
    assert ipsw.find_and_extract("Firmware.MSE") is None
    print("  ✅ missing member: PASS")


def test_from_path():
    print("── Test: from path ──")
    tmpdir = tempfile.mkdtemp(prefix="test_ipsw_")
    try:
        path = os.path.join(tmpdir, "iPod_1.2_39A.ipsw")
        with open(path, "wb") as f:
            f.write(build_ipsw({"Firmware.MSE": b"MSE"}))
        assert IpswUnpacker(path).find_and_extract("Firmware.MSE") == b"MSE"

        expect_error(FormatMismatch, IpswUnpacker(os.path.join(tmpdir, "nope.ipsw")).entry_names)
        print("  ✅ from path: PASS")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_bad_archive():
    print("── Test: bad archive ──")
    expect_error(FormatMismatch, IpswUnpacker(b"not a zip at all").find_and_extract, "Firmware.MSE")
    expect_error(FormatMismatch, IpswUnpacker(b"").entry_names)
    print("  ✅ bad archive: PASS")


def test_corrupt_member():
    print("── Test: corrupt member ──")
    data = bytearray(build_ipsw({"Firmware.MSE": bytes(range(256)) * 64}))
    # Flip bytes inside the compressed stream, right after the local header
    name_len = len("Firmware.MSE")
    start = 30 + name_len
    for i in range(start + 4, start + 40):
        data[i] ^= 0xFF
    expect_error(DecompressionError, IpswUnpacker(bytes(data)).find_and_extract, "Firmware.MSE")
    print("  ✅ corrupt member: PASS")


def test_encrypted_member():
    print("── Test: encrypted member ──")
    data = bytearray(build_ipsw({"Firmware.MSE": b"secret" * 100}))
    # Set the "encrypted" general purpose flag in the local and central headers
    central = data.find(b"PK\x01\x02")
    data[6] |= 0x01
    data[central + 8] |= 0x01
    err = expect_error(DecompressionError, IpswUnpacker(bytes(data)).find_and_extract, "Firmware.MSE")
    assert "Firmware.MSE" in str(err)
    print("  ✅ encrypted member: PASS")


if __name__ == "__main__":
    main()
