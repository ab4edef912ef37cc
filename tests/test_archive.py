import io
import zipfile

import pytest

from factories import build_package_archive
from runtime_merge.archive import normalize_rel_path, read_package
from runtime_merge.config import PackageLayout
from runtime_merge.errors import ArchiveError, MissingArchiveEntryError

LAYOUT = PackageLayout(
    target_framework="net9.0",
    managed_library="Managed.dll",
    native_library="libnative.dylib",
)


def test_read_package_returns_exact_entries():
    archive = build_package_archive(
        "osx-arm64", license=b"LIC", managed=b"MANAGED", native=b"NATIVE", layout=LAYOUT
    )
    contents = read_package(archive, "osx-arm64", LAYOUT)
    assert contents.runtime == "osx-arm64"
    assert contents.license == b"LIC"
    assert contents.managed_library == b"MANAGED"
    assert contents.native_library == b"NATIVE"


def test_read_package_ignores_entry_order():
    forward = build_package_archive(
        "a1", managed=b"M", native=b"N", layout=LAYOUT
    )
    backward = build_package_archive(
        "a1", managed=b"M", native=b"N", layout=LAYOUT, reverse=True
    )
    first = read_package(forward, "a1", LAYOUT)
    second = read_package(backward, "a1", LAYOUT)
    assert first.license == second.license == b"\x01\x02\x03"
    assert first.managed_library == second.managed_library == b"M"
    assert first.native_library == second.native_library == b"N"


def test_read_package_ignores_other_runtimes_and_files():
    extra = [
        ("runtimes/a2/native/libnative.dylib", b"OTHER"),
        ("runtimes/a1/native/libnative.a", b"STATIC"),
        ("LICENSE.txt", b"nope"),
    ]
    archive = build_package_archive(
        "a1", managed=b"M", native=b"N", layout=LAYOUT, extra=extra
    )
    contents = read_package(archive, "a1", LAYOUT)
    assert contents.native_library == b"N"
    assert contents.license == b"\x01\x02\x03"


def test_large_entry_is_read_completely():
    native = bytes(range(256)) * 4096
    archive = build_package_archive("a1", managed=b"M", native=native, layout=LAYOUT)
    assert read_package(archive, "a1", LAYOUT).native_library == native


@pytest.mark.parametrize(
    "omitted",
    [
        "LICENSE",
        "runtimes/a1/lib/net9.0/Managed.dll",
        "runtimes/a1/native/libnative.dylib",
    ],
)
def test_missing_entry_is_detected(omitted):
    archive = build_package_archive(
        "a1", managed=b"M", native=b"N", layout=LAYOUT, omit=(omitted,)
    )
    with pytest.raises(MissingArchiveEntryError) as excinfo:
        read_package(archive, "a1", LAYOUT)
    assert excinfo.value.path == omitted
    assert excinfo.value.runtime == "a1"


def test_empty_license_is_detected():
    archive = build_package_archive(
        "a1", license=b"", managed=b"M", native=b"N", layout=LAYOUT
    )
    with pytest.raises(MissingArchiveEntryError, match="empty"):
        read_package(archive, "a1", LAYOUT)


def test_wrong_runtime_reports_missing_entries():
    archive = build_package_archive("a1", managed=b"M", native=b"N", layout=LAYOUT)
    with pytest.raises(MissingArchiveEntryError):
        read_package(archive, "a2", LAYOUT)


def test_duplicate_entry_is_rejected():
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("LICENSE", b"one")
        with pytest.warns(UserWarning):
            archive.writestr("LICENSE", b"two")
    with pytest.raises(ArchiveError, match="duplicate"):
        read_package(buffer.getvalue(), "a1", LAYOUT)


def test_corrupt_archive_raises_archive_error():
    with pytest.raises(ArchiveError):
        read_package(b"definitely not a zip", "a1", LAYOUT)


def test_normalize_rel_path():
    assert normalize_rel_path("/runtimes\\a1/./native/x") == "runtimes/a1/native/x"
    assert normalize_rel_path("../LICENSE") is None


def test_unsupported_compression_raises_archive_error():
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_STORED) as archive:
        archive.writestr("LICENSE", b"license")
    data = bytearray(buffer.getvalue())
    # Mark the entry with an unknown compression method in both headers.
    local = data.index(b"PK\x03\x04")
    central = data.index(b"PK\x01\x02")
    data[local + 8 : local + 10] = (97).to_bytes(2, "little")
    data[central + 10 : central + 12] = (97).to_bytes(2, "little")
    with pytest.raises(ArchiveError, match="a1"):
        read_package(bytes(data), "a1", LAYOUT)
