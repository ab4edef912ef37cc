import io
import zipfile
import zlib

from runtime_merge.config import LICENSE_PATH
from runtime_merge.errors import ArchiveError, MissingArchiveEntryError

LICENSE = "license"
MANAGED_LIBRARY = "managed_library"
NATIVE_LIBRARY = "native_library"


class PackageContents:
    def __init__(self, runtime, license, managed_library, native_library):
        self.runtime = runtime
        self.license = bytes(license)
        self.managed_library = bytes(managed_library)
        self.native_library = bytes(native_library)

    def __repr__(self):
        return (
            f"PackageContents(runtime={self.runtime!r}, "
            f"license={len(self.license)} bytes, "
            f"managed_library={len(self.managed_library)} bytes, "
            f"native_library={len(self.native_library)} bytes)"
        )


def normalize_rel_path(value):
    value = value.replace("\\", "/").lstrip("/")
    parts = []
    for part in value.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if not parts:
                return None
            parts.pop()
            continue
        parts.append(part)
    return "/".join(parts)


def entry_targets(runtime, layout):
    return {
        LICENSE_PATH: LICENSE,
        layout.managed_library_path(runtime): MANAGED_LIBRARY,
        layout.native_library_path(runtime): NATIVE_LIBRARY,
    }


def read_entry(archive, info):
    with archive.open(info) as src:
        data = src.read()
    if len(data) != info.file_size:
        raise ArchiveError(
            f"{info.filename}: read {len(data)} bytes, expected {info.file_size}"
        )
    return data


def read_package(archive_bytes, runtime, layout):
    """Extract the license, managed and native library of one runtime pack.

    Every non-directory entry is visited once and matched by exact relative
    path, so the archive's entry order does not matter. A role that no entry
    fills, or that is filled by an empty entry, raises
    MissingArchiveEntryError.
    """
    targets = entry_targets(runtime, layout)
    found = {}
    try:
        with zipfile.ZipFile(io.BytesIO(archive_bytes)) as archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                rel = normalize_rel_path(info.filename)
                if rel is None:
                    continue
                role = targets.get(rel)
                if role is None:
                    continue
                if role in found:
                    raise ArchiveError(f"{runtime}: duplicate archive entry {rel}")
                found[role] = read_entry(archive, info)
    except (
        zipfile.BadZipFile,
        zipfile.LargeZipFile,
        zlib.error,
        EOFError,
        NotImplementedError,
    ) as exc:
        raise ArchiveError(f"{runtime}: failed to read archive: {exc}") from exc

    for path, role in targets.items():
        if role not in found:
            raise MissingArchiveEntryError(runtime, path)
        if not found[role]:
            raise MissingArchiveEntryError(runtime, path, reason="empty")

    return PackageContents(
        runtime,
        license=found[LICENSE],
        managed_library=found[MANAGED_LIBRARY],
        native_library=found[NATIVE_LIBRARY],
    )
