from pathlib import Path

from runtime_merge.archive import read_package
from runtime_merge.config import LICENSE_PATH
from runtime_merge.console import log, log_tree, warn
from runtime_merge.errors import (
    LicenseMismatchError,
    ManagedLibraryMismatchError,
    MissingOutputDirectoryError,
)
from runtime_merge.fetch import download_all
from runtime_merge.patcher import patch_unmanaged_imports
from runtime_merge.verify import (
    describe_mismatch,
    licenses_equal,
    managed_libraries_equal,
)


class PipelineResult:
    def __init__(self, files, managed_libraries_match, patch, canonical_rid):
        self.files = files
        self.managed_libraries_match = managed_libraries_match
        self.patch = patch
        self.canonical_rid = canonical_rid


def build_layout(archives, config, strict=False):
    """Turn the fetched archives into the merged output files.

    ``archives`` is a sequence of ``(rid, archive_bytes)`` in source order.
    Nothing is written here; every check has passed once this returns.
    """
    contents = []
    for rid, data in archives:
        package = read_package(data, rid, config.layout)
        log(
            f"PACKAGE {rid}: license {len(package.license)} bytes, "
            f"managed {len(package.managed_library)} bytes, "
            f"native {len(package.native_library)} bytes"
        )
        contents.append(package)
    canonical, other = contents

    if not licenses_equal(canonical.license, other.license):
        raise LicenseMismatchError(
            describe_mismatch(
                "Licenses",
                canonical.runtime,
                canonical.license,
                other.runtime,
                other.license,
            )
        )
    log("VERIFY licenses: identical")

    managed_match = managed_libraries_equal(
        canonical.managed_library, other.managed_library
    )
    if managed_match:
        log("VERIFY managed libraries: identical")
    else:
        message = describe_mismatch(
            "Managed libraries",
            canonical.runtime,
            canonical.managed_library,
            other.runtime,
            other.managed_library,
        )
        if strict:
            raise ManagedLibraryMismatchError(message)
        warn(f"{message}; using {canonical.runtime}")

    patch = patch_unmanaged_imports(canonical.managed_library, config.patch)
    log(
        f"PATCH module {patch.old_module} -> {patch.new_module}, "
        f"{len(patch.renamed)} imports renamed"
    )
    if patch.certificate_removed:
        warn("removed the Authenticode certificate from the patched managed library")

    files = {
        LICENSE_PATH: canonical.license,
        config.managed_output_path(): patch.data,
    }
    for package in contents:
        files[config.native_output_path(package.runtime)] = package.native_library
    return PipelineResult(files, managed_match, patch, canonical.runtime)


def write_layout(output_dir, files):
    output_dir = Path(output_dir)
    written = []
    for rel, data in files.items():
        path = output_dir / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        written.append(rel)
    return written


def run(output_dir, config, fetch=download_all, strict=False):
    if output_dir is None or not Path(output_dir).is_dir():
        raise MissingOutputDirectoryError(
            f"Output directory {output_dir} does not exist"
        )
    rids = config.rids
    datas = fetch([url for _, url in config.sources])
    result = build_layout(list(zip(rids, datas)), config, strict=strict)
    written = write_layout(output_dir, result.files)
    log_tree(written, f"OUTPUT {output_dir}")
    return result
