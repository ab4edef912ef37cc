"""Merge per-architecture macOS runtime packs into one redistributable layout."""

from runtime_merge.archive import PackageContents, read_package
from runtime_merge.config import MergeConfig, PackageLayout, PatchSettings
from runtime_merge.patcher import patch_unmanaged_imports, read_unmanaged_imports
from runtime_merge.pipeline import build_layout, run, write_layout
from runtime_merge.verify import licenses_equal, managed_libraries_equal

__version__ = "1.0.0"
