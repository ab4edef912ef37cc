import argparse
from pathlib import Path

from runtime_merge.config import MergeConfig, load_config
from runtime_merge.console import fail, log
from runtime_merge.errors import RuntimeMergeError
from runtime_merge.pipeline import run


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Merge the osx-arm64 and osx-x64 macOS runtime packs "
        "into one layout with a separately shipped native library."
    )
    parser.add_argument("output_dir", help="existing directory to write into")
    parser.add_argument(
        "--config", type=Path, help="JSON file overriding sources and names"
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="fail when the managed libraries of the two packs differ",
    )
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    try:
        config = load_config(args.config) if args.config else MergeConfig()
        result = run(args.output_dir, config, strict=args.strict)
    except RuntimeMergeError as exc:
        fail(str(exc))
    if not result.managed_libraries_match:
        log(f"Managed library taken from {result.canonical_rid}")
    return 0
