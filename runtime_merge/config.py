import json

from runtime_merge.errors import ConfigError

# https://www.nuget.org/packages/Microsoft.macOS.Runtime.osx-arm64
# https://www.nuget.org/packages/Microsoft.macOS.Runtime.osx-x64
NUGET_PACKAGE_URL = "https://www.nuget.org/api/v2/package/{package}/{version}"
RUNTIME_PACKAGE = "Microsoft.macOS.Runtime.{rid}"
RUNTIME_VERSION = "14.2.9244-net9-p2"
DEFAULT_RIDS = ("osx-arm64", "osx-x64")

TARGET_FRAMEWORK = "net9.0"
MANAGED_LIBRARY = "Microsoft.macOS.dll"
NATIVE_LIBRARY = "libxamarin-dotnet-coreclr.dylib"

SENTINEL_MODULE = "__Internal"
LIBRARY_NAME = "xamarin-macos"
IMPORT_PREFIX = "xamarin_"
SYMBOL_SEPARATOR = "_"

LICENSE_PATH = "LICENSE"

STRING_KEYS = (
    "target_framework",
    "managed_library",
    "native_library",
    "library_name",
    "sentinel_module",
    "import_prefix",
    "symbol_separator",
)


def package_url(rid, version=RUNTIME_VERSION):
    return NUGET_PACKAGE_URL.format(
        package=RUNTIME_PACKAGE.format(rid=rid), version=version
    )


class PackageLayout:
    def __init__(
        self,
        target_framework=TARGET_FRAMEWORK,
        managed_library=MANAGED_LIBRARY,
        native_library=NATIVE_LIBRARY,
    ):
        self.target_framework = target_framework
        self.managed_library = managed_library
        self.native_library = native_library

    def managed_library_path(self, rid):
        return f"runtimes/{rid}/lib/{self.target_framework}/{self.managed_library}"

    def native_library_path(self, rid):
        return f"runtimes/{rid}/native/{self.native_library}"


class PatchSettings:
    def __init__(
        self,
        library_name=LIBRARY_NAME,
        sentinel_module=SENTINEL_MODULE,
        import_prefix=IMPORT_PREFIX,
        symbol_separator=SYMBOL_SEPARATOR,
    ):
        if len(symbol_separator) != 1:
            raise ConfigError("symbol_separator must be a single character")
        self.library_name = library_name
        self.sentinel_module = sentinel_module
        self.import_prefix = import_prefix
        self.symbol_separator = symbol_separator


class MergeConfig:
    """Everything a merge run needs besides the output directory.

    ``sources`` is an ordered list of ``(rid, url)`` pairs; the first one is
    the canonical variant whose managed binary ends up in the layout.
    """

    def __init__(self, sources=None, layout=None, patch=None):
        if sources is None:
            sources = [(rid, package_url(rid)) for rid in DEFAULT_RIDS]
        if len(sources) != 2:
            raise ConfigError("exactly two sources are required")
        rids = [rid for rid, _ in sources]
        if not all(rid.strip() for rid in rids):
            raise ConfigError("source runtime identifiers must not be empty")
        if len(set(rids)) != len(rids):
            raise ConfigError(f"duplicate source runtime identifier in {rids}")
        self.sources = list(sources)
        self.layout = layout or PackageLayout()
        self.patch = patch or PatchSettings()

    @property
    def rids(self):
        return [rid for rid, _ in self.sources]

    @property
    def native_output_name(self):
        return f"lib{self.patch.library_name}.dylib"

    def managed_output_path(self):
        return f"lib/{self.layout.target_framework}/{self.layout.managed_library}"

    def native_output_path(self, rid):
        return f"runtimes/{rid}/native/{self.native_output_name}"


def load_config(path):
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Missing {path}") from None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
    return config_from_dict(data)


def config_from_dict(data):
    if not isinstance(data, dict):
        raise ConfigError("config must be a JSON object")
    unknown = sorted(set(data) - set(STRING_KEYS) - {"sources"})
    if unknown:
        raise ConfigError(f"unknown config keys: {', '.join(unknown)}")

    values = {}
    for key in STRING_KEYS:
        if key not in data:
            continue
        value = data[key]
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"config {key} must be a non-empty string")
        values[key] = value if key == "symbol_separator" else value.strip()

    sources = None
    if "sources" in data:
        raw_sources = data["sources"]
        if not isinstance(raw_sources, dict):
            raise ConfigError("config sources must be an object of rid -> url")
        sources = []
        for rid, url in raw_sources.items():
            if not isinstance(url, str) or not url.strip():
                raise ConfigError(f"config source url for {rid} must be a string")
            sources.append((rid, url.strip()))

    layout = PackageLayout(
        target_framework=values.get("target_framework", TARGET_FRAMEWORK),
        managed_library=values.get("managed_library", MANAGED_LIBRARY),
        native_library=values.get("native_library", NATIVE_LIBRARY),
    )
    patch = PatchSettings(
        library_name=values.get("library_name", LIBRARY_NAME),
        sentinel_module=values.get("sentinel_module", SENTINEL_MODULE),
        import_prefix=values.get("import_prefix", IMPORT_PREFIX),
        symbol_separator=values.get("symbol_separator", SYMBOL_SEPARATOR),
    )
    return MergeConfig(sources=sources, layout=layout, patch=patch)
