"""Error types raised while merging runtime packs."""


class RuntimeMergeError(Exception):
    """Base class for every failure of a merge run."""


class ConfigError(RuntimeMergeError):
    pass


class FetchError(RuntimeMergeError):
    pass


class MissingOutputDirectoryError(RuntimeMergeError):
    pass


class ArchiveError(RuntimeMergeError):
    pass


class MissingArchiveEntryError(ArchiveError):
    def __init__(self, runtime, path, reason="missing"):
        super().__init__(f"{runtime}: archive entry {path} is {reason}")
        self.runtime = runtime
        self.path = path


class LicenseMismatchError(RuntimeMergeError):
    pass


class ManagedLibraryMismatchError(RuntimeMergeError):
    pass


class ImageFormatError(RuntimeMergeError):
    """The managed binary is not a well-formed PE/CLI image."""


class PatchError(RuntimeMergeError):
    pass


class AlreadyPatchedError(PatchError):
    pass


class PatchInvariantViolation(PatchError):
    def __init__(self, prefix, names):
        listed = ", ".join(names)
        super().__init__(
            f"{len(names)} import(s) do not start with {prefix!r}: {listed}"
        )
        self.prefix = prefix
        self.names = list(names)
