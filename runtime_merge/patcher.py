import struct

from runtime_merge.errors import (
    AlreadyPatchedError,
    ImageFormatError,
    PatchError,
    PatchInvariantViolation,
)
from runtime_merge.metadata import (
    IMPL_MAP,
    IMPL_MAP_IMPORT_NAME,
    IMPL_MAP_IMPORT_SCOPE,
    MODULE_REF,
    STRINGS_STREAM,
    TABLE_STREAMS,
    MetadataRoot,
    MetadataTables,
    StringHeap,
)
from runtime_merge.pe import (
    CLI_HEADER_DIRECTORY,
    IMAGE_SCN_CNT_INITIALIZED_DATA,
    IMAGE_SCN_MEM_READ,
    PEImage,
)

CLI_HEADER = struct.Struct("<IHHII")
METADATA_SECTION = ".cormeta"


class PatchResult:
    def __init__(self, data, old_module, new_module, renamed, certificate_removed):
        self.data = data
        self.old_module = old_module
        self.new_module = new_module
        self.renamed = renamed
        self.certificate_removed = certificate_removed


class ManagedImage:
    """A PE image together with its parsed metadata tables and strings."""

    def __init__(self, data):
        self.pe = PEImage(data)
        cli_rva, cli_size = self.pe.data_directory(CLI_HEADER_DIRECTORY)
        if not cli_rva or cli_size < CLI_HEADER.size:
            raise ImageFormatError("image has no CLI header")
        self.cli_offset = self.pe.rva_to_offset(cli_rva, CLI_HEADER.size)
        _, _, _, metadata_rva, metadata_size = CLI_HEADER.unpack_from(
            self.pe.data, self.cli_offset
        )
        self.root = MetadataRoot.parse(self.pe.read_rva(metadata_rva, metadata_size))
        self.table_stream = self.root.stream(*TABLE_STREAMS)
        self.strings = StringHeap(self.root.stream(STRINGS_STREAM))
        self.tables = MetadataTables.parse(self.table_stream.data)

    def module_ref_names(self):
        return [self.strings.get(row[0]) for row in self.tables.table(MODULE_REF)]

    def unmanaged_imports(self):
        modules = self.module_ref_names()
        imports = []
        for row in self.tables.table(IMPL_MAP):
            scope = row[IMPL_MAP_IMPORT_SCOPE]
            if not 1 <= scope <= len(modules):
                raise ImageFormatError(f"ImplMap import scope {scope} is out of range")
            imports.append(
                (self.strings.get(row[IMPL_MAP_IMPORT_NAME]), modules[scope - 1])
            )
        return imports

    def relocate_metadata(self):
        self.tables.fit_string_heap(len(self.strings))
        self.table_stream.data = bytearray(self.tables.serialize())
        metadata = self.root.serialize()
        certificate_removed = self.pe.strip_certificate()
        original_checksum = self.pe.checksum
        if self.pe.has_free_section_slot():
            rva = self.pe.append_section(
                METADATA_SECTION,
                metadata,
                IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ,
            )
        else:
            rva = self.pe.extend_last_section(metadata)
        struct.pack_into("<II", self.pe.data, self.cli_offset + 8, rva, len(metadata))
        if original_checksum:
            self.pe.update_checksum()
        return certificate_removed


def read_unmanaged_imports(image_bytes):
    """Return the ModuleRef names and the (import name, module) pairs."""
    image = ManagedImage(image_bytes)
    return image.module_ref_names(), image.unmanaged_imports()


def find_sentinel(module_names, settings):
    matches = [
        idx for idx, name in enumerate(module_names) if name == settings.sentinel_module
    ]
    if not matches:
        if settings.library_name in module_names:
            raise AlreadyPatchedError(
                f"no {settings.sentinel_module} module reference; "
                f"image already binds to {settings.library_name}"
            )
        raise PatchError(f"no module reference named {settings.sentinel_module}")
    if len(matches) > 1:
        raise PatchError(
            f"{len(matches)} module references are named {settings.sentinel_module}"
        )
    return matches[0]


def patch_unmanaged_imports(image_bytes, settings):
    """Re-point the sentinel module's P/Invokes at ``settings.library_name``.

    The sentinel ModuleRef is renamed and every ImplMap row bound to it gets
    ``settings.symbol_separator`` prepended to its import name. All import
    names are checked against ``settings.import_prefix`` before anything is
    changed; the input bytes are never modified.
    """
    image = ManagedImage(image_bytes)
    module_rows = image.tables.table(MODULE_REF)
    module_index = find_sentinel(image.module_ref_names(), settings)
    scope = module_index + 1

    bound = [
        row
        for row in image.tables.table(IMPL_MAP)
        if row[IMPL_MAP_IMPORT_SCOPE] == scope
    ]
    names = [image.strings.get(row[IMPL_MAP_IMPORT_NAME]) for row in bound]
    invalid = [name for name in names if not name.startswith(settings.import_prefix)]
    if invalid:
        raise PatchInvariantViolation(settings.import_prefix, invalid)

    module_rows[module_index][0] = image.strings.add(settings.library_name)
    renamed = []
    for row, name in zip(bound, names):
        new_name = settings.symbol_separator + name
        row[IMPL_MAP_IMPORT_NAME] = image.strings.add(new_name)
        renamed.append((name, new_name))

    certificate_removed = image.relocate_metadata()
    return PatchResult(
        image.pe.to_bytes(),
        settings.sentinel_module,
        settings.library_name,
        renamed,
        certificate_removed,
    )
