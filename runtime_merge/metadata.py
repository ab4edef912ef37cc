"""Reading and re-serializing ECMA-335 metadata (partition II, section 24)."""

import struct

from runtime_merge.errors import ImageFormatError

METADATA_SIGNATURE = 0x424A5342
TABLE_STREAMS = ("#~", "#-")
STRINGS_STREAM = "#Strings"

HEAP_STRINGS_WIDE = 0x01
HEAP_GUID_WIDE = 0x02
HEAP_BLOB_WIDE = 0x04
HEAP_EXTRA_DATA = 0x40

STR = "string"
GUID = "guid"
BLOB = "blob"

MODULE_REF = 0x1A
IMPL_MAP = 0x1C


def _table(table_id):
    return ("table", table_id)


def _coded(name):
    return ("coded", name)


TYPE_DEF_OR_REF = _coded("TypeDefOrRef")
HAS_CONSTANT = _coded("HasConstant")
HAS_CUSTOM_ATTRIBUTE = _coded("HasCustomAttribute")
HAS_FIELD_MARSHAL = _coded("HasFieldMarshal")
HAS_DECL_SECURITY = _coded("HasDeclSecurity")
MEMBER_REF_PARENT = _coded("MemberRefParent")
HAS_SEMANTICS = _coded("HasSemantics")
METHOD_DEF_OR_REF = _coded("MethodDefOrRef")
MEMBER_FORWARDED = _coded("MemberForwarded")
IMPLEMENTATION = _coded("Implementation")
CUSTOM_ATTRIBUTE_TYPE = _coded("CustomAttributeType")
RESOLUTION_SCOPE = _coded("ResolutionScope")
TYPE_OR_METHOD_DEF = _coded("TypeOrMethodDef")

# name -> (tag bits, candidate tables); None marks an unused tag value.
CODED_INDEXES = {
    "TypeDefOrRef": (2, (0x02, 0x01, 0x1B)),
    "HasConstant": (2, (0x04, 0x08, 0x17)),
    "HasCustomAttribute": (
        5,
        (
            0x06, 0x04, 0x01, 0x02, 0x08, 0x09, 0x0A, 0x00, 0x0E, 0x17, 0x14,
            0x11, 0x1A, 0x1B, 0x20, 0x23, 0x26, 0x27, 0x28, 0x2A, 0x2C, 0x2B,
        ),
    ),
    "HasFieldMarshal": (1, (0x04, 0x08)),
    "HasDeclSecurity": (2, (0x02, 0x06, 0x20)),
    "MemberRefParent": (3, (0x02, 0x01, 0x1A, 0x06, 0x1B)),
    "HasSemantics": (1, (0x14, 0x17)),
    "MethodDefOrRef": (1, (0x06, 0x0A)),
    "MemberForwarded": (1, (0x04, 0x06)),
    "Implementation": (2, (0x26, 0x23, 0x27)),
    "CustomAttributeType": (3, (None, None, 0x06, 0x0A, None)),
    "ResolutionScope": (2, (0x00, 0x1A, 0x23, 0x01)),
    "TypeOrMethodDef": (1, (0x02, 0x06)),
}

TABLE_SCHEMAS = {
    0x00: ("Module", (2, STR, GUID, GUID, GUID)),
    0x01: ("TypeRef", (RESOLUTION_SCOPE, STR, STR)),
    0x02: ("TypeDef", (4, STR, STR, TYPE_DEF_OR_REF, _table(0x04), _table(0x06))),
    0x03: ("FieldPtr", (_table(0x04),)),
    0x04: ("Field", (2, STR, BLOB)),
    0x05: ("MethodPtr", (_table(0x06),)),
    0x06: ("MethodDef", (4, 2, 2, STR, BLOB, _table(0x08))),
    0x07: ("ParamPtr", (_table(0x08),)),
    0x08: ("Param", (2, 2, STR)),
    0x09: ("InterfaceImpl", (_table(0x02), TYPE_DEF_OR_REF)),
    0x0A: ("MemberRef", (MEMBER_REF_PARENT, STR, BLOB)),
    0x0B: ("Constant", (1, 1, HAS_CONSTANT, BLOB)),
    0x0C: ("CustomAttribute", (HAS_CUSTOM_ATTRIBUTE, CUSTOM_ATTRIBUTE_TYPE, BLOB)),
    0x0D: ("FieldMarshal", (HAS_FIELD_MARSHAL, BLOB)),
    0x0E: ("DeclSecurity", (2, HAS_DECL_SECURITY, BLOB)),
    0x0F: ("ClassLayout", (2, 4, _table(0x02))),
    0x10: ("FieldLayout", (4, _table(0x04))),
    0x11: ("StandAloneSig", (BLOB,)),
    0x12: ("EventMap", (_table(0x02), _table(0x14))),
    0x13: ("EventPtr", (_table(0x14),)),
    0x14: ("Event", (2, STR, TYPE_DEF_OR_REF)),
    0x15: ("PropertyMap", (_table(0x02), _table(0x17))),
    0x16: ("PropertyPtr", (_table(0x17),)),
    0x17: ("Property", (2, STR, BLOB)),
    0x18: ("MethodSemantics", (2, _table(0x06), HAS_SEMANTICS)),
    0x19: ("MethodImpl", (_table(0x02), METHOD_DEF_OR_REF, METHOD_DEF_OR_REF)),
    0x1A: ("ModuleRef", (STR,)),
    0x1B: ("TypeSpec", (BLOB,)),
    0x1C: ("ImplMap", (2, MEMBER_FORWARDED, STR, _table(0x1A))),
    0x1D: ("FieldRVA", (4, _table(0x04))),
    0x1E: ("EncLog", (4, 4)),
    0x1F: ("EncMap", (4,)),
    0x20: ("Assembly", (4, 2, 2, 2, 2, 4, BLOB, STR, STR)),
    0x21: ("AssemblyProcessor", (4,)),
    0x22: ("AssemblyOS", (4, 4, 4)),
    0x23: ("AssemblyRef", (2, 2, 2, 2, 4, BLOB, STR, STR, BLOB)),
    0x24: ("AssemblyRefProcessor", (4, _table(0x23))),
    0x25: ("AssemblyRefOS", (4, 4, 4, _table(0x23))),
    0x26: ("File", (4, STR, BLOB)),
    0x27: ("ExportedType", (4, 4, STR, STR, IMPLEMENTATION)),
    0x28: ("ManifestResource", (4, 4, STR, IMPLEMENTATION)),
    0x29: ("NestedClass", (_table(0x02), _table(0x02))),
    0x2A: ("GenericParam", (2, 2, TYPE_OR_METHOD_DEF, STR)),
    0x2B: ("MethodSpec", (METHOD_DEF_OR_REF, BLOB)),
    0x2C: ("GenericParamConstraint", (_table(0x2A), TYPE_DEF_OR_REF)),
}

# ImplMap columns
IMPL_MAP_FLAGS = 0
IMPL_MAP_MEMBER = 1
IMPL_MAP_IMPORT_NAME = 2
IMPL_MAP_IMPORT_SCOPE = 3

TABLES_HEADER = struct.Struct("<IBBBBQQ")


def align4(value):
    return (value + 3) & ~3


class MetadataStream:
    def __init__(self, name, data):
        self.name = name
        self.data = bytearray(data)


class MetadataRoot:
    """The metadata root: version header plus its named streams."""

    def __init__(self, major, minor, reserved, version, flags, streams):
        self.major = major
        self.minor = minor
        self.reserved = reserved
        self.version = version
        self.flags = flags
        self.streams = streams

    @classmethod
    def parse(cls, blob):
        if len(blob) < 20:
            raise ImageFormatError("metadata root is truncated")
        signature, major, minor, reserved, length = struct.unpack_from(
            "<IHHII", blob, 0
        )
        if signature != METADATA_SIGNATURE:
            raise ImageFormatError(f"bad metadata signature 0x{signature:08x}")
        version = bytes(blob[16 : 16 + length])
        pos = 16 + length
        flags, count = struct.unpack_from("<HH", blob, pos)
        pos += 4
        streams = []
        for _ in range(count):
            offset, size = struct.unpack_from("<II", blob, pos)
            pos += 8
            end = blob.find(b"\x00", pos)
            if end < 0:
                raise ImageFormatError("unterminated stream name")
            name = bytes(blob[pos:end]).decode("ascii")
            pos = align4(end + 1)
            if offset + size > len(blob):
                raise ImageFormatError(f"stream {name} runs past the metadata")
            streams.append(MetadataStream(name, blob[offset : offset + size]))
        return cls(major, minor, reserved, version, flags, streams)

    def stream(self, *names):
        for stream in self.streams:
            if stream.name in names:
                return stream
        raise ImageFormatError(f"metadata has no {' or '.join(names)} stream")

    def serialize(self):
        header = bytearray(
            struct.pack(
                "<IHHII",
                METADATA_SIGNATURE,
                self.major,
                self.minor,
                self.reserved,
                len(self.version),
            )
        )
        header += self.version
        header += struct.pack("<HH", self.flags, len(self.streams))
        headers_size = sum(
            8 + align4(len(stream.name) + 1) for stream in self.streams
        )
        offset = align4(len(header) + headers_size)

        body = bytearray()
        for stream in self.streams:
            size = align4(len(stream.data))
            name = stream.name.encode("ascii")
            header += struct.pack("<II", offset + len(body), size)
            header += name + b"\x00" * (align4(len(name) + 1) - len(name))
            body += stream.data
            body += b"\x00" * (size - len(stream.data))
        header += b"\x00" * (offset - len(header))
        return bytes(header + body)


class StringHeap:
    def __init__(self, stream):
        self.stream = stream
        self._added = {}

    def __len__(self):
        return len(self.stream.data)

    def get(self, index):
        data = self.stream.data
        if index >= len(data):
            raise ImageFormatError(f"string index 0x{index:x} is outside #Strings")
        end = data.find(b"\x00", index)
        if end < 0:
            raise ImageFormatError(f"unterminated string at 0x{index:x}")
        return bytes(data[index:end]).decode("utf-8")

    def add(self, text):
        # Existing strings may be shared by several rows, so only strings
        # appended here are reused.
        if text in self._added:
            return self._added[text]
        index = len(self.stream.data)
        self.stream.data += text.encode("utf-8") + b"\x00"
        self._added[text] = index
        return index


class MetadataTables:
    """Rows of the compressed (#~) or uncompressed (#-) table stream."""

    def __init__(
        self, reserved, major, minor, heap_sizes, reserved2, valid, sorted_mask,
        row_counts, extra, rows,
    ):
        self.reserved = reserved
        self.major = major
        self.minor = minor
        self.heap_sizes = heap_sizes
        self.reserved2 = reserved2
        self.valid = valid
        self.sorted_mask = sorted_mask
        self.row_counts = row_counts
        self.extra = extra
        self.rows = rows

    @classmethod
    def parse(cls, data):
        if len(data) < TABLES_HEADER.size:
            raise ImageFormatError("table stream is truncated")
        (
            reserved, major, minor, heap_sizes, reserved2, valid, sorted_mask,
        ) = TABLES_HEADER.unpack_from(data, 0)
        pos = TABLES_HEADER.size
        present = [table_id for table_id in range(64) if valid >> table_id & 1]
        unknown = [table_id for table_id in present if table_id not in TABLE_SCHEMAS]
        if unknown:
            listed = ", ".join(f"0x{table_id:02x}" for table_id in unknown)
            raise ImageFormatError(f"unsupported metadata tables: {listed}")
        row_counts = {}
        for table_id in present:
            (row_counts[table_id],) = struct.unpack_from("<I", data, pos)
            pos += 4
        extra = None
        if heap_sizes & HEAP_EXTRA_DATA:
            extra = bytes(data[pos : pos + 4])
            pos += 4

        tables = cls(
            reserved, major, minor, heap_sizes, reserved2, valid, sorted_mask,
            row_counts, extra, {},
        )
        for table_id in present:
            widths = tables.column_widths(table_id)
            row_size = sum(widths)
            rows = []
            for _ in range(row_counts[table_id]):
                if pos + row_size > len(data):
                    name = TABLE_SCHEMAS[table_id][0]
                    raise ImageFormatError(f"{name} table runs past the stream")
                row = []
                for width in widths:
                    row.append(int.from_bytes(data[pos : pos + width], "little"))
                    pos += width
                rows.append(row)
            tables.rows[table_id] = rows
        return tables

    def _heap_width(self, flag):
        return 4 if self.heap_sizes & flag else 2

    def _column_width(self, column):
        if isinstance(column, int):
            return column
        if column == STR:
            return self._heap_width(HEAP_STRINGS_WIDE)
        if column == GUID:
            return self._heap_width(HEAP_GUID_WIDE)
        if column == BLOB:
            return self._heap_width(HEAP_BLOB_WIDE)
        kind, target = column
        if kind == "table":
            return 2 if self.row_counts.get(target, 0) < 0x10000 else 4
        tag_bits, candidates = CODED_INDEXES[target]
        limit = 1 << (16 - tag_bits)
        largest = max(
            self.row_counts.get(table_id, 0)
            for table_id in candidates
            if table_id is not None
        )
        return 2 if largest < limit else 4

    def column_widths(self, table_id):
        _, columns = TABLE_SCHEMAS[table_id]
        return [self._column_width(column) for column in columns]

    def table(self, table_id):
        return self.rows.get(table_id, [])

    def fit_string_heap(self, heap_size):
        if heap_size > 0xFFFF:
            self.heap_sizes |= HEAP_STRINGS_WIDE

    def serialize(self):
        out = bytearray(
            TABLES_HEADER.pack(
                self.reserved,
                self.major,
                self.minor,
                self.heap_sizes,
                self.reserved2,
                self.valid,
                self.sorted_mask,
            )
        )
        present = sorted(self.rows)
        for table_id in present:
            out += struct.pack("<I", len(self.rows[table_id]))
        if self.heap_sizes & HEAP_EXTRA_DATA:
            out += self.extra or b"\x00" * 4
        for table_id in present:
            widths = self.column_widths(table_id)
            for row in self.rows[table_id]:
                for value, width in zip(row, widths):
                    out += value.to_bytes(width, "little")
        out += b"\x00" * (align4(len(out)) - len(out))
        return bytes(out)
