import pytest

from factories import build_metadata, default_imports
from runtime_merge.errors import ImageFormatError
from runtime_merge.metadata import (
    HEAP_STRINGS_WIDE,
    IMPL_MAP,
    MODULE_REF,
    MetadataRoot,
    MetadataTables,
    StringHeap,
)


def parse(imports=None):
    root = MetadataRoot.parse(build_metadata(imports or default_imports()))
    return root, MetadataTables.parse(root.stream("#~").data)


def test_root_round_trip_is_identical():
    blob = build_metadata(default_imports())
    assert MetadataRoot.parse(blob).serialize() == blob


def test_tables_round_trip_is_identical():
    root, tables = parse()
    assert tables.serialize() == bytes(root.stream("#~").data)


def test_module_refs_and_impl_map_rows():
    root, tables = parse()
    strings = StringHeap(root.stream("#Strings"))
    names = [strings.get(row[0]) for row in tables.table(MODULE_REF)]
    assert names == ["__Internal", "/usr/lib/libobjc.dylib"]
    imports = [(strings.get(row[2]), row[3]) for row in tables.table(IMPL_MAP)]
    assert imports == [
        ("xamarin_log", 1),
        ("xamarin_get_bridge", 1),
        ("objc_msgSend", 2),
    ]


def test_string_heap_append_does_not_touch_existing_strings():
    root, _ = parse()
    strings = StringHeap(root.stream("#Strings"))
    before = bytes(strings.stream.data)
    index = strings.add("_xamarin_log")
    assert strings.get(index) == "_xamarin_log"
    assert bytes(strings.stream.data[: len(before)]) == before
    assert strings.add("_xamarin_log") == index


def test_wide_string_heap_widens_string_columns():
    root, tables = parse()
    narrow = tables.serialize()
    tables.fit_string_heap(0x10000)
    assert tables.heap_sizes & HEAP_STRINGS_WIDE
    widened = tables.serialize()
    assert len(widened) > len(narrow)
    reparsed = MetadataTables.parse(widened)
    assert reparsed.table(IMPL_MAP) == tables.table(IMPL_MAP)
    assert reparsed.table(MODULE_REF) == tables.table(MODULE_REF)


def test_bad_signature_is_rejected():
    blob = bytearray(build_metadata(default_imports()))
    blob[0] ^= 0xFF
    with pytest.raises(ImageFormatError, match="signature"):
        MetadataRoot.parse(bytes(blob))


def test_unknown_table_is_rejected():
    root, tables = parse()
    data = bytearray(root.stream("#~").data)
    data[8 + 6] |= 0x80  # valid bit for table 0x37
    with pytest.raises(ImageFormatError, match="0x37"):
        MetadataTables.parse(bytes(data))


def test_missing_stream_is_reported():
    root, _ = parse()
    with pytest.raises(ImageFormatError, match="#Pdb"):
        root.stream("#Pdb")
