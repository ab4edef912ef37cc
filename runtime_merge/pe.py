"""Minimal PE/COFF image access for managed (CLI) binaries."""

import struct

from runtime_merge.errors import ImageFormatError

PE_MAGIC = b"MZ"
PE_SIGNATURE = b"PE\x00\x00"
PE32_MAGIC = 0x10B
PE32_PLUS_MAGIC = 0x20B

COFF_HEADER = struct.Struct("<HHIIIHH")
SECTION_HEADER = struct.Struct("<8sIIIIIIHHI")

SECURITY_DIRECTORY = 4
CLI_HEADER_DIRECTORY = 14

IMAGE_SCN_CNT_INITIALIZED_DATA = 0x00000040
IMAGE_SCN_MEM_READ = 0x40000000
IMAGE_SCN_MEM_DISCARDABLE = 0x02000000

# Offsets inside the optional header, shared by PE32 and PE32+.
_SIZE_OF_INITIALIZED_DATA = 8
_SECTION_ALIGNMENT = 32
_FILE_ALIGNMENT = 36
_SIZE_OF_IMAGE = 56
_SIZE_OF_HEADERS = 60
_CHECKSUM = 64


def align_up(value, alignment):
    if alignment <= 1:
        return value
    return (value + alignment - 1) // alignment * alignment


class Section:
    def __init__(self, header_offset, fields):
        (
            name,
            self.virtual_size,
            self.virtual_address,
            self.raw_size,
            self.raw_pointer,
            _,
            _,
            _,
            _,
            self.characteristics,
        ) = fields
        self.name = name.rstrip(b"\x00").decode("ascii", "replace")
        self.header_offset = header_offset

    @property
    def virtual_extent(self):
        return max(self.virtual_size, self.raw_size)

    def contains_rva(self, rva):
        return self.virtual_address <= rva < self.virtual_address + self.virtual_extent


class PEImage:
    """A mutable PE image held in memory.

    Only the parts needed to relocate a managed image's metadata are
    modelled: the optional header fields that describe layout, the data
    directories, and the section table.
    """

    def __init__(self, data):
        self.data = bytearray(data)
        self._parse_headers()

    def _parse_headers(self):
        data = self.data
        if len(data) < 0x40 or data[:2] != PE_MAGIC:
            raise ImageFormatError("missing DOS header")
        (pe_offset,) = struct.unpack_from("<I", data, 0x3C)
        if data[pe_offset : pe_offset + 4] != PE_SIGNATURE:
            raise ImageFormatError("missing PE signature")
        self.coff_offset = pe_offset + 4
        if self.coff_offset + COFF_HEADER.size > len(data):
            raise ImageFormatError("truncated COFF header")
        (
            self.machine,
            section_count,
            _,
            _,
            _,
            optional_size,
            self.characteristics,
        ) = COFF_HEADER.unpack_from(data, self.coff_offset)
        self.optional_offset = self.coff_offset + COFF_HEADER.size

        (magic,) = struct.unpack_from("<H", data, self.optional_offset)
        if magic == PE32_MAGIC:
            directory_count_offset = 92
        elif magic == PE32_PLUS_MAGIC:
            directory_count_offset = 108
        else:
            raise ImageFormatError(f"unknown optional header magic 0x{magic:04x}")
        self.is_pe32_plus = magic == PE32_PLUS_MAGIC
        (self.directory_count,) = struct.unpack_from(
            "<I", data, self.optional_offset + directory_count_offset
        )
        self.directory_offset = self.optional_offset + directory_count_offset + 4

        self.section_table_offset = self.optional_offset + optional_size
        end = self.section_table_offset + section_count * SECTION_HEADER.size
        if end > len(data):
            raise ImageFormatError("truncated section table")
        self.sections = [
            Section(offset, SECTION_HEADER.unpack_from(data, offset))
            for offset in range(
                self.section_table_offset, end, SECTION_HEADER.size
            )
        ]

    def _optional_field(self, offset):
        return struct.unpack_from("<I", self.data, self.optional_offset + offset)[0]

    def _set_optional_field(self, offset, value):
        struct.pack_into("<I", self.data, self.optional_offset + offset, value)

    @property
    def section_alignment(self):
        return self._optional_field(_SECTION_ALIGNMENT)

    @property
    def file_alignment(self):
        return self._optional_field(_FILE_ALIGNMENT)

    @property
    def size_of_image(self):
        return self._optional_field(_SIZE_OF_IMAGE)

    @property
    def checksum(self):
        return self._optional_field(_CHECKSUM)

    def data_directory(self, index):
        if index >= self.directory_count:
            return 0, 0
        return struct.unpack_from("<II", self.data, self.directory_offset + index * 8)

    def set_data_directory(self, index, rva, size):
        if index >= self.directory_count:
            raise ImageFormatError(f"image has no data directory {index}")
        struct.pack_into("<II", self.data, self.directory_offset + index * 8, rva, size)

    def rva_to_offset(self, rva, size=0):
        for section in self.sections:
            if not section.contains_rva(rva):
                continue
            delta = rva - section.virtual_address
            if delta + size > section.raw_size:
                raise ImageFormatError(
                    f"RVA 0x{rva:x}+{size} runs past the raw data of {section.name}"
                )
            return section.raw_pointer + delta
        raise ImageFormatError(f"RVA 0x{rva:x} is not inside any section")

    def read_rva(self, rva, size):
        offset = self.rva_to_offset(rva, size)
        return bytes(self.data[offset : offset + size])

    def strip_certificate(self):
        """Drop the Authenticode certificate table; True if one was present."""
        offset, size = self.data_directory(SECURITY_DIRECTORY)
        if not size:
            return False
        # The security directory holds a file offset, not an RVA.
        if offset + size >= len(self.data) and offset <= len(self.data):
            del self.data[offset:]
        self.set_data_directory(SECURITY_DIRECTORY, 0, 0)
        return True

    def _next_section_header_offset(self):
        return self.section_table_offset + len(self.sections) * SECTION_HEADER.size

    def has_free_section_slot(self):
        header_offset = self._next_section_header_offset()
        header_end = header_offset + SECTION_HEADER.size
        first_raw = min(
            (section.raw_pointer for section in self.sections if section.raw_size),
            default=len(self.data),
        )
        if header_end > min(first_raw, self._optional_field(_SIZE_OF_HEADERS)):
            return False
        return not any(self.data[header_offset:header_end])

    def extend_last_section(self, payload):
        """Map ``payload`` past the end of the highest section; return its RVA.

        Used when the section table has no free header slot. The section's
        existing bytes keep their file offsets and RVAs.
        """
        if not self.sections:
            raise ImageFormatError("image has no sections to extend")
        last = max(self.sections, key=lambda section: section.virtual_address)
        raw_end = last.raw_pointer + last.raw_size
        if any(
            section.raw_pointer + section.raw_size > raw_end
            for section in self.sections
        ):
            raise ImageFormatError(f"raw data of {last.name} is not last in the file")
        if len(self.data) > raw_end:
            raise ImageFormatError(f"data follows {last.name} at the end of the image")

        file_alignment = self.file_alignment
        # Past the zero-filled tail too, so nothing the loader mapped changes.
        delta = align_up(last.virtual_extent, 4)
        virtual_size = delta + len(payload)
        raw_size = align_up(virtual_size, file_alignment)

        self.data.extend(b"\x00" * (last.raw_pointer + delta - len(self.data)))
        self.data.extend(payload)
        self.data.extend(b"\x00" * (last.raw_pointer + raw_size - len(self.data)))

        characteristics = (
            last.characteristics | IMAGE_SCN_MEM_READ | IMAGE_SCN_CNT_INITIALIZED_DATA
        ) & ~IMAGE_SCN_MEM_DISCARDABLE
        struct.pack_into("<I", self.data, last.header_offset + 8, virtual_size)
        struct.pack_into("<I", self.data, last.header_offset + 16, raw_size)
        struct.pack_into("<I", self.data, last.header_offset + 36, characteristics)
        self._set_optional_field(
            _SIZE_OF_IMAGE,
            align_up(last.virtual_address + virtual_size, self.section_alignment),
        )
        self._set_optional_field(
            _SIZE_OF_INITIALIZED_DATA,
            self._optional_field(_SIZE_OF_INITIALIZED_DATA) + raw_size - last.raw_size,
        )
        last.virtual_size = virtual_size
        last.raw_size = raw_size
        last.characteristics = characteristics
        return last.virtual_address + delta

    def append_section(self, name, payload, characteristics):
        """Map ``payload`` in a new trailing section and return its RVA."""
        if not self.has_free_section_slot():
            raise ImageFormatError("no room for an additional section header")
        header_offset = self._next_section_header_offset()
        size_of_headers = self._optional_field(_SIZE_OF_HEADERS)

        section_alignment = self.section_alignment
        file_alignment = self.file_alignment
        virtual_end = max(
            (
                section.virtual_address
                + align_up(section.virtual_extent, section_alignment)
                for section in self.sections
            ),
            default=align_up(size_of_headers, section_alignment),
        )
        rva = align_up(virtual_end, section_alignment)
        raw_pointer = align_up(len(self.data), file_alignment)
        raw_size = align_up(len(payload), file_alignment)

        self.data.extend(b"\x00" * (raw_pointer - len(self.data)))
        self.data.extend(payload)
        self.data.extend(b"\x00" * (raw_size - len(payload)))

        encoded_name = name.encode("ascii")
        if len(encoded_name) > 8:
            raise ImageFormatError(f"section name {name} is longer than 8 bytes")
        SECTION_HEADER.pack_into(
            self.data,
            header_offset,
            encoded_name,
            len(payload),
            rva,
            raw_size,
            raw_pointer,
            0,
            0,
            0,
            0,
            characteristics,
        )
        struct.pack_into(
            "<H", self.data, self.coff_offset + 2, len(self.sections) + 1
        )
        self._set_optional_field(
            _SIZE_OF_IMAGE, align_up(rva + len(payload), section_alignment)
        )
        self._set_optional_field(
            _SIZE_OF_INITIALIZED_DATA,
            self._optional_field(_SIZE_OF_INITIALIZED_DATA) + raw_size,
        )
        self.sections.append(
            Section(header_offset, SECTION_HEADER.unpack_from(self.data, header_offset))
        )
        return rva

    def update_checksum(self):
        checksum_offset = self.optional_offset + _CHECKSUM
        struct.pack_into("<I", self.data, checksum_offset, 0)
        struct.pack_into(
            "<I", self.data, checksum_offset, compute_checksum(self.data)
        )

    def to_bytes(self):
        return bytes(self.data)


def compute_checksum(data):
    padded = bytes(data)
    if len(padded) % 2:
        padded += b"\x00"
    total = sum(struct.unpack_from(f"<{len(padded) // 2}H", padded))
    while total > 0xFFFF:
        total = (total & 0xFFFF) + (total >> 16)
    return (total + len(data)) & 0xFFFFFFFF
