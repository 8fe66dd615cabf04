import re
import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

import numpy as np

from blendlib.debug_stub import DebugConsole


# ==========================================================================
# 1. ENUMS and Helper Classes
# ==========================================================================
class BlendCode:
    """Four-byte block identifiers. Two-letter ID codes are zero padded."""
    EndOfFile = b"ENDB"
    Data = b"DATA"
    Sdna = b"DNA1"
    Object = b"OB\x00\x00"
    Mesh = b"ME\x00\x00"
    Armature = b"AR\x00\x00"
    Scene = b"SC\x00\x00"
    Collection = b"GR\x00\x00"
    Action = b"AC\x00\x00"


class SdnaMarker:
    Sdna = b"SDNA"
    Names = b"NAME"
    Types = b"TYPE"
    Lengths = b"TLEN"
    Structs = b"STRC"


class PointerSize:
    Ptr4 = 4
    Ptr8 = 8


class Endianness:
    LittleEndian = "<"
    BigEndian = ">"


HEADER_ID = b"BLENDER"
HEADER_SIZE = 12
ID_NAME_LENGTH = 66

_POINTER_MARKERS = {b"_": PointerSize.Ptr4, b"-": PointerSize.Ptr8}
_ENDIAN_MARKERS = {b"v": Endianness.LittleEndian, b"V": Endianness.BigEndian}

_ARRAY_DIM = re.compile(r"\[(\d+)\]")
_BARE_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def code_bytes(code: Union[str, bytes]) -> bytes:
    """Normalises 'OB', b'OB' or b'OB\\0\\0' to the 4-byte block code."""
    if isinstance(code, str):
        code = code.encode("ascii")
    return bytes(code[:4]).ljust(4, b"\x00")


def code_to_str(code: bytes) -> str:
    return code.rstrip(b"\x00").decode("ascii", errors="replace")


class BlendFormatError(ValueError):
    """The buffer is not a blend file this reader can parse."""

    def __init__(self, message, stage="blocks"):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.message = message


class BlendStructuralError(RuntimeError):
    """A query ran into inconsistent data (cycles, bad indices, short payloads)."""


class BinaryCursor:
    """Bounds-checked read position over a window [start, end) of a buffer.

    Positions are absolute offsets into the underlying buffer, so alignment is
    relative to the start of the file. Any read that would leave the window
    raises EOFError.
    """

    def __init__(self, buffer, start=0, end=None, endian="<"):
        self.buffer = buffer if isinstance(buffer, memoryview) else memoryview(buffer)
        self.start = start
        self.end = len(self.buffer) if end is None else end
        if not 0 <= self.start <= self.end <= len(self.buffer):
            raise ValueError(
                f"Cursor window [{self.start}, {self.end}) outside buffer of {len(self.buffer)} bytes"
            )
        self.pos = start
        self.endian = endian

    def copy(self) -> "BinaryCursor":
        other = BinaryCursor(self.buffer, self.start, self.end, self.endian)
        other.pos = self.pos
        return other

    def window(self, length) -> "BinaryCursor":
        """A new cursor over the next `length` bytes; this cursor does not move."""
        if length < 0 or length > self.remaining():
            raise EOFError(
                f"Tried to open a {length} byte window at {self.pos}, but only {self.remaining()} remain."
            )
        return BinaryCursor(self.buffer, self.pos, self.pos + length, self.endian)

    def tell(self):
        return self.pos

    def seek(self, pos):
        if not self.start <= pos <= self.end:
            raise EOFError(f"Seek to {pos} outside window [{self.start}, {self.end}).")
        self.pos = pos

    def is_eof(self):
        return self.pos >= self.end

    def remaining(self):
        return max(self.end - self.pos, 0)

    def advance(self, num_bytes=1):
        if num_bytes < 0 or num_bytes > self.remaining():
            raise EOFError(
                f"Tried to advance {num_bytes} bytes, but only {self.remaining()} remain."
            )
        self.pos += num_bytes

    def align4(self):
        # trailing padding may be cut off at the end of the window
        self.pos = min(self.pos + (-self.pos & 3), self.end)

    def peek_bytes(self, num_bytes, offset=0):
        begin = self.pos + offset
        if num_bytes < 0 or begin < self.start or begin + num_bytes > self.end:
            raise EOFError(
                f"Tried to read {num_bytes} bytes at {begin}, window is [{self.start}, {self.end})."
            )
        return bytes(self.buffer[begin:begin + num_bytes])

    def read_bytes(self, num_bytes):
        data = self.peek_bytes(num_bytes)
        self.pos += num_bytes
        return data

    def peek_struct(self, fmt, offset=0):
        fmt = self.endian + fmt
        return struct.unpack(fmt, self.peek_bytes(struct.calcsize(fmt), offset))

    def read_struct(self, fmt, num_bytes=None):
        fmt = self.endian + fmt
        if num_bytes is None:
            num_bytes = struct.calcsize(fmt)
        return struct.unpack(fmt, self.read_bytes(num_bytes))

    def read_u16(self):
        return self.read_struct("H", 2)[0]

    def read_u32(self):
        return self.read_struct("I", 4)[0]

    def read_cstring(self) -> str:
        """Reads up to and including the next zero byte."""
        scan = self.pos
        while True:
            if scan >= self.end:
                raise EOFError(f"Unterminated string at {self.pos}.")
            chunk = self.buffer[scan:min(scan + 64, self.end)].tobytes()
            terminator = chunk.find(b"\x00")
            if terminator >= 0:
                scan += terminator
                break
            scan += len(chunk)
        text = self.read_bytes(scan - self.pos).decode("utf-8", errors="ignore")
        self.advance(1)
        return text


# ==============================================================================
# 2. Blend File Data Structures
# ==============================================================================
@dataclass(frozen=True)
class BlendHeader:
    magic: bytes
    pointer_size: int
    endianness: str
    version: str

    @property
    def is_supported(self) -> bool:
        return (
            self.pointer_size == PointerSize.Ptr8
            and self.endianness == Endianness.LittleEndian
        )

    def describe(self) -> str:
        endian = "little-endian" if self.endianness == Endianness.LittleEndian else "big-endian"
        return f"ptr size {self.pointer_size}, {endian}"


@dataclass(frozen=True)
class BlockDescriptor:
    code: bytes
    size: int
    old_address: int
    sdna_index: int
    count: int


@dataclass
class FileBlock:
    desc: BlockDescriptor
    index: int
    file_offset: int  # offset of the descriptor, for diagnostics
    data_offset: int
    buffer: memoryview = field(repr=False)
    children: List["FileBlock"] = field(default_factory=list, repr=False)

    @property
    def data(self) -> memoryview:
        return self.buffer[self.data_offset:self.data_offset + self.desc.size]

    @property
    def code(self) -> bytes:
        return self.desc.code

    @property
    def code_str(self) -> str:
        return code_to_str(self.desc.code)

    @property
    def size(self) -> int:
        return self.desc.size

    @property
    def old_address(self) -> int:
        return self.desc.old_address

    @property
    def sdna_index(self) -> int:
        return self.desc.sdna_index

    @property
    def count(self) -> int:
        return self.desc.count

    @property
    def is_data(self) -> bool:
        return self.desc.code == BlendCode.Data


# ==============================================================================
# 3. SDNA (embedded schema)
# ==============================================================================
@dataclass(frozen=True)
class SdnaTypeInfo:
    name: str
    length: int


@dataclass(frozen=True)
class SdnaField:
    type_index: int
    name_index: int


@dataclass(frozen=True)
class SdnaStruct:
    type_index: int
    fields: Tuple[SdnaField, ...]


@dataclass(frozen=True)
class SdnaFieldLayout:
    type_name: str
    name: str
    offset: int
    size: int
    is_pointer: bool
    dims: Tuple[int, ...]

    @property
    def bare_name(self) -> str:
        return bare_field_name(self.name)


# SDNA primitive names and the numpy kinds they decode to
_NUMPY_PRIMITIVES = {
    "char": "i1",
    "uchar": "u1",
    "int8_t": "i1",
    "uint8_t": "u1",
    "short": "i2",
    "ushort": "u2",
    "int16_t": "i2",
    "uint16_t": "u2",
    "int": "i4",
    "uint": "u4",
    "int32_t": "i4",
    "uint32_t": "u4",
    "long": "i4",
    "ulong": "u4",
    "float": "f4",
    "double": "f8",
    "int64_t": "i8",
    "uint64_t": "u8",
}


def is_pointer_name(name: str) -> bool:
    return name.startswith("*") or name.startswith("(*")


def array_dims(name: str) -> Tuple[int, ...]:
    return tuple(int(d) for d in _ARRAY_DIM.findall(name))


def bare_field_name(name: str) -> str:
    """'*next' -> 'next', 'mat[4][4]' -> 'mat', '(*func)()' -> 'func'"""
    match = _BARE_NAME.search(name)
    return match.group(0) if match else name


class SDNA:
    """Name, type and struct tables of a DNA1 block. Read-only after parsing."""

    def __init__(self, names, types, structs, pointer_size=PointerSize.Ptr8, endian="<"):
        self.names: Tuple[str, ...] = tuple(names)
        self.types: Tuple[SdnaTypeInfo, ...] = tuple(types)
        self.structs: Tuple[SdnaStruct, ...] = tuple(structs)
        self.pointer_size = pointer_size
        self.endian = endian
        self._struct_by_name: Dict[str, int] = {}
        for index, struct_desc in enumerate(self.structs):
            self._struct_by_name.setdefault(self.types[struct_desc.type_index].name, index)
        self._dtype_cache: Dict[str, np.dtype] = {}

    @classmethod
    def parse(cls, cursor: BinaryCursor, pointer_size=PointerSize.Ptr8) -> "SDNA":
        try:
            return cls._parse(cursor, pointer_size)
        except EOFError as e:
            raise BlendFormatError(f"schema block is truncated: {e}", stage="sdna") from e

    @classmethod
    def _parse(cls, cursor, pointer_size):
        cls._expect_marker(cursor, SdnaMarker.Sdna)

        cls._expect_marker(cursor, SdnaMarker.Names)
        name_count = cursor.read_u32()
        names = [cursor.read_cstring() for _ in range(name_count)]

        cursor.align4()
        cls._expect_marker(cursor, SdnaMarker.Types)
        type_count = cursor.read_u32()
        type_names = [cursor.read_cstring() for _ in range(type_count)]

        cursor.align4()
        cls._expect_marker(cursor, SdnaMarker.Lengths)
        lengths = cursor.read_struct(f"{type_count}H") if type_count else ()
        types = [SdnaTypeInfo(name, length) for name, length in zip(type_names, lengths)]

        cursor.align4()
        cls._expect_marker(cursor, SdnaMarker.Structs)
        struct_count = cursor.read_u32()
        structs = []
        for _ in range(struct_count):
            type_index, num_fields = cursor.read_struct("HH", 4)
            if type_index >= type_count:
                raise BlendFormatError(
                    f"struct #{len(structs)} names type {type_index}, only {type_count} types",
                    stage="sdna",
                )
            fields = []
            for _ in range(num_fields):
                field_type, field_name = cursor.read_struct("HH", 4)
                if field_type >= type_count or field_name >= name_count:
                    raise BlendFormatError(
                        f"field ({field_type}, {field_name}) of struct "
                        f"'{types[type_index].name}' is out of range",
                        stage="sdna",
                    )
                fields.append(SdnaField(field_type, field_name))
            structs.append(SdnaStruct(type_index, tuple(fields)))

        return cls(names, types, structs, pointer_size, cursor.endian)

    @staticmethod
    def _expect_marker(cursor, marker):
        found = cursor.read_bytes(4)
        if found != marker:
            raise BlendFormatError(
                f"expected {marker.decode()!r} marker at offset {cursor.tell() - 4}, found {found!r}",
                stage="sdna",
            )

    # --- lookups ---

    def struct_index(self, struct_name: str) -> Optional[int]:
        return self._struct_by_name.get(struct_name)

    def struct_for_name(self, struct_name: str) -> Optional[SdnaStruct]:
        index = self.struct_index(struct_name)
        return None if index is None else self.structs[index]

    def struct_name(self, sdna_index: int) -> str:
        if not 0 <= sdna_index < len(self.structs):
            raise BlendStructuralError(
                f"SDNA index {sdna_index} out of range (schema has {len(self.structs)} structs)"
            )
        return self.types[self.structs[sdna_index].type_index].name

    def field_size(self, field_name: str, type_length: int) -> int:
        length = self.pointer_size if is_pointer_name(field_name) else type_length
        count = 1
        for dim in array_dims(field_name):
            count *= dim
        return length * count

    def fields_with_offsets(self, struct_name: str) -> Optional[List[SdnaFieldLayout]]:
        struct_desc = self.struct_for_name(struct_name)
        if struct_desc is None:
            return None
        layouts = []
        offset = 0
        for sdna_field in struct_desc.fields:
            type_info = self.types[sdna_field.type_index]
            name = self.names[sdna_field.name_index]
            size = self.field_size(name, type_info.length)
            layouts.append(
                SdnaFieldLayout(
                    type_name=type_info.name,
                    name=name,
                    offset=offset,
                    size=size,
                    is_pointer=is_pointer_name(name),
                    dims=array_dims(name),
                )
            )
            offset += size
        return layouts

    def field_layout(self, struct_name: str, field_name: str) -> Optional[SdnaFieldLayout]:
        for layout in self.fields_with_offsets(struct_name) or ():
            if layout.name == field_name:
                return layout
        return None

    def offset_of(self, struct_name: str, field_name: str) -> Optional[int]:
        """Byte offset of `field_name` (full SDNA name, e.g. 'name[66]') or None."""
        layout = self.field_layout(struct_name, field_name)
        return None if layout is None else layout.offset

    def offset_of_path(self, struct_name: str, path: str) -> Optional[int]:
        """Offset of a nested member, e.g. ('Scene', 'r.sfra')."""
        offset = 0
        current = struct_name
        parts = path.split(".")
        for depth, part in enumerate(parts):
            layout = self.field_layout(current, part)
            if layout is None:
                return None
            offset += layout.offset
            if depth < len(parts) - 1:
                if layout.is_pointer or layout.dims:
                    return None
                current = layout.type_name
        return offset

    def size_of(self, struct_name: str) -> Optional[int]:
        struct_desc = self.struct_for_name(struct_name)
        if struct_desc is None:
            return None
        return self.types[struct_desc.type_index].length

    def format_struct(self, struct_ref: Union[str, int]) -> Optional[str]:
        if isinstance(struct_ref, int):
            struct_ref = self.struct_name(struct_ref)
        layouts = self.fields_with_offsets(struct_ref)
        if layouts is None:
            return None
        lines = [f"struct {struct_ref} (length: {self.size_of(struct_ref)})", "{"]
        for layout in layouts:
            lines.append(f"\t{layout.type_name} {layout.name};\t\t// {layout.offset}")
        lines.append("};")
        return "\n".join(lines)

    # --- numpy views ---

    def field_format(self, layout: SdnaFieldLayout):
        """numpy format for one field: a dtype string, nested dtype or (dtype, shape)."""
        if layout.is_pointer:
            base = f"{self.endian}u{self.pointer_size}"
        elif layout.type_name == "char" and layout.dims:
            if len(layout.dims) == 1:
                return f"S{layout.dims[0]}"
            return (f"S{layout.dims[-1]}", layout.dims[:-1])
        elif layout.type_name in self._struct_by_name:
            base = self.numpy_dtype(layout.type_name)
        else:
            type_length = layout.size
            for dim in layout.dims:
                type_length //= dim
            kind = _NUMPY_PRIMITIVES.get(layout.type_name)
            if kind is not None and np.dtype(kind).itemsize == type_length:
                base = f"{self.endian}{kind}"
            elif type_length > 0:
                base = f"V{type_length}"
            else:
                return None
        return (base, layout.dims) if layout.dims else base

    def numpy_dtype(self, struct_name: str) -> Optional[np.dtype]:
        """Structured dtype with the byte layout the file was written with."""
        cached = self._dtype_cache.get(struct_name)
        if cached is not None:
            return cached
        layouts = self.fields_with_offsets(struct_name)
        if layouts is None:
            return None

        names, formats, offsets = [], [], []
        end = 0
        for layout in layouts:
            bare = layout.bare_name
            fmt = self.field_format(layout)
            if fmt is None or bare in names:
                continue
            names.append(bare)
            formats.append(fmt)
            offsets.append(layout.offset)
            end = max(end, layout.offset + layout.size)

        declared = self.size_of(struct_name) or 0
        if end > declared:
            DebugConsole.log(
                f"Struct '{struct_name}' fields end at {end}, past its declared "
                f"length {declared}; records stride by {end} bytes"
            )

        dtype = np.dtype(
            {
                "names": names,
                "formats": formats,
                "offsets": offsets,
                "itemsize": max(end, declared),
            }
        )
        self._dtype_cache[struct_name] = dtype
        return dtype


# ==============================================================================
# 4. Blend File Parser
# ==============================================================================
class BlendParser:
    def __init__(self, data, require_supported=True):
        self.data = data
        self.buffer = memoryview(data)
        self.require_supported = require_supported
        self.header: Optional[BlendHeader] = None
        self.blocks: List[FileBlock] = []
        self.sdna: Optional[SDNA] = None

    def parse(self) -> List[FileBlock]:
        self._read_header()
        self._read_all_blocks()
        return self.blocks

    def _read_header(self):
        if len(self.buffer) < HEADER_SIZE:
            raise BlendFormatError("File is too small to be a valid blend file.", stage="header")
        raw = bytes(self.buffer[:HEADER_SIZE])
        if raw[:7] != HEADER_ID:
            raise BlendFormatError("file header magic mismatch", stage="header")

        pointer_size = _POINTER_MARKERS.get(raw[7:8])
        endianness = _ENDIAN_MARKERS.get(raw[8:9])
        if pointer_size is None or endianness is None:
            raise BlendFormatError(
                f"unknown pointer/endianness markers {raw[7:9]!r}", stage="header"
            )
        version = raw[9:12].decode("ascii", errors="replace")
        if not version.isdigit():
            raise BlendFormatError(f"bad version digits {raw[9:12]!r}", stage="header")

        self.header = BlendHeader(
            magic=raw[:7], pointer_size=pointer_size, endianness=endianness, version=version
        )
        if self.require_supported and not self.header.is_supported:
            raise BlendFormatError(
                "this parser supports only 64bit, little endian blend files "
                f"(file is {self.header.describe()})",
                stage="header",
            )
        DebugConsole.log(f"Blender version: {version} - {self.header.describe()}.")

    def _descriptor_format(self):
        address = "Q" if self.header.pointer_size == PointerSize.Ptr8 else "I"
        return f"4sI{address}II"

    def _read_all_blocks(self):
        cursor = BinaryCursor(self.buffer, start=HEADER_SIZE, endian=self.header.endianness)
        desc_format = self._descriptor_format()
        parent: Optional[FileBlock] = None

        while not cursor.is_eof():
            file_offset = cursor.tell()
            try:
                desc = BlockDescriptor(*cursor.read_struct(desc_format))
            except EOFError:
                DebugConsole.log(
                    f"Truncated block descriptor at 0x{file_offset:x}, stopping."
                )
                break

            if desc.size > cursor.remaining():
                raise BlendFormatError(
                    f"block '{code_to_str(desc.code)}' at 0x{file_offset:x} declares "
                    f"{desc.size} bytes, only {cursor.remaining()} remain"
                )

            block = FileBlock(
                desc=desc,
                index=len(self.blocks),
                file_offset=file_offset,
                data_offset=cursor.tell(),
                buffer=self.buffer,
            )

            if block.is_data:
                if parent is None:
                    raise BlendFormatError(
                        f"DATA block at 0x{file_offset:x} has no preceding non-DATA block"
                    )
                parent.children.append(block)
            else:
                if desc.code == BlendCode.Sdna:
                    self._read_sdna(block, cursor)
                parent = block

            self.blocks.append(block)
            if desc.code == BlendCode.EndOfFile:
                break

            cursor.advance(desc.size)
            cursor.align4()

        DebugConsole.log(f"End of parsing: {len(self.blocks)} blocks.")

    def _read_sdna(self, block: FileBlock, cursor: BinaryCursor):
        if self.sdna is not None:
            raise BlendFormatError(
                f"second DNA1 block at 0x{block.file_offset:x}", stage="sdna"
            )
        DebugConsole.log(f"DNA1 block begin - size: {block.size}")
        self.sdna = SDNA.parse(cursor.window(block.size), self.header.pointer_size)
        DebugConsole.log(
            f"DNA1 block end - {len(self.sdna.names)} names, {len(self.sdna.types)} types, "
            f"{len(self.sdna.structs)} structs."
        )
