import struct
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

import numpy as np

from blendlib.blend_parser import (
    BlendCode,
    BlendFormatError,
    BlendHeader,
    BlendParser,
    BlendStructuralError,
    FileBlock,
    ID_NAME_LENGTH,
    PointerSize,
    SDNA,
    code_bytes,
)
from blendlib.debug_stub import DebugConsole


class BlendFile:
    """A parsed blend file: its blocks, the SDNA schema and the lookups over both.

    Owns the byte buffer; block payloads are views into it. Nothing here
    mutates the parsed tables, so one instance can serve many readers.
    """

    MAX_LIST_LENGTH = 1_000_000

    def __init__(self, data, header: BlendHeader, blocks: List[FileBlock], sdna: Optional[SDNA]):
        self.data = data
        self.header = header
        self.blocks = blocks
        self.sdna = sdna
        self._pointer_format = "Q" if header.pointer_size == PointerSize.Ptr8 else "I"

        # first block wins if an address is ever reused
        self._by_address: Dict[int, FileBlock] = {}
        for block in blocks:
            if block.old_address:
                self._by_address.setdefault(block.old_address, block)

    @classmethod
    def from_bytes(cls, data, require_supported=True) -> "BlendFile":
        parser = BlendParser(data, require_supported=require_supported)
        blocks = parser.parse()
        return cls(data, parser.header, blocks, parser.sdna)

    @property
    def schema(self) -> SDNA:
        if self.sdna is None:
            raise BlendFormatError("file has no DNA1 schema block", stage="sdna")
        return self.sdna

    # --- schema queries ---

    def offset_of(self, struct_name: str, field_name: str) -> Optional[int]:
        return self.schema.offset_of(struct_name, field_name)

    def offset_of_path(self, struct_name: str, path: str) -> Optional[int]:
        return self.schema.offset_of_path(struct_name, path)

    def size_of(self, struct_name: str) -> Optional[int]:
        return self.schema.size_of(struct_name)

    def struct_name_of(self, block: FileBlock) -> str:
        return self.schema.struct_name(block.sdna_index)

    def is_struct(self, block: FileBlock, struct_name: str) -> bool:
        return self.struct_name_of(block) == struct_name

    # --- block lookups ---

    def find_block_by_code(self, code: Union[str, bytes], start: int = 0) -> Optional[int]:
        code = code_bytes(code)
        for index in range(max(start, 0), len(self.blocks)):
            if self.blocks[index].code == code:
                return index
        return None

    def blocks_by_code(self, code: Union[str, bytes]) -> Iterator[FileBlock]:
        index = self.find_block_by_code(code)
        while index is not None:
            yield self.blocks[index]
            index = self.find_block_by_code(code, index + 1)

    def find_block_by_address(self, address: int) -> Optional[FileBlock]:
        if not address:
            return None
        return self._by_address.get(address)

    def find_parent_object(self, address: int) -> Optional[FileBlock]:
        """The Object block whose '*data' points at `address` (e.g. a mesh or armature)."""
        if not address:
            return None
        data_offset = self.offset_of("Object", "*data")
        if data_offset is None:
            return None
        for block in self.blocks_by_code(BlendCode.Object):
            if data_offset + self.header.pointer_size > block.size:
                continue
            if self.peek_pointer(block, data_offset) == address:
                return block
        return None

    # --- typed reads from block payloads ---

    def peek(self, block: FileBlock, offset: int, fmt: str):
        fmt = self.header.endianness + fmt
        size = struct.calcsize(fmt)
        if offset < 0 or offset + size > block.size:
            raise BlendStructuralError(
                f"read of {size} bytes at {offset} exceeds '{block.code_str}' block "
                f"#{block.index} payload of {block.size} bytes"
            )
        values = struct.unpack_from(fmt, block.data, offset)
        return values[0] if len(values) == 1 else values

    def peek_pointer(self, block: FileBlock, offset: int) -> int:
        return self.peek(block, offset, self._pointer_format)

    def peek_int(self, block: FileBlock, offset: int) -> int:
        return self.peek(block, offset, "i")

    def peek_short(self, block: FileBlock, offset: int) -> int:
        return self.peek(block, offset, "h")

    def peek_float(self, block: FileBlock, offset: int) -> float:
        return self.peek(block, offset, "f")

    def peek_floats(self, block: FileBlock, offset: int, count: int) -> Tuple[float, ...]:
        values = self.peek(block, offset, f"{count}f")
        return values if isinstance(values, tuple) else (values,)

    def peek_bytes(self, block: FileBlock, offset: int, length: int) -> bytes:
        return self.peek(block, offset, f"{length}s")

    def peek_string(self, block: FileBlock, offset: int, max_length: int) -> str:
        raw = self.peek_bytes(block, offset, max_length)
        return raw.split(b"\x00", 1)[0].decode("utf-8", errors="ignore")

    def read_field(self, block: FileBlock, struct_name: str, field_name: str):
        """Decodes one field by its SDNA declaration.

        Pointers come back as addresses, char arrays as str, other arrays as
        numpy arrays shaped like the declaration, scalars as Python numbers and
        nested structs as numpy records. Returns None for unknown names.
        """
        layout = self.schema.field_layout(struct_name, field_name)
        if layout is None:
            return None
        if layout.is_pointer and not layout.dims:
            return self.peek_pointer(block, layout.offset)
        if layout.type_name == "char" and len(layout.dims) == 1:
            return self.peek_string(block, layout.offset, layout.size)

        fmt = self.schema.field_format(layout)
        if fmt is None:
            return None
        if layout.offset + layout.size > block.size:
            raise BlendStructuralError(
                f"field {struct_name}.{field_name} exceeds block #{block.index} payload"
            )
        value = np.frombuffer(block.data, dtype=np.dtype([("v", fmt)]), count=1, offset=layout.offset)[0]["v"]
        if isinstance(value, np.ndarray):
            return value.copy()
        return value.item() if isinstance(value, np.generic) and value.dtype.fields is None else value

    def read_list_base(self, block: FileBlock, struct_name: str, field_name: str) -> Tuple[int, int]:
        """(first, last) addresses of a ListBase member."""
        offset = self.offset_of(struct_name, field_name)
        if offset is None:
            return 0, 0
        return (
            self.peek_pointer(block, offset),
            self.peek_pointer(block, offset + self.header.pointer_size),
        )

    def read_struct_array(self, block: FileBlock, struct_name: Optional[str] = None) -> np.ndarray:
        """All `count` structs in a block's payload as a read-only numpy record array."""
        struct_name = struct_name or self.struct_name_of(block)
        dtype = self.schema.numpy_dtype(struct_name)
        if dtype is None:
            raise BlendStructuralError(f"struct '{struct_name}' is not in the schema")
        count = min(block.count, block.size // dtype.itemsize) if dtype.itemsize else 0
        if count < block.count:
            DebugConsole.log(
                f"Block #{block.index} holds {block.size} bytes, short of "
                f"{block.count} x {struct_name} ({dtype.itemsize} bytes)"
            )
        if count == 0:
            return np.zeros(0, dtype=dtype)
        return np.frombuffer(block.data, dtype=dtype, count=count)

    # --- linked lists ---

    def iter_linked_list(
        self,
        head_address: int,
        struct_name: str,
        next_field: str = "*next",
        max_length: Optional[int] = None,
    ) -> Iterator[FileBlock]:
        """Walks an intrusive list from `head_address` until a null next pointer.

        A dangling address ends the walk early. A revisited address, a node of
        another struct type or more than `max_length` nodes raise
        BlendStructuralError.
        """
        if not head_address:
            return
        next_offset = self.offset_of(struct_name, next_field)
        if next_offset is None:
            DebugConsole.log(f"No field '{next_field}' in struct '{struct_name}'")
            return
        limit = self.MAX_LIST_LENGTH if max_length is None else max_length

        visited = set()
        address = head_address
        while address:
            if address in visited:
                raise BlendStructuralError(
                    f"cycle in {struct_name} list at address 0x{address:x}"
                )
            if len(visited) >= limit:
                raise BlendStructuralError(
                    f"{struct_name} list is longer than {limit} nodes"
                )
            visited.add(address)

            block = self.find_block_by_address(address)
            if block is None:
                DebugConsole.log(f"Dangling {struct_name} list pointer 0x{address:x}")
                return
            if not self.is_struct(block, struct_name):
                raise BlendStructuralError(
                    f"list node 0x{address:x} is a {self.struct_name_of(block)}, "
                    f"expected {struct_name}"
                )
            yield block
            address = self.peek_pointer(block, next_offset)

    def follow_linked_list(
        self,
        head_address: int,
        struct_name: str,
        next_field: str,
        visit: Callable[[FileBlock], None],
        max_length: Optional[int] = None,
    ) -> int:
        visited = 0
        for block in self.iter_linked_list(head_address, struct_name, next_field, max_length):
            visit(block)
            visited += 1
        return visited

    # --- diagnostics ---

    def id_name(self, block: FileBlock, strip_code=True) -> str:
        """The ID name of a block, without the two-letter code prefix by default."""
        offset = self.offset_of("ID", f"name[{ID_NAME_LENGTH}]")
        if offset is None:
            return ""
        name = self.peek_string(block, offset, ID_NAME_LENGTH)
        return name[2:] if strip_code else name

    def block_summary(self, block: FileBlock) -> str:
        try:
            struct_name = self.struct_name_of(block)
        except (BlendStructuralError, BlendFormatError):
            struct_name = "?"
        return (
            f"block code: '{block.code_str}', sdna: {block.sdna_index} ({struct_name}), "
            f"count: {block.count}, size: {block.size}, offset: 0x{block.file_offset:x}"
        )


def parse(data, require_supported=True) -> BlendFile:
    return BlendFile.from_bytes(data, require_supported=require_supported)
