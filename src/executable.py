"""
Executable image library for the word VM.

Memory layout (word addressed):
  0          Never a valid label address (lookup miss sentinel)
  1-5        General purpose registers a, b, c, d, e
  6          Return value register r
  7          Stack pointer sp
  8          Base pointer bp
  9 ...      User code (CODE_START), up to CODE_CAPACITY words

Instruction word format:
  bits 0-15   Index of the operation in the operation catalog
  bits 16-31  Operand tag, 4 bits per operand, operand 0 in the lowest nibble

Each operand value follows the instruction word in its own word.

Binary file format (zstd compressed, little endian):
  Header:   MAGIC (4) + VERSION (2) + ENTRY (4) + LENGTH (4) + CAPACITY (4)
            + LABEL_COUNT (4) + LINE_COUNT (4)
  Code:     LENGTH signed 32-bit words
  Labels:   name length (2) + UTF-8 name + address (4), LABEL_COUNT times
  Lines:    file length (2) + UTF-8 file + line (4) + start (4) + stop (4),
            LINE_COUNT times
"""

from zstd import compress, decompress
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Iterator, List, Optional, Tuple
import struct

from ops import OPERATIONS, Operation

# Magic bytes for executable format
MAGIC = b'VMEX'
VERSION = 1

HEADER = '<4sHIIIII'
HEADER_SIZE = struct.calcsize(HEADER)

# Reserved registers
A = 1
B = 2
C = 3
D = 4
E = 5
RET = 6
SP = 7
BP = 8

REGISTERS = {
    'a': A, 'b': B, 'c': C, 'd': D, 'e': E,
    'r': RET, 'sp': SP, 'bp': BP,
}

CODE_START = BP + 1
CODE_CAPACITY = 0x10000

# Returned by LabelTable.resolve for unknown names
NOT_FOUND = 0

LABEL_MARKER = '$'


class OperandKind(IntEnum):
    """Operand tag stored in a 4-bit field of the instruction word."""
    LITERAL = 1     # value used as is
    MEMORY = 2      # value is an address, operand is the word stored there
    REFERENCE = 3   # value is an address holding the address of the operand


OPERAND_BITS = 4
OPERAND_MASK = (1 << OPERAND_BITS) - 1
MAX_OPERANDS = 16 // OPERAND_BITS


def to_word(value: int) -> int:
    """Wrap an integer to a signed 32-bit word."""
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def encode_instruction(index: int, kinds: List[OperandKind]) -> int:
    """Pack an operation index and its operand kinds into one word."""
    if not 0 <= index <= 0xFFFF:
        raise ValueError(f"Operation index {index} does not fit in 16 bits")
    if len(kinds) > MAX_OPERANDS:
        raise ValueError(f"At most {MAX_OPERANDS} operands fit in an instruction, got {len(kinds)}")

    tag = 0
    for i, kind in enumerate(kinds):
        tag |= int(kind) << (i * OPERAND_BITS)
    return to_word((tag << 16) | index)


def decode_instruction(word: int, argc: int) -> Tuple[int, List[OperandKind]]:
    """Split an instruction word into (operation index, operand kinds)."""
    tag = (word & 0xFFFFFFFF) >> 16
    kinds = [OperandKind((tag >> (i * OPERAND_BITS)) & OPERAND_MASK) for i in range(argc)]
    return word & 0xFFFF, kinds


def label_name(name: str) -> str:
    """Normalize a label: drop the definition marker and a trailing colon."""
    if name.startswith(LABEL_MARKER):
        name = name[1:]
    if name.endswith(':'):
        name = name[:-1]
    return name


class LabelTable:
    """Maps label names to code addresses. Later registrations win."""

    def __init__(self):
        self._labels: Dict[str, int] = {}

    def register(self, name: str, address: int):
        """Bind a label, shadowing any earlier binding of the same name."""
        self._labels[label_name(name)] = address

    def bind(self, name: str, address: int):
        """Bind an already normalized name as is."""
        self._labels[name] = address

    def resolve(self, name: str) -> int:
        """Return the label's address, or NOT_FOUND."""
        return self._labels.get(label_name(name), NOT_FOUND)

    def items(self):
        return self._labels.items()

    def clear(self):
        self._labels.clear()

    def __contains__(self, name: str) -> bool:
        return label_name(name) in self._labels

    def __getitem__(self, name: str) -> int:
        return self._labels[label_name(name)]

    def __iter__(self) -> Iterator[str]:
        return iter(self._labels)

    def __len__(self) -> int:
        return len(self._labels)

    def __repr__(self) -> str:
        return f"LabelTable({self._labels!r})"


@dataclass(frozen=True)
class LineRecord:
    """Half-open range of code addresses produced by one source line."""
    filename: str
    line_num: int
    start: int
    stop: int

    def __contains__(self, address: int) -> bool:
        return self.start <= address < self.stop

    def __len__(self) -> int:
        return self.stop - self.start


class LineTable:
    """Source line to address range map.

    Every recorded line is kept. A file loaded twice has two records per
    line; find() returns the most recent one.
    """

    def __init__(self):
        self._lines: Dict[Tuple[str, int], List[LineRecord]] = {}

    def record(self, filename: str, line_num: int, start: int, stop: int) -> LineRecord:
        rec = LineRecord(filename, line_num, start, stop)
        self._lines.setdefault((filename, line_num), []).append(rec)
        return rec

    def find(self, filename: str, line_num: int) -> Optional[LineRecord]:
        records = self._lines.get((filename, line_num))
        return records[-1] if records else None

    def find_all(self, filename: str, line_num: int) -> List[LineRecord]:
        return list(self._lines.get((filename, line_num), []))

    def at_address(self, address: int) -> Optional[LineRecord]:
        """Find the source line that emitted the word at address."""
        for rec in self:
            if address in rec:
                return rec
        return None

    def clear(self):
        self._lines.clear()

    def __iter__(self) -> Iterator[LineRecord]:
        for records in self._lines.values():
            yield from records

    def __len__(self) -> int:
        return sum(len(records) for records in self._lines.values())


@dataclass
class Diagnostic:
    """A non-fatal problem found while assembling."""
    message: str
    filename: str = ""
    line_num: int = 0

    def __str__(self) -> str:
        if self.filename:
            return f"{self.filename}:{self.line_num}: {self.message}"
        return self.message


@dataclass
class Executable:
    """Represents a loaded program image."""
    entry: int = CODE_START
    length: int = CODE_START
    capacity: int = CODE_CAPACITY
    code: List[int] = None
    labels: LabelTable = field(default_factory=LabelTable)
    lines: LineTable = field(default_factory=LineTable)
    warnings: List[Diagnostic] = field(default_factory=list)

    def __post_init__(self):
        if self.code is None:
            self.code = [0] * self.capacity

    def close(self):
        """Release the code array, labels, line records and warnings."""
        self.labels.clear()
        self.lines.clear()
        self.warnings.clear()
        self.code = []
        self.length = 0

    def __enter__(self) -> 'Executable':
        return self

    def __exit__(self, *exc_info):
        self.close()

    def encode(self) -> bytes:
        """Encode executable to bytes."""
        header = struct.pack(
            HEADER,
            MAGIC,
            VERSION,
            self.entry,
            self.length,
            self.capacity,
            len(self.labels),
            len(self.lines),
        )

        code_bytes = struct.pack(f'<{self.length}i', *self.code[:self.length])

        parts = [header, code_bytes]
        for name, addr in self.labels.items():
            raw = name.encode('utf-8')
            parts.append(struct.pack('<H', len(raw)) + raw + struct.pack('<i', addr))
        for rec in self.lines:
            raw = rec.filename.encode('utf-8')
            parts.append(struct.pack('<H', len(raw)) + raw + struct.pack('<iii', rec.line_num, rec.start, rec.stop))

        return compress(b''.join(parts), 22)

    @classmethod
    def decode(cls, data: bytes) -> 'Executable':
        """Decode bytes to executable."""
        data = decompress(data)

        if len(data) < HEADER_SIZE:
            raise ValueError("Data too short for executable header")

        magic, version, entry, length, capacity, label_count, line_count = struct.unpack(
            HEADER, data[:HEADER_SIZE])

        if magic != MAGIC:
            raise ValueError(f"Invalid magic bytes: {magic}")
        if version > VERSION:
            raise ValueError(f"Unsupported version: {version}")
        if capacity > CODE_CAPACITY:
            raise ValueError(f"Capacity {capacity} exceeds maximum {CODE_CAPACITY}")
        if length > capacity:
            raise ValueError(f"Code length {length} exceeds capacity {capacity}")

        offset = HEADER_SIZE
        code_end = offset + length * 4
        if code_end > len(data):
            raise ValueError("Truncated code section")

        exe = cls(entry=entry, length=length, capacity=capacity)
        exe.code[:length] = struct.unpack(f'<{length}i', data[offset:code_end])
        offset = code_end

        def read_name() -> str:
            nonlocal offset
            if offset + 2 > len(data):
                raise ValueError(f"Truncated symbol at offset {offset}")
            (size,) = struct.unpack('<H', data[offset:offset + 2])
            offset += 2
            raw = data[offset:offset + size]
            if len(raw) != size:
                raise ValueError(f"Truncated symbol at offset {offset}")
            offset += size
            return raw.decode('utf-8')

        def read_ints(count: int) -> Tuple[int, ...]:
            nonlocal offset
            end = offset + count * 4
            if end > len(data):
                raise ValueError(f"Truncated symbol at offset {offset}")
            values = struct.unpack(f'<{count}i', data[offset:end])
            offset = end
            return values

        for _ in range(label_count):
            name = read_name()
            (addr,) = read_ints(1)
            exe.labels.bind(name, addr)

        for _ in range(line_count):
            filename = read_name()
            line_num, start, stop = read_ints(3)
            exe.lines.record(filename, line_num, start, stop)

        return exe


def _decode_at(exe: Executable, addr: int, operations: List[Operation]) -> Optional[Tuple[Operation, List[OperandKind]]]:
    """Try to read the word at addr as an instruction."""
    word = exe.code[addr]
    if word < 0:
        return None

    index = word & 0xFFFF
    if index >= len(operations):
        return None

    op = operations[index]
    tag = word >> 16
    if tag >> (op.argc * OPERAND_BITS) or addr + op.argc >= exe.length:
        return None

    kinds = []
    for i in range(op.argc):
        try:
            kinds.append(OperandKind((tag >> (i * OPERAND_BITS)) & OPERAND_MASK))
        except ValueError:
            return None
    return op, kinds


def disassemble(exe: Executable, operations: List[Operation] = OPERATIONS) -> str:
    """Disassemble executable to human-readable format."""
    names: Dict[int, List[str]] = {}
    for name, addr in exe.labels.items():
        names.setdefault(addr, []).append(name)

    def operand(kind: OperandKind, value: int) -> str:
        label = names.get(value, [None])[0]
        if kind == OperandKind.REFERENCE:
            return f"*{label or value}"
        if kind == OperandKind.MEMORY:
            return label or str(value)
        return str(value)

    lines = [
        f"~ Entry point: {exe.entry}",
        f"~ Code length: {exe.length} words",
        "",
    ]

    addr = CODE_START
    while addr < exe.length:
        for name in sorted(names.get(addr, [])):
            lines.append(f"${name}")

        decoded = _decode_at(exe, addr, operations)
        if decoded:
            op, kinds = decoded
            values = exe.code[addr + 1:addr + 1 + op.argc]
            text = ' '.join([op.name] + [operand(k, v) for k, v in zip(kinds, values)])
            size = 1 + op.argc
        else:
            text = f".word {exe.code[addr]}"
            size = 1

        rec = exe.lines.at_address(addr)
        where = f"  ~ {rec.filename}:{rec.line_num}" if rec else ""
        lines.append(f"{addr:5d}: {text}{where}")
        addr += size

    return '\n'.join(lines)
