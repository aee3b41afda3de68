#!/usr/bin/env python3
"""
Word VM loader / assembler

Usage: python assemble.py <infile> [infile ...] [-o outfile]

Assembly language syntax:
    ~ comment (everything after ~ on a line is ignored)
    $label        define label at the next emitted word ($label: also works)
    entry         execution starts at the next emitted word
    mnemonic operands...
    value         bare word

Tokens are separated by whitespace. Mnemonics come from the operation
catalog in ops.py and consume exactly as many following tokens as the
operation declares.

Operands:
    123           Literal (base 10)
    name          Memory operand: the word stored at label `name`
    *name         Reference: the word whose address is stored at `name`
    &name         Literal address of label `name`

Registers are predefined labels: a b c d e r sp bp.

Two passes:
    1. Tokenize every line, binding labels and the entry point to the
       address their next token will be emitted at.
    2. Encode the token stream into words.
"""

import sys
import os
import re
from typing import Iterable, List, Optional, Tuple, Union
from executable import (
    CODE_CAPACITY, CODE_START, LABEL_MARKER, NOT_FOUND, REGISTERS,
    Diagnostic, Executable, OperandKind, encode_instruction, to_word,
)
from ops import OPERATIONS, Operation, find_operation

COMMENT_MARKER = '~'
ENTRY_KEYWORD = 'entry'
REFERENCE_MARKER = '*'
ADDRESS_MARKER = '&'

INT_PREFIX = re.compile(r'[+-]?\d+')


class AssemblerError(Exception):
    """Assembler error with source location."""
    def __init__(self, message: str, filename: str = "", line_num: int = 0, line: str = ""):
        self.message = message
        self.filename = filename
        self.line_num = line_num
        self.line = line

        text = message
        if filename and line_num:
            text = f"{filename}:{line_num}: {message}"
        elif filename:
            text = f"{filename}: {message}"
        if line:
            text += f"\n  {line}"
        super().__init__(text)


class SourceFileError(AssemblerError):
    """A source file could not be opened or read."""


class CodeCapacityError(AssemblerError):
    """The program does not fit in the code array."""


def parse_int(token: str) -> Tuple[int, bool]:
    """Parse a leading base-10 integer like C atoi.

    Returns (value, exact) where exact is False if the token had anything
    besides the number. A token with no leading number parses as 0.
    """
    m = INT_PREFIX.match(token)
    if not m:
        return 0, False
    return int(m.group()), m.end() == len(token)


class TokenStream:
    """Tokens retained by the first pass, addressed from a fixed base."""

    def __init__(self, base: int = CODE_START):
        self.base = base
        self.tokens: List[str] = []

    @property
    def next_address(self) -> int:
        """Address the next appended token will be emitted at."""
        return self.base + len(self.tokens)

    def append(self, token: str):
        self.tokens.append(token)

    def __getitem__(self, address: int) -> str:
        return self.tokens[address - self.base]

    def __len__(self) -> int:
        return len(self.tokens)

    def clear(self):
        self.tokens.clear()


class Assembler:
    """Two-pass word VM assembler."""

    def __init__(self, operations: List[Operation] = OPERATIONS, capacity: int = CODE_CAPACITY):
        if capacity <= CODE_START:
            raise ValueError(f"Capacity must be larger than {CODE_START} words")
        if capacity > CODE_CAPACITY:
            raise ValueError(f"Capacity must be at most {CODE_CAPACITY} words")
        self.operations = operations
        self.capacity = capacity
        self.exe: Optional[Executable] = None
        self.tokens = TokenStream()

    def locate(self, address: int) -> Tuple[str, int]:
        """Source file and line that produced the token at address."""
        rec = self.exe.lines.at_address(address)
        if rec:
            return rec.filename, rec.line_num
        return "", 0

    def warn(self, message: str, address: Optional[int] = None):
        """Record a non-fatal diagnostic."""
        filename, line_num = self.locate(address) if address is not None else ("", 0)
        self.exe.warnings.append(Diagnostic(message, filename, line_num))

    # ------------------------------------------------------------------
    # Pass 1
    # ------------------------------------------------------------------

    def tokenize(self, line: str):
        """Split a line into tokens, binding labels and the entry point."""
        if COMMENT_MARKER in line:
            line = line[:line.index(COMMENT_MARKER)]

        for token in line.split():
            if token.startswith(LABEL_MARKER):
                self.exe.labels.register(token, self.tokens.next_address)
            elif token == ENTRY_KEYWORD:
                self.exe.entry = self.tokens.next_address
            else:
                self.tokens.append(token)

    def read_file(self, filename: str):
        """Tokenize one source file and record the address range of each line."""
        try:
            with open(filename, 'r') as f:
                for line_num, line in enumerate(f, 1):
                    if not line.strip():
                        continue
                    start = self.tokens.next_address
                    self.tokenize(line)
                    self.exe.lines.record(filename, line_num, start, self.tokens.next_address)
        except (OSError, UnicodeDecodeError) as e:
            reason = e.strerror if isinstance(e, OSError) and e.strerror else str(e)
            raise SourceFileError(f"Cannot read source file: {reason}", filename) from e

    # ------------------------------------------------------------------
    # Pass 2
    # ------------------------------------------------------------------

    def emit(self, word: int):
        """Append a word to the code array."""
        exe = self.exe
        if exe.length >= exe.capacity:
            filename, line_num = self.locate(exe.length)
            raise CodeCapacityError(
                f"Code exceeds capacity of {exe.capacity} words", filename, line_num)
        exe.code[exe.length] = to_word(word)
        exe.length += 1

    def resolve_label(self, name: str, address: int) -> int:
        """Resolve a marked label reference; unknown labels warn and give 0."""
        value = self.exe.labels.resolve(name)
        if value == NOT_FOUND:
            self.warn(f"Undefined label: {name}", address)
        return value

    def parse_literal(self, token: str, address: int) -> int:
        value, exact = parse_int(token)
        if not exact:
            self.warn(f"Invalid number or unknown instruction: {token}", address)
        return value

    def assemble_operand(self, token: str, address: int) -> Tuple[OperandKind, int]:
        """Classify one operand token, return (kind, value)."""
        if token.startswith(REFERENCE_MARKER):
            return OperandKind.REFERENCE, self.resolve_label(token[1:], address)

        if token.startswith(ADDRESS_MARKER):
            return OperandKind.LITERAL, self.resolve_label(token[1:], address)

        addr = self.exe.labels.resolve(token)
        if addr != NOT_FOUND:
            return OperandKind.MEMORY, addr

        return OperandKind.LITERAL, self.parse_literal(token, address)

    def assemble_instruction(self, index: int, op: Operation, address: int) -> int:
        """Encode the instruction at address and its operands.

        Returns the address of the token after the last operand.
        """
        available = min(op.argc, self.tokens.next_address - address - 1)
        if available < op.argc:
            self.warn(f"{op.name} expects {op.argc} operands, got {available}", address)

        kinds = []
        values = []
        for i in range(op.argc):
            pos = address + 1 + i
            if i < available:
                kind, value = self.assemble_operand(self.tokens[pos], pos)
            else:
                kind, value = OperandKind.LITERAL, 0
            kinds.append(kind)
            values.append(value)

        self.emit(encode_instruction(index, kinds))
        for value in values:
            self.emit(value)

        return address + 1 + op.argc

    def assemble(self):
        """Encode the whole token stream into the executable."""
        address = self.tokens.base
        end = self.tokens.next_address

        while address < end:
            token = self.tokens[address]
            found = find_operation(token, self.operations)

            if found:
                index, op = found
                address = self.assemble_instruction(index, op, address)
                continue

            if token.startswith(ADDRESS_MARKER):
                self.emit(self.resolve_label(token[1:], address))
            elif token in self.exe.labels:
                self.warn(f"Bare label {token} emitted as a number, use {ADDRESS_MARKER}{token} for its address",
                          address)
                self.emit(parse_int(token)[0])
            else:
                self.emit(self.parse_literal(token, address))
            address += 1

        exe = self.exe
        if exe.entry != CODE_START and exe.entry >= exe.length:
            self.warn(f"Entry point {exe.entry} is past the end of the code ({exe.length})")

    def load(self, filenames: Union[str, Iterable[str]]) -> Executable:
        """Assemble source files into an executable."""
        if isinstance(filenames, str):
            filenames = [filenames]

        exe = Executable(capacity=self.capacity)
        for name, addr in REGISTERS.items():
            exe.labels.register(name, addr)

        self.exe = exe
        self.tokens = TokenStream()
        try:
            for filename in filenames:
                self.read_file(filename)
            self.assemble()
        except AssemblerError:
            exe.close()
            raise
        finally:
            self.tokens.clear()
            self.exe = None

        return exe


def load(filenames: Union[str, Iterable[str]], operations: List[Operation] = OPERATIONS,
         capacity: int = CODE_CAPACITY) -> Executable:
    """Assemble source files, raising AssemblerError on failure."""
    return Assembler(operations, capacity).load(filenames)


def unload(exe: Optional[Executable]):
    """Release everything an executable owns."""
    if exe is not None:
        exe.close()


def main(argv: Optional[List[str]] = None) -> int:
    import argparse
    from executable import disassemble

    parser = argparse.ArgumentParser(description='Word VM Assembler')
    parser.add_argument('infiles', nargs='+', help='Input assembly files')
    parser.add_argument('--outfile', '-o', default=None, help='Output binary file')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--dump-labels', action='store_true', help='Print label addresses after assembly')
    parser.add_argument('--disasm', action='store_true', help='Print a disassembly listing')
    parser.add_argument('--no-warnings', '-W', action='store_true', help='Do not print warnings')

    args = parser.parse_args(argv)

    assembler = Assembler()
    try:
        exe = assembler.load(args.infiles)
    except AssemblerError as e:
        print(f"Assembler error: {e}", file=sys.stderr)
        return 1

    if not args.no_warnings:
        for warning in exe.warnings:
            print(f"Warning: {warning}", file=sys.stderr)

    if args.verbose:
        print(f"Assembled {exe.length - CODE_START} words")
        print(f"Entry point: {exe.entry}")
        print(f"Source lines: {len(exe.lines)}")

    if args.dump_labels:
        for name, addr in sorted(exe.labels.items(), key=lambda kv: kv[1]):
            print(f"{name}: {addr}")

    if args.disasm:
        print(disassemble(exe))

    if not args.outfile:
        args.outfile = os.path.splitext(args.infiles[0])[0] + '.bin'

    try:
        with open(args.outfile, 'wb') as f:
            f.write(exe.encode())
        print(f"Output written to {args.outfile}")
    except OSError as e:
        print(f"Error writing output: {e}", file=sys.stderr)
        return 1
    finally:
        unload(exe)

    return 0


if __name__ == '__main__':
    sys.exit(main())
