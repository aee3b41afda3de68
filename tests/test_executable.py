import struct

import pytest
from zstd import compress

from assemble import load
from executable import (
    CODE_CAPACITY, CODE_START, HEADER, MAGIC, NOT_FOUND, VERSION,
    Executable, LabelTable, LineTable, OperandKind,
    decode_instruction, disassemble, encode_instruction, label_name, to_word,
)

EXAMPLE = 'entry\n$loop: add 1 2 3\njmp *$loop\n'


def words_at(exe, i):
    return exe.code[CODE_START:exe.length][i]


class TestWords:
    def test_to_word(self):
        assert to_word(5) == 5
        assert to_word(-1) == -1
        assert to_word(0x7FFFFFFF) == 0x7FFFFFFF
        assert to_word(0x80000000) == -0x80000000
        assert to_word(0x100000002) == 2

    def test_instruction_layout(self):
        kinds = [OperandKind.REFERENCE, OperandKind.LITERAL, OperandKind.MEMORY]
        word = encode_instruction(7, kinds)
        assert word == (0x213 << 16) | 7
        assert decode_instruction(word, 3) == (7, kinds)

    def test_no_operands(self):
        assert encode_instruction(1, []) == 1
        assert decode_instruction(1, 0) == (1, [])

    def test_operand_limit(self):
        kinds = [OperandKind.LITERAL] * 4
        assert decode_instruction(encode_instruction(2, kinds), 4) == (2, kinds)
        with pytest.raises(ValueError):
            encode_instruction(2, kinds + [OperandKind.LITERAL])

    def test_index_limit(self):
        assert encode_instruction(0xFFFF, []) == 0xFFFF
        with pytest.raises(ValueError):
            encode_instruction(0x10000, [])


class TestLabelTable:
    def test_resolve(self):
        labels = LabelTable()
        labels.register('$start', 12)
        assert labels.resolve('start') == 12
        assert labels.resolve('$start') == 12
        assert 'start' in labels
        assert labels['start'] == 12

    def test_missing_is_sentinel(self):
        assert LabelTable().resolve('nope') == NOT_FOUND

    def test_last_registration_wins(self):
        labels = LabelTable()
        labels.register('x', 10)
        labels.register('x', 20)
        assert labels.resolve('x') == 20
        assert len(labels) == 1

    def test_label_name(self):
        assert label_name('$loop:') == 'loop'
        assert label_name('$loop') == 'loop'
        assert label_name('loop') == 'loop'


class TestLineTable:
    def test_record_and_find(self):
        lines = LineTable()
        lines.record('a.asm', 3, 10, 14)
        rec = lines.find('a.asm', 3)
        assert (rec.start, rec.stop) == (10, 14)
        assert len(rec) == 4
        assert lines.find('a.asm', 4) is None
        assert lines.find('b.asm', 3) is None

    def test_at_address_is_half_open(self):
        lines = LineTable()
        lines.record('a.asm', 1, 10, 12)
        lines.record('a.asm', 2, 12, 12)
        lines.record('a.asm', 3, 12, 13)
        assert lines.at_address(11).line_num == 1
        assert lines.at_address(12).line_num == 3
        assert lines.at_address(13) is None


class TestExecutable:
    def test_defaults(self):
        exe = Executable(capacity=64)
        assert exe.entry == CODE_START
        assert exe.length == CODE_START
        assert len(exe.code) == 64

    def test_close(self):
        exe = Executable(capacity=64)
        exe.labels.register('x', 10)
        exe.lines.record('a.asm', 1, 9, 10)
        exe.close()
        assert exe.code == []
        assert len(exe.labels) == 0
        assert len(exe.lines) == 0


class TestBinaryFormat:
    def test_encode_decode(self, source):
        path = source(EXAMPLE)
        exe = load(path)

        copy = Executable.decode(exe.encode())

        assert copy.entry == exe.entry
        assert copy.length == exe.length
        assert copy.capacity == exe.capacity
        assert copy.code[:copy.length] == exe.code[:exe.length]
        assert copy.labels.resolve('loop') == CODE_START
        assert copy.labels.resolve('sp') == exe.labels.resolve('sp')
        assert copy.lines.find(path, 3) == exe.lines.find(path, 3)

    def test_bad_magic(self):
        data = compress(struct.pack(HEADER, b'NOPE', VERSION, 0, 0, 16, 0, 0), 22)
        with pytest.raises(ValueError, match='magic'):
            Executable.decode(data)

    def test_newer_version(self):
        data = compress(struct.pack(HEADER, MAGIC, VERSION + 1, 0, 0, 16, 0, 0), 22)
        with pytest.raises(ValueError, match='version'):
            Executable.decode(data)

    def test_truncated(self):
        with pytest.raises(ValueError):
            Executable.decode(compress(b'VMEX', 22))

        header = struct.pack(HEADER, MAGIC, VERSION, CODE_START, CODE_START + 4, 64, 0, 0)
        with pytest.raises(ValueError, match='Truncated'):
            Executable.decode(compress(header + b'\0' * 8, 22))

    def test_capacity_too_large(self):
        header = struct.pack(HEADER, MAGIC, VERSION, CODE_START, CODE_START, CODE_CAPACITY + 1, 0, 0)
        with pytest.raises(ValueError, match='Capacity'):
            Executable.decode(compress(header, 22))

    def test_label_names_survive_encoding(self, source):
        exe = load(source('$$x 1\n$y:: 2\nmov a &$$x\n'))
        assert exe.labels.resolve('$$x') == CODE_START
        assert words_at(exe, -1) == CODE_START

        copy = Executable.decode(exe.encode())
        assert dict(copy.labels.items()) == dict(exe.labels.items())
        assert '$x' in list(copy.labels)
        assert 'y:' in list(copy.labels)
        assert copy.labels.resolve('$$x') == CODE_START

    def test_repeated_lines_survive_encoding(self, source):
        path = source('1 2\n')
        exe = load([path, path])
        copy = Executable.decode(exe.encode())
        assert copy.lines.find_all(path, 1) == exe.lines.find_all(path, 1)
        assert len(copy.lines) == 2


class TestDisassemble:
    def test_listing(self, source):
        path = source(EXAMPLE)
        listing = disassemble(load(path))

        assert f'~ Entry point: {CODE_START}' in listing
        assert '$loop' in listing
        assert f'{CODE_START:5d}: add 1 2 3  ~ {path}:2' in listing
        assert f'{CODE_START + 4:5d}: jmp *loop  ~ {path}:3' in listing

    def test_registers_and_bare_words(self, source):
        listing = disassemble(load(source('mov sp 3\n-5\n')))
        assert 'mov sp 3' in listing
        assert '.word -5' in listing
