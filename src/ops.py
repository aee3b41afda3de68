"""
Operation catalog for the word VM.

The catalog is an ordered list: an instruction word stores the position of
its operation in this list in its low 16 bits. The interpreter loop uses the
same table, so entries must only ever be appended.

    mnemonic  operands
    nop       -
    halt      -
    mov       dst src
    add       dst a b          (also sub mul div mod and or xor shl shr)
    not       dst src
    cmp       dst a b          dst = -1, 0 or 1
    jmp       target
    jz        cond target
    jnz       cond target
    call      target
    ret       -
    push      src
    pop       dst
    print     src
    read      dst
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class Operation:
    """Describes one VM operation."""
    name: str
    argc: int


OPERATIONS: List[Operation] = [
    Operation('nop', 0),
    Operation('halt', 0),
    Operation('mov', 2),
    Operation('add', 3),
    Operation('sub', 3),
    Operation('mul', 3),
    Operation('div', 3),
    Operation('mod', 3),
    Operation('and', 3),
    Operation('or', 3),
    Operation('xor', 3),
    Operation('shl', 3),
    Operation('shr', 3),
    Operation('not', 2),
    Operation('cmp', 3),
    Operation('jmp', 1),
    Operation('jz', 2),
    Operation('jnz', 2),
    Operation('call', 1),
    Operation('ret', 0),
    Operation('push', 1),
    Operation('pop', 1),
    Operation('print', 1),
    Operation('read', 1),
]


def find_operation(name: str, operations: List[Operation] = OPERATIONS) -> Optional[Tuple[int, Operation]]:
    """Look up a mnemonic, return (index, operation) or None."""
    for index, op in enumerate(operations):
        if op.name == name:
            return index, op
    return None
