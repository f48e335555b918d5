"""
monkeysphere_core.agent.sexp
----------------------------
Canonical S-expressions (as produced by libgcrypt / gpg-agent).
"""

from __future__ import annotations
from typing import List, Optional, Union

Atom = bytes
SExp = Union[Atom, List["SExp"]]


def parse_canonical(data: bytes) -> List[SExp]:
    """
    Parse one canonical S-expression. Anything after the closing
    parenthesis (e.g. key-wrap padding) is ignored. Display hints
    (``[hint]atom``) are dropped.
    """
    data = bytes(data)
    pos = 0
    stack: List[List[SExp]] = []

    def read_atom() -> bytes:
        nonlocal pos
        start = pos
        while pos < len(data) and data[pos:pos + 1].isdigit():
            pos += 1
        if pos == start or pos >= len(data) or data[pos:pos + 1] != b":":
            raise ValueError(f"bad S-expression atom at offset {start}")
        length = int(data[start:pos])
        pos += 1
        if pos + length > len(data):
            raise ValueError(f"truncated S-expression atom at offset {start}")
        atom = data[pos:pos + length]
        pos += length
        return atom

    while pos < len(data):
        c = data[pos:pos + 1]
        if c == b"(":
            stack.append([])
            pos += 1
        elif c == b")":
            if not stack:
                raise ValueError(f"unbalanced ')' at offset {pos}")
            done = stack.pop()
            pos += 1
            if not stack:
                return done
            stack[-1].append(done)
        elif c == b"[":
            pos += 1
            read_atom()
            if data[pos:pos + 1] != b"]":
                raise ValueError(f"bad display hint at offset {pos}")
            pos += 1
        elif c.isdigit():
            if not stack:
                raise ValueError("S-expression must start with '('")
            stack[-1].append(read_atom())
        else:
            raise ValueError(f"unexpected byte {c!r} at offset {pos}")
    raise ValueError("unterminated S-expression")


def find(node: SExp, name: bytes) -> Optional[List[SExp]]:
    """Depth-first search for the list whose head atom is ``name``."""
    if not isinstance(node, list) or not node:
        return None
    if node[0] == name:
        return node
    for child in node[1:]:
        hit = find(child, name)
        if hit is not None:
            return hit
    return None


def value(node: List[SExp], name: bytes) -> Optional[bytes]:
    """``(name value)`` directly under ``node``."""
    for child in node[1:]:
        if isinstance(child, list) and len(child) >= 2 and child[0] == name and isinstance(child[1], bytes):
            return child[1]
    return None


def values(node: List[SExp], name: bytes) -> List[bytes]:
    for child in node[1:]:
        if isinstance(child, list) and child and child[0] == name:
            return [c for c in child[1:] if isinstance(c, bytes)]
    return []
