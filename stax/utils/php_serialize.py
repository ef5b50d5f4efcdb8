"""
PHP serialize() format as a tagged value tree

Values are parsed from and emitted to bytes. String lengths are byte
counts, so they are recomputed on output from the actual body. Integers
and floats keep their original text so re-emitting an untouched payload
reproduces it exactly.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, List, Tuple, Union

SERIALIZED_PREFIXES = (b"s:", b"a:", b"O:", b"i:", b"b:", b"d:", b"N;", b"C:", b"E:")

_INT_RE = re.compile(rb"[+-]?\d+")
_FLOAT_RE = re.compile(rb"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?|[+-]?INF|NAN")

MAX_DEPTH = 200


class PHPSerializeError(ValueError):
    """
    The payload is not well-formed PHP serialize() output
    """

    def __init__(self, message: str, position: int):
        super().__init__(f"{message} at offset {position}")
        self.position = position


@dataclass(frozen=True)
class PNull:
    pass


@dataclass(frozen=True)
class PBool:
    value: bool


@dataclass(frozen=True)
class PInt:
    raw: bytes

    @property
    def value(self) -> int:
        return int(self.raw)


@dataclass(frozen=True)
class PFloat:
    raw: bytes

    @property
    def value(self) -> float:
        text = self.raw.decode("ascii")
        return float(text.replace("INF", "inf").replace("NAN", "nan"))


@dataclass(frozen=True)
class PStr:
    value: bytes


@dataclass(frozen=True)
class PArray:
    items: Tuple[Tuple["Value", "Value"], ...] = ()


@dataclass(frozen=True)
class PObject:
    class_name: bytes
    items: Tuple[Tuple["Value", "Value"], ...] = ()


@dataclass(frozen=True)
class PCustom:
    """
    Object serialized through the Serializable interface; the payload is opaque
    """

    class_name: bytes
    payload: bytes


@dataclass(frozen=True)
class PEnum:
    raw: bytes


@dataclass(frozen=True)
class PRef:
    """
    Back-reference ('r' for value, 'R' for reference) to an earlier slot
    """

    kind: bytes
    index: int


Value = Union[PNull, PBool, PInt, PFloat, PStr, PArray, PObject, PCustom, PEnum, PRef]


def looks_serialized(data: bytes) -> bool:
    """
    Cheap check on the leading bytes; parsing decides for real
    """
    return data[:2] in SERIALIZED_PREFIXES


@dataclass
class _Reader:
    data: bytes
    pos: int = 0
    depth: int = field(default=0)

    def expect(self, token: bytes):
        end = self.pos + len(token)
        if self.data[self.pos:end] != token:
            raise PHPSerializeError(f"expected {token!r}", self.pos)
        self.pos = end

    def read_until(self, delimiter: bytes) -> bytes:
        end = self.data.find(delimiter, self.pos)
        if end < 0:
            raise PHPSerializeError(f"missing {delimiter!r}", self.pos)
        chunk = self.data[self.pos:end]
        self.pos = end + len(delimiter)
        return chunk

    def read_count(self, delimiter: bytes) -> int:
        start = self.pos
        raw = self.read_until(delimiter)
        if not raw.isdigit():
            raise PHPSerializeError("invalid length", start)
        return int(raw)

    def read_exact(self, length: int) -> bytes:
        end = self.pos + length
        if end > len(self.data):
            raise PHPSerializeError("length prefix runs past end of payload", self.pos)
        chunk = self.data[self.pos:end]
        self.pos = end
        return chunk

    def read_quoted(self, length: int) -> bytes:
        self.expect(b'"')
        body = self.read_exact(length)
        self.expect(b'"')
        return body

    def read_items(self, count: int) -> Tuple[Tuple[Value, Value], ...]:
        self.expect(b"{")
        items = []
        for _ in range(count):
            key = self.read_value()
            if not isinstance(key, (PInt, PStr)):
                raise PHPSerializeError("array key must be int or string", self.pos)
            items.append((key, self.read_value()))
        self.expect(b"}")
        return tuple(items)

    def read_value(self) -> Value:
        self.depth += 1
        if self.depth > MAX_DEPTH:
            raise PHPSerializeError("nesting too deep", self.pos)
        try:
            return self._read_value()
        finally:
            self.depth -= 1

    def _read_value(self) -> Value:
        start = self.pos
        tag = self.data[self.pos:self.pos + 2]

        if tag == b"N;":
            self.pos += 2
            return PNull()

        self.pos += 2
        if tag == b"b:":
            raw = self.read_until(b";")
            if raw not in (b"0", b"1"):
                raise PHPSerializeError("invalid boolean", start)
            return PBool(raw == b"1")
        if tag == b"i:":
            raw = self.read_until(b";")
            if not _INT_RE.fullmatch(raw):
                raise PHPSerializeError("invalid integer", start)
            return PInt(raw)
        if tag == b"d:":
            raw = self.read_until(b";")
            if not _FLOAT_RE.fullmatch(raw):
                raise PHPSerializeError("invalid float", start)
            return PFloat(raw)
        if tag == b"s:":
            length = self.read_count(b":")
            body = self.read_quoted(length)
            self.expect(b";")
            return PStr(body)
        if tag == b"a:":
            count = self.read_count(b":")
            return PArray(self.read_items(count))
        if tag == b"O:":
            length = self.read_count(b":")
            class_name = self.read_quoted(length)
            self.expect(b":")
            count = self.read_count(b":")
            return PObject(class_name, self.read_items(count))
        if tag == b"C:":
            length = self.read_count(b":")
            class_name = self.read_quoted(length)
            self.expect(b":")
            size = self.read_count(b":")
            self.expect(b"{")
            payload = self.read_exact(size)
            self.expect(b"}")
            return PCustom(class_name, payload)
        if tag == b"E:":
            length = self.read_count(b":")
            raw = self.read_quoted(length)
            self.expect(b";")
            return PEnum(raw)
        if tag in (b"r:", b"R:"):
            index = self.read_count(b";")
            return PRef(tag[:1], index)

        raise PHPSerializeError(f"unknown type tag {tag!r}", start)


def loads(data: bytes) -> Tuple[Value, bytes]:
    """
    Parses a serialized payload

    Args:
        data: Raw bytes as stored in the database

    Returns:
        Tuple[Value, bytes]: The value tree and any trailing whitespace

    Raises:
        PHPSerializeError: If the payload is malformed or has trailing data
    """
    reader = _Reader(data)
    value = reader.read_value()
    trailing = data[reader.pos:]
    if trailing.strip():
        raise PHPSerializeError("unexpected trailing data", reader.pos)
    return value, trailing


def _dump_items(items, out: List[bytes]):
    out.append(b"{")
    for key, value in items:
        _dump(key, out)
        _dump(value, out)
    out.append(b"}")


def _dump(value: Value, out: List[bytes]):
    if isinstance(value, PNull):
        out.append(b"N;")
    elif isinstance(value, PBool):
        out.append(b"b:1;" if value.value else b"b:0;")
    elif isinstance(value, PInt):
        out.append(b"i:" + value.raw + b";")
    elif isinstance(value, PFloat):
        out.append(b"d:" + value.raw + b";")
    elif isinstance(value, PStr):
        out.append(b's:%d:"' % len(value.value) + value.value + b'";')
    elif isinstance(value, PArray):
        out.append(b"a:%d:" % len(value.items))
        _dump_items(value.items, out)
    elif isinstance(value, PObject):
        out.append(b'O:%d:"' % len(value.class_name) + value.class_name + b'":%d:' % len(value.items))
        _dump_items(value.items, out)
    elif isinstance(value, PCustom):
        out.append(b'C:%d:"' % len(value.class_name) + value.class_name
                   + b'":%d:{' % len(value.payload) + value.payload + b"}")
    elif isinstance(value, PEnum):
        out.append(b'E:%d:"' % len(value.raw) + value.raw + b'";')
    elif isinstance(value, PRef):
        out.append(value.kind + b":%d;" % value.index)
    else:
        raise TypeError(f"Cannot serialize {type(value).__name__}")


def dumps(value: Value, trailing: bytes = b"") -> bytes:
    out: List[bytes] = []
    _dump(value, out)
    out.append(trailing)
    return b"".join(out)


def walk_strings(value: Value, fn: Callable[[bytes], bytes]) -> Value:
    """
    Returns a copy of the tree with fn applied to every string value.
    Array keys, class names and opaque payloads are left alone.
    """
    if isinstance(value, PStr):
        return PStr(fn(value.value))
    if isinstance(value, PArray):
        return PArray(tuple((key, walk_strings(item, fn)) for key, item in value.items))
    if isinstance(value, PObject):
        return PObject(value.class_name, tuple((key, walk_strings(item, fn)) for key, item in value.items))
    return value


def iter_opaque(value: Value):
    """
    Yields every PCustom node in the tree
    """
    if isinstance(value, PCustom):
        yield value
    elif isinstance(value, (PArray, PObject)):
        for _, item in value.items:
            yield from iter_opaque(item)
