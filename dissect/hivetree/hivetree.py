from __future__ import annotations

import logging
import os
from contextlib import closing
from dataclasses import dataclass
from functools import cached_property
from typing import TYPE_CHECKING, Union

from dissect.util.ts import from_unix

from dissect.hivetree.c_hivetree import (
    REG_BINARY,
    REG_DWORD,
    REG_DWORD_BIG_ENDIAN,
    REG_EXPAND_SZ,
    REG_LINK,
    REG_MULTI_SZ,
    REG_NONE,
    REG_QWORD,
    REG_SZ,
    type_name,
)
from dissect.hivetree.engine import RegfEngine
from dissect.hivetree.exceptions import (
    EngineError,
    Error,
    IntegerConversionError,
    TextConversionError,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from datetime import datetime
    from pathlib import Path

    from dissect.hivetree.engine import HiveSession, NodeHandle, RegistryEngine, ValueHandle

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_HIVETREE", "CRITICAL"))

DEFAULT_VALUE_NAME = "(Default)"

# Seconds between 1601-01-01 and 1970-01-01
EPOCH_DELTA = 11_644_473_600
TICKS_PER_SECOND = 10_000_000


@dataclass(frozen=True)
class NoneValue:
    pass


@dataclass(frozen=True)
class Text:
    value: str


@dataclass(frozen=True)
class TextList:
    value: tuple[str, ...]


@dataclass(frozen=True)
class Int32:
    value: int


@dataclass(frozen=True)
class Int64:
    value: int


@dataclass(frozen=True)
class Binary:
    value: bytes


@dataclass(frozen=True)
class Unrecognized:
    value: bytes


# TODO: Add `: TypeAlias` when we drop Python 3.9
DecodedValue = Union[NoneValue, Text, TextList, Int32, Int64, Binary, Unrecognized]


@dataclass(frozen=True)
class Value:
    name: str
    type: int
    length: int
    decoded: DecodedValue

    def __str__(self) -> str:
        return f'("{self.name}", {type_name(self.type)}: {self.decoded!r})'

    @classmethod
    def from_handle(
        cls,
        engine: RegistryEngine,
        session: HiveSession,
        value: ValueHandle,
        default_value_name: str | None = DEFAULT_VALUE_NAME,
        exact_multi_sz: bool = False,
    ) -> Value:
        data_type, length = engine.value_type_and_length(session, value)

        name = engine.value_key(session, value)
        if not name and default_value_name is not None:
            name = default_value_name

        raw = engine.value_raw_bytes(session, value)
        decoded = decode_value(raw, data_type, engine, session, value, exact_multi_sz)
        return cls(name, data_type, length, decoded)


@dataclass(frozen=True)
class NodeValue:
    """A single value together with the key it belongs to."""

    name: str
    path: str
    last_modified: datetime
    value: Value


@dataclass(frozen=True)
class Node:
    name: str
    path: str
    last_modified: datetime
    values: tuple[Value, ...]

    def __str__(self) -> str:
        lines = [
            f'Node: "{self.name}"',
            f'\tModified: "{self.last_modified.isoformat()}"',
            f'\tPath: "{self.path}"',
            "\tValues:",
        ]
        lines.extend(f"\t\t{value}" for value in self.values)
        return "\n".join(lines)

    def by_value(self) -> list[NodeValue]:
        return [NodeValue(self.name, self.path, self.last_modified, value) for value in self.values]


class Hive:
    """A registry hive materialized into :class:`Node` objects.

    Nodes are assembled lazily while iterating, in stack order: the root first, after which the most recently
    discovered subkey is visited next. The underlying session stays open until :meth:`close` is called or the
    context manager exits.

    Args:
        path: The hive file to open.
        engine: The engine that parses the hive, defaults to a :class:`RegfEngine`.
        default_value_name: Name given to values without a name, ``None`` keeps the empty name.
        exact_multi_sz: Count ``REG_MULTI_SZ`` elements from the engine records instead of the terminator scan.
    """

    def __init__(
        self,
        path: str | Path,
        engine: RegistryEngine | None = None,
        default_value_name: str | None = DEFAULT_VALUE_NAME,
        exact_multi_sz: bool = False,
    ):
        self.engine = engine if engine is not None else RegfEngine()
        self.default_value_name = default_value_name
        self.exact_multi_sz = exact_multi_sz

        self.session = self.engine.open(path)
        self.path = self.session.path

    def __repr__(self) -> str:
        return f"<Hive {str(self.path)!r}>"

    def __enter__(self) -> Hive:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __iter__(self) -> Iterator[Node]:
        with closing(self.walk()) as walk:
            for _, result in walk:
                if isinstance(result, Error):
                    raise result
                yield result

    def close(self) -> None:
        if not self.session.closed:
            self.engine.close(self.session)

    def root(self) -> NodeHandle:
        return self.engine.root(self.session)

    @cached_property
    def last_modified(self) -> datetime:
        # A zero timestamp is valid and maps to 1601-01-01
        return filetime_to_datetime(self.engine.hive_timestamp(self.session))

    def node(self, node: NodeHandle) -> Node:
        return assemble(self.engine, self.session, node, self.default_value_name, self.exact_multi_sz)

    def walk(self) -> Iterator[tuple[NodeHandle, Node | Error]]:
        """Visit every node of the hive exactly once.

        A node that fails to assemble is yielded as the error instead of a :class:`Node`, the walk continues with
        the remaining nodes.
        """
        with self.session.claim():
            stack = [self.root()]
            seen = set()

            while stack:
                handle = stack.pop()
                if handle in seen:
                    log.warning("Node at 0x%x is referenced more than once, skipping", handle.offset)
                    continue
                seen.add(handle)

                try:
                    stack.extend(self.engine.node_children(self.session, handle))
                except Error as e:
                    log.debug("Could not enumerate subkeys of node at 0x%x", handle.offset, exc_info=e)
                    yield handle, e
                    continue

                try:
                    result = self.node(handle)
                except Error as e:
                    log.debug("Could not assemble node at 0x%x", handle.offset, exc_info=e)
                    result = e

                yield handle, result


def assemble(
    engine: RegistryEngine,
    session: HiveSession,
    node: NodeHandle,
    default_value_name: str | None = DEFAULT_VALUE_NAME,
    exact_multi_sz: bool = False,
) -> Node:
    name = engine.node_name(session, node)
    path = path_of(engine, session, node)
    last_modified = filetime_to_datetime(engine.node_timestamp(session, node))
    values = tuple(
        Value.from_handle(engine, session, value, default_value_name, exact_multi_sz)
        for value in engine.node_values(session, node)
    )

    return Node(name, path, last_modified, values)


def path_of(engine: RegistryEngine, session: HiveSession, node: NodeHandle) -> str:
    """Build the absolute path of a node, its root name included, e.g. ``/ROOT/ControlSet001/Control``.

    The walk up ends at the node the engine reports without a parent.
    """
    parts = []
    seen = set()

    current = node
    while current is not None:
        if current in seen:
            raise EngineError("node_parent", f"parent chain of node at 0x{node.offset:x} loops")
        seen.add(current)

        parts.append(engine.node_name(session, current))
        current = engine.node_parent(session, current)

    return "/" + "/".join(reversed(parts))


def decode_value(
    data: bytes,
    data_type: int,
    engine: RegistryEngine,
    session: HiveSession,
    value: ValueHandle,
    exact_multi_sz: bool = False,
) -> DecodedValue:
    if data_type == REG_NONE:
        return NoneValue()

    if data_type in (REG_SZ, REG_EXPAND_SZ, REG_LINK):
        return Text(engine.value_as_text(session, value))

    if data_type == REG_BINARY:
        return Binary(data)

    if data_type in (REG_DWORD, REG_DWORD_BIG_ENDIAN):
        return Int32(engine.value_as_int32(session, value))

    if data_type == REG_QWORD:
        return Int64(engine.value_as_int64(session, value))

    if data_type == REG_MULTI_SZ:
        if exact_multi_sz:
            records = engine.value_as_text_list(session, value)
            count = len(records)
        else:
            count = count_multi_sz(data)
            records = engine.value_as_text_list(session, value, count)

        return TextList(decode_multi_sz(records, count))

    log.debug("Data type 0x%x not recognized", data_type)
    return Unrecognized(data)


def count_multi_sz(data: bytes) -> int:
    """Estimate the number of strings in ``REG_MULTI_SZ`` data.

    Every window ``[b, 0, 0, 0]`` with a non-zero ``b`` is taken as the end of a string: the low byte of its last
    character, the high byte of that character and the first byte of the UTF-16 terminator. This only holds for
    characters below U+0100, other text is over- or undercounted.
    """
    count = 0
    for end in range(4, len(data) + 1):
        if data[end - 4] != 0 and data[end - 3 : end] == b"\x00\x00\x00":
            count += 1

    return count


def decode_multi_sz(records: list[bytes], count: int) -> tuple[str, ...]:
    strings = []
    for idx in range(count):
        if idx >= len(records):
            raise TextConversionError(f"REG_MULTI_SZ element {idx} is missing, only {len(records)} found", idx)

        try:
            strings.append(records[idx].decode("utf-16-le"))
        except UnicodeDecodeError as e:
            raise TextConversionError(f"REG_MULTI_SZ element {idx} is not valid UTF-16", idx) from e

    return tuple(strings)


def filetime_to_unix(ticks: int) -> int:
    """Convert FILETIME ticks (100ns since 1601-01-01) to whole seconds since the Unix epoch.

    The division truncates toward zero, sub-second precision is dropped.
    """
    seconds = abs(ticks) // TICKS_PER_SECOND
    if ticks < 0:
        seconds = -seconds

    return seconds - EPOCH_DELTA


def filetime_to_datetime(ticks: int) -> datetime:
    seconds = filetime_to_unix(ticks)
    try:
        return from_unix(seconds)
    except (OverflowError, OSError, ValueError) as e:
        raise IntegerConversionError(f"Timestamp {ticks} is out of range") from e
