from __future__ import annotations

import itertools
import logging
import os
import struct
from contextlib import contextmanager
from io import BytesIO
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, NamedTuple, Protocol

from dissect.regf import regf
from dissect.regf.c_regf import KEY
from dissect.regf.exceptions import Error as RegfError
from dissect.regf.regf import STABLE

from dissect.hivetree.c_hivetree import (
    REG_DWORD,
    REG_DWORD_BIG_ENDIAN,
    REG_EXPAND_SZ,
    REG_LINK,
    REG_MULTI_SZ,
    REG_QWORD,
    REG_SZ,
    REGF_SIGNATURE,
    c_hivetree,
    c_hivetree_be,
)
from dissect.hivetree.exceptions import (
    EngineError,
    Error,
    HiveNotFoundError,
    IntegerConversionError,
    SessionError,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_HIVETREE", "CRITICAL"))

# Exceptions the regf engine raises on malformed input
_ENGINE_EXCEPTIONS = (
    RegfError,
    EOFError,
    IndexError,
    NotImplementedError,
    UnicodeDecodeError,
    ValueError,
    struct.error,
)

_session_ids = itertools.count(1)


class NodeHandle(NamedTuple):
    session: int
    offset: int


class ValueHandle(NamedTuple):
    session: int
    offset: int


class HiveSession:
    """An open hive, the scoped resource every handle belongs to.

    Handles produced while the session is open carry its ``id`` and are refused once the session is closed
    or when presented to a different session.
    """

    def __init__(self, path: Path, fh: BinaryIO, hive: regf.RegistryHive):
        self.id = next(_session_ids)
        self.path = path
        self.fh = fh
        self.hive = hive
        self.closed = False
        self._claimed = False

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<HiveSession id={self.id} path={str(self.path)!r} {state}>"

    def __enter__(self) -> HiveSession:
        return self

    def __exit__(self, *exc_info) -> None:
        if not self.closed:
            self.close()

    def close(self) -> None:
        if self.closed:
            raise SessionError(f"Session {self.id} is already closed")

        self.closed = True
        self.fh.close()
        log.debug("Closed session %d for %s", self.id, self.path)

    def check(self, handle: NodeHandle | ValueHandle | None = None) -> None:
        if self.closed:
            raise SessionError(f"Session {self.id} is closed")

        if handle is not None and handle.session != self.id:
            raise SessionError(f"{handle!r} does not belong to session {self.id}")

    @contextmanager
    def claim(self) -> Iterator[HiveSession]:
        """Hold exclusive use of the session, e.g. for the duration of a traversal."""
        self.check()
        if self._claimed:
            raise SessionError(f"Session {self.id} is already in use")

        self._claimed = True
        try:
            yield self
        finally:
            self._claimed = False


class RegistryEngine(Protocol):
    """The operations the tree layer needs from a hive parsing engine."""

    def open(self, path: str | Path) -> HiveSession: ...

    def close(self, session: HiveSession) -> None: ...

    def root(self, session: HiveSession) -> NodeHandle: ...

    def hive_timestamp(self, session: HiveSession) -> int: ...

    def node_name(self, session: HiveSession, node: NodeHandle) -> str: ...

    def node_timestamp(self, session: HiveSession, node: NodeHandle) -> int: ...

    def node_children(self, session: HiveSession, node: NodeHandle) -> list[NodeHandle]: ...

    def node_parent(self, session: HiveSession, node: NodeHandle) -> NodeHandle | None: ...

    def node_values(self, session: HiveSession, node: NodeHandle) -> list[ValueHandle]: ...

    def value_key(self, session: HiveSession, value: ValueHandle) -> str: ...

    def value_type_and_length(self, session: HiveSession, value: ValueHandle) -> tuple[int, int]: ...

    def value_raw_bytes(self, session: HiveSession, value: ValueHandle) -> bytes: ...

    def value_as_text(self, session: HiveSession, value: ValueHandle) -> str: ...

    def value_as_text_list(self, session: HiveSession, value: ValueHandle, count: int | None = None) -> list[bytes]: ...

    def value_as_int32(self, session: HiveSession, value: ValueHandle) -> int: ...

    def value_as_int64(self, session: HiveSession, value: ValueHandle) -> int: ...


@contextmanager
def engine_call(function: str) -> Iterator[None]:
    try:
        yield
    except Error:
        raise
    except _ENGINE_EXCEPTIONS as e:
        raise EngineError(function, str(e) or e.__class__.__name__) from e


class RegfEngine:
    """Handle based access to hive files, backed by ``dissect.regf``.

    Node and value handles are the cell offsets of the ``nk`` and ``vk`` cells, relative to the first hive bin.
    Every call parses the cell again; only the ``RegistryHive`` cell cache sits in between.
    """

    def open(self, path: str | Path) -> HiveSession:
        path = Path(path)
        if not path.exists():
            raise HiveNotFoundError(path)

        try:
            fh = path.open("rb")
        except OSError as e:
            raise EngineError("open", str(e)) from e

        try:
            with engine_call("open"):
                hive = regf.RegistryHive(fh)

            if hive.header.Signature != REGF_SIGNATURE:
                raise EngineError("open", f"invalid hive signature 0x{hive.header.Signature:08x}")
        except Error:
            fh.close()
            raise

        session = HiveSession(path, fh, hive)
        log.debug("Opened session %d for %s", session.id, path)
        return session

    def close(self, session: HiveSession) -> None:
        session.close()

    def root(self, session: HiveSession) -> NodeHandle:
        session.check()
        node = NodeHandle(session.id, session.hive.header.RootCell)
        self._key(session, node, "root")
        return node

    def hive_timestamp(self, session: HiveSession) -> int:
        session.check()
        return session.hive.header.TimeStamp

    def node_name(self, session: HiveSession, node: NodeHandle) -> str:
        return self._key(session, node, "node_name").name

    def node_timestamp(self, session: HiveSession, node: NodeHandle) -> int:
        return self._key(session, node, "node_timestamp").cell.LastWriteTime

    def node_children(self, session: HiveSession, node: NodeHandle) -> list[NodeHandle]:
        key = self._key(session, node, "node_children")
        if not (num_sk := key.cell.SubKeyCounts[STABLE]):
            return []

        with engine_call("node_children"):
            offsets = list(_subkey_offsets(session.hive, key.cell.SubKeyLists[STABLE]))

        if len(offsets) != num_sk:
            log.debug("KeyNode %s has %d subkeys, while its index lists %d", key.name, num_sk, len(offsets))

        return [NodeHandle(session.id, offset) for offset in offsets]

    def node_parent(self, session: HiveSession, node: NodeHandle) -> NodeHandle | None:
        key = self._key(session, node, "node_parent")
        if KEY.HIVE_ENTRY in key.cell.Flags:
            return None

        return NodeHandle(session.id, key.cell.Parent)

    def node_values(self, session: HiveSession, node: NodeHandle) -> list[ValueHandle]:
        key = self._key(session, node, "node_values")
        if not (num_values := key.cell.ValueList.Count):
            return []

        with engine_call("node_values"):
            data = session.hive.cell_data(key.cell.ValueList.List)

            # Possible slack values
            if len(data) // 4 < num_values:
                log.debug(
                    "Value list of key %r is %d bytes short, reading %d values instead of %d",
                    key.name,
                    num_values * 4 - len(data),
                    len(data) // 4,
                    num_values,
                )
                num_values = len(data) // 4

            offsets = c_hivetree.uint32[num_values](data)

        return [ValueHandle(session.id, offset) for offset in offsets if offset > 2]

    def value_key(self, session: HiveSession, value: ValueHandle) -> str:
        kv = self._value(session, value, "value_key")
        # dissect.regf already substitutes "(Default)", report the name as stored
        return "" if kv.cell.NameLength == 0 else kv.name

    def value_type_and_length(self, session: HiveSession, value: ValueHandle) -> tuple[int, int]:
        kv = self._value(session, value, "value_type_and_length")
        return kv.type, kv.size

    def value_raw_bytes(self, session: HiveSession, value: ValueHandle) -> bytes:
        kv = self._value(session, value, "value_raw_bytes")
        with engine_call("value_raw_bytes"):
            return kv.data

    def value_as_text(self, session: HiveSession, value: ValueHandle) -> str:
        _, data = self._typed_data(session, value, "value_as_text", (REG_SZ, REG_EXPAND_SZ, REG_LINK))
        return regf.try_decode_sz(data)

    def value_as_text_list(self, session: HiveSession, value: ValueHandle, count: int | None = None) -> list[bytes]:
        _, data = self._typed_data(session, value, "value_as_text_list", (REG_MULTI_SZ,))

        stream = BytesIO(data)
        records = []
        while count is None or len(records) < count:
            if not (record := read_null_terminated_wchars(stream)):
                break
            records.append(record)

        return records

    def value_as_int32(self, session: HiveSession, value: ValueHandle) -> int:
        kv, data = self._typed_data(session, value, "value_as_int32", (REG_DWORD, REG_DWORD_BIG_ENDIAN))
        if len(data) < 4:
            raise IntegerConversionError(f"Value {kv.name!r} holds {len(data)} bytes, a DWORD needs 4")

        if kv.type == REG_DWORD_BIG_ENDIAN:
            return int(c_hivetree_be.int32(data[:4]))
        return int(c_hivetree.int32(data[:4]))

    def value_as_int64(self, session: HiveSession, value: ValueHandle) -> int:
        _, data = self._typed_data(session, value, "value_as_int64", (REG_QWORD,))
        if len(data) < 8:
            raise IntegerConversionError(f"Value holds {len(data)} bytes, a QWORD needs 8")

        return int(c_hivetree.int64(data[:8]))

    def _key(self, session: HiveSession, node: NodeHandle, function: str) -> regf.KeyNode:
        session.check(node)
        with engine_call(function):
            cell = session.hive.cell(node.offset)

        if not isinstance(cell, regf.KeyNode):
            raise EngineError(function, f"cell 0x{node.offset:x} is a {cell.__class__.__name__}, not a KeyNode")

        return cell

    def _value(self, session: HiveSession, value: ValueHandle, function: str) -> regf.KeyValue:
        session.check(value)
        with engine_call(function):
            cell = session.hive.cell(value.offset)

        if not isinstance(cell, regf.KeyValue):
            raise EngineError(function, f"cell 0x{value.offset:x} is a {cell.__class__.__name__}, not a KeyValue")

        return cell

    def _typed_data(
        self, session: HiveSession, value: ValueHandle, function: str, types: tuple[int, ...]
    ) -> tuple[regf.KeyValue, bytes]:
        kv = self._value(session, value, function)
        if kv.type not in types:
            raise EngineError(function, f"value {kv.name!r} has type 0x{kv.type:x}")

        with engine_call(function):
            return kv, kv.data


def _subkey_offsets(hive: regf.RegistryHive, offset: int) -> Iterator[int]:
    # Index roots reference further index cells, walk them without recursion
    stack = [offset]
    while stack:
        cell = hive.cell(stack.pop())

        if isinstance(cell, regf.IndexRoot):
            stack.extend(reversed(list(cell.cell.List)))
        elif isinstance(cell, regf.IndexLeaf):
            yield from cell.cell.List
        elif isinstance(cell, (regf.FastLeaf, regf.HashLeaf)):
            for entry in cell.cell.List:
                yield entry.Cell
        else:
            raise EngineError("node_children", f"unexpected subkey list cell {cell.__class__.__name__}")


def read_null_terminated_wchars(stream: BinaryIO) -> bytes:
    """Read the raw bytes of a wide string up to, but not including, its terminator.

    Reading stops at the end of the stream as well, so a missing final terminator is tolerated.
    """
    wide_string = b""
    while True:
        wide_char = stream.read(2)

        if len(wide_char) != 2 or wide_char == b"\x00\x00":
            break

        wide_string += wide_char

    return wide_string
