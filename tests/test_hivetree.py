from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import pytest

from dissect.hivetree import hivetree
from dissect.hivetree.c_hivetree import REG_BINARY, REG_DWORD_BIG_ENDIAN, REG_MULTI_SZ, REG_QWORD
from dissect.hivetree.engine import RegfEngine
from dissect.hivetree.exceptions import (
    EngineError,
    HiveNotFoundError,
    IntegerConversionError,
    SessionError,
    TextConversionError,
)
from tests._utils import FILETIME_2020, UNIX_2020, key, wstr

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path


def by_path(hive: hivetree.Hive) -> dict[str, hivetree.Node]:
    return {node.path: node for node in hive}


def test_hive(system_hive: Path) -> None:
    with hivetree.Hive(system_hive) as hive:
        nodes = by_path(hive)

        assert sorted(nodes) == [
            "/ROOT",
            "/ROOT/ControlSet001",
            "/ROOT/ControlSet001/Control",
            "/ROOT/ControlSet001/Control/Lsa",
            "/ROOT/ControlSet001/Services",
            "/ROOT/Setup",
            "/ROOT/Software",
            "/ROOT/Software/Vendor",
        ]

        root = nodes["/ROOT"]
        assert root.name == "ROOT"
        assert root.path == "/" + root.name
        assert root.values == ()

        for path, node in nodes.items():
            assert path.endswith(node.name)
            if node is not root:
                parent_path, _, name = path.rpartition("/")
                assert name == node.name
                assert parent_path in nodes

        assert hive.last_modified == datetime(2020, 1, 1, tzinfo=timezone.utc)

    assert hive.session.closed


def test_hive_walk_order(system_hive: Path) -> None:
    with hivetree.Hive(system_hive) as hive:
        handles = []
        names = []
        for handle, node in hive.walk():
            handles.append(handle)
            names.append(node.name)

    assert len(set(handles)) == len(handles)
    assert names == ["ROOT", "Setup", "Software", "Vendor", "ControlSet001", "Services", "Control", "Lsa"]


def test_hive_values(system_hive: Path) -> None:
    with hivetree.Hive(system_hive) as hive:
        nodes = by_path(hive)

    lsa = nodes["/ROOT/ControlSet001/Control/Lsa"]
    assert lsa.last_modified == datetime(2020, 1, 1, tzinfo=timezone.utc)
    assert [(value.name, value.decoded) for value in lsa.values] == [
        ("(Default)", hivetree.Text("lsass")),
        ("LimitBlankPasswordUse", hivetree.Int32(1)),
        ("Path", hivetree.Text("%SystemRoot%\\system32")),
    ]

    vendor = {value.name: value for value in nodes["/ROOT/Software/Vendor"].values}
    assert vendor["Multi"].type == REG_MULTI_SZ
    assert vendor["Multi"].decoded == hivetree.TextList(("Alpha", "Beta"))
    assert vendor["Blob"].type == REG_BINARY
    assert vendor["Blob"].decoded == hivetree.Binary(b"\x01\x02\x03\x04\x05")
    assert vendor["Answer"].type == REG_DWORD_BIG_ENDIAN
    assert vendor["Answer"].decoded == hivetree.Int32(42)
    assert vendor["Negative"].decoded == hivetree.Int32(-2)
    assert vendor["Quota"].type == REG_QWORD
    assert vendor["Quota"].decoded == hivetree.Int64(1 << 40)
    assert vendor["Nothing"].decoded == hivetree.NoneValue()
    assert vendor["Custom"].decoded == hivetree.Unrecognized(b"\xde\xad\xbe\xef\x00\x01")
    assert vendor["Custom"].length == len(vendor["Custom"].decoded.value)


def test_hive_default_value_name(system_hive: Path) -> None:
    with hivetree.Hive(system_hive, default_value_name=None) as hive:
        lsa = by_path(hive)["/ROOT/ControlSet001/Control/Lsa"]

    assert lsa.values[0].name == ""


def test_hive_dword_endianness(hive_factory: Callable[..., Path]) -> None:
    path = hive_factory(
        key(
            "ROOT",
            values=(
                ("Little", 0x4, (42).to_bytes(4, "little")),
                ("Big", 0x5, (42).to_bytes(4, "big")),
            ),
        )
    )

    with hivetree.Hive(path) as hive:
        (root,) = hive

    assert [value.decoded for value in root.values] == [hivetree.Int32(42), hivetree.Int32(42)]


def test_hive_multi_sz_heuristic(hive_factory: Callable[..., Path]) -> None:
    path = hive_factory(key("ROOT", values=(("Mixed", REG_MULTI_SZ, wstr("中", "B") + b"\x00\x00"),)))

    with hivetree.Hive(path) as hive:
        (root,) = hive
    assert root.values[0].decoded == hivetree.TextList(("中",))

    with hivetree.Hive(path, exact_multi_sz=True) as hive:
        (root,) = hive
    assert root.values[0].decoded == hivetree.TextList(("中", "B"))


def test_hive_node_failure(hive_factory: Callable[..., Path]) -> None:
    path = hive_factory(
        key(
            "ROOT",
            key("Good"),
            key("Bad", key("Child"), values=(("Gap", REG_MULTI_SZ, wstr("A") + b"\x00\x00" + wstr("B")),)),
        )
    )

    with hivetree.Hive(path) as hive:
        results = [result for _, result in hive.walk()]

        assert len(results) == 4
        errors = [result for result in results if isinstance(result, hivetree.Error)]
        assert len(errors) == 1
        assert isinstance(errors[0], TextConversionError)
        assert errors[0].index == 1
        assert sorted(result.name for result in results if isinstance(result, hivetree.Node)) == [
            "Child",
            "Good",
            "ROOT",
        ]

        nodes = iter(hive)
        assert next(nodes).name == "ROOT"
        with pytest.raises(TextConversionError):
            list(nodes)

        # The aborted walk released the session
        assert len(list(hive.walk())) == 4


def test_hive_duplicate_subkey_reference(system_hive: Path) -> None:
    class DuplicatingEngine(RegfEngine):
        def node_children(self, session, node):
            return super().node_children(session, node) * 2

    with hivetree.Hive(system_hive, engine=DuplicatingEngine()) as hive:
        paths = [node.path for node in hive]

    assert len(paths) == len(set(paths)) == 8


def test_path_of_loop(system_hive: Path) -> None:
    class LoopingEngine(RegfEngine):
        def node_parent(self, session, node):
            return node

    engine = LoopingEngine()
    with engine.open(system_hive) as session:
        with pytest.raises(EngineError) as exc_info:
            hivetree.path_of(engine, session, engine.root(session))

    assert exc_info.value.function == "node_parent"


def test_hive_exclusive_walk(system_hive: Path) -> None:
    with hivetree.Hive(system_hive) as hive:
        walk = hive.walk()
        next(walk)

        with pytest.raises(SessionError):
            next(hive.walk())

        walk.close()
        assert next(hive.walk())[1].name == "ROOT"


def test_hive_closed(system_hive: Path) -> None:
    hive = hivetree.Hive(system_hive)
    root = hive.root()
    hive.close()
    hive.close()

    with pytest.raises(SessionError):
        hive.node(root)

    with pytest.raises(SessionError):
        list(hive)


def test_hive_not_found(tmp_path: Path) -> None:
    with pytest.raises(HiveNotFoundError):
        hivetree.Hive(tmp_path / "NTUSER.DAT")


def test_hive_zero_timestamp(hive_factory: Callable[..., Path]) -> None:
    with hivetree.Hive(hive_factory(key("ROOT"), timestamp=0)) as hive:
        assert hive.last_modified == datetime(1601, 1, 1, tzinfo=timezone.utc)


def test_node_str(system_hive: Path) -> None:
    with hivetree.Hive(system_hive) as hive:
        lsa = by_path(hive)["/ROOT/ControlSet001/Control/Lsa"]
    path = hivetree.Text("%SystemRoot%\\system32")

    assert str(lsa).splitlines() == [
        'Node: "Lsa"',
        '\tModified: "2020-01-01T00:00:00+00:00"',
        '\tPath: "/ROOT/ControlSet001/Control/Lsa"',
        "\tValues:",
        "\t\t(\"(Default)\", REG_SZ: Text(value='lsass'))",
        '\t\t("LimitBlankPasswordUse", REG_DWORD: Int32(value=1))',
        f'\t\t("Path", REG_EXPAND_SZ: {path!r})',
    ]


def test_node_by_value(system_hive: Path) -> None:
    with hivetree.Hive(system_hive) as hive:
        lsa = by_path(hive)["/ROOT/ControlSet001/Control/Lsa"]

    rows = lsa.by_value()
    assert [row.value.name for row in rows] == ["(Default)", "LimitBlankPasswordUse", "Path"]
    assert all(row.path == lsa.path and row.last_modified == lsa.last_modified for row in rows)


@pytest.mark.parametrize(
    ("data", "expected"),
    [
        (b"", 0),
        (wstr("A"), 1),
        (wstr("Alpha"), 1),
        (wstr("Alpha", "Beta") + b"\x00\x00", 2),
        (wstr("one", "two", "three") + b"\x00\x00", 3),
        # Characters above U+00FF break the terminator scan
        (wstr("中", "B") + b"\x00\x00", 1),
    ],
)
def test_count_multi_sz(data: bytes, expected: int) -> None:
    assert hivetree.count_multi_sz(data) == expected


def test_decode_multi_sz() -> None:
    records = ["Alpha".encode("utf-16-le"), "Beta".encode("utf-16-le")]
    assert hivetree.decode_multi_sz(records, 2) == ("Alpha", "Beta")
    assert hivetree.decode_multi_sz(records, 1) == ("Alpha",)

    with pytest.raises(TextConversionError) as exc_info:
        hivetree.decode_multi_sz(records, 3)
    assert exc_info.value.index == 2

    with pytest.raises(TextConversionError) as exc_info:
        hivetree.decode_multi_sz([records[0], b"\x00\xd8"], 2)
    assert exc_info.value.index == 1


def test_decode_value_without_engine() -> None:
    # These types decode from the raw data alone
    assert hivetree.decode_value(b"", 0x0, None, None, None) == hivetree.NoneValue()
    assert hivetree.decode_value(b"\x01", REG_BINARY, None, None, None) == hivetree.Binary(b"\x01")
    assert hivetree.decode_value(b"\x01\x02", 0xFF, None, None, None) == hivetree.Unrecognized(b"\x01\x02")


@pytest.mark.parametrize(
    ("ticks", "expected"),
    [
        (116444736000000000, 0),
        (116444736009999999, 0),
        (FILETIME_2020, UNIX_2020),
        (0, -11644473600),
        (-1, -11644473600),
        (-10_000_001, -11644473601),
    ],
)
def test_filetime_to_unix(ticks: int, expected: int) -> None:
    assert hivetree.filetime_to_unix(ticks) == expected


def test_filetime_to_datetime() -> None:
    assert hivetree.filetime_to_datetime(116444736000000000) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert hivetree.filetime_to_datetime(FILETIME_2020) == datetime(2020, 1, 1, tzinfo=timezone.utc)

    with pytest.raises(IntegerConversionError):
        hivetree.filetime_to_datetime(0x7FFFFFFFFFFFFFFF)
