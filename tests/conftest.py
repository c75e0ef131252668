from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from tests._utils import FILETIME_2020, SYSTEM_TREE, build_hive

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path


@pytest.fixture
def system_hive(tmp_path: Path) -> Path:
    path = tmp_path / "SYSTEM"
    path.write_bytes(build_hive(SYSTEM_TREE))
    return path


@pytest.fixture
def hive_factory(tmp_path: Path) -> Callable[..., Path]:
    def factory(root: dict[str, Any], timestamp: int = FILETIME_2020, name: str = "HIVE") -> Path:
        path = tmp_path / name
        path.write_bytes(build_hive(root, timestamp))
        return path

    return factory
