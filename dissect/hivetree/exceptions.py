from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


class Error(Exception):
    pass


class HiveNotFoundError(Error, FileNotFoundError):
    def __init__(self, path: str | Path):
        super().__init__(f"The hive file {str(path)!r} does not exist")
        self.path = path


class EngineError(Error):
    def __init__(self, function: str, reason: str | None = None):
        message = f"Engine function {function} encountered an error"
        if reason:
            message = f"{message}: {reason}"

        super().__init__(message)
        self.function = function
        self.reason = reason


class TextConversionError(Error):
    def __init__(self, message: str, index: int | None = None):
        super().__init__(message)
        self.index = index


class IntegerConversionError(Error):
    pass


class SessionError(Error):
    pass
