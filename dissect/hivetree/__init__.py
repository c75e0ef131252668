from dissect.hivetree.engine import HiveSession, NodeHandle, RegfEngine, RegistryEngine, ValueHandle
from dissect.hivetree.exceptions import (
    EngineError,
    Error,
    HiveNotFoundError,
    IntegerConversionError,
    SessionError,
    TextConversionError,
)
from dissect.hivetree.hivetree import (
    Binary,
    DecodedValue,
    Hive,
    Int32,
    Int64,
    Node,
    NodeValue,
    NoneValue,
    Text,
    TextList,
    Unrecognized,
    Value,
    assemble,
    decode_value,
    filetime_to_datetime,
    filetime_to_unix,
    path_of,
)

__all__ = [
    "Binary",
    "DecodedValue",
    "EngineError",
    "Error",
    "Hive",
    "HiveNotFoundError",
    "HiveSession",
    "Int32",
    "Int64",
    "IntegerConversionError",
    "Node",
    "NodeHandle",
    "NodeValue",
    "NoneValue",
    "RegfEngine",
    "RegistryEngine",
    "SessionError",
    "Text",
    "TextConversionError",
    "TextList",
    "Unrecognized",
    "Value",
    "ValueHandle",
    "assemble",
    "decode_value",
    "filetime_to_datetime",
    "filetime_to_unix",
    "path_of",
]
