"""
Parse Events
============
Discrete events produced by the tokenizer and consumed by the dispatcher.
Header events describe the layout; body events carry decoded values.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from cloudply.model.datatypes import PlyType


# --- Header events ---

@dataclass(frozen=True)
class FormatDeclaration:
    format: str
    version: str
    line: Optional[int] = None


@dataclass(frozen=True)
class ElementDefinition:
    name: str
    count: int
    line: Optional[int] = None


@dataclass(frozen=True)
class ScalarPropertyDefinition:
    element: str
    name: str
    datatype: PlyType
    line: Optional[int] = None


@dataclass(frozen=True)
class ListPropertyDefinition:
    element: str
    name: str
    size_type: PlyType
    value_type: PlyType
    line: Optional[int] = None


@dataclass(frozen=True)
class Comment:
    text: str
    line: Optional[int] = None


@dataclass(frozen=True)
class ObjInfo:
    text: str
    line: Optional[int] = None


@dataclass(frozen=True)
class EndHeader:
    line: Optional[int] = None


# --- Body events ---

@dataclass(frozen=True)
class RowBegin:
    element: str
    row: int
    line: Optional[int] = None


@dataclass(frozen=True)
class ScalarValue:
    element: str
    index: int
    name: str
    value: Union[int, float]
    line: Optional[int] = None


@dataclass(frozen=True)
class ListBegin:
    element: str
    index: int
    name: str
    size: int
    line: Optional[int] = None


@dataclass(frozen=True)
class ListValue:
    element: str
    index: int
    name: str
    value: Union[int, float]
    line: Optional[int] = None


@dataclass(frozen=True)
class ListEnd:
    element: str
    index: int
    name: str
    line: Optional[int] = None


@dataclass(frozen=True)
class RowEnd:
    element: str
    row: int
    line: Optional[int] = None


@dataclass(frozen=True)
class EndOfInput:
    line: Optional[int] = None
    offset: Optional[int] = None


# --- Diagnostics ---

@dataclass(frozen=True)
class Diagnostic:
    """Advisory message from the tokenizer; never changes control flow."""
    level: int
    message: str
    line: Optional[int] = None

    @classmethod
    def info(cls, message: str, line: Optional[int] = None) -> Diagnostic:
        return cls(logging.INFO, message, line)

    @classmethod
    def warning(cls, message: str, line: Optional[int] = None) -> Diagnostic:
        return cls(logging.WARNING, message, line)


HeaderEvent = Union[
    FormatDeclaration, ElementDefinition, ScalarPropertyDefinition,
    ListPropertyDefinition, Comment, ObjInfo, EndHeader,
]
BodyEvent = Union[RowBegin, ScalarValue, ListBegin, ListValue, ListEnd, RowEnd, EndOfInput]
Event = Union[HeaderEvent, BodyEvent, Diagnostic]
