#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2024 The gg Authors
"""
gg: a JSON logs parser for long-running server processes

Select, project and group structured log lines for effective debugging
"""

# Standard library imports for functionality
import argparse
import dataclasses
import datetime as dt
import decimal
import gzip
import json
import os
import platform
import re
import signal
import sys
import traceback

from collections.abc import Mapping, MutableMapping
from contextlib import contextmanager
from re import Pattern

# Standard library typing imports
from typing import (
    Any,
    BinaryIO,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    NamedTuple,
    Optional,
    TextIO,
    Tuple,
    Union,
)

# Third party imports
import yaml

__version__ = "0.4.0"

SOURCE = "https://github.com/giantswarm/gg"

# Names of keys our program cares about
TIME_KEY = "time"
LEVEL_KEY = "level"
STACK_KEY = "stack"
ANNOTATION_KEY = "annotation"
ERROR_LEVELS = ("error", "warning")

# Line kinds as detected by classify()
JSON = "json"
TEXT = "text"
EMPTY = "empty"

OUTPUT_FORMATS = ("json", "text")

INDENT = "    "
TEXT_SEPARATOR = "    "
ANNOTATION_SEPARATOR = ", "
CHUNK_SIZE = 64 * 1024
# Deepest nesting of objects and arrays accepted by the decoder
MAX_DEPTH = 256

# Fixed format of the timestamps we reformat, in Go reference-time notation:
# 2006-01-02T15:04:05.999999-07:00
TIME_INPUT_FORMATS = ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z")
# strptime's %z also takes "Z" and "+0000", the input format does not
RE_TIME_INPUT_OFFSET = re.compile(r"[+-]\d{2}:\d{2}$")

# Regular expressions
RE_JSON_TOKEN = re.compile(
    r"""\s*(?:
        (?P<delim>[{}\[\]:,])
        |(?P<string>"(?:[^"\\\x00-\x1f]|\\.)*")
        |(?P<number>-?(?:0|[1-9]\d*)(?P<frac>\.\d+)?(?P<exp>[eE][-+]?\d+)?)
        |(?P<literal>true|false|null)
    )""",
    re.VERBOSE,
)
RE_LEGACY_FRAME = re.compile(r"(?P<file>[^\s{}\[\]:]+):(?P<line>\d+):?")
RE_LEGACY_ENVELOPE = re.compile(r"\s*\[\{(?P<body>.*)\}\]\s*", re.DOTALL)
RE_LEGACY_SEPARATOR = re.compile(r"\}\s*\{(?=\s*[^\s{}\[\]:]+:\d+)")

# 256-colour ANSI escape sequences
COLOUR_FORMAT = "\x1b[38;5;{code}m{text}\x1b[39;49m"
COLOUR_CODES = {
    "blue": 117,
    "green": 114,
    "red": 161,
}
THEMES = {
    "default": {"key": "blue", "value": "green"},
    "error": {"key": "blue", "value": "red"},
}

EPILOG = """
examples:
  Select all logs where any key matches "obj" and its value matches "qihx8":

    cat basic.json | gg -s obj:qihx8

  Additionally require a key matching "res" with a value matching "dra":

    cat basic.json | gg -s obj:qihx8 -s res:dra

  Only show the key-value pairs whose keys match "tim" or "mes":

    cat basic.json | gg -s obj:qihx8 -s res:dra -f tim,mes

  Insert an empty line whenever the value of the "loop" key changes:

    cat basic.json | gg -s obj:qihx8 -s res:dra -f tim,mes -g loo

  List the resources executed for a given object as plain text:

    cat basic.json | gg -s obj:qihx8 -s con:mac -f res -o text -g loo | uniq

Defaults for --colour, --group and --time are read from ~/.config/gg/config.yaml
"""


class GGError(Exception):
    """Base class of all errors that abort a run."""


class CompileError(GGError):
    pass


class DecodeError(GGError):
    pass


class TimeParseError(GGError):
    pass


class StreamError(GGError):
    pass


class ConfigError(GGError):
    pass


def print_err(*args, **kwargs):
    print(*args, file=sys.stderr, **kwargs)


class _Link:
    __slots__ = ("prev", "next", "key")


class Record(MutableMapping):
    """
    Mapping from string keys to JSON values that remembers insertion order.

    Keys are kept in a doubly linked list, indexed by key, next to a plain
    dict holding the values. Get, set and delete are O(1). Setting an existing
    key updates its value in place without moving it; deleting unlinks it.
    Unlike a dict, the current key may be deleted while iterating.

    Values are str, int, decimal.Decimal, bool, None, nested Records or lists
    of those values.

    Example:
        >>> r = Record.decode('{"time": "10:00:00", "message": "x"}')
        >>> r["level"] = "info"
        >>> list(r)
        ['time', 'message', 'level']
        >>> r.encode()
        '{"time":"10:00:00","message":"x","level":"info"}'
    """

    def __init__(self, pairs: Union[Mapping, Iterable[Tuple[str, Any]], None] = None):
        self._root = root = _Link()
        root.prev = root.next = root
        root.key = None
        self._values: Dict[str, Any] = {}
        self._links: Dict[str, _Link] = {}
        if pairs is not None:
            self.update(pairs)

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, Any]]) -> "Record":
        return cls(pairs)

    @classmethod
    def decode(cls, data: Union[str, bytes]) -> "Record":
        """
        Decode one JSON object into a Record.

        Raises:
            DecodeError: If the data is not exactly one well-formed JSON object
        """
        stream = _TokenStream(data)
        kind, _ = stream.next("'{'")
        if kind != "{":
            raise DecodeError("data must be JSON object")
        record = _parse_object(stream, 1)
        stream.expect_end()
        return record

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __setitem__(self, key: str, value: Any) -> None:
        if key not in self._values:
            root = self._root
            last = root.prev
            link = _Link()
            link.prev, link.next, link.key = last, root, key
            last.next = link
            root.prev = link
            self._links[key] = link
        self._values[key] = value

    def __delitem__(self, key: str) -> None:
        del self._values[key]
        link = self._links.pop(key)
        link.prev.next = link.next
        link.next.prev = link.prev

    def __iter__(self) -> Iterator[str]:
        root = self._root
        link = root.next
        while link is not root:
            # Fetch the successor first so the current key may be deleted
            following = link.next
            yield link.key
            link = following

    def __reversed__(self) -> Iterator[str]:
        root = self._root
        link = root.prev
        while link is not root:
            preceding = link.prev
            yield link.key
            link = preceding

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Record):
            return list(self.items()) == list(other.items())
        if isinstance(other, Mapping):
            return dict(self.items()) == dict(other.items())
        return NotImplemented

    def __repr__(self) -> str:
        return f"{type(self).__name__}({list(self.items())!r})"

    def reversed_items(self) -> Iterator[Tuple[str, Any]]:
        for key in reversed(self):
            yield key, self._values[key]

    def copy(self) -> "Record":
        return type(self)(self.items())

    def encode(self, palette: Optional["Palette"] = None) -> str:
        """
        Serialize to compact JSON in insertion order.

        When a palette is given, keys and scalar values are wrapped with its
        colour functions, whatever their type. The result is then no longer
        valid JSON.
        """
        return encode_value(self, palette)


class _TokenStream:
    """Lazy stream of JSON tokens as (kind, value) tuples."""

    def __init__(self, data: Union[str, bytes]):
        if isinstance(data, (bytes, bytearray)):
            try:
                data = bytes(data).decode("utf-8")
            except UnicodeDecodeError as exc:
                raise DecodeError(f"invalid UTF-8 in JSON input: {exc}") from exc
        self._tokens = _tokenize(data)

    def next(self, expected: str) -> Tuple[str, Any]:
        try:
            return next(self._tokens)
        except StopIteration:
            raise DecodeError(f"unexpected end of JSON input, expected {expected}")

    def expect_end(self) -> None:
        token = next(self._tokens, None)
        if token is not None:
            raise DecodeError(f"unexpected {_describe(token)} after top-level value")


def _tokenize(text: str) -> Iterator[Tuple[str, Any]]:
    pos = 0
    while True:
        m = RE_JSON_TOKEN.match(text, pos)
        if m is None:
            rest = text[pos:].lstrip()
            if rest:
                offset = len(text) - len(rest)
                raise DecodeError(
                    f"invalid character {rest[0]!r} at offset {offset} of JSON input"
                )
            return
        pos = m.end()
        if m.group("delim") is not None:
            yield m.group("delim"), None
        elif m.group("string") is not None:
            try:
                yield "string", json.loads(m.group("string"))
            except json.JSONDecodeError as exc:
                raise DecodeError(f"invalid string literal: {exc}") from exc
        elif m.group("number") is not None:
            literal = m.group("number")
            if m.group("frac") or m.group("exp"):
                yield "number", decimal.Decimal(literal)
            else:
                yield "number", int(literal)
        else:
            yield "literal", {"true": True, "false": False, "null": None}[
                m.group("literal")
            ]


def _describe(token: Tuple[str, Any]) -> str:
    kind, value = token
    if kind in ("string", "number", "literal"):
        return f"{kind} {value!r}"
    return repr(kind)


def _parse_value(stream: _TokenStream, token: Tuple[str, Any], depth: int) -> Any:
    # depth counts the objects and arrays enclosing this value
    kind, value = token
    if kind in ("{", "[") and depth >= MAX_DEPTH:
        raise DecodeError(f"maximum nesting depth of {MAX_DEPTH} exceeded")
    if kind == "{":
        return _parse_object(stream, depth + 1)
    if kind == "[":
        return _parse_array(stream, depth + 1)
    if kind in ("string", "number", "literal"):
        return value
    raise DecodeError(f"unexpected {_describe(token)}, expected value")


def _parse_object(stream: _TokenStream, depth: int) -> Record:
    record = Record()
    token = stream.next("object key or '}'")
    if token[0] == "}":
        return record
    while True:
        kind, key = token
        if kind != "string":
            raise DecodeError(f"unexpected {_describe(token)}, object key must be string")
        if stream.next("':'")[0] != ":":
            raise DecodeError(f"missing ':' after object key {key!r}")
        record[key] = _parse_value(stream, stream.next("value"), depth)
        token = stream.next("',' or '}'")
        if token[0] == "}":
            return record
        if token[0] != ",":
            raise DecodeError(f"unexpected {_describe(token)} after object value")
        token = stream.next("object key")


def _parse_array(stream: _TokenStream, depth: int) -> List[Any]:
    values: List[Any] = []
    token = stream.next("value or ']'")
    if token[0] == "]":
        return values
    while True:
        values.append(_parse_value(stream, token, depth))
        token = stream.next("',' or ']'")
        if token[0] == "]":
            return values
        if token[0] != ",":
            raise DecodeError(f"unexpected {_describe(token)} after array element")
        token = stream.next("value")


def decode_value(data: Union[str, bytes]) -> Any:
    """Decode any JSON value. Objects become Records, numbers stay exact."""
    stream = _TokenStream(data)
    value = _parse_value(stream, stream.next("value"), 0)
    stream.expect_end()
    return value


def encode_scalar(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, decimal.Decimal)):
        return str(value)
    if isinstance(value, float):
        return json.dumps(value)
    return json.dumps(str(value), ensure_ascii=False)


def encode_value(value: Any, palette: Optional["Palette"] = None) -> str:
    if isinstance(value, Mapping):
        elems = []
        for key, val in value.items():
            key_text = encode_scalar(key)
            if palette:
                key_text = palette.key(key_text)
            elems.append(f"{key_text}:{encode_value(val, palette)}")
        return "{" + ",".join(elems) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(encode_value(val, palette) for val in value) + "]"
    text = encode_scalar(value)
    return palette.value(text) if palette else text


def classify(line: str) -> str:
    """
    Tell what kind of log line we are looking at.

    Returns:
        str: EMPTY for a zero-length line, JSON if the first non-whitespace
             character is an opening brace, TEXT otherwise
    """
    if not line:
        return EMPTY
    if line.lstrip()[:1] == "{":
        return JSON
    return TEXT


def split_lines(
    stream: BinaryIO, chunk_size: int = CHUNK_SIZE, encoding: str = "utf-8"
) -> Iterator[str]:
    """
    Generate logical lines from a binary stream, however long they are.

    Reads chunks as soon as they are available, so it can be used on
    never-ending pipes. Line terminators (\\n or \\r\\n) are removed. A final
    line without terminator is yielded as well. Undecodable bytes are
    replaced rather than rejected, since text lines are passed through.

    Args:
        stream: Binary file object, e.g. sys.stdin.buffer
        chunk_size: Maximum number of bytes to read at once
        encoding: Text encoding of the input

    Yields:
        str: One line at a time, without line terminator

    Raises:
        StreamError: If reading from the stream fails
    """
    read = getattr(stream, "read1", stream.read)
    buffer = bytearray()
    scanned = 0
    while True:
        try:
            chunk = read(chunk_size)
        except OSError as exc:
            raise StreamError(f"reading input failed: {exc}") from exc
        if not chunk:
            break
        buffer += chunk
        start = 0
        while True:
            end = buffer.find(b"\n", scanned)
            if end < 0:
                break
            yield _decode_line(buffer[start:end], encoding)
            start = scanned = end + 1
        del buffer[:start]
        scanned = len(buffer)
    if buffer:
        yield _decode_line(buffer, encoding)


def _decode_line(raw: bytearray, encoding: str) -> str:
    if raw.endswith(b"\r"):
        raw = raw[:-1]
    return bytes(raw).decode(encoding, errors="replace")


@contextmanager
def file_opener(filename: Optional[str]) -> Iterator[BinaryIO]:
    """
    Open an input file for binary reading. "-" or None means stdin.

    Gzipped files (.gz) are decompressed on the fly.

    Raises:
        StreamError: If the file cannot be opened
    """
    if filename in ["-", None]:
        yield sys.stdin.buffer
        return
    try:
        if filename.lower().endswith(".gz"):
            f = gzip.open(filename, "rb")
        else:
            f = open(filename, "rb")
    except OSError as exc:
        raise StreamError(f"cannot open {filename!r}: {exc.strerror}") from exc
    with f:
        yield f


class Expression(NamedTuple):
    """Parsed key:value select expression"""

    key: Pattern
    value: Pattern

    @property
    def spec(self) -> str:
        return f"{self.key.pattern}:{self.value.pattern}"


def csv_type(text):
    return [] if text is None else text.split(",")


def flatten_sublists(li):
    return [item for sublist in li for item in sublist]


def expand_keys(specs: Iterable[str]) -> List[str]:
    """
    Turn bare key expressions into key:value expressions matching any value.

    Field and group expressions only name keys, but act as implicit selects.

    Example:
        >>> expand_keys(["loo", "res:dra"])
        ['loo:.*', 'res:dra']
    """
    return [spec if ":" in spec else spec + ":.*" for spec in specs]


def compile_regex(text: str, context: str) -> Pattern:
    try:
        return re.compile(text)
    except re.error as exc:
        raise CompileError(f"invalid regular expression {text!r} in {context!r}: {exc}")


def compile_patterns(specs: Iterable[str]) -> List[Pattern]:
    return [compile_regex(spec, spec) for spec in specs]


def compile_expressions(specs: Iterable[str]) -> List[Expression]:
    """
    Compile key:value select specifications into regex pairs.

    Raises:
        CompileError: If a spec does not consist of exactly two non-empty
                      segments separated by a colon, or a segment is not a
                      valid regular expression
    """
    expressions = []
    for spec in specs:
        segments = spec.split(":")
        if len(segments) != 2 or not all(segments):
            raise CompileError(f"invalid expression {spec!r}: must have format key:val")
        key, value = segments
        expressions.append(Expression(compile_regex(key, spec), compile_regex(value, spec)))
    return expressions


def pair_matches(expression: Expression, record: Mapping) -> bool:
    for key, value in record.items():
        if not expression.key.search(key):
            continue
        # Nested objects, arrays, numbers and the like cannot be matched
        # against the value expression. A matching key is enough then.
        if not isinstance(value, str):
            return True
        if expression.value.search(value):
            return True
    return False


def match(record: Mapping, expressions: List[Expression]) -> bool:
    """
    Decide whether a record satisfies all select expressions.

    Every expression needs at least one entry whose key and value match.
    Expressions sharing the same key pattern, e.g. "res:acc" and "res:asg",
    select alternative values of one key. The threshold is lowered by the
    number of such duplicates, and each shared key pattern counts once, so
    matching one of the alternatives is sufficient.

    Args:
        record: Record or flat mapping of strings
        expressions: Compiled expressions, see compile_expressions()

    Returns:
        bool: True if the record matches. Always True without expressions.

    Example:
        >>> exprs = compile_expressions(["res:acc", "res:asg"])
        >>> match({"res": "accountid"}, exprs)
        True
    """
    key_patterns = {e.key.pattern for e in expressions}
    duplicates = len(expressions) - len(key_patterns)
    matched = {e.key.pattern for e in expressions if pair_matches(e, record)}
    return len(matched) >= len(expressions) - duplicates


def value_of(record: Mapping, key_pattern: Pattern) -> str:
    for key, value in record.items():
        if isinstance(value, str) and key_pattern.search(key):
            return value
    return ""


def field_selects(fields: List[str]) -> List[str]:
    """
    Derive the implicit select expressions of field expressions.

    Every field has to be present for a line to be shown. A field that only
    asks for the annotation is not required if another field asks for the
    stack, because the annotation is synthesized from the stack later on.
    """
    stack_fields = [f for f in fields if re.search(f, STACK_KEY)]
    required = [
        f
        for f in fields
        if not (re.search(f, ANNOTATION_KEY) and any(s != f for s in stack_fields))
    ]
    return expand_keys(required)


def _utc_offset(
    moment: dt.datetime, sep: str = "", zulu: bool = False, width: int = 2
) -> str:
    offset = moment.utcoffset() or dt.timedelta(0)
    if zulu and not offset:
        return "Z"
    seconds = int(offset.total_seconds())
    sign = "-" if seconds < 0 else "+"
    hours, rest = divmod(abs(seconds), 3600)
    minutes, seconds = divmod(rest, 60)
    return sign + sep.join(f"{n:02d}" for n in (hours, minutes, seconds)[:width])


def _fraction(moment: dt.datetime, token: str) -> str:
    digits = f"{moment.microsecond:06d}000"[: len(token) - 1]
    if token[1] == "9":
        digits = digits.rstrip("0")
        return token[0] + digits if digits else ""
    return token[0] + digits


# Elements of Go reference-time layouts, see https://pkg.go.dev/time#Layout
GO_LAYOUT_ELEMENTS: Dict[str, Callable[[dt.datetime], str]] = {
    "January": lambda t: t.strftime("%B"),
    "Jan": lambda t: t.strftime("%b"),
    "Monday": lambda t: t.strftime("%A"),
    "Mon": lambda t: t.strftime("%a"),
    "MST": lambda t: t.tzname() or _utc_offset(t),
    "2006": lambda t: f"{t.year:04d}",
    "06": lambda t: f"{t.year % 100:02d}",
    "01": lambda t: f"{t.month:02d}",
    "1": lambda t: str(t.month),
    "002": lambda t: f"{t.timetuple().tm_yday:03d}",
    "02": lambda t: f"{t.day:02d}",
    "_2": lambda t: f"{t.day:>2d}",
    "2": lambda t: str(t.day),
    "15": lambda t: f"{t.hour:02d}",
    "03": lambda t: f"{(t.hour % 12) or 12:02d}",
    "3": lambda t: str((t.hour % 12) or 12),
    "04": lambda t: f"{t.minute:02d}",
    "4": lambda t: str(t.minute),
    "05": lambda t: f"{t.second:02d}",
    "5": lambda t: str(t.second),
    "PM": lambda t: "PM" if t.hour >= 12 else "AM",
    "pm": lambda t: "pm" if t.hour >= 12 else "am",
    "-07:00:00": lambda t: _utc_offset(t, ":", width=3),
    "-070000": lambda t: _utc_offset(t, width=3),
    "-07:00": lambda t: _utc_offset(t, ":"),
    "-0700": lambda t: _utc_offset(t),
    "-07": lambda t: _utc_offset(t, width=1),
    "Z07:00:00": lambda t: _utc_offset(t, ":", zulu=True, width=3),
    "Z070000": lambda t: _utc_offset(t, zulu=True, width=3),
    "Z07:00": lambda t: _utc_offset(t, ":", zulu=True),
    "Z0700": lambda t: _utc_offset(t, zulu=True),
    "Z07": lambda t: _utc_offset(t, zulu=True, width=1),
}
RE_GO_LAYOUT = re.compile(
    r"(?P<fraction>[.,](?:0+|9+)(?!\d))|(?P<element>"
    + "|".join(
        re.escape(e) for e in sorted(GO_LAYOUT_ELEMENTS, key=len, reverse=True)
    )
    + ")"
)


def format_go_layout(moment: dt.datetime, layout: str) -> str:
    """
    Format a datetime according to a Go reference-time layout.

    The layout is written as the reference time Mon Jan 2 15:04:05 MST 2006
    would be displayed. Everything that is not a layout element is copied.

    Example:
        >>> format_go_layout(dt.datetime(2021, 1, 1, 10, 0, 0), "15:04:05")
        '10:00:00'
    """

    def replace(m):
        if m.group("fraction"):
            return _fraction(moment, m.group("fraction"))
        return GO_LAYOUT_ELEMENTS[m.group("element")](moment)

    return RE_GO_LAYOUT.sub(replace, layout)


def parse_time(value: Any) -> dt.datetime:
    if isinstance(value, str) and RE_TIME_INPUT_OFFSET.search(value):
        for fmt in TIME_INPUT_FORMATS:
            try:
                return dt.datetime.strptime(value, fmt)
            except ValueError:
                continue
    raise TimeParseError(
        f"cannot parse time {value!r}, expected format 2006-01-02T15:04:05.999999-07:00"
    )


def reformat_time(value: Any, layout: str) -> str:
    """
    Re-render a timestamp of the fixed input format in the given layout.

    The UTC offset of the parsed timestamp is kept; no conversion to local
    time takes place.

    Raises:
        TimeParseError: If the value is not a timestamp of the input format
    """
    return format_go_layout(parse_time(value), layout)


def project(record: Record, patterns: List[Pattern], time_layout: str = "") -> Record:
    """
    Build a new record with only the entries whose keys match any pattern.

    The source record's order is kept, not the order of the patterns. Without
    patterns, all entries are kept. The value of the "time" key is reformatted
    if a time layout is given.

    Args:
        record: Record to project, it is not modified
        patterns: Compiled field expressions
        time_layout: Go reference-time layout, empty to keep timestamps as is

    Returns:
        Record: The projected record

    Raises:
        TimeParseError: If the time value cannot be parsed
    """
    projected = Record()
    for key, value in record.items():
        if patterns and not any(p.search(key) for p in patterns):
            continue
        if key == TIME_KEY and time_layout:
            value = reformat_time(value, time_layout)
        projected[key] = value
    return projected


@dataclasses.dataclass
class PipelineState:
    # Value of the group key of the last shown record, None before the first
    current_group_value: Optional[str] = None
    # True if the output ends with a blank line, or nothing was written yet
    pending_blank_line: bool = True


def group_separator(record: Mapping, group_pattern: Pattern, state: PipelineState) -> bool:
    """
    Tell whether a group separator belongs in front of this record.

    Returns True whenever the value of the group key differs from the one of
    the previous record, never for the first record. Updates the state.
    """
    value = value_of(record, group_pattern)
    if state.current_group_value is None:
        state.current_group_value = value
        return False
    if value == state.current_group_value:
        return False
    state.current_group_value = value
    return True


def is_error_or_warning(record: Mapping) -> bool:
    return record.get(LEVEL_KEY) in ERROR_LEVELS


def is_frame_list(value: Any) -> bool:
    return isinstance(value, list) and all(
        isinstance(f, Mapping) and "file" in f and "line" in f for f in value
    )


def is_stack_list(value: Any) -> bool:
    # Entries without a line carry annotation text in "file"
    return isinstance(value, list) and all(
        isinstance(f, Mapping) and "file" in f for f in value
    )


def stack_entries(raw: Any) -> Optional[List[Any]]:
    """
    Get the list of {"file", "line"} entries of a stack value.

    Lists are taken as they are, strings holding a JSON list are decoded.
    Strings that are no JSON at all are rewritten from the historical
    format, see reconstruct_stack(). Returns None for anything else.
    """
    if is_stack_list(raw):
        return raw
    if not isinstance(raw, str):
        return None
    try:
        value = decode_value(raw)
    except DecodeError:
        return _legacy_stack_entries(raw)
    return value if is_stack_list(value) else None


def reconstruct_stack(raw: Any) -> Tuple[str, List[Any]]:
    """
    Recover the frames of an error stack and an annotation message.

    Stacks are JSON arrays of {"file", "line"} objects, or strings holding
    such an array. Entries without a line are annotation text. Strings that
    are not JSON are treated as the historical stack format, e.g.

        [{/src/create.go:64: } {/src/create.go:80: node not drained}]
        foo.go:12: bar.go:34: some annotation

    whose file:line: pairs become frames, and whose remaining text fragments
    become annotation text.

    Returns:
        Tuple[str, List[Any]]: Annotation (may be empty), joined by ", ",
                               and frames
    """
    frames = []
    messages = []
    for entry in stack_entries(raw) or []:
        if "line" in entry:
            frames.append(entry)
        elif isinstance(entry["file"], str):
            messages.append(entry["file"])
        else:
            messages.append(encode_value(entry["file"]))
    return ANNOTATION_SEPARATOR.join(messages), frames


def _legacy_stack_entries(raw: str) -> List[Any]:
    # Rewrite the historical format into a JSON array. Every file:line: pair
    # becomes an entry with line, every other fragment one without. Braces
    # and brackets are structure only around the pairs of microerror stacks.
    envelope = RE_LEGACY_ENVELOPE.fullmatch(raw)
    chunks = RE_LEGACY_SEPARATOR.split(envelope.group("body")) if envelope else [raw]
    elems = []
    for chunk in chunks:
        pos = 0
        for m in RE_LEGACY_FRAME.finditer(chunk):
            fragment = chunk[pos : m.start()].strip()
            if fragment:
                elems.append('{"file":%s}' % json.dumps(fragment, ensure_ascii=False))
            elems.append(
                '{"file":%s,"line":%s}' % (json.dumps(m.group("file")), int(m.group("line")))
            )
            pos = m.end()
        fragment = chunk[pos:].strip()
        if fragment:
            elems.append('{"file":%s}' % json.dumps(fragment, ensure_ascii=False))
    return decode_value("[" + ",".join(elems) + "]")


def annotation_visible(patterns: List[Pattern]) -> bool:
    return not patterns or any(p.search(ANNOTATION_KEY) for p in patterns)


def adapt_error_stack(record: Record, patterns: List[Pattern] = ()) -> Record:
    """
    Replace the stack of an error record by its reconstructed frames.

    A synthesized annotation is inserted right before the stack, unless the
    record already has one or the field expressions do not ask for it. A
    stack that held nothing but annotation text is removed. Records without
    a recognizable stack are returned unchanged.
    """
    if stack_entries(record.get(STACK_KEY)) is None:
        return record
    annotation, frames = reconstruct_stack(record[STACK_KEY])
    show_annotation = (
        annotation and ANNOTATION_KEY not in record and annotation_visible(patterns)
    )
    adapted = Record()
    for key, value in record.items():
        if key == STACK_KEY:
            if show_annotation:
                adapted[ANNOTATION_KEY] = annotation
            if annotation and not frames:
                continue
            value = frames
        adapted[key] = value
    return adapted


class Palette(NamedTuple):
    key: Callable[[str], str]
    value: Callable[[str], str]


def identity(text: str) -> str:
    return text


NO_COLOUR = Palette(identity, identity)


def colourizer(colour: str) -> Callable[[str], str]:
    code = COLOUR_CODES[colour]
    return lambda text: COLOUR_FORMAT.format(code=code, text=text)


def get_palette(colour: bool, is_error: bool = False) -> Palette:
    if not colour:
        return NO_COLOUR
    theme = THEMES["error" if is_error else "default"]
    return Palette(colourizer(theme["key"]), colourizer(theme["value"]))


def render(
    record: Record, output: str = "json", colour: bool = False, is_error: bool = False
) -> str:
    """
    Turn a processed record into output text.

    Args:
        record: Projected and adapted record
        output: "json" for indented, key-annotated output or "text" for the
                values only, on one line
        colour: Whether to wrap keys and values in ANSI colours
        is_error: Selects the error palette for values

    Returns:
        str: Rendered text without trailing newline
    """
    palette = get_palette(colour, is_error)
    if output == "text":
        return render_text(record, palette)
    return render_json(record, palette)


def render_text(record: Record, palette: Palette = NO_COLOUR) -> str:
    elems = []
    for key, value in record.items():
        if isinstance(value, str):
            elems.append(palette.value(value))
        else:
            elems.append(encode_value(value, Palette(identity, palette.value)))
    return TEXT_SEPARATOR.join(elems)


def render_json(record: Mapping, palette: Palette = NO_COLOUR, level: int = 0) -> str:
    if not record:
        return "{}"
    pad = INDENT * (level + 1)
    entries = []
    for key, value in record.items():
        if key == STACK_KEY and value and is_frame_list(value):
            text = _render_frames(value, palette, level + 1)
        else:
            text = _render_value(value, palette, level + 1)
        entries.append(f"{pad}{palette.key(encode_scalar(key))}: {text}")
    return "{\n" + ",\n".join(entries) + "\n" + INDENT * level + "}"


def _render_value(value: Any, palette: Palette, level: int) -> str:
    if isinstance(value, Mapping):
        return render_json(value, palette, level)
    if isinstance(value, (list, tuple)):
        if not value:
            return "[]"
        pad = INDENT * (level + 1)
        elems = [pad + _render_value(v, palette, level + 1) for v in value]
        return "[\n" + ",\n".join(elems) + "\n" + INDENT * level + "]"
    return palette.value(encode_scalar(value))


def _render_frames(frames: List[Mapping], palette: Palette, level: int) -> str:
    # One frame per line, with the line numbers aligned
    pad = INDENT * (level + 1)
    file_key = palette.key('"file"')
    line_key = palette.key('"line"')
    files = [encode_scalar(frame["file"]) for frame in frames]
    width = max(len(f) for f in files)
    rows = []
    for frame, file in zip(frames, files):
        gap = " " * (width - len(file) + 1)
        line = palette.value(encode_scalar(frame["line"]))
        rows.append(f"{pad}{{{file_key}: {palette.value(file)},{gap}{line_key}: {line}}}")
    return "[\n" + ",\n".join(rows) + "\n" + INDENT * level + "]"


@dataclasses.dataclass
class Config:
    """Final, resolved settings the pipeline works with."""

    selects: List[str] = dataclasses.field(default_factory=list)
    fields: List[str] = dataclasses.field(default_factory=list)
    group: str = ""
    output: str = "json"
    colour: bool = False
    time: str = ""


class Pipeline:
    """
    Single-pass filter turning log lines into rendered output.

    Each line is classified, decoded, selected, projected, grouped, adapted
    and rendered before the next one is looked at. Only the group value and
    the blank-line padding are carried from line to line.

    Raises:
        CompileError: On construction, for invalid expressions
    """

    def __init__(self, config: Config, output_file: TextIO):
        self.config = config
        self.output_file = output_file
        self.selects = compile_expressions(config.selects)
        self.fields = compile_patterns(config.fields)
        self.field_selects = compile_expressions(field_selects(config.fields))
        self.group = compile_regex(config.group, config.group) if config.group else None
        self.group_selects = compile_expressions(expand_keys([config.group] if config.group else []))
        self.state = PipelineState()

    def run(self, lines: Iterable[str]) -> None:
        for lineno, line in enumerate(lines, start=1):
            self.process(line, lineno)

    def process(self, line: str, lineno: int = 0) -> None:
        kind = classify(line)
        if kind == EMPTY:
            self.pad()
        elif kind == TEXT:
            self.pad()
            self.write(line)
            self.pad()
        else:
            try:
                self.process_record(Record.decode(line))
            except (DecodeError, TimeParseError) as exc:
                raise type(exc)(f"line {lineno}: {exc}") from exc

    def process_record(self, record: Record) -> None:
        if not (
            match(record, self.selects)
            and match(record, self.field_selects)
            and match(record, self.group_selects)
        ):
            return
        projected = project(record, self.fields, self.config.time)
        separate = self.group is not None and group_separator(
            record, self.group, self.state
        )
        is_error = is_error_or_warning(record)
        if is_error:
            projected = adapt_error_stack(projected, self.fields)
        text = render(projected, self.config.output, self.config.colour, is_error)
        if separate:
            self.pad()
        self.write(text)

    def pad(self) -> None:
        if not self.state.pending_blank_line:
            print(file=self.output_file, flush=True)
            self.state.pending_blank_line = True

    def write(self, text: str) -> None:
        print(text, file=self.output_file, flush=True)
        self.state.pending_blank_line = False


def config_path() -> str:
    return os.path.join(os.path.expanduser("~"), ".config", "gg", "config.yaml")


CONFIG_TYPES = {"colour": bool, "group": str, "time": str}


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Read flag defaults from the per-user config file.

    Example ~/.config/gg/config.yaml:

        colour: true
        group: loo
        time: "15:04:05"

    Returns:
        Dict[str, Any]: Known settings found in the file, {} if there is none

    Raises:
        ConfigError: If the file is not valid YAML or has values of wrong type
    """
    path = path or config_path()
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    config = {}
    for key, expected in CONFIG_TYPES.items():
        if key not in data:
            continue
        if not isinstance(data[key], expected):
            raise ConfigError(
                f"config file {path}: {key} must be of type {expected.__name__}"
            )
        config[key] = data[key]
    return config


def validate_flags(args: argparse.Namespace) -> None:
    """
    Check expressions given on the command line.

    Raises:
        CompileError: With a message naming the offending flag
    """
    for field in args.fields:
        if field == "":
            raise CompileError("-f/--field must not be empty")
        if len(field) < 3:
            raise CompileError("-f/--field must at least be 3 characters long")
        compile_regex(field, field)

    if args.group:
        if len(args.group) < 3:
            raise CompileError("-g/--group must at least be 3 characters long")
        compile_regex(args.group, args.group)

    for spec in args.selects:
        segments = spec.split(":")
        if len(segments) != 2:
            raise CompileError("-s/--select must have format key:val")
        for segment in segments:
            if len(segment) < 3:
                raise CompileError(
                    "-s/--select key-val must at least be 3 characters long respectively"
                )
            compile_regex(segment, spec)


def version_text() -> str:
    return (
        f"%(prog)s v{__version__}\n"
        f"Python Version: {platform.python_version()}\n"
        f"OS / Arch:      {platform.system().lower()} / {platform.machine()}\n"
        f"Source:         {SOURCE}"
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    defaults = load_config()

    parser = argparse.ArgumentParser(
        prog="gg",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )
    parser.add_argument(
        "files",
        metavar="FILE",
        nargs="*",
        help="files to read, if empty, stdin is used",
    )
    parser.add_argument(
        "--select",
        "-s",
        metavar="KEY:VAL",
        type=csv_type,
        action="append",
        default=[],
        dest="selects",
        help="select lines based on the given key:val regular expressions. All of them must match",
    )
    parser.add_argument(
        "--field",
        "-f",
        metavar="KEY",
        type=csv_type,
        action="append",
        default=[],
        dest="fields",
        help="fields the output lines should contain only",
    )
    parser.add_argument(
        "--group",
        "-g",
        metavar="KEY",
        default=defaults.get("group", ""),
        help="group logs by inserting an empty line whenever the value of KEY changes",
    )
    parser.add_argument(
        "--output",
        "-o",
        choices=OUTPUT_FORMATS,
        default="json",
        help="output format. Default: json",
    )
    parser.add_argument(
        "--colour",
        "-c",
        action="store_true",
        default=defaults.get("colour", False),
        help="colourize printed output",
    )
    parser.add_argument(
        "--no-colour",
        action="store_true",
        help="do not colourize printed output, also honours NO_COLOR",
    )
    parser.add_argument(
        "--time",
        "-t",
        metavar="LAYOUT",
        default=defaults.get("time", ""),
        help="Go time layout used to print timestamps, e.g. 15:04:05",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="print tracebacks of errors",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=version_text(),
        help="show version information",
    )

    args = parser.parse_args(argv)
    args.selects = flatten_sublists(args.selects)
    args.fields = flatten_sublists(args.fields)
    args.colour = args.colour and not (args.no_colour or "NO_COLOR" in os.environ)
    return args


def main(argv: Optional[List[str]] = None) -> None:
    # Prevent Python from throwing BrokenPipeError at shutdown
    if hasattr(signal, "SIGPIPE"):
        signal.signal(signal.SIGPIPE, signal.SIG_DFL)

    debug = False
    try:
        args = parse_args(argv)
        debug = args.debug
        validate_flags(args)
        config = Config(
            selects=args.selects,
            fields=args.fields,
            group=args.group,
            output=args.output,
            colour=args.colour,
            time=args.time,
        )
        pipeline = Pipeline(config, sys.stdout)
        for filename in args.files or ["-"]:
            with file_opener(filename) as f:
                pipeline.run(split_lines(f))
    except GGError as exc:
        if debug:
            traceback.print_exc()
        print_err(f"gg: {exc}")
        sys.exit(1)
    except BrokenPipeError:
        # Ignore broken pipe errors (e.g. caused by piping our output to head)
        sys.stderr.close()  # Suppress further error messages
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
