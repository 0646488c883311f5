"""
csviter — incremental reader for delimiter-separated text (stdlib-only).

Contract (v0):
- One record per pull; the source only needs readline() (or line iteration).
- Single-character separator, default ",". The quote character is always '"'.
- A '"' opens a quoted field only as the first character of the field.
  Inside a quoted field, '""' is one literal '"'; separators and "\\n" are
  literal while the quoted span is open, and a record may span lines.
- A '"' after the first character of an unquoted field is an error.
- Bytes that do not decode with the dialect encoding are an error too.
- Only "\\n" ends a record; a preceding "\\r" stays in the last field.
- A trailing separator yields a trailing empty field.
- A blank line ("\\n" only) is a record with zero fields, not end of input.
- An unterminated quoted field at end of input is closed implicitly.
- Errors: CSVIterError per pull; the stream continues at the next physical
  line, so the caller may keep pulling.
- Header mode: the first record becomes a HeaderIndex shared read-only by
  every record of the stream. Duplicate names: the last one wins.

API:
- reader(f, ...) -> iterator of Row (positional get)
- keyed_reader(f, ...) -> iterator of KeyedRow (get by header name)
- stream(f, ..., header=bool) -> either of the above
- tokenize(text, ...) / parse_row(f, ...) -> field lists without a stream

Python: 3.10+
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)

__version__ = "0.1.0"

QUOTE = '"'
NEWLINE = "\n"


# ----------------------------
# Exceptions
# ----------------------------

class CSVIterError(ValueError):
    """Invalid CSV data: a stray '"' in an unquoted field, or undecodable bytes. Carries position context."""

    def __init__(self, *, line: int, col: int, value: str, reason: str) -> None:
        super().__init__(f"CSVIterError(line={line}, col={col}, value={value!r}): {reason}")
        self.line = line        # 1-based physical line in the source
        self.col = col          # 0-based field index within the record
        self.value = value      # field text read so far
        self.reason = reason


# ----------------------------
# Dialect
# ----------------------------

def _check_separator(separator: Any) -> str:
    if not isinstance(separator, str) or len(separator) != 1:
        raise ValueError(f"separator must be a single character, got {separator!r}")
    if separator in (QUOTE, NEWLINE):
        raise ValueError(f"separator cannot be {separator!r}")
    return separator


@dataclass(frozen=True)
class Dialect:
    separator: str = ","
    # used only when the source yields bytes
    encoding: str = "utf-8"

    def __post_init__(self) -> None:
        _check_separator(self.separator)


DEFAULT = Dialect()


# ----------------------------
# Row tokenizer (state machine)
# ----------------------------

class State(Enum):
    FIELD_START = auto()      # nothing consumed for the current field yet
    IN_PLAIN = auto()         # unquoted field
    IN_QUOTED = auto()        # inside an open quoted span
    QUOTE_IN_QUOTED = auto()  # quoted field whose span is currently closed


class RowTokenizer:
    """
    Turns the physical lines of one logical record into field values.

    feed() scans one line and reports whether the record needs another line
    (the line ended inside an open quoted span). finish() returns the fields.
    """

    def __init__(self, separator: str = ",", *, line_num: int = 1) -> None:
        self.separator = _check_separator(separator)
        self.state = State.FIELD_START
        self.fields: List[str] = []
        self.line_num = line_num - 1
        self._buf: List[str] = []
        self._last_was_separator = False
        self._done = False

    def feed(self, line: str) -> bool:
        self.line_num += 1
        sep = self.separator
        for ch in line:
            state = self.state
            if ch == QUOTE:
                if state is State.FIELD_START:
                    self.state = State.IN_QUOTED
                elif state is State.IN_PLAIN:
                    raise CSVIterError(
                        line=self.line_num, col=len(self.fields), value="".join(self._buf),
                        reason="Invalid CSV data: Unexpected '\"'"
                    )
                elif state is State.IN_QUOTED:
                    self.state = State.QUOTE_IN_QUOTED
                else:
                    # reopening a closed span: '""' escape
                    self._buf.append(QUOTE)
                    self.state = State.IN_QUOTED
            elif ch == NEWLINE:
                if state is not State.IN_QUOTED:
                    self._done = True
                    return False
                self._buf.append(ch)
            elif ch == sep and state is not State.IN_QUOTED:
                self._push()
                self._last_was_separator = True
                continue
            else:
                self._buf.append(ch)
                if state is State.FIELD_START:
                    self.state = State.IN_PLAIN
            self._last_was_separator = False
        return self.state is State.IN_QUOTED

    def finish(self) -> List[str]:
        if self.state is State.IN_QUOTED and not self._done:
            logger.warning(
                "Unterminated quoted field at end of input (line %d, col %d); closing it",
                self.line_num, len(self.fields),
            )
        if self._buf or self._last_was_separator:
            self.fields.append("".join(self._buf))
            self._buf = []
        self._last_was_separator = False
        return self.fields

    def _push(self) -> None:
        self.fields.append("".join(self._buf))
        self._buf = []
        self.state = State.FIELD_START


def tokenize(text: str, separator: str = ",") -> List[str]:
    """
    Tokenize one logical record held in a string.
    Quoted newlines are kept; an unquoted "\\n" ends the record and the rest is ignored.
    """
    tok = RowTokenizer(separator)
    tok.feed(text)
    return tok.finish()


# ----------------------------
# Row parser (source -> fields)
# ----------------------------

LineReader = Callable[[], str]


class _LineSource:
    """
    Adapt a file-like object (readline) or an iterable of lines to readline().

    Each iterable item is one physical line; a missing "\\n" is added.
    line_num counts physical lines consumed, including undecodable ones.
    """

    def __init__(self, f: Any, encoding: str) -> None:
        self.encoding = encoding
        self.line_num = 0
        readline = getattr(f, "readline", None)
        if readline is None:
            self._it: Optional[Iterator[Any]] = iter(f)
            self._readline: Callable[[], Any] = self._next_item
        else:
            self._it = None
            self._readline = readline

    def _next_item(self) -> Any:
        assert self._it is not None
        item = next(self._it, None)
        if item is None:
            return ""
        if isinstance(item, (bytes, bytearray)):
            return item if item.endswith(b"\n") else bytes(item) + b"\n"
        return item if item.endswith(NEWLINE) else item + NEWLINE

    def readline(self) -> str:
        line = self._readline()
        if not line:
            return ""
        self.line_num += 1
        if isinstance(line, (bytes, bytearray)):
            try:
                return line.decode(self.encoding)
            except UnicodeDecodeError as e:
                raise CSVIterError(
                    line=self.line_num, col=0, value="",
                    reason=f"Invalid CSV data: stream is not valid {self.encoding}"
                ) from e
        return line


def _read_record(read: LineReader, separator: str, *, line_num: int = 1) -> Optional[List[str]]:
    line = read()
    if not line:
        return None
    tok = RowTokenizer(separator, line_num=line_num)
    while tok.feed(line):
        line = read()
        if not line:
            break
    return tok.finish()


def parse_row(
    f: Any,
    separator: str = ",",
    *,
    encoding: str = "utf-8",
) -> Optional[List[str]]:
    """
    Read the next logical record from `f`.
    Returns None at end of input, which is distinct from [] (a blank line).
    """
    return _read_record(_LineSource(f, encoding).readline, _check_separator(separator))


# ----------------------------
# Header index
# ----------------------------

class NoHeader:
    """Header marker for streams that did not consume a header row."""

    _instance: Optional["NoHeader"] = None
    width = 0
    positions: Mapping[str, int] = MappingProxyType({})

    def __new__(cls) -> "NoHeader":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def get_index(self, name: str) -> Optional[int]:
        return None

    def __len__(self) -> int:
        return 0

    def __iter__(self) -> Iterator[str]:
        return iter(())

    def __repr__(self) -> str:
        return "NO_HEADER"


NO_HEADER = NoHeader()


@dataclass(frozen=True)
class HeaderIndex:
    """Immutable field name -> position map, shared by every KeyedRow of a stream."""

    positions: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "positions", MappingProxyType(dict(self.positions)))

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "HeaderIndex":
        positions: Dict[str, int] = {}
        for pos, name in enumerate(names):
            if name in positions:
                logger.warning(
                    "Duplicate header name %r at col %d overrides col %d",
                    name, pos, positions[name],
                )
            positions[name] = pos
        return cls(positions)

    def get_index(self, name: str) -> Optional[int]:
        return self.positions.get(name)

    @property
    def width(self) -> int:
        return len(self.positions)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(sorted(self.positions, key=self.positions.__getitem__))

    def __len__(self) -> int:
        return len(self.positions)

    def __iter__(self) -> Iterator[str]:
        return iter(self.positions)

    def __contains__(self, name: object) -> bool:
        return name in self.positions


# ----------------------------
# Records
# ----------------------------

@dataclass(frozen=True)
class Record:
    fields: Tuple[str, ...]
    header: Union[HeaderIndex, NoHeader] = field(default=NO_HEADER, repr=False, compare=False)
    line_num: int = field(default=0, compare=False)  # first physical line of the record

    @property
    def width(self) -> int:
        return len(self.fields)

    def __len__(self) -> int:
        return len(self.fields)

    def __iter__(self) -> Iterator[str]:
        return iter(self.fields)


class Row(Record):
    """Record from a header-less stream: positional access only."""

    def get(self, index: int) -> Optional[str]:
        if isinstance(index, bool) or not isinstance(index, int):
            raise TypeError(
                f"Row.get() takes a position, not {type(index).__name__}; "
                "read with a header to look fields up by name"
            )
        if 0 <= index < len(self.fields):
            return self.fields[index]
        return None


class KeyedRow(Record):
    """Record from a header stream: access by header name."""

    def get(self, name: str) -> Optional[str]:
        if not isinstance(name, str):
            raise TypeError(f"KeyedRow.get() takes a header name, not {type(name).__name__}")
        index = self.header.get_index(name)
        if index is None or index >= len(self.fields):
            return None
        return self.fields[index]

    def to_dict(self) -> Dict[str, str]:
        """Header names present in this row mapped to their values (ragged rows lose the tail)."""
        n = len(self.fields)
        return {name: self.fields[pos] for name, pos in self.header.positions.items() if pos < n}


# ----------------------------
# Streams
# ----------------------------

class Reader:
    """
    Header-less record stream. Iterating yields Row objects.

    A CSVIterError raised by next() does not end the stream: the failing
    physical line has been consumed and the next pull starts after it.
    """

    record_type: type = Row

    def __init__(
        self,
        f: Any,
        separator: Optional[str] = None,
        *,
        dialect: Dialect = DEFAULT,
    ) -> None:
        if separator is not None:
            dialect = replace(dialect, separator=separator)
        self.dialect = dialect
        self.header: Union[HeaderIndex, NoHeader] = NO_HEADER
        self._source = _LineSource(f, dialect.encoding)
        self._exhausted = False

    def __iter__(self) -> "Reader":
        return self

    def __next__(self) -> Record:
        start = self.line_num + 1
        fields = self._read_fields()
        if fields is None:
            raise StopIteration
        return self.record_type(tuple(fields), self.header, line_num=start)

    def _read_fields(self) -> Optional[List[str]]:
        if self._exhausted:
            return None
        fields = _read_record(self._source.readline, self.dialect.separator, line_num=self.line_num + 1)
        if fields is None:
            self._exhausted = True
            logger.debug("End of input after %d lines", self.line_num)
        return fields

    @property
    def line_num(self) -> int:
        """Physical lines consumed so far."""
        return self._source.line_num


class KeyedReader(Reader):
    """Record stream that consumes the first record as its header. Yields KeyedRow objects."""

    record_type = KeyedRow

    def __init__(
        self,
        f: Any,
        separator: Optional[str] = None,
        *,
        dialect: Dialect = DEFAULT,
    ) -> None:
        super().__init__(f, separator, dialect=dialect)
        names = self._read_fields()
        if names is None:
            self.header = HeaderIndex()
        else:
            self.header = HeaderIndex.from_names(names)
        logger.debug("Header built with %d fields", self.header.width)

    @property
    def width(self) -> int:
        return self.header.width

    @property
    def fieldnames(self) -> Tuple[str, ...]:
        return self.header.names


def reader(
    f: Any,
    separator: Optional[str] = None,
    *,
    dialect: Dialect = DEFAULT,
) -> Reader:
    return Reader(f, separator, dialect=dialect)


def keyed_reader(
    f: Any,
    separator: Optional[str] = None,
    *,
    dialect: Dialect = DEFAULT,
) -> KeyedReader:
    return KeyedReader(f, separator, dialect=dialect)


def stream(
    f: Any,
    separator: Optional[str] = None,
    *,
    header: bool = False,
    dialect: Dialect = DEFAULT,
) -> Reader:
    if header:
        return KeyedReader(f, separator, dialect=dialect)
    return Reader(f, separator, dialect=dialect)


__all__ = [
    "CSVIterError",
    "Dialect",
    "DEFAULT",
    "State",
    "RowTokenizer",
    "tokenize",
    "parse_row",
    "NoHeader",
    "NO_HEADER",
    "HeaderIndex",
    "Record",
    "Row",
    "KeyedRow",
    "Reader",
    "KeyedReader",
    "reader",
    "keyed_reader",
    "stream",
    "__version__",
]
