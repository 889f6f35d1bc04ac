import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from bson.errors import InvalidId
from bson.objectid import ObjectId
from bson.regex import Regex

from app.core.exceptions import ParseError


# -----------------------------------------------------------------------------
# QUERY PARSER
# Purpose: turn a Mongo shell style query string into a ParsedOperation.
# Accepted shape: db.<collection>.<operation>(<literal>, ...)
#            or: db.getCollection("<collection>").<operation>(<literal>, ...)
# Arguments are data literals only; nothing in the text is ever evaluated.
# -----------------------------------------------------------------------------


class OperationKind(str, Enum):
    """Operations a query may name."""

    FIND = "find"
    AGGREGATE = "aggregate"
    COUNT_DOCUMENTS = "countDocuments"
    INSERT_ONE = "insertOne"
    INSERT_MANY = "insertMany"
    UPDATE_ONE = "updateOne"
    UPDATE_MANY = "updateMany"
    DELETE_ONE = "deleteOne"
    DELETE_MANY = "deleteMany"


@dataclass(frozen=True)
class ParsedOperation:
    collection_name: str
    operation_kind: OperationKind
    arguments: Tuple[Any, ...] = ()


ROOT_ACCESSOR = "db"

# Operators that make the server run JavaScript
FORBIDDEN_OPERATORS = {"$where", "$function", "$accumulator"}

REGEX_FLAGS = set("imsux")

# Aggregation stages that write their output to a collection
WRITE_STAGES = {"$out", "$merge"}

# Matches the BSON document nesting limit
MAX_NESTING_DEPTH = 100

_IDENTIFIER = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")
_CHAINED_CALL = re.compile(r"\.\s*([A-Za-z_$][A-Za-z0-9_$]*)\s*\(")
_NUMBER = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_ESCAPES = {
    '"': '"',
    "'": "'",
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}

DOCUMENT = "document"
PIPELINE = "array"
DOCUMENT_OR_PIPELINE = "document or array"

# (min args, max args, expected type of each positional argument)
SIGNATURES: Dict[OperationKind, Tuple[int, int, Tuple[str, ...]]] = {
    OperationKind.FIND: (0, 2, (DOCUMENT, DOCUMENT)),
    OperationKind.COUNT_DOCUMENTS: (0, 2, (DOCUMENT, DOCUMENT)),
    OperationKind.AGGREGATE: (1, 2, (PIPELINE, DOCUMENT)),
    OperationKind.INSERT_ONE: (1, 1, (DOCUMENT,)),
    OperationKind.INSERT_MANY: (1, 2, (PIPELINE, DOCUMENT)),
    OperationKind.UPDATE_ONE: (2, 3, (DOCUMENT, DOCUMENT_OR_PIPELINE, DOCUMENT)),
    OperationKind.UPDATE_MANY: (2, 3, (DOCUMENT, DOCUMENT_OR_PIPELINE, DOCUMENT)),
    OperationKind.DELETE_ONE: (1, 2, (DOCUMENT, DOCUMENT)),
    OperationKind.DELETE_MANY: (1, 2, (DOCUMENT, DOCUMENT)),
}

# Argument that may be a list of documents (pipeline or insert batch)
BATCH_ARGUMENT = {
    OperationKind.AGGREGATE: 0,
    OperationKind.INSERT_MANY: 0,
    OperationKind.UPDATE_ONE: 1,
    OperationKind.UPDATE_MANY: 1,
}


class _Scanner:
    """Cursor over the query text. Every error carries the offset it was found at."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0
        self.depth = 0

    def at_end(self) -> bool:
        return self.pos >= len(self.text)

    def peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def error(self, message: str, position: Optional[int] = None) -> ParseError:
        return ParseError(message, self.pos if position is None else position)

    def skip_ws(self):
        """Skip whitespace, // line comments and /* block */ comments."""
        text = self.text
        while self.pos < len(text):
            char = text[self.pos]
            if char.isspace():
                self.pos += 1
            elif text.startswith("//", self.pos):
                end = text.find("\n", self.pos)
                self.pos = len(text) if end == -1 else end + 1
            elif text.startswith("/*", self.pos):
                end = text.find("*/", self.pos + 2)
                if end == -1:
                    raise self.error("unterminated comment")
                self.pos = end + 2
            else:
                break

    def expect(self, char: str):
        self.skip_ws()
        if self.peek() != char:
            found = self.peek() or "end of query"
            raise self.error(f"expected '{char}' but found '{found}'")
        self.pos += 1

    def read_identifier(self) -> str:
        match = _IDENTIFIER.match(self.text, self.pos)
        if not match:
            found = self.peek() or "end of query"
            raise self.error(f"expected a name but found '{found}'")
        self.pos = match.end()
        return match.group()

    # -------------------------------------------------------------------------
    # Literals
    # -------------------------------------------------------------------------

    def parse_value(self) -> Any:
        self.skip_ws()
        if self.depth >= MAX_NESTING_DEPTH:
            raise self.error(f"nesting too deep (more than {MAX_NESTING_DEPTH} levels)")
        self.depth += 1
        try:
            return self._parse_literal()
        finally:
            self.depth -= 1

    def _parse_literal(self) -> Any:
        char = self.peek()
        if not char:
            raise self.error("unexpected end of query")
        if char == "{":
            return self.parse_document()
        if char == "[":
            return self.parse_array()
        if char in ('"', "'"):
            return self.parse_string()
        if char == "/":
            return self.parse_regex()
        if char.isdigit() or char in "+-.":
            return self.parse_number()
        if _IDENTIFIER.match(char):
            return self.parse_keyword()
        raise self.error(f"unexpected character '{char}'")

    def parse_document(self) -> Dict[str, Any]:
        start = self.pos
        self.pos += 1
        document: Dict[str, Any] = {}
        while True:
            self.skip_ws()
            if self.at_end():
                raise self.error("unbalanced '{'", start)
            if self.peek() == "}":
                self.pos += 1
                return document

            key_pos = self.pos
            if self.peek() in ('"', "'"):
                key = self.parse_string()
            else:
                key = self.read_identifier()
            if key in FORBIDDEN_OPERATORS:
                raise self.error(f"operator {key} is not allowed", key_pos)

            self.expect(":")
            document[key] = self.parse_value()

            self.skip_ws()
            if self.peek() == ",":
                self.pos += 1
            elif self.peek() == "}":
                continue
            elif self.at_end():
                raise self.error("unbalanced '{'", start)
            else:
                raise self.error(f"expected ',' or '}}' but found '{self.peek()}'")

    def parse_array(self) -> List[Any]:
        start = self.pos
        self.pos += 1
        items: List[Any] = []
        while True:
            self.skip_ws()
            if self.at_end():
                raise self.error("unbalanced '['", start)
            if self.peek() == "]":
                self.pos += 1
                return items

            items.append(self.parse_value())

            self.skip_ws()
            if self.peek() == ",":
                self.pos += 1
            elif self.peek() == "]":
                continue
            elif self.at_end():
                raise self.error("unbalanced '['", start)
            else:
                raise self.error(f"expected ',' or ']' but found '{self.peek()}'")

    def parse_string(self) -> str:
        start = self.pos
        quote = self.text[self.pos]
        self.pos += 1
        chunks: List[str] = []
        while True:
            if self.at_end() or self.peek() == "\n":
                raise self.error("unterminated string", start)
            char = self.text[self.pos]
            if char == quote:
                self.pos += 1
                return "".join(chunks)
            if char == "\\":
                self.pos += 1
                escape = self.peek()
                if escape == "u":
                    digits = self.text[self.pos + 1 : self.pos + 5]
                    if not re.fullmatch(r"[0-9a-fA-F]{4}", digits):
                        raise self.error("invalid unicode escape")
                    chunks.append(chr(int(digits, 16)))
                    self.pos += 5
                    continue
                if escape not in _ESCAPES:
                    raise self.error(f"invalid escape '\\{escape}'")
                chunks.append(_ESCAPES[escape])
                self.pos += 1
                continue
            chunks.append(char)
            self.pos += 1

    def parse_number(self):
        match = _NUMBER.match(self.text, self.pos)
        if not match:
            raise self.error("invalid number")
        end = match.end()
        if end < len(self.text) and (
            self.text[end].isalnum() or self.text[end] in "_$."
        ):
            raise self.error("invalid number")
        literal = match.group()
        self.pos = end
        if any(char in literal for char in ".eE"):
            return float(literal)
        return int(literal)

    def parse_regex(self) -> Regex:
        start = self.pos
        self.pos += 1
        in_class = False
        chars: List[str] = []
        while True:
            if self.at_end() or self.peek() == "\n":
                raise self.error("unterminated regular expression", start)
            char = self.text[self.pos]
            if char == "\\":
                chars.append(self.text[self.pos : self.pos + 2])
                self.pos += 2
                continue
            if char == "[":
                in_class = True
            elif char == "]":
                in_class = False
            elif char == "/" and not in_class:
                self.pos += 1
                break
            chars.append(char)
            self.pos += 1

        flags_start = self.pos
        while self.peek().isalpha():
            self.pos += 1
        flags = self.text[flags_start : self.pos]
        if set(flags) - REGEX_FLAGS:
            raise self.error(f"invalid regular expression flags '{flags}'", flags_start)
        return Regex("".join(chars), flags)

    def parse_keyword(self) -> Any:
        start = self.pos
        name = self.read_identifier()
        if name == "true":
            return True
        if name == "false":
            return False
        if name == "null":
            return None
        if name == "new":
            self.skip_ws()
            name = self.read_identifier()
            if name not in ("Date", "ISODate", "ObjectId"):
                raise self.error(f"cannot construct '{name}'", start)
            return self.parse_constructor(name, start)
        if name in ("ISODate", "ObjectId"):
            return self.parse_constructor(name, start)
        if name == "function":
            raise self.error("function literals are not allowed", start)
        raise self.error(f"unexpected identifier '{name}'", start)

    def parse_constructor(self, name: str, start: int) -> Any:
        self.expect("(")
        self.skip_ws()
        argument = None
        if self.peek() != ")":
            argument = self.parse_value()
        self.expect(")")

        if name == "ObjectId":
            if argument is None:
                return ObjectId()
            try:
                return ObjectId(argument)
            except (InvalidId, TypeError):
                raise self.error(f"invalid ObjectId {argument!r}", start)

        if argument is None:
            return datetime.now(timezone.utc)
        if isinstance(argument, (int, float)) and not isinstance(argument, bool):
            try:
                return datetime.fromtimestamp(argument / 1000, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                raise self.error(f"invalid date {argument!r}", start)
        if isinstance(argument, str):
            return _parse_date(argument, lambda: self.error(f"invalid date {argument!r}", start))
        raise self.error(f"invalid {name} argument", start)


def _parse_date(value: str, on_error) -> datetime:
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        # Shifting a date at the edge of the calendar can overflow
        return parsed.astimezone(timezone.utc)
    except (OverflowError, ValueError):
        raise on_error()


def _matches(expected: str, value: Any) -> bool:
    if expected == DOCUMENT:
        return isinstance(value, dict)
    if expected == PIPELINE:
        return isinstance(value, list)
    return isinstance(value, (dict, list))


def _check_arguments(
    kind: OperationKind, arguments: List[Any], positions: List[int], call_pos: int
):
    low, high, types = SIGNATURES[kind]
    if not low <= len(arguments) <= high:
        expected = str(low) if low == high else f"{low} to {high}"
        raise ParseError(
            f"{kind.value}() takes {expected} arguments, got {len(arguments)}",
            call_pos,
        )
    for index, (value, expected) in enumerate(zip(arguments, types)):
        if not _matches(expected, value):
            raise ParseError(
                f"argument {index + 1} of {kind.value}() must be a {expected}",
                positions[index],
            )

    # Pipelines and document batches hold documents only
    batch_index = BATCH_ARGUMENT.get(kind)
    if batch_index is None or batch_index >= len(arguments):
        return
    batch = arguments[batch_index]
    if isinstance(batch, list) and any(not isinstance(item, dict) for item in batch):
        raise ParseError(
            f"every element passed to {kind.value}() must be a document",
            positions[batch_index],
        )

    # $out and $merge turn a read into a write
    if kind == OperationKind.AGGREGATE:
        for stage in batch:
            writes = WRITE_STAGES.intersection(stage)
            if writes:
                raise ParseError(
                    f"pipeline stage {sorted(writes)[0]} writes to a collection; "
                    "submit the change as an insert, update or delete request",
                    positions[batch_index],
                )


def parse_query(text: str) -> ParsedOperation:
    """
    Parse one Mongo shell query into a ParsedOperation.

    Args:
        text: Raw query, e.g. 'db.users.find({"status": "active"})'.

    Returns:
        ParsedOperation with the collection, operation kind and literal arguments.

    Raises:
        ParseError: the text is empty, malformed, names an unsupported operation
            or carries anything after the single call.
    """
    if text is None or not text.strip():
        raise ParseError("empty query")

    scanner = _Scanner(text)
    scanner.skip_ws()
    if scanner.at_end():
        raise ParseError("empty query")

    root_pos = scanner.pos
    root = scanner.read_identifier()
    if root != ROOT_ACCESSOR:
        raise ParseError(
            f"query must start with '{ROOT_ACCESSOR}.', found '{root}'", root_pos
        )
    scanner.expect(".")
    scanner.skip_ws()

    first = scanner.read_identifier()
    scanner.skip_ws()
    if first == "getCollection" and scanner.peek() == "(":
        scanner.expect("(")
        scanner.skip_ws()
        if scanner.peek() not in ('"', "'"):
            raise scanner.error("getCollection() expects a collection name string")
        collection = scanner.parse_string()
        scanner.expect(")")
        scanner.expect(".")
        scanner.skip_ws()
        op_pos = scanner.pos
        operation = scanner.read_identifier()
    else:
        segments = [first]
        op_pos = scanner.pos
        while scanner.peek() == ".":
            scanner.pos += 1
            scanner.skip_ws()
            op_pos = scanner.pos
            segments.append(scanner.read_identifier())
            scanner.skip_ws()
        if len(segments) < 2:
            raise scanner.error("expected '.<operation>(...)' after the collection name")
        operation = segments[-1]
        collection = ".".join(segments[:-1])

    if not collection:
        raise ParseError("collection name cannot be empty", op_pos)

    try:
        kind = OperationKind(operation)
    except ValueError:
        raise ParseError(f"unsupported operation: {operation}", op_pos)

    scanner.skip_ws()
    call_pos = scanner.pos
    scanner.expect("(")
    arguments: List[Any] = []
    positions: List[int] = []
    while True:
        scanner.skip_ws()
        if scanner.at_end():
            raise scanner.error("unbalanced '('", call_pos)
        if scanner.peek() == ")":
            scanner.pos += 1
            break
        positions.append(scanner.pos)
        arguments.append(scanner.parse_value())
        scanner.skip_ws()
        if scanner.peek() == ",":
            scanner.pos += 1
        elif scanner.peek() != ")":
            if scanner.at_end():
                raise scanner.error("unbalanced '('", call_pos)
            raise scanner.error(f"expected ',' or ')' but found '{scanner.peek()}'")

    # One optional statement terminator, nothing else
    scanner.skip_ws()
    if scanner.peek() == ";":
        scanner.pos += 1
        scanner.skip_ws()
    if not scanner.at_end():
        chained = _CHAINED_CALL.match(scanner.text, scanner.pos)
        if chained:
            raise scanner.error(
                f"chained cursor methods such as .{chained.group(1)}() are not supported; "
                "results are capped automatically"
            )
        raise scanner.error("unexpected trailing content")

    _check_arguments(kind, arguments, positions, call_pos)
    return ParsedOperation(
        collection_name=collection,
        operation_kind=kind,
        arguments=tuple(arguments),
    )
