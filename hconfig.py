"""
HConfig - Human-writable configuration language parser

Two parsing modes are provided: plain values (a JSON-like tree of strings,
numbers, booleans, nulls, arrays and objects) and sectioned configuration
files, where repeated ``name [label] { ... }`` blocks are grouped under an
optional schema and other files can be pulled in with ``include``.

Usage:
    import hconfig

    # Plain values
    data = hconfig.loads('''
    server { host localhost port 8080 }  # Default port
    ''')

    # Sectioned configuration
    conf = hconfig.load_conf_file('server.hcnf', schema={
        'general': 'once',
        'virtual-host': {'count': 'many', 'props': {'webroot': 'string'}},
    })
"""

import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Union

__all__ = [
    'loads', 'load_file', 'loads_conf', 'load_conf_file',
    'parse_value', 'parse_sections',
    'CharSource', 'StringSource', 'FileSource',
    'TokenType', 'Token', 'TokenStream', 'Parser',
    'Count', 'ValueKind', 'SectionSpec', 'Schema', 'kind_of',
    'HConfigError', 'ParseError', 'LexerError', 'SchemaError',
]

LOG = logging.getLogger(__name__)

# ==========================================
# Data Structures
# ==========================================

class TokenType(Enum):
    # Literals
    STRING = auto()
    NUMBER = auto()
    BOOL = auto()
    NULL = auto()

    # End
    EOF = auto()

    # Symbols
    OPENBRACKET = auto()   # [
    CLOSEBRACKET = auto()  # ]
    OPENBRACE = auto()     # {
    CLOSEBRACE = auto()    # }

    UNKNOWN = auto()

_SYMBOLS = {
    '[': TokenType.OPENBRACKET,
    ']': TokenType.CLOSEBRACKET,
    '{': TokenType.OPENBRACE,
    '}': TokenType.CLOSEBRACE,
}

@dataclass
class Token:
    type: TokenType
    value: Any
    line: int
    quoted: bool = False


class Count(Enum):
    ONCE = 'once'
    MANY = 'many'


class ValueKind(Enum):
    STRING = 'string'
    NUMBER = 'number'
    ARRAY = 'array'
    OBJECT = 'object'
    BOOL = 'bool'
    NULL = 'null'
    ANY = 'any'


@dataclass
class SectionSpec:
    count: Count
    props: Dict[str, FrozenSet[ValueKind]] = field(default_factory=dict)


def kind_of(value: Any) -> ValueKind:
    """Return the schema kind of a parsed value."""
    if value is None: return ValueKind.NULL
    if isinstance(value, bool): return ValueKind.BOOL
    if isinstance(value, (int, float)): return ValueKind.NUMBER
    if isinstance(value, str): return ValueKind.STRING
    if isinstance(value, list): return ValueKind.ARRAY
    if isinstance(value, dict): return ValueKind.OBJECT
    raise TypeError(f"Not a configuration value: {value!r}")

# ==========================================
# Errors
# ==========================================

class HConfigError(Exception):
    """Base class for everything raised by this module."""

class ParseError(HConfigError):
    def __init__(self, message: str, source: str, line: int):
        super().__init__(f"{source}:{line}: {message}")
        self.message = message
        self.source = source
        self.line = line

class LexerError(ParseError):
    pass

class SchemaError(HConfigError):
    def __init__(self, section: str, message: str):
        super().__init__(f"Invalid section specifier for {section}: {message}")
        self.section = section

# ==========================================
# Character Sources
# ==========================================

class CharSource:
    """Forward-only supplier of single characters; ``None`` marks the end."""

    name = '<string>'
    path: Optional[str] = None

    def read_char(self) -> Optional[str]:
        raise NotImplementedError

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class StringSource(CharSource):
    def __init__(self, text: str, name: str = '<string>'):
        self.text = text
        self.name = name
        self.index = 0

    def read_char(self):
        if self.index >= len(self.text):
            return None
        ch = self.text[self.index]
        self.index += 1
        return ch


class FileSource(CharSource):
    def __init__(self, path: str):
        self.path = os.fspath(path)
        self.name = self.path
        self._fh = open(self.path, 'rb')

    def read_char(self):
        if self._fh.closed:
            return None
        byte = self._fh.read(1)
        if not byte:
            return None
        return chr(byte[0])

    def close(self):
        self._fh.close()


Opener = Callable[[str], CharSource]

# ==========================================
# Lexer
# ==========================================

_NUMBER_RE = re.compile(r'^-?\d+(\.\d+)?([eE][+-]?\d+)?$', re.ASCII)
_ENV_RE = re.compile(r'\$\(([^\s)]+)\)')
_HEX_RE = re.compile(r'^[0-9a-fA-F]{4}$')

_ESCAPES = {'\\': '\\', '"': '"', 'b': '\b', 'f': '\f', 'n': '\n', 'r': '\r', 't': '\t'}


def _isspace(ch):
    return ch is None or ch in ' \r\t\n'


def _ends_bare(ch):
    return _isspace(ch) or ch == '#' or ch in _SYMBOLS


class TokenStream:
    def __init__(self, source: CharSource, environ: Optional[Mapping[str, str]] = None):
        self.source = source
        self.environ = os.environ if environ is None else environ

        self.line = 1
        self.prev = None
        self.curr = None
        self.next = None
        self.token: Optional[Token] = None

        self.advance()
        self.read_token()

    def advance(self):
        ch = self.source.read_char()
        self.prev = self.curr
        self.curr = self.next
        self.next = ch
        if self.prev == '\n':
            self.line += 1

    def error(self, token: Token, message: str):
        raise ParseError(message, self.source.name, token.line)

    def lex_error(self, message: str):
        raise LexerError(message, self.source.name, self.line)

    def warn(self, token: Token, message: str):
        LOG.warning("%s:%d: %s", self.source.name, token.line, message)

    def read_token(self):
        self.token = self.next_token()

    def expect(self, token_type: TokenType) -> Token:
        token = self.token
        if token.type != token_type:
            if token_type == TokenType.EOF:
                self.error(token, f"Unexpected trailing input: {token.type.name}")
            self.error(token, f"Expected {token_type.name}, got {token.type.name}")
        self.read_token()
        return token

    def next_token(self) -> Token:
        while True:
            self.advance()
            ch = self.curr

            if ch is None:
                return Token(TokenType.EOF, None, self.line)

            if ch in _SYMBOLS:
                return Token(_SYMBOLS[ch], ch, self.line)

            # Comments run to the end of the line
            if ch == '#':
                while self.next != '\n' and self.next is not None:
                    self.advance()
                continue

            if _isspace(ch):
                while _isspace(self.next) and self.next is not None:
                    self.advance()
                continue

            if ch == '"':
                return self.read_double_quoted()
            if ch == "'":
                return self.read_single_quoted()
            return self.read_bare()

    def read_double_quoted(self):
        content = []
        while True:
            self.advance()
            ch = self.curr
            if ch is None:
                self.lex_error("Unterminated string")
            if ch == '"':
                break
            if ch == '\\':
                self.advance()
                content.append(self.read_escape())
            else:
                content.append(ch)

        token = Token(TokenType.STRING, '', self.line, True)
        token.value = self.expand_env(token, ''.join(content))
        return token

    def read_escape(self):
        ch = self.curr
        if ch in _ESCAPES:
            return _ESCAPES[ch]
        if ch == 'u':
            digits = []
            for _ in range(4):
                self.advance()
                digits.append(self.curr or '')
            hex_str = ''.join(digits)
            if not _HEX_RE.match(hex_str):
                self.lex_error(f"Invalid escape sequence: \\u{hex_str}")
            return chr(int(hex_str, 16))
        self.lex_error(f"Invalid escape sequence: \\{ch or ''}")

    def expand_env(self, token: Token, text: str) -> str:
        """Substitute every ``$(NAME)`` with its environment value."""
        out = []
        while True:
            m = _ENV_RE.search(text)
            if m is None:
                break
            name = m.group(1)
            value = self.environ.get(name)
            if value is None:
                self.warn(token, f"Environment variable {name} doesn't exist")
                value = ''
            out.append(text[:m.start()])
            out.append(value)
            text = text[m.end():]
        out.append(text)
        return ''.join(out)

    def read_single_quoted(self):
        content = []
        while True:
            self.advance()
            ch = self.curr
            if ch is None:
                self.lex_error("Unterminated string")
            if ch == "'":
                break
            content.append(ch)
        return Token(TokenType.STRING, ''.join(content), self.line, True)

    def read_bare(self):
        content = [self.curr]
        while not _ends_bare(self.next):
            content.append(self.next)
            self.advance()
        text = ''.join(content)

        if text == 'true': return Token(TokenType.BOOL, True, self.line)
        if text == 'false': return Token(TokenType.BOOL, False, self.line)
        if text == 'null': return Token(TokenType.NULL, None, self.line)
        if _NUMBER_RE.match(text): return Token(TokenType.NUMBER, text, self.line)
        return Token(TokenType.STRING, text, self.line, False)

# ==========================================
# Schema
# ==========================================

_NAME_KINDS = frozenset({ValueKind.STRING, ValueKind.NULL})
_ANY = frozenset({ValueKind.ANY})

SpecifierLike = Union[str, Count, Mapping[str, Any], SectionSpec]


def _normalize_kinds(section, prop, types) -> FrozenSet[ValueKind]:
    if not isinstance(types, (list, tuple, set, frozenset)):
        types = [types]
    kinds = set()
    for t in types:
        if isinstance(t, ValueKind):
            kinds.add(t)
            continue
        try:
            kinds.add(ValueKind(t))
        except ValueError:
            raise SchemaError(section, f"Property {prop}: Unexpected type {t}") from None
    if not kinds:
        raise SchemaError(section, f"Property {prop}: No types specified")
    if ValueKind.ANY in kinds and len(kinds) > 1:
        raise SchemaError(section, f"Property {prop}: Type 'any' must be specified alone")
    return frozenset(kinds)


def _normalize_specifier(section: str, spec: SpecifierLike) -> SectionSpec:
    if isinstance(spec, SectionSpec):
        count, props = spec.count, spec.props
    elif isinstance(spec, (str, Count)):
        count, props = spec, None
    elif isinstance(spec, Mapping):
        count, props = spec.get('count'), spec.get('props')
    else:
        raise SchemaError(section, repr(spec))

    try:
        count = Count(count)
    except ValueError:
        raise SchemaError(section, f"Expected count to be 'many' or 'once', got {count}") from None

    if props is None:
        props = {'*': _ANY}
    if not isinstance(props, Mapping):
        raise SchemaError(section, f"Expected props to be a mapping, got {type(props).__name__}")

    normalized = {prop: _normalize_kinds(section, prop, types) for prop, types in props.items()}
    normalized.setdefault('name', _NAME_KINDS)
    return SectionSpec(count, normalized)


class Schema:
    """Normalized table of section specifiers, read-only once built."""

    def __init__(self, sections: Mapping[str, SpecifierLike]):
        self.sections: Dict[str, SectionSpec] = {
            name: _normalize_specifier(name, spec) for name, spec in sections.items()
        }

    def get(self, name: str) -> Optional[SectionSpec]:
        return self.sections.get(name)

    def __contains__(self, name):
        return name in self.sections

# ==========================================
# Parser
# ==========================================

class Parser:
    def __init__(self, stream: TokenStream, schema: Optional[Schema] = None,
                 data: Optional[dict] = None, opener: Opener = FileSource):
        self.stream = stream
        self.schema = schema
        self.data = {} if data is None else data
        self.opener = opener

    # ----- Values -----

    def parse_value(self):
        stream = self.stream
        token = stream.token
        if token.type == TokenType.BOOL: return stream.expect(TokenType.BOOL).value
        if token.type == TokenType.NULL: stream.expect(TokenType.NULL); return None
        if token.type == TokenType.STRING: return stream.expect(TokenType.STRING).value
        if token.type == TokenType.NUMBER: return float(stream.expect(TokenType.NUMBER).value)
        if token.type == TokenType.OPENBRACKET: return self.parse_array()
        if token.type == TokenType.OPENBRACE: return self.parse_object()
        stream.error(token, f"Unexpected token {token.type.name}")

    def parse_array(self):
        stream = self.stream
        stream.expect(TokenType.OPENBRACKET)
        arr = []
        while stream.token.type != TokenType.CLOSEBRACKET:
            arr.append(self.parse_value())
        stream.expect(TokenType.CLOSEBRACKET)
        return arr

    def parse_object(self, ignore_braces=False):
        stream = self.stream
        if not ignore_braces:
            stream.expect(TokenType.OPENBRACE)
        obj = {}
        while stream.token.type not in (TokenType.CLOSEBRACE, TokenType.EOF):
            key = stream.expect(TokenType.STRING)
            obj[key.value] = self.parse_value()
        if not ignore_braces:
            stream.expect(TokenType.CLOSEBRACE)
        return obj

    # ----- Sections -----

    def parse_sections(self):
        stream = self.stream
        while stream.token.type != TokenType.EOF:
            token = stream.token
            if token.type == TokenType.STRING and token.value == 'include' and not token.quoted:
                self.include()
            else:
                self.parse_section()
        return self.data

    def parse_section(self):
        stream = self.stream
        section = stream.expect(TokenType.STRING)

        label = None
        if stream.token.type != TokenType.OPENBRACE:
            label = self.parse_value()

        obj = self.parse_object()
        obj['name'] = label
        self.insert_section(section, obj)

    def resolve_include(self, token: Token) -> str:
        """Return the path an include directive refers to."""
        target = token.value
        current = self.stream.source.path
        if current is None:
            return target
        if not os.path.isabs(target):
            target = os.path.join(os.path.dirname(current), target)
        if os.path.normpath(os.path.abspath(target)) == os.path.normpath(os.path.abspath(current)):
            self.stream.error(token, "Attempted to include self")
        return target

    def include(self):
        stream = self.stream
        stream.expect(TokenType.STRING)
        token = stream.expect(TokenType.STRING)
        path = self.resolve_include(token)

        try:
            source = self.opener(path)
        except OSError as exc:
            stream.warn(token, f"Could not include {path}: {exc}")
            return

        LOG.debug("Including %s", path)
        with source:
            child = Parser(TokenStream(source, stream.environ), self.schema, self.data, self.opener)
            child.parse_sections()

    def check_property(self, section: Token, key: str, value, kinds: Optional[FrozenSet[ValueKind]]):
        if kinds is None:
            self.stream.error(section, f"Section {section.value}: Unknown property '{key}'")
        if ValueKind.ANY in kinds:
            return

        actual = kind_of(value)
        if actual not in kinds:
            names = sorted(k.value for k in kinds)
            expected = names[0] if len(names) == 1 else f"one of ({', '.join(names)})"
            self.stream.error(
                section,
                f"Section {section.value}, property {key}: Expected {expected}, got {actual.value}")

    def insert_section(self, section: Token, obj: dict):
        """Validate a parsed section against the schema and store it."""
        name = section.value

        if self.schema is None:
            self.data.setdefault(name, []).append(obj)
            return

        spec = self.schema.get(name)
        if spec is None:
            self.stream.error(section, f"Unknown section: {name}")

        if spec.count == Count.ONCE and name in self.data:
            self.stream.error(section, f"Expected section {name} to exist only once")

        for key, value in obj.items():
            kinds = spec.props.get(key, spec.props.get('*'))
            self.check_property(section, key, value, kinds)

        if spec.count == Count.ONCE:
            self.data[name] = obj
        else:
            self.data.setdefault(name, []).append(obj)

# ==========================================
# Public API
# ==========================================

SchemaLike = Union[Schema, Mapping[str, SpecifierLike]]


def _as_schema(schema):
    if schema is None or isinstance(schema, Schema):
        return schema
    return Schema(schema)


def parse_value(source: CharSource, include_root: bool = False,
                environ: Optional[Mapping[str, str]] = None) -> Any:
    """Parse one value (or an implicit top-level object) from *source*.

    Nesting is bounded by the interpreter's recursion limit; going past it
    raises :class:`ParseError`.
    """
    stream = TokenStream(source, environ)
    parser = Parser(stream)
    try:
        if include_root:
            value = parser.parse_value()
        else:
            value = parser.parse_object(ignore_braces=True)
    except RecursionError:
        raise ParseError("Nesting too deep", source.name, stream.line) from None
    stream.expect(TokenType.EOF)
    return value


def parse_sections(source: CharSource, schema: Optional[SchemaLike] = None,
                   opener: Opener = FileSource,
                   environ: Optional[Mapping[str, str]] = None) -> Dict[str, Union[dict, List[dict]]]:
    """Parse sectioned configuration from *source*, following includes."""
    schema = _as_schema(schema)
    stream = TokenStream(source, environ)
    parser = Parser(stream, schema, opener=opener)
    try:
        return parser.parse_sections()
    except RecursionError:
        raise ParseError("Nesting too deep", source.name, stream.line) from None


def loads(text: str, include_root: bool = False, environ: Optional[Mapping[str, str]] = None) -> Any:
    """Parse a value from a string."""
    return parse_value(StringSource(text), include_root, environ)


def load_file(path, include_root: bool = False, environ: Optional[Mapping[str, str]] = None) -> Any:
    """Parse a value from a file."""
    with FileSource(path) as source:
        return parse_value(source, include_root, environ)


def loads_conf(text: str, schema: Optional[SchemaLike] = None, opener: Opener = FileSource,
               environ: Optional[Mapping[str, str]] = None) -> Dict[str, Union[dict, List[dict]]]:
    """Parse sectioned configuration from a string."""
    return parse_sections(StringSource(text), schema, opener, environ)


def load_conf_file(path, schema: Optional[SchemaLike] = None, opener: Opener = FileSource,
                   environ: Optional[Mapping[str, str]] = None) -> Dict[str, Union[dict, List[dict]]]:
    """Parse sectioned configuration from a file."""
    with FileSource(path) as source:
        return parse_sections(source, schema, opener, environ)
