#!/usr/bin/env python3
"""enum conversion generator.

Input:  Rust source containing enums tagged with #[derive(EnumFrom)] and/or
        #[derive(EnumTryInto)].
Output: transformed Rust source with From/TryInto impls emitted after each
        tagged enum and the generator's own attributes removed.
"""

from __future__ import annotations

import argparse
import dataclasses
import enum
import hashlib
import pathlib
import re
import sys
from typing import Dict, Iterable, Iterator, List, Sequence, Tuple

GENERATOR_VERSION = "0.2.0"
FORMAT_VERSION = "1"
DERIVE_FROM = "EnumFrom"
DERIVE_TRY_INTO = "EnumTryInto"
GENERATED_DERIVES = (DERIVE_FROM, DERIVE_TRY_INTO)
FROM_IGNORE = "from_ignore"
TRY_INTO_IGNORE = "try_into_ignore"
TRY_INTO_REFERENCES = "try_into_references"
HELPER_ATTRIBUTES = (FROM_IGNORE, TRY_INTO_IGNORE, TRY_INTO_REFERENCES)
REFERENCE_LIFETIME = "'try_into_ref"
DIGEST_PATTERN = re.compile(r"^// digest: ([0-9a-f]{64})$", re.MULTILINE)

_IDENT = r"(?:r#)?[^\W\d]\w*"
_IDENT_RE = re.compile(_IDENT)
_LIFETIME_RE = re.compile(r"'[^\W\d]\w*")
_RAW_STRING_RE = re.compile(r'b?r(#*)"')
_CHAR_LITERAL_RE = re.compile(r"b?'(?:\\(?:x[0-9A-Fa-f]{2}|u\{[0-9A-Fa-f]{1,6}\}|.)|[^\\'\n])'")
_ATTR_PATH_RE = re.compile(rf"\s*((?:::\s*)?{_IDENT}(?:\s*::\s*{_IDENT})*)\s*")
_CONST_PARAM_RE = re.compile(rf"const\s+({_IDENT})\s*:(.*)$", re.DOTALL)
_VISIBILITY_RE = re.compile(r"pub\b")
_ITEM_KEYWORD_RE = re.compile(r"(enum|struct|union)\b")
_TOKEN_RE = re.compile(rf"""b?"(?:\\.|[^"\\])*"|b?'(?:\\.|[^'\\])'|'[^\W\d]\w*|{_IDENT}|\d[\w.]*|::|->|=>|\S""")
_REFERENCE_TOKEN_RE = re.compile(r"^(?:&\s*(?P<amp_mut>mut)?|ref(?:\s+(?P<ref_mut>mut))?|(?P<owned>owned))$")

_CLOSERS = {"(": ")", "[": "]", "{": "}", "<": ">"}
_NO_SPACE_AFTER = {"::", "<", "(", "[", "&", "*", "?", "!"}
_NO_SPACE_BEFORE = {"::", ">", ",", ")", "]", ";", ":"}
_SPACED_KEYWORDS = {"mut", "const", "dyn", "impl", "as", "for", "where", "unsafe", "extern"}


class ParseError(RuntimeError):
    def __init__(self, message: str, index: int) -> None:
        super().__init__(message)
        self.index = index


@dataclasses.dataclass(frozen=True)
class Attribute:
    path: str
    args: "str | None"
    start: int
    end: int
    args_index: int

    def is_ident(self, name: str) -> bool:
        return self.path == name


@dataclasses.dataclass(frozen=True)
class GenericParam:
    kind: str  # type | lifetime | const
    name: str
    bounds: str = ""
    default: str = ""
    const_type: str = ""

    def declaration(self) -> str:
        if self.kind == "const":
            return f"const {self.name}: {self.const_type}"
        if self.bounds:
            return f"{self.name}: {self.bounds}"
        return self.name

    def argument(self) -> str:
        return self.name


@dataclasses.dataclass
class Variant:
    name: str
    shape: str  # unit | unnamed | named
    fields: List[str] = dataclasses.field(default_factory=list)
    attributes: List[Attribute] = dataclasses.field(default_factory=list)

    def has_attribute(self, name: str) -> bool:
        return any(attr.is_ident(name) for attr in self.attributes)


@dataclasses.dataclass
class ItemDecl:
    kind: str  # enum | struct | union
    name: str
    start: int
    end: int
    keyword_index: int
    attributes: List[Attribute] = dataclasses.field(default_factory=list)
    derives: List[str] = dataclasses.field(default_factory=list)
    generics: List[GenericParam] = dataclasses.field(default_factory=list)
    where_clause: str = ""
    variants: List[Variant] = dataclasses.field(default_factory=list)


@dataclasses.dataclass(frozen=True)
class VariantEntry:
    variant: str
    payload_type: str


@dataclasses.dataclass(frozen=True)
class Uniqueness:
    entry: "VariantEntry | None"  # None once a second variant shares the type

    @property
    def is_unique(self) -> bool:
        return self.entry is not None


NON_UNIQUE = Uniqueness(entry=None)


class OwnershipMode(enum.Flag):
    NONE = 0
    OWNED = enum.auto()
    SHARED = enum.auto()
    SHARED_MUT = enum.auto()


OWNERSHIP_ORDER = (OwnershipMode.OWNED, OwnershipMode.SHARED, OwnershipMode.SHARED_MUT)


@dataclasses.dataclass(frozen=True)
class Decorator:
    mode: OwnershipMode
    lifetime: "str | None" = None

    def as_parameter(self) -> "GenericParam | None":
        if self.mode is OwnershipMode.OWNED:
            return None
        return GenericParam(kind="lifetime", name=self.lifetime or REFERENCE_LIFETIME)

    def wrap_argument(self, over: str) -> str:
        if self.mode is OwnershipMode.OWNED:
            return over
        if self.mode is OwnershipMode.SHARED_MUT:
            return f"&{self.lifetime} mut {over}"
        return f"&{self.lifetime} {over}"


OWNED = Decorator(mode=OwnershipMode.OWNED)


@dataclasses.dataclass(frozen=True)
class Conversion:
    direction: str  # from | try_into
    enum_name: str
    enum_type: str
    variant: str
    payload_type: str
    decorator: Decorator
    params: Tuple[GenericParam, ...] = ()
    where_clause: str = ""

    @property
    def mode(self) -> OwnershipMode:
        return self.decorator.mode

    @property
    def lifetime(self) -> "str | None":
        return self.decorator.lifetime

    @property
    def argument_type(self) -> str:
        return self.decorator.wrap_argument(self.payload_type)

    @property
    def self_type(self) -> str:
        return self.decorator.wrap_argument(self.enum_type)


def line_col(text: str, index: int) -> Tuple[int, int]:
    line = text.count("\n", 0, index) + 1
    line_start = text.rfind("\n", 0, index)
    if line_start < 0:
        line_start = -1
    col = index - line_start
    return line, col


def fail(path: pathlib.Path, text: str, error: ParseError) -> None:
    line, col = line_col(text, error.index)
    print(f"{path}:{line}:{col}: error: {error}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Scanning


def skip_block_comment(text: str, i: int) -> int:
    start = i
    depth = 0
    n = len(text)
    while i < n:
        if text.startswith("/*", i):
            depth += 1
            i += 2
            continue
        if text.startswith("*/", i):
            depth -= 1
            i += 2
            if depth == 0:
                return i
            continue
        i += 1
    raise ParseError("unterminated block comment", start)


def skip_string(text: str, i: int) -> int:
    j = i + 1
    n = len(text)
    while j < n:
        ch = text[j]
        if ch == "\\":
            j += 2
            continue
        if ch == '"':
            return j + 1
        j += 1
    raise ParseError("unterminated string literal", i)


def _literal_end(text: str, i: int) -> int:
    """End of the string, raw string or char literal starting at ``i``, or ``i``."""
    ch = text[i]
    after_ident = i > 0 and (text[i - 1].isalnum() or text[i - 1] == "_")
    if ch in "br" and not after_ident:
        raw = _RAW_STRING_RE.match(text, i)
        if raw:
            close = '"' + raw.group(1)
            j = text.find(close, raw.end())
            if j == -1:
                raise ParseError("unterminated raw string literal", i)
            return j + len(close)
    if ch == '"':
        return skip_string(text, i)
    if ch == "'" or (ch == "b" and not after_ident):
        char_literal = _CHAR_LITERAL_RE.match(text, i)
        if char_literal:
            return char_literal.end()
    return i


def code_positions(
    text: str, start: int = 0, end: "int | None" = None, keep_literals: bool = False
) -> Iterator[int]:
    """Yield the indexes of code characters in ``text[start:end]``.

    Line comments and (nested) block comments are skipped, and so are string,
    raw string and char literals unless ``keep_literals`` is set. Lifetimes
    such as ``'a`` are code.
    """
    n = len(text) if end is None else end
    i = start
    while i < n:
        if text.startswith("//", i):
            j = text.find("\n", i + 2)
            i = n if j == -1 else j + 1
            continue
        if text.startswith("/*", i):
            i = skip_block_comment(text, i)
            continue
        literal_end = _literal_end(text, i)
        if literal_end > i:
            if keep_literals:
                yield from range(i, literal_end)
            i = literal_end
            continue
        yield i
        i += 1


def code_text(text: str, start: int, end: int) -> str:
    """``text[start:end]`` with each comment replaced by a single space."""
    pieces: List[str] = []
    prev = start - 1
    for i in code_positions(text, start, end, keep_literals=True):
        if i != prev + 1:
            pieces.append(" ")
        pieces.append(text[i])
        prev = i
    return "".join(pieces)


def skip_ws_comments(text: str, i: int) -> int:
    n = len(text)
    while i < n:
        if text[i].isspace():
            i += 1
            continue
        if text.startswith("//", i):
            j = text.find("\n", i + 2)
            if j == -1:
                return n
            i = j + 1
            continue
        if text.startswith("/*", i):
            i = skip_block_comment(text, i)
            continue
        return i
    return i


def parse_identifier(text: str, i: int) -> Tuple[str, int]:
    m = _IDENT_RE.match(text, i)
    if not m:
        raise ParseError("expected identifier", i)
    return m.group(0), m.end()


def find_matching(text: str, open_index: int) -> int:
    if open_index >= len(text) or text[open_index] not in _CLOSERS:
        raise ParseError("internal error: expected opening delimiter", open_index)

    opener = text[open_index]
    closer = _CLOSERS[opener]
    depth = 0
    for i in code_positions(text, open_index):
        ch = text[i]
        if ch == opener:
            depth += 1
        elif ch == closer:
            if closer == ">" and text[i - 1] == "-":
                continue
            depth -= 1
            if depth == 0:
                return i
    raise ParseError(f"unbalanced '{opener}'", open_index)


def split_top_level(text: str, start: int, end: int, angles: bool = True) -> List[Tuple[int, int]]:
    """Split ``text[start:end]`` on top-level commas.

    Returns ``(first, last + 1)`` spans over the code characters of each
    non-empty piece, so comments around a piece are not part of it.
    """
    openers = "([{<" if angles else "([{"
    closers = ")]}>" if angles else ")]}"
    spans: List[Tuple[int, int]] = []
    depth = 0
    first = -1
    last = -1

    for i in code_positions(text, start, end):
        ch = text[i]
        if ch.isspace():
            continue
        if ch == "," and depth == 0:
            if first >= 0:
                spans.append((first, last + 1))
            first = -1
            continue
        if ch in openers:
            depth += 1
        elif ch in closers and not (ch == ">" and text[i - 1] == "-"):
            depth -= 1
            if depth < 0:
                raise ParseError(f"unexpected '{ch}'", i)
        if first < 0:
            first = i
        last = i

    if first >= 0:
        spans.append((first, last + 1))
    return spans


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(text)


def _needs_space(prev: str, cur: str) -> bool:
    if prev == ",":
        return True
    if prev in _NO_SPACE_AFTER or cur in _NO_SPACE_BEFORE:
        return False
    if cur in ("<", "(", "["):
        return prev in _SPACED_KEYWORDS or prev.startswith("'") or not _IDENT_RE.fullmatch(prev)
    return True


def normalize_type(type_name: str) -> str:
    """Canonical spelling of a type; two types are equal iff their tokens are."""
    tokens = tokenize(type_name)
    if not tokens:
        return ""
    pieces = [tokens[0]]
    for prev, cur in zip(tokens, tokens[1:]):
        if _needs_space(prev, cur):
            pieces.append(" ")
        pieces.append(cur)
    return "".join(pieces)


# ---------------------------------------------------------------------------
# Parsing


def find_attribute_positions(text: str) -> List[int]:
    return [i for i in code_positions(text) if text.startswith("#[", i)]


def parse_attribute(text: str, i: int) -> Attribute:
    if not text.startswith("#[", i):
        raise ParseError("expected attribute", i)
    close = find_matching(text, i + 1)
    path_match = _ATTR_PATH_RE.match(text, i + 2, close)
    if not path_match:
        raise ParseError("expected attribute path", i + 2)

    path = re.sub(r"\s+", "", path_match.group(1))
    args = None
    args_index = path_match.end()
    if args_index < close and text[args_index] == "(":
        args_close = find_matching(text, args_index)
        args = text[args_index + 1 : args_close]
        args_index += 1
    return Attribute(path=path, args=args, start=i, end=close + 1, args_index=args_index)


def parse_attributes(text: str, i: int) -> Tuple[List[Attribute], int]:
    attrs: List[Attribute] = []
    while True:
        j = skip_ws_comments(text, i)
        if not text.startswith("#[", j):
            return attrs, i
        attr = parse_attribute(text, j)
        attrs.append(attr)
        i = attr.end


def derive_names(attr: Attribute) -> List[str]:
    if not attr.is_ident("derive") or attr.args is None:
        return []
    names = []
    for piece_start, piece_end in split_top_level(attr.args, 0, len(attr.args), angles=False):
        name = code_text(attr.args, piece_start, piece_end).split("::")[-1].strip()
        if name:
            names.append(name)
    return names


def requested_derives(attrs: Iterable[Attribute]) -> List[str]:
    requested: List[str] = []
    for attr in attrs:
        for name in derive_names(attr):
            if name in GENERATED_DERIVES and name not in requested:
                requested.append(name)
    return requested


def skip_visibility(text: str, i: int) -> int:
    vis = _VISIBILITY_RE.match(text, i)
    if not vis:
        return i
    i = skip_ws_comments(text, vis.end())
    if i < len(text) and text[i] == "(":
        i = skip_ws_comments(text, find_matching(text, i) + 1)
    return i


def _default_index(text: str, start: int, end: int) -> int:
    depth = 0
    for i in code_positions(text, start, end):
        ch = text[i]
        if ch in "([{<":
            depth += 1
        elif ch in ")]}>" and not (ch == ">" and text[i - 1] == "-"):
            depth -= 1
        elif ch == "=" and depth == 0 and text[i + 1 : i + 2] not in ("=", ">") and text[i - 1] not in "=!<>":
            return i
    return end


def parse_generic_param(text: str, start: int, end: int) -> GenericParam:
    _, i = parse_attributes(text, start)
    i = skip_ws_comments(text, i)

    lifetime = _LIFETIME_RE.match(text, i)
    if lifetime:
        rest = code_text(text, lifetime.end(), end).strip()
        bounds = normalize_type(rest[1:]) if rest.startswith(":") else ""
        return GenericParam(kind="lifetime", name=lifetime.group(0), bounds=bounds)

    eq = _default_index(text, i, end)
    head = code_text(text, i, eq).strip()
    default = normalize_type(code_text(text, eq + 1, end)) if eq < end else ""
    const = _CONST_PARAM_RE.match(head)
    if const:
        return GenericParam(
            kind="const",
            name=const.group(1),
            const_type=normalize_type(const.group(2)),
            default=default,
        )

    name, j = parse_identifier(text, i)
    rest = code_text(text, j, eq).strip()
    if rest and not rest.startswith(":"):
        raise ParseError(f"unexpected tokens after generic parameter '{name}'", j)
    bounds = normalize_type(rest[1:]) if rest else ""
    return GenericParam(kind="type", name=name, bounds=bounds, default=default)


def parse_generic_params(text: str, start: int, end: int) -> List[GenericParam]:
    return [parse_generic_param(text, s, e) for s, e in split_top_level(text, start, end)]


def parse_tuple_field(text: str, start: int, end: int) -> str:
    _, i = parse_attributes(text, start)
    i = skip_visibility(text, skip_ws_comments(text, i))
    type_name = normalize_type(code_text(text, i, end))
    if not type_name:
        raise ParseError("expected field type", i)
    return type_name


def parse_variants(text: str, start: int, end: int) -> List[Variant]:
    variants: List[Variant] = []
    for piece_start, piece_end in split_top_level(text, start, end, angles=False):
        attrs, i = parse_attributes(text, piece_start)
        i = skip_ws_comments(text, i)
        name, i = parse_identifier(text, i)
        i = skip_ws_comments(text, i)

        shape = "unit"
        fields: List[str] = []
        if i < piece_end and text[i] == "(":
            close = find_matching(text, i)
            shape = "unnamed"
            fields = [parse_tuple_field(text, s, e) for s, e in split_top_level(text, i + 1, close)]
            i = skip_ws_comments(text, close + 1)
        elif i < piece_end and text[i] == "{":
            close = find_matching(text, i)
            shape = "named"
            fields = [normalize_type(code_text(text, s, e)) for s, e in split_top_level(text, i + 1, close)]
            i = skip_ws_comments(text, close + 1)

        if i < piece_end and text[i] != "=":
            raise ParseError(f"unexpected tokens in variant '{name}'", i)
        variants.append(Variant(name=name, shape=shape, fields=fields, attributes=attrs))
    return variants


def find_item_end(text: str, i: int) -> int:
    """End of a struct or union item: past its ';' or its closing brace."""
    while True:
        i = skip_ws_comments(text, i)
        if i >= len(text):
            raise ParseError("expected ';' or '{' to end item", i)
        ch = text[i]
        if ch == ";":
            return i + 1
        if ch == "{":
            return find_matching(text, i) + 1
        if ch in "([<":
            i = find_matching(text, i) + 1
            continue
        i = max(_literal_end(text, i), i + 1)


def parse_item(text: str, attrs: List[Attribute], i: int, derives: List[str]) -> ItemDecl:
    i = skip_visibility(text, skip_ws_comments(text, i))
    keyword = _ITEM_KEYWORD_RE.match(text, i)
    if not keyword:
        raise ParseError("derive attribute must be followed by an enum, struct or union", i)

    kind = keyword.group(1)
    keyword_index = i
    i = skip_ws_comments(text, keyword.end())
    name, i = parse_identifier(text, i)

    i = skip_ws_comments(text, i)
    generics: List[GenericParam] = []
    if i < len(text) and text[i] == "<":
        close = find_matching(text, i)
        generics = parse_generic_params(text, i + 1, close)
        i = close + 1

    item = ItemDecl(
        kind=kind,
        name=name,
        start=attrs[0].start,
        end=i,
        keyword_index=keyword_index,
        attributes=attrs,
        derives=derives,
        generics=generics,
    )
    if kind != "enum":
        item.end = find_item_end(text, i)
        return item

    open_brace = next((j for j in code_positions(text, i) if text[j] == "{"), -1)
    if open_brace < 0:
        raise ParseError("expected '{' to open enum body", i)
    item.where_clause = normalize_type(code_text(text, i, open_brace))
    if item.where_clause and not item.where_clause.startswith("where "):
        raise ParseError("expected '{' to open enum body", skip_ws_comments(text, i))

    close_brace = find_matching(text, open_brace)
    item.end = close_brace + 1
    item.variants = parse_variants(text, open_brace + 1, close_brace)
    return item


def parse_all_items(text: str) -> List[ItemDecl]:
    items: List[ItemDecl] = []
    consumed_until = -1

    for pos in find_attribute_positions(text):
        if pos < consumed_until:
            continue
        attrs, after = parse_attributes(text, pos)
        consumed_until = after
        derives = requested_derives(attrs)
        if not derives:
            continue
        item = parse_item(text, attrs, after, derives)
        items.append(item)
        consumed_until = item.end

    return items


# ---------------------------------------------------------------------------
# Generation


def select_variants(item: ItemDecl, ignore_attr: str) -> Iterator[VariantEntry]:
    """Variants with a single unnamed field and without the *ignore* attribute."""
    for variant in item.variants:
        if variant.shape == "unnamed" and len(variant.fields) == 1 and not variant.has_attribute(ignore_attr):
            yield VariantEntry(variant=variant.name, payload_type=variant.fields[0])


def resolve_unique(entries: Iterable[VariantEntry]) -> List[VariantEntry]:
    records: Dict[str, Uniqueness] = {}
    for entry in entries:
        if entry.payload_type in records:
            records[entry.payload_type] = NON_UNIQUE
        else:
            records[entry.payload_type] = Uniqueness(entry)
    return [record.entry for record in records.values() if record.is_unique]


def type_args_from_parameters(params: Iterable[GenericParam]) -> List[str]:
    return [param.argument() for param in params]


def enum_self_path(name: str, params: Sequence[GenericParam]) -> str:
    if not params:
        return name
    return f"{name}<{', '.join(type_args_from_parameters(params))}>"


def impl_generics(params: Sequence[GenericParam]) -> str:
    if not params:
        return ""
    ordered = [p for p in params if p.kind == "lifetime"] + [p for p in params if p.kind != "lifetime"]
    return "<" + ", ".join(p.declaration() for p in ordered) + ">"


def fresh_lifetime(params: Sequence[GenericParam], base: str = REFERENCE_LIFETIME) -> str:
    taken = {p.name for p in params if p.kind == "lifetime"}
    candidate = base
    suffix = 2
    while candidate in taken:
        candidate = f"{base}_{suffix}"
        suffix += 1
    return candidate


def parse_reference_config(args: str, origin_index: int) -> OwnershipMode:
    commas = [i for i in code_positions(args) if args[i] == ","]
    segments = list(zip([-1] + commas, commas + [len(args)]))
    if not code_text(args, segments[-1][0] + 1, segments[-1][1]).strip():
        segments.pop()

    modes = OwnershipMode.NONE
    for comma, end in segments:
        start = comma + 1
        token = " ".join(code_text(args, start, end).split())
        token_index = next((i for i in code_positions(args, start, end) if not args[i].isspace()), start)
        m = _REFERENCE_TOKEN_RE.match(token)
        if not m:
            raise ParseError("expected 'ref', '&' or 'owned'", origin_index + token_index)
        if m.group("owned"):
            modes |= OwnershipMode.OWNED
        elif m.group("amp_mut") or m.group("ref_mut"):
            modes |= OwnershipMode.SHARED_MUT
        else:
            modes |= OwnershipMode.SHARED

    return modes or OwnershipMode.OWNED


def reference_config(item: ItemDecl) -> OwnershipMode:
    for attr in item.attributes:
        if attr.is_ident(TRY_INTO_REFERENCES):
            if attr.args is None:
                raise ParseError(f"expected '{TRY_INTO_REFERENCES}(...)' with a list of modes", attr.start)
            return parse_reference_config(attr.args, attr.args_index)
    return OwnershipMode.OWNED


def to_decorators(modes: OwnershipMode, lifetime: str) -> Iterator[Decorator]:
    """Decorators in fixed order: owned, `&'lt` and `&'lt mut`."""
    for flag in OWNERSHIP_ORDER:
        if flag not in modes:
            continue
        if flag is OwnershipMode.OWNED:
            yield OWNED
        else:
            yield Decorator(mode=flag, lifetime=lifetime)


def require_enum(item: ItemDecl, derive: str) -> None:
    if item.kind != "enum":
        raise ParseError(f"Can only derive {derive} on enums", item.keyword_index)


def derive_enum_from(item: ItemDecl) -> List[Conversion]:
    require_enum(item, DERIVE_FROM)
    enum_type = enum_self_path(item.name, item.generics)
    return [
        Conversion(
            direction="from",
            enum_name=item.name,
            enum_type=enum_type,
            variant=entry.variant,
            payload_type=entry.payload_type,
            decorator=OWNED,
            params=tuple(item.generics),
            where_clause=item.where_clause,
        )
        for entry in resolve_unique(select_variants(item, FROM_IGNORE))
    ]


def derive_enum_try_into(item: ItemDecl) -> List[Conversion]:
    require_enum(item, DERIVE_TRY_INTO)
    modes = reference_config(item)
    enum_type = enum_self_path(item.name, item.generics)
    decorators = list(to_decorators(modes, fresh_lifetime(item.generics)))

    conversions: List[Conversion] = []
    for entry in resolve_unique(select_variants(item, TRY_INTO_IGNORE)):
        for decorator in decorators:
            params = list(item.generics)
            extra = decorator.as_parameter()
            if extra is not None:
                params.append(extra)
            conversions.append(
                Conversion(
                    direction="try_into",
                    enum_name=item.name,
                    enum_type=enum_type,
                    variant=entry.variant,
                    payload_type=entry.payload_type,
                    decorator=decorator,
                    params=tuple(params),
                    where_clause=item.where_clause,
                )
            )
    return conversions


def derive_item(item: ItemDecl) -> List[Conversion]:
    conversions: List[Conversion] = []
    if DERIVE_FROM in item.derives:
        conversions.extend(derive_enum_from(item))
    if DERIVE_TRY_INTO in item.derives:
        conversions.extend(derive_enum_try_into(item))
    return conversions


# ---------------------------------------------------------------------------
# Rendering


def _impl_header(conv: Conversion, trait: str, self_type: str) -> str:
    where = f" {conv.where_clause}" if conv.where_clause else ""
    return f"impl{impl_generics(conv.params)} {trait} for {self_type}{where} {{"


def render_from(conv: Conversion) -> List[str]:
    return [
        "#[automatically_derived]",
        _impl_header(conv, f"::core::convert::From<{conv.payload_type}>", conv.enum_type),
        "    #[inline]",
        f"    fn from(item: {conv.payload_type}) -> Self {{",
        f"        Self::{conv.variant}(item)",
        "    }",
        "}",
    ]


def render_try_into(conv: Conversion) -> List[str]:
    arg = conv.argument_type
    return [
        "#[automatically_derived]",
        _impl_header(conv, f"::core::convert::TryInto<{arg}>", conv.self_type),
        "    type Error = Self;",
        "",
        "    #[inline]",
        f"    fn try_into(self) -> ::core::result::Result<{arg}, Self::Error> {{",
        f"        if let {conv.enum_name}::{conv.variant}(item) = self {{",
        "            ::core::result::Result::Ok(item)",
        "        } else {",
        "            ::core::result::Result::Err(self)",
        "        }",
        "    }",
        "}",
    ]


def render_conversion(conv: Conversion, indent: str = "") -> str:
    lines = render_from(conv) if conv.direction == "from" else render_try_into(conv)
    return "\n".join(f"{indent}{line}" if line else "" for line in lines)


def _removal_span(text: str, start: int, end: int) -> Tuple[int, int]:
    line_start = text.rfind("\n", 0, start) + 1
    line_end = text.find("\n", end)
    if line_end < 0:
        line_end = len(text)
    if not text[line_start:start].strip() and not text[end:line_end].strip():
        return line_start, min(line_end + 1, len(text))
    while end < len(text) and text[end] in " \t":
        end += 1
    return start, end


def attribute_edits(text: str, item: ItemDecl) -> List[Tuple[int, int, str]]:
    edits: List[Tuple[int, int, str]] = []
    helper_attrs = list(item.attributes)
    for variant in item.variants:
        helper_attrs.extend(variant.attributes)

    for attr in helper_attrs:
        if attr.path in HELPER_ATTRIBUTES:
            start, end = _removal_span(text, attr.start, attr.end)
            edits.append((start, end, ""))
        elif attr.is_ident("derive") and requested_derives([attr]):
            args = attr.args or ""
            kept = [
                args[s:e]
                for s, e in split_top_level(args, 0, len(args), angles=False)
                if code_text(args, s, e).split("::")[-1].strip() not in GENERATED_DERIVES
            ]
            if kept:
                edits.append((attr.start, attr.end, f"#[derive({', '.join(kept)})]"))
            else:
                start, end = _removal_span(text, attr.start, attr.end)
                edits.append((start, end, ""))
    return sorted(edits)


def trailing_comment_end(text: str, end: int) -> int:
    """End of the line holding ``end`` if only comments follow it there, else ``end``."""
    line_end = text.find("\n", end)
    if line_end < 0:
        line_end = len(text)
    i = end
    seen_comment = False
    while i < line_end:
        if text[i] in " \t\r":
            i += 1
        elif text.startswith("//", i):
            return line_end
        elif text.startswith("/*", i):
            i = skip_block_comment(text, i)
            seen_comment = True
        else:
            return end
    if seen_comment and i == line_end:
        return line_end
    return end


def render_item(text: str, item: ItemDecl) -> Tuple[int, int, str]:
    """Rewritten source span for ``item``: the cleaned enum plus its impls."""
    line_start = text.rfind("\n", 0, item.start) + 1
    prefix = text[line_start : item.start]
    indent = prefix if not prefix.strip() else ""

    edits = attribute_edits(text, item)
    # a removed leading attribute takes its whole line, indentation included
    start = min([item.start] + [edit_start for edit_start, _, _ in edits])
    pieces: List[str] = []
    cursor = start
    for edit_start, edit_end, replacement in edits:
        pieces.append(text[cursor:edit_start])
        pieces.append(replacement)
        cursor = edit_end
    end = trailing_comment_end(text, item.end)
    pieces.append(text[cursor:end])

    body = "".join(pieces)
    rendered = [render_conversion(conv, indent) for conv in derive_item(item)]
    if rendered:
        body += "\n\n" + "\n\n".join(rendered)
    return start, end, body


def apply_substitutions(source: str, items: Sequence[ItemDecl]) -> str:
    pieces: List[str] = []
    cursor = 0

    for item in items:
        start, end, replacement = render_item(source, item)
        pieces.append(source[cursor:start])
        pieces.append(replacement)
        cursor = end

    pieces.append(source[cursor:])
    return "".join(pieces)


def compute_file_digest(source_bytes: bytes) -> str:
    h = hashlib.sha256()
    h.update(GENERATOR_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(FORMAT_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(source_bytes)
    return h.hexdigest()


def render_file(source_path: pathlib.Path, source_text: str, source_bytes: bytes) -> str:
    items = parse_all_items(source_text)
    transformed = apply_substitutions(source_text, items)
    digest = compute_file_digest(source_bytes)
    source_label = str(source_path)
    try:
        source_label = str(source_path.resolve().relative_to(pathlib.Path.cwd().resolve()))
    except ValueError:
        source_label = str(source_path.resolve())

    meta = (
        "// enum-conv-generated\n"
        f"// source: {source_label}\n"
        f"// generator_version: {GENERATOR_VERSION}\n"
        f"// format_version: {FORMAT_VERSION}\n"
        f"// digest: {digest}\n\n"
    )
    return meta + transformed


def extract_existing_digest(text: str) -> str | None:
    m = DIGEST_PATTERN.search(text)
    if not m:
        return None
    return m.group(1)


def run(args: argparse.Namespace) -> int:
    in_path = pathlib.Path(args.input)
    out_path = pathlib.Path(args.output)

    if not in_path.exists():
        print(f"error: input file does not exist: {in_path}", file=sys.stderr)
        return 1

    source_bytes = in_path.read_bytes()
    source_text = source_bytes.decode("utf-8")

    try:
        rendered = render_file(in_path, source_text, source_bytes)
    except ParseError as e:
        fail(in_path, source_text, e)
        return 1

    if args.check:
        if not out_path.exists():
            print(f"{out_path} is missing (run generator)", file=sys.stderr)
            return 1
        existing = out_path.read_text(encoding="utf-8")
        if existing != rendered:
            print(f"{out_path} is out of date (run generator)", file=sys.stderr)
            return 1
        print(f"up-to-date: {out_path}")
        return 0

    if out_path.exists():
        existing = out_path.read_text(encoding="utf-8")
        old_digest = extract_existing_digest(existing)
        new_digest = extract_existing_digest(rendered)
        if old_digest and new_digest and old_digest == new_digest:
            print(f"unchanged: {out_path}")
            return 0
        if existing == rendered:
            print(f"unchanged: {out_path}")
            return 0

    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(rendered, encoding="utf-8")
    print(f"generated: {out_path}")
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate From/TryInto impls for Rust enums from .rs.in sources")
    parser.add_argument("--in", dest="input", required=True, help="Input .rs.in file")
    parser.add_argument("--out", dest="output", required=True, help="Output generated .rs file")
    parser.add_argument("--check", action="store_true", help="Check output is up to date")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    return run(build_arg_parser().parse_args(argv))


if __name__ == "__main__":
    raise SystemExit(main())
