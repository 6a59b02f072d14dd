"""
Anchor Source Parser

Turns a single Anchor program compilation unit into raw structural items:
accounts structs (with their constraint attributes), storage structs, event
structs and the handlers of the `#[program]` module, each handler body split
into statements in textual order.

Everything is located by character offsets into the ORIGINAL source. Parsing
runs over a masked copy in which comments and string contents are blanked
out with spaces, so offsets stay aligned and delimiters inside literals never
confuse brace matching.

The model builder (services/model_builder.py) turns these raw items into the
typed ProgramModel.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from anchorlens.models import Span
from anchorlens.utils.errors import ParseError

OPENERS = {"(": ")", "[": "]", "{": "}"}
CLOSERS = {")": "(", "]": "[", "}": "{"}

_BLOCK_KEYWORDS = ("if", "for", "while", "loop", "match", "unsafe")
_LOOP_KEYWORDS = ("for", "while", "loop")

_PROGRAM_RE = re.compile(r"#\[program\]\s*pub\s+mod\s+(\w+)\s*\{")
_STRUCT_RE = re.compile(r"pub\s+struct\s+(\w+)\s*(<[^{;]*>)?\s*\{")
_HANDLER_RE = re.compile(r"pub\s+fn\s+(\w+)\s*(<[^(]*>)?\s*\(")
_FIELD_RE = re.compile(r"(?:pub(?:\([^)]*\))?\s+)?(\w+)\s*:(?!:)")
_LIFETIME_RE = re.compile(r"'\w+")


def _line_at(source: str, offset: int) -> int:
    return source.count("\n", 0, offset) + 1


def mask_source(source: str) -> str:
    """Blank out comments and string/char literal contents, preserving offsets and newlines."""
    out = list(source)
    n = len(source)
    i = 0

    def blank(a: int, b: int) -> None:
        for k in range(a, b):
            if out[k] != "\n":
                out[k] = " "

    while i < n:
        c = source[i]
        nxt = source[i + 1] if i + 1 < n else ""

        if c == "/" and nxt == "/":
            end = source.find("\n", i)
            end = n if end == -1 else end
            blank(i, end)
            i = end
            continue

        if c == "/" and nxt == "*":
            depth = 1
            j = i + 2
            while j < n and depth > 0:
                if source.startswith("/*", j):
                    depth += 1
                    j += 2
                elif source.startswith("*/", j):
                    depth -= 1
                    j += 2
                else:
                    j += 1
            if depth > 0:
                raise ParseError("Unterminated block comment", Span(start=i, end=n), _line_at(source, i))
            blank(i, j)
            i = j
            continue

        # Raw strings: r"..", r#".."#, br#".."#
        raw = re.match(r'b?r(#*)"', source[i:i + 8]) if c in "br" else None
        if raw and (i == 0 or not (source[i - 1].isalnum() or source[i - 1] == "_")):
            hashes = raw.group(1)
            content_start = i + raw.end()
            terminator = '"' + hashes
            end = source.find(terminator, content_start)
            if end == -1:
                raise ParseError("Unterminated raw string literal", Span(start=i, end=n), _line_at(source, i))
            blank(content_start, end)
            i = end + len(terminator)
            continue

        if c == '"':
            j = i + 1
            while j < n and source[j] != '"':
                j += 2 if source[j] == "\\" else 1
            if j >= n:
                raise ParseError("Unterminated string literal", Span(start=i, end=n), _line_at(source, i))
            blank(i + 1, j)
            i = j + 1
            continue

        if c == "'":
            # Char literal ('a', '\n', '\u{..}') versus lifetime ('info)
            if nxt == "\\":
                end = source.find("'", i + 2)
                if end == -1:
                    raise ParseError("Unterminated char literal", Span(start=i, end=n), _line_at(source, i))
                blank(i + 1, end)
                i = end + 1
                continue
            if i + 2 < n and source[i + 2] == "'":
                blank(i + 1, i + 2)
                i += 3
                continue

        i += 1

    return "".join(out)


def check_balance(source: str, masked: str) -> None:
    stack: List[Tuple[str, int]] = []
    for i, c in enumerate(masked):
        if c in OPENERS:
            stack.append((c, i))
        elif c in CLOSERS:
            if not stack:
                raise ParseError(f"Unmatched closing '{c}'", Span(start=i, end=i + 1), _line_at(source, i))
            opener, pos = stack.pop()
            if opener != CLOSERS[c]:
                raise ParseError(
                    f"Mismatched delimiter: '{opener}' opened at line {_line_at(source, pos)} closed by '{c}'",
                    Span(start=i, end=i + 1),
                    _line_at(source, i),
                )
    if stack:
        opener, pos = stack[-1]
        raise ParseError(f"Unclosed '{opener}'", Span(start=pos, end=len(source)), _line_at(source, pos))


def match_delim(masked: str, open_idx: int) -> int:
    """Index of the delimiter closing the one at open_idx. Input must be balanced."""
    depth = 0
    for i in range(open_idx, len(masked)):
        c = masked[i]
        if c in OPENERS:
            depth += 1
        elif c in CLOSERS:
            depth -= 1
            if depth == 0:
                return i
    return len(masked) - 1


def split_top_level(masked: str, start: int, end: int, sep: str = ",", angle: bool = False) -> List[Tuple[int, int]]:
    """Split masked[start:end] on `sep` at nesting depth zero. Returns trimmed (start, end) pairs."""
    parts = []
    depth = 0
    seg = start
    for i in range(start, end):
        c = masked[i]
        if c in OPENERS or (angle and c == "<"):
            depth += 1
        elif c in CLOSERS or (angle and c == ">" and masked[i - 1] != "-"):
            depth -= 1
        elif c == sep and depth == 0:
            parts.append((seg, i))
            seg = i + 1
    parts.append((seg, end))

    trimmed = []
    for a, b in parts:
        while a < b and masked[a].isspace():
            a += 1
        while b > a and masked[b - 1].isspace():
            b -= 1
        if a < b:
            trimmed.append((a, b))
    return trimmed


_PREFIX_KEYWORDS = {"return", "in", "let", "mut", "as", "if", "else", "match", "break"}


def find_binary_operators(masked: str) -> List[Tuple[int, str]]:
    """Offsets of raw binary arithmetic operators (+ - * / %) in a masked expression."""
    found = []
    n = len(masked)
    for i, c in enumerate(masked):
        if c not in "+-*/%":
            continue
        nxt = masked[i + 1] if i + 1 < n else ""
        if nxt == "=" or (c == "-" and nxt == ">"):
            continue
        j = i - 1
        while j >= 0 and masked[j].isspace():
            j -= 1
        if j < 0:
            continue
        prev = masked[j]
        if not (prev.isalnum() or prev in "_)]?"):
            continue
        word = re.search(r"(\w+)$", masked[:j + 1])
        if word and word.group(1) in _PREFIX_KEYWORDS:
            continue
        found.append((i, c))
    return found


def find_assignment(masked: str) -> Optional[Tuple[int, str]]:
    """
    Locate the top-level assignment operator of a statement.
    Returns (offset of '=', compound operator char or '').
    """
    depth = 0
    for i, c in enumerate(masked):
        if c in OPENERS:
            depth += 1
        elif c in CLOSERS:
            depth -= 1
        elif c == "=" and depth == 0:
            prev = masked[i - 1] if i > 0 else ""
            nxt = masked[i + 1] if i + 1 < len(masked) else ""
            if nxt in "=>" or prev in "=!<>":
                continue
            if prev in "+-*/%":
                return i, prev
            return i, ""
    return None


# ── Raw items ─────────────────────────────────────────────────────────────────

@dataclass
class RawAttribute:
    span: Span
    name: str           # "account", "instruction", "max_len", ...
    args_span: Optional[Span] = None  # inside the parentheses, if any


@dataclass
class AttributeItem:
    span: Span
    key: str
    value: str = ""     # original text after '=' (empty for bare flags)
    value_span: Optional[Span] = None


@dataclass
class RawField:
    name: str
    type_text: str
    type_span: Span
    span: Span          # first attribute (or name) to end of type
    attributes: List[RawAttribute] = field(default_factory=list)
    leading_text: str = ""  # original text between previous field and this one (doc comments)


@dataclass
class RawStruct:
    name: str
    span: Span
    body_span: Span
    attributes: List[RawAttribute] = field(default_factory=list)
    fields: List[RawField] = field(default_factory=list)


@dataclass
class RawStatement:
    span: Span
    in_loop: bool = False
    block: Optional[str] = None    # keyword for block statements
    is_guard: bool = False         # `if .. { return err!(..) }`


@dataclass
class RawHandler:
    name: str
    span: Span
    params: List[Tuple[str, str]]
    context: str
    body_span: Span
    statements: List[RawStatement] = field(default_factory=list)


class AnchorAST:
    """
    Structural representation of an Anchor program.

    Raises ParseError for source that cannot be modeled.
    """

    def __init__(self, source: str):
        self.source = source
        self.masked = mask_source(source)
        check_balance(source, self.masked)

        self.program_name: str = ""
        self.program_span: Optional[Span] = None
        self.accounts_structs: Dict[str, RawStruct] = {}
        self.state_structs: Dict[str, RawStruct] = {}
        self.event_structs: Dict[str, RawStruct] = {}
        self.handlers: List[RawHandler] = []

        self._attr_by_end: Dict[int, RawAttribute] = {}
        self._parse()

    # ── helpers ──────────────────────────────────────────────────────────────

    def text(self, span: Span) -> str:
        return self.source[span.start:span.end]

    def line_of(self, offset: int) -> int:
        return _line_at(self.source, offset)

    def _error(self, message: str, start: int, end: int) -> ParseError:
        return ParseError(message, Span(start=start, end=end), self.line_of(start))

    def _make_attribute(self, start: int) -> RawAttribute:
        # start points at '#'
        bracket = self.masked.index("[", start)
        close = match_delim(self.masked, bracket)
        inner_start = bracket + 1
        m = re.match(r"\s*([\w:]+)\s*(\()?", self.masked[inner_start:close])
        name = m.group(1) if m else ""
        args_span = None
        if m and m.group(2):
            paren = inner_start + m.end() - 1
            paren_close = match_delim(self.masked, paren)
            args_span = Span(start=paren + 1, end=paren_close)
        return RawAttribute(span=Span(start=start, end=close + 1), name=name, args_span=args_span)

    def _leading_attributes(self, pos: int) -> List[RawAttribute]:
        attrs: List[RawAttribute] = []
        i = pos - 1
        while True:
            while i >= 0 and self.masked[i].isspace():
                i -= 1
            attr = self._attr_by_end.get(i + 1)
            if attr is None:
                break
            attrs.insert(0, attr)
            i = attr.span.start - 1
        return attrs

    def _skip_ws(self, i: int, end: int) -> int:
        while i < end and self.masked[i].isspace():
            i += 1
        return i

    # ── top level ────────────────────────────────────────────────────────────

    def _parse(self) -> None:
        for m in re.finditer(r"#!?\[", self.masked):
            attr = self._make_attribute(m.start())
            self._attr_by_end[attr.span.end] = attr

        for m in _STRUCT_RE.finditer(self.masked):
            attrs = self._leading_attributes(m.start())
            names = {a.name for a in attrs}
            open_idx = m.end() - 1
            close = match_delim(self.masked, open_idx)
            struct = RawStruct(
                name=m.group(1),
                span=Span(start=attrs[0].span.start if attrs else m.start(), end=close + 1),
                body_span=Span(start=open_idx + 1, end=close),
                attributes=attrs,
            )
            derives_accounts = any(
                a.name == "derive" and a.args_span and "Accounts" in self.masked[a.args_span.start:a.args_span.end]
                for a in attrs
            )
            if derives_accounts:
                struct.fields = self._parse_fields(struct.body_span, angle=True)
                self.accounts_structs[struct.name] = struct
            elif "account" in names:
                struct.fields = self._parse_fields(struct.body_span, angle=True)
                self.state_structs[struct.name] = struct
            elif "event" in names:
                struct.fields = self._parse_fields(struct.body_span, angle=True)
                self.event_structs[struct.name] = struct

        program = _PROGRAM_RE.search(self.masked)
        if not program:
            raise ParseError("No #[program] module found", Span(start=0, end=len(self.source)), 1)
        self.program_name = program.group(1)
        open_idx = program.end() - 1
        close = match_delim(self.masked, open_idx)
        self.program_span = Span(start=program.start(), end=close + 1)

        for m in _HANDLER_RE.finditer(self.masked, open_idx + 1, close):
            self.handlers.append(self._parse_handler(m, close))

    def _parse_fields(self, body: Span, angle: bool) -> List[RawField]:
        fields: List[RawField] = []
        i = body.start
        end = body.end
        prev_end = body.start
        pending: List[RawAttribute] = []

        while True:
            i = self._skip_ws(i, end)
            if i >= end:
                break
            if self.masked.startswith("#[", i):
                attr = self._attr_by_end.get(match_delim(self.masked, i + 1) + 1) or self._make_attribute(i)
                pending.append(attr)
                i = attr.span.end
                continue
            m = _FIELD_RE.match(self.masked, i, end)
            if not m:
                raise self._error("Unexpected token in struct body", i, min(i + 1, end))

            type_start = self._skip_ws(m.end(), end)
            type_end = type_start
            depth = 0
            while type_end < end:
                c = self.masked[type_end]
                if c in OPENERS or (angle and c == "<"):
                    depth += 1
                elif c in CLOSERS or (angle and c == ">"):
                    depth -= 1
                elif c == "," and depth == 0:
                    break
                type_end += 1
            stripped_end = type_end
            while stripped_end > type_start and self.masked[stripped_end - 1].isspace():
                stripped_end -= 1
            if stripped_end == type_start:
                raise self._error(f"Missing type for field '{m.group(1)}'", m.start(), m.end())

            region_start = pending[0].span.start if pending else m.start()
            fields.append(RawField(
                name=m.group(1),
                type_text=self.source[type_start:stripped_end],
                type_span=Span(start=type_start, end=stripped_end),
                span=Span(start=region_start, end=stripped_end),
                attributes=pending,
                leading_text=self.source[prev_end:m.start()],
            ))
            pending = []
            i = type_end + 1
            prev_end = i

        return fields

    # ── handlers ─────────────────────────────────────────────────────────────

    def _parse_handler(self, m: "re.Match", module_end: int) -> RawHandler:
        name = m.group(1)
        paren = m.end() - 1
        paren_close = match_delim(self.masked, paren)

        params: List[Tuple[str, str]] = []
        for a, b in split_top_level(self.masked, paren + 1, paren_close, angle=True):
            pm = re.match(r"\s*(?:mut\s+)?(\w+)\s*:\s*", self.masked[a:b])
            if not pm:
                raise self._error(f"Malformed parameter in handler '{name}'", a, b)
            params.append((pm.group(1), self.source[a + pm.end():b].strip()))

        context = ""
        for pname, ptype in params:
            cm = re.match(r"Context\s*<(.*)>\s*$", ptype, re.DOTALL)
            if cm:
                inner = _LIFETIME_RE.sub("", cm.group(1))
                idents = re.findall(r"[A-Za-z_]\w*", inner)
                if idents:
                    context = idents[0]
                break
        if not context:
            raise self._error(f"Handler '{name}' has no Context<..> parameter", m.start(), paren_close + 1)
        if context not in self.accounts_structs:
            raise self._error(
                f"Handler '{name}' references undefined accounts struct '{context}'",
                m.start(),
                paren_close + 1,
            )

        body_open = self.masked.find("{", paren_close, module_end)
        if body_open == -1:
            raise self._error(f"Handler '{name}' has no body", m.start(), paren_close + 1)
        body_close = match_delim(self.masked, body_open)

        handler = RawHandler(
            name=name,
            span=Span(start=m.start(), end=body_close + 1),
            params=[(p, t) for p, t in params if not t.startswith("Context")],
            context=context,
            body_span=Span(start=body_open + 1, end=body_close),
        )
        self._walk_block(body_open + 1, body_close, False, handler.statements)
        return handler

    def split_statements(self, start: int, end: int) -> List[Tuple[int, int]]:
        """Split a block body into top-level statements, keeping textual order."""
        spans = []
        depth = 0
        seg = start
        i = start
        while i < end:
            c = self.masked[i]
            if c in OPENERS:
                depth += 1
            elif c in CLOSERS:
                depth -= 1
                if c == "}" and depth == 0:
                    j = self._skip_ws(i + 1, end)
                    follows = self.masked[j:j + 4]
                    if not (follows.startswith("else") or follows[:1] in (".", ";", "?", ")", ",")):
                        spans.append((seg, i + 1))
                        seg = i + 1
            elif c == ";" and depth == 0:
                spans.append((seg, i + 1))
                seg = i + 1
            i += 1
        spans.append((seg, end))

        trimmed = []
        for a, b in spans:
            a = self._skip_ws(a, b)
            while b > a and self.masked[b - 1].isspace():
                b -= 1
            if a < b:
                trimmed.append((a, b))
        return trimmed

    def _top_level_blocks(self, start: int, end: int) -> List[Tuple[int, int]]:
        blocks = []
        i = start
        while i < end:
            c = self.masked[i]
            if c == "{":
                close = match_delim(self.masked, i)
                blocks.append((i, close))
                i = close + 1
                continue
            if c in "([":
                i = match_delim(self.masked, i) + 1
                continue
            i += 1
        return blocks

    def _walk_block(self, start: int, end: int, in_loop: bool, out: List[RawStatement]) -> None:
        for a, b in self.split_statements(start, end):
            text = self.masked[a:b]
            head = re.match(r"(" + "|".join(_BLOCK_KEYWORDS) + r")\b", text)
            blocks = self._top_level_blocks(a, b) if (head or text.startswith("{")) else []
            if not blocks:
                out.append(RawStatement(span=Span(start=a, end=b), in_loop=in_loop))
                continue

            keyword = head.group(1) if head else "block"
            is_guard = keyword == "if" and bool(re.search(r"\breturn\s+(?:err!|Err\s*\()", self.source[a:b]))
            out.append(RawStatement(span=Span(start=a, end=b), in_loop=in_loop, block=keyword, is_guard=is_guard))
            body_loop = in_loop or keyword in _LOOP_KEYWORDS
            for open_idx, close in blocks:
                self._walk_block(open_idx + 1, close, body_loop, out)

    # ── attribute helpers used by the model builder ──────────────────────────

    def attribute_items(self, attr: RawAttribute) -> List["AttributeItem"]:
        """Split `#[account(a, b = c, ...)]` into items, keeping spans for keys and values."""
        if attr.args_span is None:
            return []
        items = []
        for a, b in split_top_level(self.masked, attr.args_span.start, attr.args_span.end):
            raw = self.masked[a:b]
            eq = re.match(r"\s*([\w:]+)\s*=(?!=)\s*", raw)
            if eq:
                items.append(AttributeItem(
                    span=Span(start=a, end=b),
                    key=eq.group(1),
                    value=self.source[a + eq.end():b].strip(),
                    value_span=Span(start=a + eq.end(), end=b),
                ))
            else:
                items.append(AttributeItem(span=Span(start=a, end=b), key=raw.strip()))
        return items

    def parse_params(self, span: Span) -> List[Tuple[str, str]]:
        params = []
        for a, b in split_top_level(self.masked, span.start, span.end, angle=True):
            pm = re.match(r"\s*(?:mut\s+)?(\w+)\s*:\s*", self.masked[a:b])
            if pm:
                params.append((pm.group(1), self.source[a + pm.end():b].strip()))
        return params
