"""Structural fact extraction for control-logic snapshots.

The extractor does not implement the full IEC 61131-3 grammar. It tokenizes each
file with a small per-dialect profile and records only what the safety checks and
the chunked rollout need: block boundaries, declarations (with ``AT`` address
mappings), assignment targets, direct I/O usages and calls.

Extraction is a pure function of the snapshot text. It never raises: a broken
declaration block discards that file's declarations and leaves an info note.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import hashlib
import json
import re
from typing import Any

from logic_deploy.core.errors import ExtractionDegraded


RESERVED_WORDS = frozenset(
    {
        # keywords
        "IF", "THEN", "ELSE", "ELSIF", "END_IF", "CASE", "OF", "END_CASE", "FOR", "TO", "BY", "DO",
        "END_FOR", "WHILE", "END_WHILE", "REPEAT", "UNTIL", "END_REPEAT", "EXIT", "RETURN", "CONTINUE",
        "PROGRAM", "END_PROGRAM", "FUNCTION", "END_FUNCTION", "FUNCTION_BLOCK", "END_FUNCTION_BLOCK",
        "ORGANIZATION_BLOCK", "END_ORGANIZATION_BLOCK", "DATA_BLOCK", "END_DATA_BLOCK", "BEGIN",
        "VAR", "VAR_INPUT", "VAR_OUTPUT", "VAR_IN_OUT", "VAR_GLOBAL", "VAR_TEMP", "VAR_EXTERNAL",
        "VAR_STAT", "VAR_CONFIG", "END_VAR", "CONSTANT", "RETAIN", "NON_RETAIN", "PERSISTENT", "AT",
        "TYPE", "END_TYPE", "STRUCT", "END_STRUCT", "ARRAY", "STRING", "WSTRING", "TRUE", "FALSE",
        "CONFIGURATION", "END_CONFIGURATION", "RESOURCE", "END_RESOURCE", "ON", "TASK", "WITH",
        "METHOD", "END_METHOD", "POINTER", "REF_TO",
        # built-in types
        "BOOL", "BYTE", "WORD", "DWORD", "LWORD", "SINT", "INT", "DINT", "LINT", "USINT", "UINT",
        "UDINT", "ULINT", "REAL", "LREAL", "TIME", "LTIME", "DATE", "TIME_OF_DAY", "TOD",
        "DATE_AND_TIME", "DT", "CHAR", "WCHAR",
        # operator mnemonics
        "AND", "OR", "XOR", "NOT", "MOD", "LD", "LDN", "ST", "STN", "S", "R", "ANDN", "ORN", "XORN",
        "ADD", "SUB", "MUL", "DIV", "GT", "GE", "EQ", "NE", "LE", "LT", "JMP", "JMPC", "JMPCN",
        "CAL", "CALC", "CALCN", "RET", "RETC", "RETCN",
    }
)

BUILTIN_TYPES = frozenset(
    {
        "BOOL", "BYTE", "WORD", "DWORD", "LWORD", "SINT", "INT", "DINT", "LINT", "USINT", "UINT",
        "UDINT", "ULINT", "REAL", "LREAL", "TIME", "LTIME", "DATE", "TIME_OF_DAY", "TOD",
        "DATE_AND_TIME", "DT", "CHAR", "WCHAR", "STRING", "WSTRING",
    }
)

STANDARD_FUNCTION_BLOCKS = frozenset({"TON", "TOF", "TP", "CTU", "CTD", "CTUD", "R_TRIG", "F_TRIG", "SR", "RS"})

VAR_SECTION_KEYWORDS = frozenset(
    {"VAR", "VAR_INPUT", "VAR_OUTPUT", "VAR_IN_OUT", "VAR_GLOBAL", "VAR_TEMP", "VAR_EXTERNAL", "VAR_STAT", "VAR_CONFIG"}
)
DECLARATION_QUALIFIERS = frozenset({"CONSTANT", "RETAIN", "NON_RETAIN", "PERSISTENT"})
LOOP_KEYWORDS = frozenset({"FOR", "WHILE", "REPEAT"})
MATH_FUNCTIONS = frozenset({"SIN", "COS", "TAN", "ASIN", "ACOS", "ATAN", "SQRT", "EXP", "LN", "LOG", "EXPT"})
STRING_FUNCTIONS = frozenset({"CONCAT", "INSERT", "DELETE", "FIND", "REPLACE", "LEFT", "RIGHT", "MID", "LEN"})

PROGRAM = "program"
FUNCTION = "function"
FUNCTION_BLOCK = "function_block"


@dataclass(frozen=True)
class DialectProfile:
    name: str
    extensions: tuple[str, ...]
    block_openers: dict[str, str]
    block_closers: dict[str, str]
    quoted_identifiers: bool = False
    address_aliases: dict[str, str] = field(default_factory=dict)


_IEC_OPENERS = {"PROGRAM": PROGRAM, "FUNCTION": FUNCTION, "FUNCTION_BLOCK": FUNCTION_BLOCK}
_IEC_CLOSERS = {"END_PROGRAM": PROGRAM, "END_FUNCTION": FUNCTION, "END_FUNCTION_BLOCK": FUNCTION_BLOCK}

DIALECTS: dict[str, DialectProfile] = {
    "iec-st": DialectProfile(
        name="iec-st",
        extensions=(".st", ".iecst"),
        block_openers=_IEC_OPENERS,
        block_closers=_IEC_CLOSERS,
    ),
    "codesys": DialectProfile(
        name="codesys",
        extensions=(".st", ".exp"),
        block_openers=_IEC_OPENERS,
        block_closers=_IEC_CLOSERS,
    ),
    "siemens-scl": DialectProfile(
        name="siemens-scl",
        extensions=(".scl",),
        block_openers={**_IEC_OPENERS, "ORGANIZATION_BLOCK": PROGRAM},
        block_closers={**_IEC_CLOSERS, "END_ORGANIZATION_BLOCK": PROGRAM},
        quoted_identifiers=True,
        # German mnemonics: E(ingang) = input, A(usgang) = output.
        address_aliases={"E": "I", "A": "Q"},
    ),
}
DEFAULT_DIALECT = "iec-st"


@dataclass(frozen=True)
class LogicFile:
    path: str
    dialect: str
    content: str
    size_bytes: int | None = None
    last_modified: datetime | None = None

    @property
    def size(self) -> int:
        if self.size_bytes is not None:
            return self.size_bytes
        return len(self.content.encode("utf-8"))


@dataclass(frozen=True)
class Snapshot:
    snapshot_id: str
    version_id: str
    files: tuple[LogicFile, ...]


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    line: int

    @property
    def upper(self) -> str:
        return self.value.upper()

    def is_symbol(self, value: str) -> bool:
        return self.kind == "symbol" and self.value == value


@dataclass(frozen=True)
class ExtractionNote:
    file_path: str
    code: str
    message: str
    line: int | None = None
    level: str = "info"

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_path": self.file_path,
            "code": self.code,
            "message": self.message,
            "line": self.line,
            "level": self.level,
        }


@dataclass(frozen=True)
class Declaration:
    name: str
    declared_name: str
    data_type: str
    file_path: str
    line: int
    section: str
    block_name: str | None = None
    address: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "declared_name": self.declared_name,
            "data_type": self.data_type,
            "file_path": self.file_path,
            "line": self.line,
            "section": self.section,
            "block_name": self.block_name,
            "address": self.address,
        }


@dataclass(frozen=True)
class DuplicateDeclaration:
    name: str
    file_path: str
    line: int
    first_line: int
    block_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "file_path": self.file_path,
            "line": self.line,
            "first_line": self.first_line,
            "block_name": self.block_name,
        }


@dataclass(frozen=True)
class BlockFact:
    kind: str
    name: str
    file_path: str
    start_line: int
    end_line: int | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "file_path": self.file_path,
            "start_line": self.start_line,
            "end_line": self.end_line,
        }


@dataclass(frozen=True)
class WriteFact:
    target: str
    file_path: str
    line: int
    block_name: str | None
    is_address: bool = False

    @property
    def writer(self) -> tuple[str, str]:
        return self.file_path, self.block_name or "<file>"

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "file_path": self.file_path,
            "line": self.line,
            "block_name": self.block_name,
            "is_address": self.is_address,
        }


@dataclass(frozen=True)
class IoUsage:
    address: str
    access: str
    file_path: str
    line: int
    block_name: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "access": self.access,
            "file_path": self.file_path,
            "line": self.line,
            "block_name": self.block_name,
        }


@dataclass(frozen=True)
class FileFacts:
    path: str
    dialect: str
    size_bytes: int
    line_count: int
    declarations: tuple[Declaration, ...]
    duplicates: tuple[DuplicateDeclaration, ...]
    blocks: tuple[BlockFact, ...]
    writes: tuple[WriteFact, ...]
    io_usages: tuple[IoUsage, ...]
    calls: tuple[str, ...]
    type_references: tuple[str, ...]
    notes: tuple[ExtractionNote, ...]
    loop_count: int = 0
    math_op_count: int = 0
    string_op_count: int = 0
    statement_count: int = 0
    rejected_identifiers: int = 0

    @property
    def declarations_degraded(self) -> bool:
        return any(note.code in DEGRADING_NOTE_CODES for note in self.notes)

    def block_count(self, kind: str) -> int:
        return sum(1 for block in self.blocks if block.kind == kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "dialect": self.dialect,
            "size_bytes": self.size_bytes,
            "line_count": self.line_count,
            "declarations": [item.to_dict() for item in self.declarations],
            "duplicates": [item.to_dict() for item in self.duplicates],
            "blocks": [item.to_dict() for item in self.blocks],
            "writes": [item.to_dict() for item in self.writes],
            "io_usages": [item.to_dict() for item in self.io_usages],
            "calls": list(self.calls),
            "type_references": list(self.type_references),
            "notes": [item.to_dict() for item in self.notes],
            "loop_count": self.loop_count,
            "math_op_count": self.math_op_count,
            "string_op_count": self.string_op_count,
            "statement_count": self.statement_count,
            "rejected_identifiers": self.rejected_identifiers,
        }


DEGRADING_NOTE_CODES = frozenset({"malformed_declaration", "unterminated_var_section"})
STRUCTURAL_NOTE_CODES = DEGRADING_NOTE_CODES | {"unbalanced_block", "unterminated_comment"}


@dataclass(frozen=True)
class ExtractedFacts:
    snapshot_id: str
    version_id: str
    files: tuple[FileFacts, ...]
    declarations: tuple[Declaration, ...]
    notes: tuple[ExtractionNote, ...]
    totals: dict[str, int]

    @property
    def program_count(self) -> int:
        return self.totals["programs"]

    @property
    def function_count(self) -> int:
        return self.totals["functions"]

    @property
    def function_block_count(self) -> int:
        return self.totals["function_blocks"]

    @property
    def degraded(self) -> bool:
        return any(item.declarations_degraded for item in self.files)

    def declaration(self, name: str) -> Declaration | None:
        wanted = name.upper()
        for item in self.declarations:
            if item.name == wanted:
                return item
        return None

    def all_declarations(self) -> list[Declaration]:
        return [item for file_facts in self.files for item in file_facts.declarations]

    def io_mappings(self) -> list[Declaration]:
        return [item for item in self.all_declarations() if item.address]

    def all_writes(self) -> list[WriteFact]:
        return [item for file_facts in self.files for item in file_facts.writes]

    def file_dependencies(self) -> dict[str, tuple[str, ...]]:
        """Map each file to the files defining the functions/function blocks it uses."""
        owners: dict[str, str] = {}
        for file_facts in self.files:
            for block in file_facts.blocks:
                if block.kind in {FUNCTION, FUNCTION_BLOCK}:
                    owners.setdefault(block.name.upper(), file_facts.path)

        dependencies: dict[str, tuple[str, ...]] = {}
        for file_facts in self.files:
            required = set()
            for ref in (*file_facts.type_references, *file_facts.calls):
                owner = owners.get(ref)
                if owner is not None and owner != file_facts.path:
                    required.add(owner)
            dependencies[file_facts.path] = tuple(sorted(required))
        return dependencies

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "version_id": self.version_id,
            "files": [item.to_dict() for item in self.files],
            "declarations": [item.to_dict() for item in self.declarations],
            "notes": [item.to_dict() for item in self.notes],
            "totals": dict(self.totals),
        }

    def fingerprint(self) -> str:
        body = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(body.encode("utf-8")).hexdigest()

    def summary(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint(),
            "totals": dict(self.totals),
            "notes": [item.to_dict() for item in self.notes],
            "degraded": self.degraded,
        }


_TOKEN_RE = re.compile(
    r"""
    (?P<newline>\n)
    |(?P<space>[ \t\r\f\v]+)
    |(?P<line_comment>//[^\n]*)
    |(?P<open_comment>\(\*|/\*|\{)
    |(?P<address>%[A-Za-z]{1,2}[0-9]+(?:\.[0-9]+)*)
    |(?P<string>'(?:\$.|[^'$\n])*'|"(?:\$.|[^"$\n])*")
    |(?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<number>[0-9][0-9_]*(?:\.[0-9][0-9_]*)?(?:[eE][+-]?[0-9]+)?)
    |(?P<symbol>:=|=>|\.\.|<=|>=|<>|\*\*|[:;,()\[\].=<>+\-*/&#^@])
    |(?P<other>.)
    """,
    re.VERBOSE,
)
_COMMENT_CLOSERS = {"(*": "*)", "/*": "*/", "{": "}"}
_ADDRESS_RE = re.compile(r"^%([A-Z])([XBWDL]?)([0-9]+(?:\.[0-9]+)*)$")


def resolve_dialect(name: str | None) -> DialectProfile | None:
    if not name:
        return None
    return DIALECTS.get(name.strip().lower())


def normalize_address(raw: str, profile: DialectProfile | None = None) -> str:
    """Canonical form of a direct address: ``%I0.0`` and ``%ix0.0`` both become ``%IX0.0``."""
    value = raw.strip().upper()
    if len(value) > 1 and profile is not None and profile.address_aliases:
        area = profile.address_aliases.get(value[1])
        if area:
            value = f"%{area}{value[2:]}"
    match = _ADDRESS_RE.match(value)
    if match is None:
        return value
    area, size, offset = match.groups()
    return f"%{area}{size or 'X'}{offset}"


def tokenize(text: str, profile: DialectProfile) -> tuple[list[Token], list[tuple[str, int]]]:
    tokens: list[Token] = []
    problems: list[tuple[str, int]] = []
    line = 1
    pos = 0
    length = len(text)
    while pos < length:
        match = _TOKEN_RE.match(text, pos)
        kind = match.lastgroup or "other"
        value = match.group()
        if kind == "newline":
            line += 1
            pos = match.end()
            continue
        if kind in {"space", "line_comment"}:
            pos = match.end()
            continue
        if kind == "open_comment":
            closer = _COMMENT_CLOSERS[value]
            end = text.find(closer, match.end())
            if end == -1:
                problems.append(("unterminated_comment", line))
                break
            line += text.count("\n", pos, end)
            pos = end + len(closer)
            continue
        if kind == "string" and value.startswith('"') and profile.quoted_identifiers:
            kind = "ident"
            value = value[1:-1]
        tokens.append(Token(kind=kind, value=value, line=line))
        pos = match.end()
    return tokens, problems


def _render_type(tokens: list[Token]) -> str:
    text = " ".join(token.value.upper() for token in tokens)
    text = re.sub(r"\s+(?=[\[\]\(\),]|\.\.)", "", text)
    text = re.sub(r"([\[\(])\s+", r"\1", text)
    return re.sub(r"\.\.\s+", "..", text)


class _FileScanner:
    def __init__(self, logic_file: LogicFile, profile: DialectProfile, tokens: list[Token]) -> None:
        self.file = logic_file
        self.profile = profile
        self.tokens = tokens
        self.notes: list[ExtractionNote] = []
        self.declarations: list[Declaration] = []
        self.duplicates: list[DuplicateDeclaration] = []
        self.blocks: list[BlockFact] = []
        self.writes: list[WriteFact] = []
        self.io_usages: list[IoUsage] = []
        self.calls: set[str] = set()
        self.block_stack: list[tuple[str, str, int]] = []
        self.section: str | None = None
        self.section_line = 0
        self.statement: list[Token] = []
        self.scope_names: dict[tuple[str | None, str], int] = {}
        self.degraded = False
        self.loop_count = 0
        self.math_op_count = 0
        self.string_op_count = 0
        self.statement_count = 0
        self.rejected_identifiers = 0

    @property
    def current_block(self) -> str | None:
        return self.block_stack[-1][1] if self.block_stack else None

    def note(self, code: str, message: str, line: int | None) -> None:
        self.notes.append(ExtractionNote(file_path=self.file.path, code=code, message=message, line=line))

    def degrade(self, exc: ExtractionDegraded, code: str) -> None:
        self.degraded = True
        self.note(code, exc.reason, exc.line)

    def run(self) -> None:
        index = 0
        while index < len(self.tokens):
            if self.section is not None:
                index = self._consume_declaration_token(index)
                continue

            token = self.tokens[index]
            upper = token.upper if token.kind == "ident" else ""
            if upper in self.profile.block_openers:
                index = self._open_block(index, self.profile.block_openers[upper])
                continue
            if upper in self.profile.block_closers:
                self._close_block(token, self.profile.block_closers[upper])
                index += 1
                continue
            if upper in VAR_SECTION_KEYWORDS:
                self.section = upper
                self.section_line = token.line
                self.statement = []
                index += 1
                continue
            if upper == "END_VAR":
                self.note("unbalanced_block", "END_VAR without an open declaration section", token.line)
                index += 1
                continue

            self._scan_body_token(index)
            index += 1

        if self.section is not None:
            self.degrade(
                ExtractionDegraded(
                    f"{self.section} opened on line {self.section_line} is not closed by END_VAR",
                    file_path=self.file.path,
                    line=self.section_line,
                ),
                "unterminated_var_section",
            )
            self.section = None

        for kind, name, start_line in reversed(self.block_stack):
            self.note("unbalanced_block", f"{kind} '{name}' is not closed", start_line)
            self.blocks.append(
                BlockFact(kind=kind, name=name, file_path=self.file.path, start_line=start_line, end_line=None)
            )
        self.block_stack.clear()

    def _open_block(self, index: int, kind: str) -> int:
        token = self.tokens[index]
        name = f"<anonymous_{kind}_{token.line}>"
        consumed = 1
        if index + 1 < len(self.tokens) and self.tokens[index + 1].kind == "ident":
            name = self.tokens[index + 1].value
            consumed = 2
        self.block_stack.append((kind, name, token.line))
        return index + consumed

    def _close_block(self, token: Token, kind: str) -> None:
        if self.block_stack and self.block_stack[-1][0] == kind:
            opened_kind, name, start_line = self.block_stack.pop()
            self.blocks.append(
                BlockFact(kind=opened_kind, name=name, file_path=self.file.path, start_line=start_line, end_line=token.line)
            )
            return
        self.note("unbalanced_block", f"{token.upper} without matching opener", token.line)

    def _consume_declaration_token(self, index: int) -> int:
        token = self.tokens[index]
        upper = token.upper if token.kind == "ident" else ""

        if upper == "END_VAR":
            if self._statement_body():
                self.degrade(
                    ExtractionDegraded(
                        "declaration is missing ';' before END_VAR",
                        file_path=self.file.path,
                        line=self.statement[0].line,
                    ),
                    "malformed_declaration",
                )
            self.section = None
            self.statement = []
            return index + 1

        if (
            upper in VAR_SECTION_KEYWORDS
            or upper in self.profile.block_openers
            or upper in self.profile.block_closers
        ):
            self.degrade(
                ExtractionDegraded(
                    f"{self.section} opened on line {self.section_line} is not closed by END_VAR",
                    file_path=self.file.path,
                    line=self.section_line,
                ),
                "unterminated_var_section",
            )
            self.section = None
            self.statement = []
            return index

        if token.is_symbol(";"):
            body = self._statement_body()
            if body:
                try:
                    self._parse_declaration(body)
                except ExtractionDegraded as exc:
                    self.degrade(exc, "malformed_declaration")
            self.statement = []
            return index + 1

        self.statement.append(token)
        return index + 1

    def _statement_body(self) -> list[Token]:
        body = list(self.statement)
        while body and body[0].kind == "ident" and body[0].upper in DECLARATION_QUALIFIERS:
            body.pop(0)
        return body

    def _malformed(self, message: str, line: int) -> ExtractionDegraded:
        return ExtractionDegraded(message, file_path=self.file.path, line=line)

    def _parse_declaration(self, body: list[Token]) -> None:
        line = body[0].line
        position = 0
        names: list[Token] = []
        while True:
            if position >= len(body) or body[position].kind != "ident":
                raise self._malformed("expected identifier in declaration", line)
            names.append(body[position])
            position += 1
            if position < len(body) and body[position].is_symbol(","):
                position += 1
                continue
            break

        address = None
        if position < len(body) and body[position].kind == "ident" and body[position].upper == "AT":
            position += 1
            if position >= len(body) or body[position].kind != "address":
                raise self._malformed("expected direct address after AT", line)
            address = normalize_address(body[position].value, self.profile)
            position += 1

        if position >= len(body) or not body[position].is_symbol(":"):
            raise self._malformed("expected ':' between identifier and type", line)
        position += 1

        type_tokens: list[Token] = []
        while position < len(body) and not body[position].is_symbol(":="):
            type_tokens.append(body[position])
            position += 1
        if not type_tokens:
            raise self._malformed("declaration has no type", line)
        data_type = _render_type(type_tokens)

        for name_token in names:
            name = name_token.upper
            if name in RESERVED_WORDS:
                self.rejected_identifiers += 1
                continue
            scope_key = (self.current_block, name)
            first_line = self.scope_names.get(scope_key)
            if first_line is not None:
                self.duplicates.append(
                    DuplicateDeclaration(
                        name=name,
                        file_path=self.file.path,
                        line=name_token.line,
                        first_line=first_line,
                        block_name=self.current_block,
                    )
                )
                continue
            self.scope_names[scope_key] = name_token.line
            self.declarations.append(
                Declaration(
                    name=name,
                    declared_name=name_token.value,
                    data_type=data_type,
                    file_path=self.file.path,
                    line=name_token.line,
                    section=self.section or "VAR",
                    block_name=self.current_block,
                    address=address,
                )
            )

    def _scan_body_token(self, index: int) -> None:
        token = self.tokens[index]
        previous = self.tokens[index - 1] if index > 0 else None
        following = self.tokens[index + 1] if index + 1 < len(self.tokens) else None
        assigns = following is not None and following.is_symbol(":=")

        if token.is_symbol(";"):
            self.statement_count += 1
            return

        if token.kind == "address":
            address = normalize_address(token.value, self.profile)
            self.io_usages.append(
                IoUsage(
                    address=address,
                    access="write" if assigns else "read",
                    file_path=self.file.path,
                    line=token.line,
                    block_name=self.current_block,
                )
            )
            if assigns:
                self.writes.append(
                    WriteFact(
                        target=address,
                        file_path=self.file.path,
                        line=token.line,
                        block_name=self.current_block,
                        is_address=True,
                    )
                )
            return

        if token.kind != "ident":
            return

        upper = token.upper
        calls_function = following is not None and following.is_symbol("(")
        if upper in LOOP_KEYWORDS:
            self.loop_count += 1
        if calls_function and upper in MATH_FUNCTIONS:
            self.math_op_count += 1
        if calls_function and upper in STRING_FUNCTIONS:
            self.string_op_count += 1

        if upper in RESERVED_WORDS or (previous is not None and previous.is_symbol(".")):
            return

        output_binding = previous is not None and previous.is_symbol("=>")
        if assigns or output_binding:
            self.writes.append(
                WriteFact(target=upper, file_path=self.file.path, line=token.line, block_name=self.current_block)
            )
        elif calls_function and upper not in MATH_FUNCTIONS and upper not in STRING_FUNCTIONS:
            self.calls.add(upper)

    def result(self, profile_name: str) -> FileFacts:
        declarations = () if self.degraded else tuple(self.declarations)
        duplicates = () if self.degraded else tuple(self.duplicates)
        type_references = sorted(
            {
                item.data_type
                for item in declarations
                if re.fullmatch(r"[A-Z_][A-Z0-9_]*", item.data_type)
                and item.data_type not in BUILTIN_TYPES
                and item.data_type not in STANDARD_FUNCTION_BLOCKS
            }
        )
        content = self.file.content
        return FileFacts(
            path=self.file.path,
            dialect=profile_name,
            size_bytes=self.file.size,
            line_count=content.count("\n") + 1 if content else 0,
            declarations=declarations,
            duplicates=duplicates,
            blocks=tuple(sorted(self.blocks, key=lambda block: (block.start_line, block.name))),
            writes=tuple(self.writes),
            io_usages=tuple(self.io_usages),
            calls=tuple(sorted(self.calls)),
            type_references=tuple(type_references),
            notes=tuple(self.notes),
            loop_count=self.loop_count,
            math_op_count=self.math_op_count,
            string_op_count=self.string_op_count,
            statement_count=self.statement_count,
            rejected_identifiers=self.rejected_identifiers,
        )


def extract_file_facts(logic_file: LogicFile) -> FileFacts:
    profile = resolve_dialect(logic_file.dialect)
    fallback_note = None
    if profile is None:
        profile = DIALECTS[DEFAULT_DIALECT]
        fallback_note = ExtractionNote(
            file_path=logic_file.path,
            code="unknown_dialect",
            message=f"dialect '{logic_file.dialect}' is not recognised; scanned as {DEFAULT_DIALECT}",
        )

    tokens, problems = tokenize(logic_file.content, profile)
    scanner = _FileScanner(logic_file, profile, tokens)
    if fallback_note is not None:
        scanner.notes.append(fallback_note)
    for code, line in problems:
        scanner.note(code, "block comment is not terminated; rest of file ignored", line)
    scanner.run()
    return scanner.result(profile.name)


def extract_facts(snapshot: Snapshot) -> ExtractedFacts:
    files = tuple(extract_file_facts(item) for item in snapshot.files)

    seen: set[str] = set()
    declarations: list[Declaration] = []
    for file_facts in files:
        for item in file_facts.declarations:
            if item.name in seen:
                continue
            seen.add(item.name)
            declarations.append(item)

    notes = tuple(note for file_facts in files for note in file_facts.notes)
    totals = {
        "files": len(files),
        "lines": sum(item.line_count for item in files),
        "bytes": sum(item.size_bytes for item in files),
        "declarations": len(declarations),
        "programs": sum(item.block_count(PROGRAM) for item in files),
        "functions": sum(item.block_count(FUNCTION) for item in files),
        "function_blocks": sum(item.block_count(FUNCTION_BLOCK) for item in files),
        "io_mappings": sum(1 for item in files for decl in item.declarations if decl.address),
        "io_usages": sum(len(item.io_usages) for item in files),
        "writes": sum(len(item.writes) for item in files),
        "notes": len(notes),
    }
    return ExtractedFacts(
        snapshot_id=snapshot.snapshot_id,
        version_id=snapshot.version_id,
        files=files,
        declarations=tuple(declarations),
        notes=notes,
        totals=totals,
    )
