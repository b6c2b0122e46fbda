"""
Statement Surface - split, classify and guard SQL text
"""
from typing import List, Optional, Tuple
import re

import structlog

from lumen_pg.core.exceptions import SqlInjectionDetected
from lumen_pg.schemas.results import StatementKind

logger = structlog.get_logger()

# Rejected anywhere in a lowercased, whitespace-normalized WHERE fragment.
FORBIDDEN_WHERE_TOKENS = (
    "drop ",
    "alter ",
    "create ",
    "truncate ",
    "grant ",
    "revoke ",
    "insert ",
    "update ",
    "delete ",
    "--",
    "/*",
)

SELECT_KEYWORDS = ("select", "with")
DML_KEYWORDS = ("insert", "update", "delete")
DDL_KEYWORDS = ("create", "alter", "drop", "truncate")

# Keywords that can start the main statement of a WITH query.
_CTE_BODY_KINDS = {
    "select": StatementKind.SELECT,
    "values": StatementKind.SELECT,
    "table": StatementKind.SELECT,
    "insert": StatementKind.DML_WRITE,
    "update": StatementKind.DML_WRITE,
    "delete": StatementKind.DML_WRITE,
    "merge": StatementKind.DML_WRITE,
}

_FIRST_WORD = re.compile(r'^\s*([A-Za-z_]+)')
_WORD = re.compile(r'[A-Za-z_][A-Za-z0-9_$]*')

_IDENT = r'(?:"(?:[^"]|"")+"|[A-Za-z_][A-Za-z0-9_$]*)'
_QUALIFIED = rf'(?P<first>{_IDENT})(?:\s*\.\s*(?P<second>{_IDENT}))?'
_WRITE_TARGET_PATTERNS = (
    re.compile(rf'^\s*insert\s+into\s+{_QUALIFIED}', re.IGNORECASE),
    re.compile(rf'^\s*update\s+(?:only\s+)?{_QUALIFIED}', re.IGNORECASE),
    re.compile(rf'^\s*delete\s+from\s+(?:only\s+)?{_QUALIFIED}', re.IGNORECASE),
)


def split(sql: str) -> List[str]:
    """
    Split ``sql`` on semicolons that are outside quoted text.

    Inside a single-quoted literal a double quote is ordinary text and the
    other way round. Statements are stripped and empty ones dropped.
    """
    statements = []
    current = []
    in_single = False
    in_double = False

    for ch in sql or "":
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        elif ch == ";" and not in_single and not in_double:
            statement = "".join(current).strip()
            if statement:
                statements.append(statement)
            current = []
            continue
        current.append(ch)

    statement = "".join(current).strip()
    if statement:
        statements.append(statement)
    return statements


def _top_level_words(stmt: str) -> List[str]:
    """Lowercased words outside quotes and parentheses, in order."""
    words = []
    depth = 0
    in_single = False
    in_double = False
    buffer = []

    def flush():
        if buffer:
            words.extend(w.lower() for w in _WORD.findall("".join(buffer)))
            buffer.clear()

    for ch in stmt:
        if in_single:
            if ch == "'":
                in_single = False
            continue
        if in_double:
            if ch == '"':
                in_double = False
            continue
        if ch == "'":
            in_single = True
            flush()
        elif ch == '"':
            in_double = True
            flush()
        elif ch == "(":
            if depth == 0:
                flush()
            depth += 1
        elif ch == ")":
            depth = max(0, depth - 1)
        elif depth == 0:
            buffer.append(ch)
    flush()
    return words


def _classify_with(stmt: str) -> StatementKind:
    # Skip the leading WITH; the first body keyword at depth 0 decides.
    for word in _top_level_words(stmt)[1:]:
        kind = _CTE_BODY_KINDS.get(word)
        if kind is not None:
            return kind
    return StatementKind.OTHER


def classify(stmt: str) -> StatementKind:
    """Classify one statement by its first keyword."""
    match = _FIRST_WORD.match(stmt or "")
    if not match:
        return StatementKind.OTHER

    keyword = match.group(1).lower()
    if keyword == "select":
        return StatementKind.SELECT
    if keyword == "with":
        return _classify_with(stmt)
    if keyword in DML_KEYWORDS:
        return StatementKind.DML_WRITE
    if keyword in DDL_KEYWORDS:
        return StatementKind.DDL
    return StatementKind.OTHER


def _has_unquoted_semicolon(fragment: str) -> bool:
    in_single = False
    in_double = False
    for ch in fragment:
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        elif ch == ";" and not in_single and not in_double:
            return True
    return False


def guard_where(fragment: Optional[str]) -> None:
    """
    Reject WHERE fragments that could start a new statement, open a comment
    or carry a DDL/DML verb.

    Raises:
        SqlInjectionDetected
    """
    if not fragment or not fragment.strip():
        return

    normalized = " ".join(fragment.lower().split()) + " "
    for token in FORBIDDEN_WHERE_TOKENS:
        if token in normalized:
            logger.warning("sql_injection_blocked", token=token.strip(), fragment=fragment[:200])
            raise SqlInjectionDetected(f"forbidden token '{token.strip()}' in WHERE clause")

    if _has_unquoted_semicolon(fragment):
        logger.warning("sql_injection_blocked", token=";", fragment=fragment[:200])
        raise SqlInjectionDetected("statement separator in WHERE clause")


def _unquote(identifier: str) -> str:
    if identifier.startswith('"') and identifier.endswith('"'):
        return identifier[1:-1].replace('""', '"')
    return identifier.lower()


def extract_write_target(stmt: str) -> Optional[Tuple[Optional[str], str]]:
    """
    Return ``(schema, table)`` written by an INSERT, UPDATE or DELETE.

    ``schema`` is None when the statement names the table unqualified.
    Returns None for anything else.
    """
    for pattern in _WRITE_TARGET_PATTERNS:
        match = pattern.match(stmt or "")
        if match:
            first, second = match.group("first"), match.group("second")
            if second is None:
                return None, _unquote(first)
            return _unquote(first), _unquote(second)
    return None


def escape_bind_markers(sql: str) -> str:
    """Escape colons so user SQL passed through ``text()`` never grows bind parameters."""
    return sql.replace(":", "\\:")


_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")
_READ_TARGET = re.compile(rf'\b(?:from|join)\s+(?:only\s+)?{_QUALIFIED}(?![A-Za-z0-9_$."]|\s*[.(])', re.IGNORECASE)
_DATA_MODIFYING = re.compile(r'\b(?:insert|update|delete|merge)\b', re.IGNORECASE)


def extract_read_targets(stmt: str) -> List[Tuple[Optional[str], str]]:
    """
    Return the ``(schema, table)`` pairs named after FROM or JOIN, in order
    and without duplicates. Table functions are not included.
    """
    targets = []
    for match in _READ_TARGET.finditer(_STRING_LITERAL.sub("''", stmt or "")):
        first, second = match.group("first"), match.group("second")
        target = (None, _unquote(first)) if second is None else (_unquote(first), _unquote(second))
        if target not in targets:
            targets.append(target)
    return targets


def is_streamable(stmt: str) -> bool:
    """True when PostgreSQL accepts ``stmt`` behind a server-side cursor."""
    if classify(stmt) != StatementKind.SELECT:
        return False
    return _DATA_MODIFYING.search(_STRING_LITERAL.sub("''", stmt)) is None
