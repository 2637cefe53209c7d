"""Tokenizer for field-mode binding expressions.

Field expressions are either a bare field path (``Temperature``,
``Parent->Name``) or a small arithmetic expression over field paths
(``(Flow->Rate * 60) + Offset``).  The tokenizer understands string
literals and function calls so identifier-like text inside quotes or call
names is never mistaken for a field.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Tuple

from .constants import INDIRECTION_DELIMITER
from .errors import ScriptCompileError

logger = logging.getLogger(__name__)

_IDENT = r"[A-Za-z_]\w*"
_PATH_RE = re.compile(rf"^{_IDENT}(?:\s*{re.escape(INDIRECTION_DELIMITER)}\s*{_IDENT})*$")

_TOKEN_SPEC = [
    ("NUMBER", r"\d+(?:\.\d*)?(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?"),
    ("STRING", r"'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\""),
    ("PATH", rf"{_IDENT}(?:\s*{re.escape(INDIRECTION_DELIMITER)}\s*{_IDENT})*"),
    ("OP", r"\*\*|//|==|!=|<=|>=|&&|\|\||[-+*/%<>!(),]"),
    ("SKIP", r"\s+"),
    ("MISMATCH", r"."),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))

# Words that read like identifiers but are operators or constants
KEYWORDS = {
    "and": "and",
    "or": "or",
    "not": "not",
    "true": "True",
    "false": "False",
    "null": "None",
    "True": "True",
    "False": "False",
    "None": "None",
}

_OPERATOR_ALIASES = {"&&": "and", "||": "or", "!": "not"}


@dataclass(frozen=True, slots=True)
class Token:
    kind: str
    text: str


def normalize_path(text: str) -> str:
    """Collapse whitespace around indirection delimiters."""
    segments = [s.strip() for s in text.split(INDIRECTION_DELIMITER)]
    return INDIRECTION_DELIMITER.join(s for s in segments if s)


def split_path(text: str) -> List[str]:
    return [s.strip() for s in text.split(INDIRECTION_DELIMITER) if s.strip()]


def is_field_path(text: str) -> bool:
    stripped = (text or "").strip()
    return bool(stripped) and bool(_PATH_RE.match(stripped)) and stripped not in KEYWORDS


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    for match in _TOKEN_RE.finditer(text):
        kind = match.lastgroup
        value = match.group()
        if kind == "SKIP":
            continue
        if kind == "MISMATCH":
            raise ScriptCompileError(f"Unexpected character {value!r} in expression {text!r}")
        if kind == "PATH":
            if value in KEYWORDS:
                tokens.append(Token("KEYWORD", value))
                continue
            value = normalize_path(value)
        tokens.append(Token(kind, value))
    return tokens


def is_computed_expression(text: str) -> bool:
    """True when ``text`` combines fields with operators or calls."""
    stripped = (text or "").strip()
    if not stripped or is_field_path(stripped):
        return False
    return bool(re.search(r"[-+*/%()<>=!&|]", stripped))


def _field_tokens(tokens: List[Token]) -> List[int]:
    indexes = []
    for i, tok in enumerate(tokens):
        if tok.kind != "PATH":
            continue
        nxt = tokens[i + 1] if i + 1 < len(tokens) else None
        if nxt is not None and nxt.kind == "OP" and nxt.text == "(":
            continue  # function name
        indexes.append(i)
    return indexes


def extract_dependencies(text: str) -> List[str]:
    """Field paths an expression reads, in first-seen order."""
    stripped = (text or "").strip()
    if not stripped:
        return []
    if is_field_path(stripped):
        return [stripped]
    try:
        tokens = tokenize(stripped)
    except ScriptCompileError as exc:
        logger.debug("Dependency scan skipped for %r: %s", stripped, exc)
        return []
    deps: List[str] = []
    for i in _field_tokens(tokens):
        if tokens[i].text not in deps:
            deps.append(tokens[i].text)
    return deps


def rewrite_for_evaluation(text: str) -> Tuple[str, Dict[str, str]]:
    """Rewrite a computed expression into evaluator syntax.

    Each field path becomes a placeholder name; the returned mapping goes
    from placeholder to field path.
    """
    tokens = tokenize(text)
    field_indexes = set(_field_tokens(tokens))
    placeholders: Dict[str, str] = {}
    by_path: Dict[str, str] = {}
    parts: List[str] = []
    for i, tok in enumerate(tokens):
        if i in field_indexes:
            name = by_path.get(tok.text)
            if name is None:
                name = f"_field{len(by_path)}"
                by_path[tok.text] = name
                placeholders[name] = tok.text
            parts.append(name)
        elif tok.kind == "KEYWORD":
            parts.append(KEYWORDS[tok.text])
        elif tok.kind == "OP":
            parts.append(_OPERATOR_ALIASES.get(tok.text, tok.text))
        else:
            parts.append(tok.text)
    return " ".join(parts), placeholders
