"""
Field specification parsing and canonicalisation.

Field specifications are engine-specific strings such as
``"VARCHAR(255) NOT NULL DEFAULT ''"``. Two specifications are considered
equal when their canonical renderings are equal:

- keywords and type names are upper-cased (quoted literals are left alone)
- whitespace is collapsed, and dropped around parentheses and commas
- the base type name is mapped through an alias table
- ``NULL`` and ``DEFAULT NULL`` are dropped
- ``::type`` casts in defaults are removed
- clauses are emitted as ``TYPE [NOT NULL] [DEFAULT expr] [others...]``
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple


DEFAULT_TYPE_ALIASES: Dict[str, str] = {
    "INT": "INTEGER",
    "INT4": "INTEGER",
    "INT8": "BIGINT",
    "INT2": "SMALLINT",
    "BOOL": "BOOLEAN",
    "FLOAT4": "REAL",
    "FLOAT8": "DOUBLE PRECISION",
    "DECIMAL": "NUMERIC",
    "CHARACTER VARYING": "VARCHAR",
    "CHARACTER": "CHAR",
    "BPCHAR": "CHAR",
    "TIMESTAMP WITHOUT TIME ZONE": "TIMESTAMP",
    "TIMESTAMP WITH TIME ZONE": "TIMESTAMPTZ",
    "TIME WITHOUT TIME ZONE": "TIME",
    "TIME WITH TIME ZONE": "TIMETZ",
}

_QUOTED = re.compile(r"('(?:[^']|'')*')")
_CONSTRAINT = re.compile(
    r"\b(NOT NULL|NULL|DEFAULT|UNIQUE|PRIMARY KEY|CHECK|REFERENCES|COLLATE)\b"
)
_CAST = re.compile(r"::[A-Z_][A-Z0-9_ ]*(?:\(\d+(?:,\d+)?\))?(?:\[\])?")


@dataclass
class FieldSpec:
    """A parsed field specification."""

    type: str
    not_null: bool = False
    default: Optional[str] = None
    extras: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        parts = [self.type]
        if self.not_null:
            parts.append("NOT NULL")
        if self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        parts.extend(self.extras)
        return " ".join(parts)


def _mask_literals(spec: str) -> Tuple[str, List[str]]:
    """Replace quoted literals with placeholders and normalise the rest."""
    literals: List[str] = []
    pieces = []
    for i, piece in enumerate(_QUOTED.split(spec)):
        if i % 2:
            pieces.append(f"\x00{len(literals)}\x00")
            literals.append(piece)
        else:
            piece = re.sub(r"\s+", " ", piece.upper())
            piece = re.sub(r"\s*\(\s*", "(", piece)
            piece = re.sub(r"\s*,\s*", ",", piece)
            piece = re.sub(r"\s*\)", ")", piece)
            pieces.append(piece)
    return "".join(pieces).strip(), literals


def _unmask(text: str, literals: List[str]) -> str:
    return re.sub(r"\x00(\d+)\x00", lambda m: literals[int(m.group(1))], text)


def _top_level_matches(text: str):
    for match in _CONSTRAINT.finditer(text):
        prefix = text[: match.start()]
        if prefix.count("(") == prefix.count(")"):
            yield match


def _normalise_type(type_part: str, aliases: Mapping[str, str]) -> str:
    suffix = ""
    while type_part.endswith("[]"):
        type_part = type_part[:-2].rstrip()
        suffix += "[]"
    base, paren, params = type_part.partition("(")
    base = base.strip()
    base = aliases.get(base, base)
    return (f"{base}({params}" if paren else base) + suffix


def parse_field_spec(
    spec: str, aliases: Optional[Mapping[str, str]] = None
) -> FieldSpec:
    """Parse a field specification into its type and constraint clauses."""
    aliases = DEFAULT_TYPE_ALIASES if aliases is None else aliases
    text, literals = _mask_literals(spec)

    matches = list(_top_level_matches(text))
    type_end = matches[0].start() if matches else len(text)
    type_part = _normalise_type(text[:type_end].strip(), aliases)
    result = FieldSpec(type=_unmask(type_part, literals))

    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        keyword = match.group(1)
        body = text[match.end():end].strip()

        if keyword == "NOT NULL":
            result.not_null = True
        elif keyword == "NULL":
            continue
        elif keyword == "DEFAULT":
            body = _CAST.sub("", body).strip()
            result.default = _unmask(body, literals) if body else None
        else:
            clause = f"{keyword} {body}" if body else keyword
            result.extras.append(_unmask(clause, literals))

    return result


def canonicalize_field_spec(
    spec: str, aliases: Optional[Mapping[str, str]] = None
) -> str:
    """Return the canonical string form used to compare field specifications."""
    return str(parse_field_spec(spec, aliases))
