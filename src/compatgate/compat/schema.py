# compat/schema.py
"""
Schema snapshots for compatibility checks.

A snapshot is a flat, immutable table of schema elements keyed by their
qualified name (``pkg.Message.field``). Declaration order is not kept: two
files that declare the same elements in a different order load to equal
snapshots.

Sources understood:
  - ``.proto`` files (messages, nested messages, fields incl. map<> and oneof,
    enums and their values, services and rpcs)
  - JSON documents, either ``{"elements": [...]}`` or the shorthand
    ``{"A": "int32", "B": {"type": "string", "number": 2}}``
"""
from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

# kinds whose elements carry a stable number (wire identity)
NUMBERED_KINDS = ("field", "enum_value")


@dataclass(frozen=True)
class SchemaElement:
    path: str
    kind: str
    type: Optional[str] = None
    number: Optional[int] = None
    label: str = ""
    parent: Optional[str] = None

    @property
    def name(self) -> str:
        if self.parent:
            return self.path[len(self.parent) + 1:]
        return self.path

    @property
    def signature(self) -> str:
        return f"{self.label} {self.type or ''}".strip()


class CompatibilitySnapshot:
    """Immutable set of schema elements. Comparing two snapshots has no side effects."""

    def __init__(self, elements: Iterable[SchemaElement], source: str = ""):
        table: Dict[str, SchemaElement] = {}
        for el in elements:
            if el.path in table and table[el.path] != el:
                raise ValueError(f"Schema element '{el.path}' defined twice with different shapes ({source})")
            table[el.path] = el
        self._elements: Mapping[str, SchemaElement] = MappingProxyType(table)
        self.source = source

    def __contains__(self, path: str) -> bool:
        return path in self._elements

    def __getitem__(self, path: str) -> SchemaElement:
        return self._elements[path]

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._elements))

    def __len__(self) -> int:
        return len(self._elements)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CompatibilitySnapshot):
            return NotImplemented
        return dict(self._elements) == dict(other._elements)

    __hash__ = None  # type: ignore[assignment]

    def get(self, path: str) -> Optional[SchemaElement]:
        return self._elements.get(path)

    def by_number(self, parent: Optional[str], kind: str, number: int) -> Optional[SchemaElement]:
        for el in self._elements.values():
            if el.parent == parent and el.kind == kind and el.number == number:
                return el
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"elements": [asdict(self._elements[p]) for p in self]}

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], source: str = "<mapping>") -> "CompatibilitySnapshot":
        """Shorthand form: {"A": "int32", "B": {"type": "string", "number": 2, "label": "repeated"}}."""
        elements = []
        for name, spec in mapping.items():
            if isinstance(spec, str):
                elements.append(SchemaElement(path=name, kind="field", type=spec))
            elif isinstance(spec, Mapping):
                elements.append(
                    SchemaElement(
                        path=name,
                        kind=spec.get("kind", "field"),
                        type=spec.get("type"),
                        number=spec.get("number"),
                        label=spec.get("label", ""),
                    )
                )
            else:
                raise ValueError(f"Unsupported schema entry for {name!r}: {spec!r}")
        return cls(elements, source=source)

    @classmethod
    def from_json(cls, text: str, source: str = "<json>") -> "CompatibilitySnapshot":
        doc = json.loads(text)
        if not isinstance(doc, dict):
            raise ValueError(f"Schema document must be a JSON object ({source})")
        if "elements" in doc and isinstance(doc["elements"], list):
            return cls((SchemaElement(**e) for e in doc["elements"]), source=source)
        return cls.from_mapping(doc, source=source)

    @classmethod
    def from_proto(cls, text: str, source: str = "<proto>") -> "CompatibilitySnapshot":
        return cls(ProtoParser(text, source).parse(), source=source)

    @classmethod
    def from_documents(cls, documents: Mapping[str, str], source: str = "") -> "CompatibilitySnapshot":
        """Build one snapshot out of several files, keyed by path; the suffix picks the format."""
        elements: List[SchemaElement] = []
        for path in sorted(documents):
            text = documents[path]
            if path.endswith(".proto"):
                elements.extend(cls.from_proto(text, source=path)._elements.values())
            elif path.endswith(".json"):
                elements.extend(cls.from_json(text, source=path)._elements.values())
            else:
                raise ValueError(f"Unsupported schema file type: {path}")
        return cls(elements, source=source or ", ".join(sorted(documents)))

    @classmethod
    def load(cls, path: str | Path) -> "CompatibilitySnapshot":
        p = Path(path)
        return cls.from_documents({p.name: p.read_text(encoding="utf-8")}, source=str(p))


# ---------------------------------------------------------------------
# .proto parsing
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<comment>//[^\n]*|/\*.*?\*/)
  | (?P<string>"(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')
  | (?P<ident>\.?[A-Za-z_][\w.]*)
  | (?P<number>[-+]?(?:0[xX][0-9a-fA-F]+|\d+(?:\.\d*)?(?:[eE][-+]?\d+)?))
  | (?P<symbol>[{}\[\]()<>;=,:])
    """,
    re.S | re.X,
)

_LABELS = ("optional", "repeated", "required")


def tokenize(text: str, source: str = "<proto>") -> List[str]:
    tokens: List[str] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            line = text.count("\n", 0, pos) + 1
            raise ValueError(f"{source}:{line}: unexpected character {text[pos]!r}")
        kind = m.lastgroup
        if kind not in ("ws", "comment"):
            tokens.append(m.group())
        pos = m.end()
    return tokens


def _join(prefix: str, name: str) -> str:
    return f"{prefix}.{name}" if prefix else name


def _int(value: str, source: str) -> int:
    try:
        return int(value, 0)
    except ValueError:
        raise ValueError(f"{source}: expected a number, got {value!r}") from None


class ProtoParser:
    """Small recursive-descent reader for the parts of proto2/proto3 that matter to wire compatibility."""

    def __init__(self, text: str, source: str = "<proto>"):
        self.source = source
        self.tokens = tokenize(text, source)
        self.pos = 0
        self.elements: List[SchemaElement] = []

    # -- token helpers --------------------------------------------------

    def _peek(self) -> Optional[str]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> str:
        tok = self._peek()
        if tok is None:
            raise ValueError(f"{self.source}: unexpected end of file")
        self.pos += 1
        return tok

    def _expect(self, want: str) -> None:
        tok = self._next()
        if tok != want:
            raise ValueError(f"{self.source}: expected {want!r}, got {tok!r}")

    def _skip_statement(self) -> None:
        depth = 0
        while True:
            tok = self._next()
            if tok in ("{", "[", "("):
                depth += 1
            elif tok in ("}", "]", ")"):
                depth -= 1
            elif tok == ";" and depth == 0:
                return

    def _skip_block(self) -> None:
        while self._next() != "{":
            pass
        depth = 1
        while depth:
            tok = self._next()
            if tok == "{":
                depth += 1
            elif tok == "}":
                depth -= 1

    def _skip_options(self) -> None:
        if self._peek() != "[":
            return
        depth = 0
        while True:
            tok = self._next()
            if tok == "[":
                depth += 1
            elif tok == "]":
                depth -= 1
                if depth == 0:
                    return

    # -- grammar --------------------------------------------------------

    def parse(self) -> List[SchemaElement]:
        package = ""
        while self._peek() is not None:
            tok = self._next()
            if tok in ("syntax", "edition", "import", "option"):
                self._skip_statement()
            elif tok == "package":
                package = self._next()
                self._expect(";")
            elif tok == "message":
                self._message(package, parent=package or None)
            elif tok == "enum":
                self._enum(package, parent=package or None)
            elif tok == "service":
                self._service(package, parent=package or None)
            elif tok == "extend":
                self._skip_block()
            elif tok == ";":
                continue
            else:
                raise ValueError(f"{self.source}: unexpected top-level token {tok!r}")
        return self.elements

    def _message(self, prefix: str, parent: Optional[str]) -> None:
        name = self._next()
        path = _join(prefix, name)
        self.elements.append(SchemaElement(path=path, kind="message", parent=parent))
        self._expect("{")
        self._message_body(path)

    def _message_body(self, path: str, *, in_oneof: Optional[str] = None) -> None:
        while True:
            tok = self._peek()
            if tok == "}":
                self._next()
                return
            if tok == ";":
                self._next()
            elif tok == "message" and in_oneof is None:
                self._next()
                self._message(path, parent=path)
            elif tok == "enum" and in_oneof is None:
                self._next()
                self._enum(path, parent=path)
            elif tok == "oneof":
                self._next()
                oneof = self._next()
                self._expect("{")
                self._message_body(path, in_oneof=oneof)
            elif tok in ("option", "reserved", "extensions"):
                self._next()
                self._skip_statement()
            elif tok == "extend":
                self._next()
                self._skip_block()
            else:
                self._field(path, in_oneof)

    def _field(self, parent: str, in_oneof: Optional[str]) -> None:
        label = ""
        tok = self._next()
        if tok in _LABELS:
            label = tok
            tok = self._next()
        if tok == "map":
            self._expect("<")
            key = self._next().lstrip(".")
            self._expect(",")
            value = self._next().lstrip(".")
            self._expect(">")
            ftype = f"map<{key},{value}>"
        elif tok == "group":
            raise ValueError(f"{self.source}: proto2 groups are not supported ({parent})")
        else:
            ftype = tok.lstrip(".")
        name = self._next()
        self._expect("=")
        number = _int(self._next(), self.source)
        self._skip_options()
        self._expect(";")
        if in_oneof:
            label = label or f"oneof {in_oneof}"
        self.elements.append(
            SchemaElement(
                path=_join(parent, name),
                kind="field",
                type=ftype,
                number=number,
                label=label,
                parent=parent,
            )
        )

    def _enum(self, prefix: str, parent: Optional[str]) -> None:
        name = self._next()
        path = _join(prefix, name)
        self.elements.append(SchemaElement(path=path, kind="enum", parent=parent))
        self._expect("{")
        while True:
            tok = self._next()
            if tok == "}":
                return
            if tok == ";":
                continue
            if tok in ("option", "reserved"):
                self._skip_statement()
                continue
            self._expect("=")
            number = _int(self._next(), self.source)
            self._skip_options()
            self._expect(";")
            self.elements.append(
                SchemaElement(path=_join(path, tok), kind="enum_value", number=number, parent=path)
            )

    def _rpc_type(self) -> str:
        self._expect("(")
        parts = []
        while self._peek() != ")":
            parts.append(self._next().lstrip("."))
        self._expect(")")
        return " ".join(parts)

    def _service(self, prefix: str, parent: Optional[str]) -> None:
        name = self._next()
        path = _join(prefix, name)
        self.elements.append(SchemaElement(path=path, kind="service", parent=parent))
        self._expect("{")
        while True:
            tok = self._next()
            if tok == "}":
                return
            if tok == ";":
                continue
            if tok == "option":
                self._skip_statement()
                continue
            if tok != "rpc":
                raise ValueError(f"{self.source}: unexpected token {tok!r} in service {path}")
            rpc = self._next()
            request = self._rpc_type()
            self._expect("returns")
            response = self._rpc_type()
            if self._peek() == "{":
                self._skip_block()
            else:
                self._expect(";")
            self.elements.append(
                SchemaElement(
                    path=_join(path, rpc),
                    kind="rpc",
                    type=f"({request}) returns ({response})",
                    parent=path,
                )
            )
