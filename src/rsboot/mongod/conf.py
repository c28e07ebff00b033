# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/rsboot/mongod/conf.py

"""
Structured model of a mongod configuration file.

The file is YAML-like: top-level sections with indented child keys. We do
not hand it to a YAML library because comments, key order and unknown
sections must survive an edit byte-for-byte. Instead the text is kept as a
list of lines, each tagged with the dotted key path it defines, and edits
rewrite or insert only the lines they need.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from ..errors import ConfigParseError

KeyPath = Tuple[str, ...]

_KEY_RE = re.compile(r"^(?P<key>[^\s:#'\"][^:]*?|\"[^\"]*\"|'[^']*')\s*:(?:\s+(?P<rest>.*?))?\s*$")
_BARE_RE = re.compile(r"^[A-Za-z0-9_./:-]+$")
_YAML_SPECIAL_RE = re.compile(
    r"^(?:true|false|yes|no|on|off|null|~|[-+]?\d+(?:\.\d*)?(?:[eE][-+]?\d+)?)$",
    re.IGNORECASE,
)
_DEFAULT_INDENT = 2
_DOC_MARKER_RE = re.compile(r"^(?:---|\.\.\.)(?:\s.*)?$")
_BLOCK_RE = re.compile(r"^[|>][-+0-9]*$")


@dataclass(frozen=True)
class _Line:
    text: str                     # raw text without end-of-line
    eol: str                      # "\n", "\r\n" or "" for the last line
    indent: int = 0
    key: Optional[str] = None     # None for blank, comment, sequence and block-scalar lines
    value: str = ""               # raw value (comment stripped), "" for a section header
    comment: str = ""             # trailing comment including leading whitespace
    path: KeyPath = ()            # key path, or the owning key for sequence and block-scalar lines

    @property
    def is_key(self) -> bool:
        return self.key is not None

    @property
    def is_item(self) -> bool:
        return self.key is None and bool(self.path)


def _split_comment(rest: str) -> Tuple[str, str]:
    """Split "value   # comment" into ("value", "   # comment")."""
    if not rest:
        return "", ""
    if rest[0] in "\"'":
        quote = rest[0]
        i = 1
        while i < len(rest):
            if rest[i] == "\\" and quote == '"':
                i += 2
                continue
            if rest[i] == quote:
                break
            i += 1
        head, tail = rest[: i + 1], rest[i + 1:]
        m = re.search(r"\s+#", tail)
        if m:
            return head + tail[: m.start()], tail[m.start():]
        return rest, ""
    if rest.startswith("#"):
        return "", " " + rest
    m = re.search(r"\s+#", rest)
    if m:
        return rest[: m.start()], rest[m.start():]
    return rest, ""


def unquote(raw: str) -> str:
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "\"'":
        inner = raw[1:-1]
        if raw[0] == '"':
            return inner.replace('\\"', '"').replace("\\\\", "\\")
        return inner.replace("''", "'")
    return raw


def quote_scalar(value: str) -> str:
    if _BARE_RE.match(value) and not _YAML_SPECIAL_RE.match(value):
        return value
    return json.dumps(value)


def _is_item(stripped: str) -> bool:
    return stripped == "-" or stripped.startswith("- ")


class ConfigDocument:
    """
    Immutable, line-preserving view of a config file.

    Mutating methods return a new document; the text of every line that is
    not edited is carried over untouched.
    """

    def __init__(self, lines: List[_Line]):
        self._lines = lines
        self._index: Dict[KeyPath, int] = {l.path: i for i, l in enumerate(lines) if l.is_key}

    # ------------------ parsing ------------------

    @classmethod
    def parse(cls, text: str) -> "ConfigDocument":
        lines: List[_Line] = []
        # stack of [indent, path, child_indent, is_container, is_sequence]
        stack: List[list] = []
        seen: set = set()
        # (indent, path) of the key whose block scalar is being read
        block: Optional[Tuple[int, KeyPath]] = None

        for lineno, chunk in enumerate(text.splitlines(keepends=True), start=1):
            body = chunk.rstrip("\r\n")
            eol = chunk[len(body):]
            stripped = body.lstrip(" \t")
            lead = body[: len(body) - len(stripped)]
            indent = len(lead)

            if block is not None:
                if not stripped:
                    lines.append(_Line(text=body, eol=eol))
                    continue
                if indent > block[0]:
                    lines.append(_Line(text=body, eol=eol, indent=indent, path=block[1]))
                    continue
                block = None

            if not stripped or stripped.startswith("#") or _DOC_MARKER_RE.match(body):
                lines.append(_Line(text=body, eol=eol))
                continue
            if "\t" in lead:
                raise ConfigParseError("tab character in indentation", lineno)

            # sequence contents are carried as opaque lines of their owner
            if stack and stack[-1][4]:
                seq = stack[-1]
                if indent > seq[0] or (indent == seq[0] and _is_item(stripped)):
                    lines.append(_Line(text=body, eol=eol, indent=indent, path=seq[1]))
                    continue
                stack.pop()

            if _is_item(stripped):
                while stack and stack[-1][0] > indent:
                    stack.pop()
                if not stack or not stack[-1][3]:
                    raise ConfigParseError("sequence item outside of a section", lineno)
                owner = stack[-1][1]
                stack.append([indent, owner, None, False, True])
                lines.append(_Line(text=body, eol=eol, indent=indent, path=owner))
                continue

            m = _KEY_RE.match(stripped)
            if not m:
                raise ConfigParseError(f"expected 'key: value', got {stripped!r}", lineno)
            key = unquote(m.group("key").strip())
            value, comment = _split_comment(m.group("rest") or "")

            while stack and stack[-1][0] >= indent:
                stack.pop()

            if not stack:
                if indent != 0:
                    raise ConfigParseError("unexpected indentation", lineno)
                parent_path: KeyPath = ()
            else:
                parent = stack[-1]
                if not parent[3]:
                    raise ConfigParseError(
                        f"'{key}' is nested under scalar key '{'.'.join(parent[1])}'", lineno
                    )
                if parent[2] is None:
                    parent[2] = indent
                elif parent[2] != indent:
                    raise ConfigParseError("inconsistent indentation", lineno)
                parent_path = parent[1]

            path = parent_path + (key,)
            if path in seen:
                what = "top-level section" if len(path) == 1 else "key"
                raise ConfigParseError(f"duplicate {what} '{'.'.join(path)}'", lineno)
            seen.add(path)

            if _BLOCK_RE.match(value):
                block = (indent, path)
            stack.append([indent, path, None, value == "", False])
            lines.append(
                _Line(text=body, eol=eol, indent=indent, key=key, value=value, comment=comment, path=path)
            )

        return cls(lines)

    @classmethod
    def empty(cls) -> "ConfigDocument":
        return cls([])

    # ------------------ queries ------------------

    @property
    def text(self) -> str:
        return "".join(l.text + l.eol for l in self._lines)

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.text.encode("utf-8")).hexdigest()

    def has(self, path: KeyPath) -> bool:
        return tuple(path) in self._index

    def get(self, path: KeyPath) -> Optional[str]:
        """Raw (unquoted) scalar at *path*, "" for a section header, None if absent."""
        i = self._index.get(tuple(path))
        if i is None:
            return None
        return unquote(self._lines[i].value)

    def is_section(self, path: KeyPath) -> bool:
        i = self._index.get(tuple(path))
        return i is not None and self._lines[i].value == ""

    def line_number(self, path: KeyPath) -> Optional[int]:
        i = self._index.get(tuple(path))
        return None if i is None else i + 1

    # ------------------ edits ------------------

    def set(self, path: KeyPath, rendered: str) -> "ConfigDocument":
        """Set *path* to an already-rendered scalar, inserting keys and sections as needed."""
        path = tuple(path)
        lines = list(self._lines)
        i = self._index.get(path)
        if i is not None:
            old = lines[i]
            if _BLOCK_RE.match(old.value):
                raise ConfigParseError(f"'{'.'.join(path)}' holds a block scalar")
            if old.value == "" and self._subtree_end(i) > i + 1:
                raise ConfigParseError(f"'{'.'.join(path)}' is a section, not a scalar")
            text = " " * old.indent + old.key + ": " + rendered + old.comment
            lines[i] = dataclasses.replace(old, text=text, value=rendered)
            return ConfigDocument(lines)
        return self._insert(path, rendered)

    def comment_out(self, path: KeyPath) -> "ConfigDocument":
        """
        Comment out the key at *path* together with its children. Parents
        left without any active key are commented out as well. Nothing is
        deleted.
        """
        path = tuple(path)
        i = self._index.get(path)
        if i is None:
            return self
        end = self._subtree_end(i)
        lines = list(self._lines)
        for j in range(i, end):
            l = lines[j]
            if l.is_key or l.is_item:
                lines[j] = _Line(text=l.text[: l.indent] + "#" + l.text[l.indent:], eol=l.eol)
        doc = ConfigDocument.parse("".join(l.text + l.eol for l in lines))
        parent = path[:-1]
        if parent and doc.has(parent) and not doc._children(parent):
            return doc.comment_out(parent)
        return doc

    # ------------------ internals ------------------

    def _children(self, path: KeyPath) -> List[int]:
        return [
            i for i, l in enumerate(self._lines)
            if (l.is_key and l.path[:-1] == path) or (l.is_item and l.path == path)
        ]

    def _subtree_end(self, i: int) -> int:
        """Index one past the last key/item line belonging to the subtree at line *i*."""
        prefix = self._lines[i].path
        end = i + 1
        for j in range(i + 1, len(self._lines)):
            l = self._lines[j]
            if l.is_key or l.is_item:
                if l.path[: len(prefix)] == prefix and (l.is_item or len(l.path) > len(prefix)):
                    end = j + 1
                else:
                    break
        return end

    def _eol(self) -> str:
        for l in self._lines:
            if l.eol:
                return l.eol
        return "\n"

    def _child_indent(self, parent: KeyPath) -> int:
        if not parent:
            return 0
        kids = [self._lines[i] for i in self._children(parent) if self._lines[i].is_key]
        if kids:
            return kids[0].indent
        p = self._lines[self._index[parent]]
        return p.indent + _DEFAULT_INDENT

    def _insert(self, path: KeyPath, rendered: Optional[str]) -> "ConfigDocument":
        parent = path[:-1]
        doc = self
        if parent and not doc.has(parent):
            doc = doc._insert(parent, None)
        if parent and not doc.is_section(parent):
            raise ConfigParseError(f"cannot add '{path[-1]}' under scalar '{'.'.join(parent)}'")

        eol = doc._eol()
        indent = doc._child_indent(parent)
        text = " " * indent + path[-1] + ":" + ("" if rendered is None else " " + rendered)
        new = _Line(text=text, eol=eol, indent=indent, key=path[-1], value=rendered or "", path=path)

        lines = list(doc._lines)
        if parent:
            at = doc._subtree_end(doc._index[parent])
            if at > 0 and not lines[at - 1].eol:
                lines[at - 1] = dataclasses.replace(lines[at - 1], eol=eol)
            lines.insert(at, new)
        else:
            if lines and not lines[-1].eol:
                lines[-1] = dataclasses.replace(lines[-1], eol=eol)
            if lines and lines[-1].text.strip():
                lines.append(_Line(text="", eol=eol))
            lines.append(new)
        return ConfigDocument(lines)


# ---------------------------------------------------------------------
# Typed fields
# ---------------------------------------------------------------------

def _decode_str(raw: str) -> str:
    return raw


def _decode_bool(raw: str) -> bool:
    v = raw.lower()
    if v in ("true", "yes", "on"):
        return True
    if v in ("false", "no", "off"):
        return False
    raise ValueError(f"expected a boolean, got {raw!r}")


def _encode_bool(value: bool) -> str:
    return "true" if value else "false"


def _decode_port(raw: str) -> int:
    try:
        port = int(raw)
    except ValueError:
        raise ValueError(f"port must be an integer, got {raw!r}") from None
    if not 1 <= port <= 65535:
        raise ValueError(f"port {port} out of range 1-65535")
    return port


def _decode_bind(raw: str) -> FrozenSet[str]:
    inner = raw.strip()
    if inner.startswith("[") and inner.endswith("]"):
        inner = inner[1:-1]
    items = frozenset(unquote(p.strip()) for p in inner.split(",") if p.strip())
    if not items:
        raise ValueError("bindIp is empty")
    return items


def _encode_bind(value: Iterable[str]) -> str:
    addrs = sorted(value)
    joined = ",".join(addrs)
    if all(_BARE_RE.match(a) for a in addrs):
        return joined
    return json.dumps(joined)


def _decode_auth(raw: str) -> bool:
    v = raw.lower()
    if v == "enabled":
        return True
    if v == "disabled":
        return False
    raise ValueError(f"authorization must be 'enabled' or 'disabled', got {raw!r}")


def _encode_auth(value: bool) -> str:
    return '"enabled"' if value else '"disabled"'


def _decode_name(raw: str) -> str:
    if not raw:
        raise ValueError("replSetName is empty")
    return raw


@dataclass(frozen=True)
class FieldSpec:
    name: str
    path: KeyPath
    decode: Callable[[str], Any]
    encode: Callable[[Any], str]
    restart: bool = False


# Order is the render order for a file written from scratch.
FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("storage_path", ("storage", "dbPath"), _decode_str, quote_scalar),
    FieldSpec("journal_enabled", ("storage", "journal", "enabled"), _decode_bool, _encode_bool),
    FieldSpec("log_path", ("systemLog", "path"), _decode_str, quote_scalar),
    FieldSpec("port", ("net", "port"), _decode_port, str, restart=True),
    FieldSpec("bind_addresses", ("net", "bindIp"), _decode_bind, _encode_bind, restart=True),
    FieldSpec("replica_set_name", ("replication", "replSetName"), _decode_name, quote_scalar, restart=True),
    FieldSpec("authorization_enabled", ("security", "authorization"), _decode_auth, _encode_auth, restart=True),
    FieldSpec("key_file", ("security", "keyFile"), _decode_str, quote_scalar, restart=True),
)
FIELDS_BY_NAME: Dict[str, FieldSpec] = {f.name: f for f in FIELDS}
RESTART_FIELDS: FrozenSet[str] = frozenset(f.name for f in FIELDS if f.restart)


@dataclass(frozen=True)
class ConfigModel:
    """
    The settings rsboot manages on a node. ``None`` means unspecified (in a
    desired model) or absent (in a parsed one). The source document, when
    there is one, rides along so render() can preserve everything else.
    """

    storage_path: Optional[str] = None
    journal_enabled: Optional[bool] = None
    port: Optional[int] = None
    bind_addresses: Optional[FrozenSet[str]] = None
    replica_set_name: Optional[str] = None
    authorization_enabled: Optional[bool] = None
    log_path: Optional[str] = None
    key_file: Optional[str] = None
    document: Optional[ConfigDocument] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if self.port is not None and not 1 <= self.port <= 65535:
            raise ValueError(f"port {self.port} out of range 1-65535")
        if self.replica_set_name is not None and not self.replica_set_name.strip():
            raise ValueError("replica_set_name must be non-empty when set")
        if self.bind_addresses is not None:
            addrs = frozenset(self.bind_addresses)
            if not addrs:
                raise ValueError("bind_addresses must not be empty when set")
            object.__setattr__(self, "bind_addresses", addrs)

    def specified(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in FIELDS if getattr(self, f.name) is not None}

    def with_changes(self, **changes) -> "ConfigModel":
        return dataclasses.replace(self, **changes)

    @property
    def text(self) -> str:
        return render(self)


def parse(text: str) -> ConfigModel:
    doc = ConfigDocument.parse(text)
    values: Dict[str, Any] = {}
    for spec in FIELDS:
        raw = doc.get(spec.path)
        if raw is None:
            continue
        if doc.is_section(spec.path):
            raise ConfigParseError(f"'{'.'.join(spec.path)}' must be a scalar", doc.line_number(spec.path))
        if _BLOCK_RE.match(raw):
            raise ConfigParseError(
                f"'{'.'.join(spec.path)}' must be a plain scalar, not a block scalar",
                doc.line_number(spec.path),
            )
        try:
            values[spec.name] = spec.decode(raw)
        except ValueError as e:
            raise ConfigParseError(str(e), doc.line_number(spec.path)) from None
    return ConfigModel(document=doc, **values)


def apply_values(doc: ConfigDocument, values: Dict[str, Any]) -> ConfigDocument:
    """Write each field in *values* into *doc*, skipping fields whose value already matches."""
    for spec in FIELDS:
        if spec.name not in values or values[spec.name] is None:
            continue
        value = values[spec.name]
        raw = doc.get(spec.path)
        if raw:
            try:
                if spec.decode(raw) == value:
                    continue
            except ValueError:
                pass
        doc = doc.set(spec.path, spec.encode(value))
    return doc


def render(model: ConfigModel) -> str:
    doc = model.document if model.document is not None else ConfigDocument.empty()
    return apply_values(doc, model.specified()).text
