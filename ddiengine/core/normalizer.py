"""Codebook normalization.

The engine serializes R lists as JSON objects. Repeated elements come back
as sibling keys ``variable``, ``variable.1``, ``variable.2`` ... and R
attributes travel in a ``.attributes`` entry (see ``keep_attributes`` in
``r/utils.R``). This module turns that into a uniform tree of
``NormalizedNode`` where repeated elements are consecutive siblings sharing
one ``name``.

Two passes:
  keep_attributes     lift ``.attributes`` into a reserved field, drop the
                      attribute names that alias structure (names, class)
  normalize_children  group keys by base name and build child nodes
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
import json
import re

ATTRIBUTES_KEY = ".attributes"
VALUE_KEY = "value"
ROOT_NAME = "codeBook"
# attribute names R adds for structure; keeping them would shadow child keys
STRUCTURAL_ATTRIBUTES = frozenset({"names", "class"})

RawScalar = Union[str, int, float, bool, None]
RawValue = Union[RawScalar, List["RawValue"], Dict[str, "RawValue"]]

_INDEXED_KEY = re.compile(r"^(.*?)\.(\d+)$")


@dataclass
class NormalizedNode:
    name: str
    attributes: Optional[Dict[str, str]] = None
    value: Optional[str] = None
    children: Optional[List["NormalizedNode"]] = None

    def __post_init__(self):
        if self.value is not None and self.children is not None:
            raise ValueError(f"node {self.name!r} cannot carry both a value and children")

    @property
    def is_leaf(self) -> bool:
        return self.children is None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"name": self.name}
        if self.attributes:
            out["attributes"] = dict(self.attributes)
        if self.value is not None:
            out["value"] = self.value
        if self.children is not None:
            out["children"] = [c.to_dict() for c in self.children]
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NormalizedNode":
        children = data.get("children")
        return cls(
            name=str(data["name"]),
            attributes=dict(data["attributes"]) if data.get("attributes") else None,
            value=data.get("value"),
            children=[cls.from_dict(c) for c in children] if children is not None else None,
        )

    def to_raw(self) -> RawValue:
        return to_raw(self)


# ----------------------------------------------------------------------
# helpers

def scalar_text(x: RawScalar) -> Optional[str]:
    if x is None:
        return None
    if isinstance(x, bool):
        return "true" if x else "false"
    if isinstance(x, float) and x.is_integer():
        return str(int(x))
    return str(x)


def _attribute_text(v: Any) -> str:
    if isinstance(v, list):
        if len(v) == 1:
            return _attribute_text(v[0])
        return " ".join(_attribute_text(x) for x in v)
    if isinstance(v, dict):
        return json.dumps(v, ensure_ascii=False, sort_keys=True)
    text = scalar_text(v)
    return "" if text is None else text


def split_key(key: str) -> Tuple[str, Optional[int]]:
    """``foo`` -> (foo, None); ``foo.2`` -> (foo, 2); ``foo.bar`` -> (foo.bar, None)."""
    m = _INDEXED_KEY.match(key)
    if m and m.group(1):
        return m.group(1), int(m.group(2))
    return key, None


# ----------------------------------------------------------------------
# pass 1

def keep_attributes(raw: RawValue) -> RawValue:
    """Return a copy of ``raw`` with attributes lifted into ``.attributes``.

    Attribute values are flattened to strings; ``names``/``class`` are dropped.
    """
    if isinstance(raw, dict):
        out: Dict[str, Any] = {}
        attrs = raw.get(ATTRIBUTES_KEY)
        for k, v in raw.items():
            if k == ATTRIBUTES_KEY:
                continue
            out[k] = keep_attributes(v)
        if isinstance(attrs, dict):
            cleaned = {
                str(k): _attribute_text(v) for k, v in attrs.items() if k not in STRUCTURAL_ATTRIBUTES
            }
            if cleaned:
                out[ATTRIBUTES_KEY] = cleaned
        return out
    if isinstance(raw, list):
        return [keep_attributes(x) for x in raw]
    return raw


# ----------------------------------------------------------------------
# pass 2

def _group_keys(keys) -> List[Tuple[str, List[str]]]:
    groups: Dict[str, List[Tuple[int, str]]] = {}
    for key in keys:
        base, index = split_key(key)
        # bare key sorts before .1
        groups.setdefault(base, []).append((-1 if index is None else index, key))
    return [(base, [k for _, k in sorted(members)]) for base, members in groups.items()]


def _node(name: str, raw: RawValue) -> List[NormalizedNode]:
    if isinstance(raw, list):
        if not raw:
            return [NormalizedNode(name=name)]
        nodes: List[NormalizedNode] = []
        for item in raw:
            nodes.extend(_node(name, item))
        return nodes
    if not isinstance(raw, dict):
        return [NormalizedNode(name=name, value=scalar_text(raw))]
    attrs = raw.get(ATTRIBUTES_KEY) or None
    keys = [k for k in raw if k != ATTRIBUTES_KEY]
    if keys == [VALUE_KEY] and not isinstance(raw[VALUE_KEY], (dict, list)):
        return [NormalizedNode(name=name, attributes=attrs, value=scalar_text(raw[VALUE_KEY]))]
    if not keys:
        return [NormalizedNode(name=name, attributes=attrs)]
    return [NormalizedNode(name=name, attributes=attrs, children=normalize_children(raw))]


def normalize_children(raw: Dict[str, RawValue]) -> List[NormalizedNode]:
    """Child nodes of a map, grouped by base name in first-seen order."""
    children: List[NormalizedNode] = []
    for base, keys in _group_keys(k for k in raw if k != ATTRIBUTES_KEY):
        for key in keys:
            children.extend(_node(base, raw[key]))
    return children


def normalize_codebook(raw: RawValue, name: str = ROOT_NAME) -> NormalizedNode:
    nodes = _node(name, keep_attributes(raw))
    if len(nodes) == 1:
        return nodes[0]
    # top-level list: wrap so there is a single root
    return NormalizedNode(name=name, children=nodes)


# ----------------------------------------------------------------------
# inverse shape

def to_raw(node: NormalizedNode) -> RawValue:
    """Re-express ``node`` the way the engine would have serialized it."""
    attrs = dict(node.attributes) if node.attributes else None
    if node.children is None:
        if attrs is None:
            return {} if node.value is None else node.value
        out: Dict[str, Any] = {ATTRIBUTES_KEY: attrs}
        if node.value is not None:
            out[VALUE_KEY] = node.value
        return out
    out = {ATTRIBUTES_KEY: attrs} if attrs else {}
    seen: Dict[str, int] = {}
    for child in node.children:
        count = seen.get(child.name, 0)
        seen[child.name] = count + 1
        # a lone bare "value" key would read back as a leaf value
        if child.name == VALUE_KEY:
            key = f"{child.name}.{count + 1}"
        else:
            key = child.name if count == 0 else f"{child.name}.{count}"
        out[key] = to_raw(child)
    return out


__all__ = [
    "NormalizedNode",
    "ATTRIBUTES_KEY",
    "VALUE_KEY",
    "ROOT_NAME",
    "keep_attributes",
    "normalize_children",
    "normalize_codebook",
    "split_key",
    "scalar_text",
    "to_raw",
]
