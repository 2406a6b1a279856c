from __future__ import annotations

import re
from typing import Dict, Iterable, Iterator, List, Optional, Union

import lxml.etree as LET

from pharma_ingestion.app.models.records import NA

_XML_DECL_RE = re.compile(r"^\s*<\?xml[^>]*\?>", re.IGNORECASE)


class XmlParseError(ValueError):
    pass


class TagNode:
    """One element of an attribute-stripped XML tree.

    `fields` maps the uppercased local tag name of every child element to the
    list of its values in document order. A value is the stripped text for a
    leaf element or another TagNode for an element with children.
    """

    __slots__ = ("tag", "fields")

    def __init__(self, tag: str):
        self.tag = tag
        self.fields: Dict[str, List[Union[str, "TagNode"]]] = {}

    def add(self, tag: str, value: Union[str, "TagNode"]) -> None:
        self.fields.setdefault(tag, []).append(value)

    def __repr__(self) -> str:
        return f"TagNode({self.tag!r}, fields={list(self.fields)})"


Value = Union[str, TagNode]


def _element_to_node(elem: LET._Element) -> Value:
    children = [ch for ch in elem if isinstance(ch.tag, str)]
    if not children:
        return elem.text.strip() if elem.text and elem.text.strip() else ""
    node = TagNode(LET.QName(elem).localname.upper())
    for ch in children:
        node.add(LET.QName(ch).localname.upper(), _element_to_node(ch))
    return node


def parse_xml(content: str) -> TagNode:
    """Parse XML text into a TagNode tree rooted at the document element."""
    # lxml refuses str input that still carries an encoding declaration
    text = _XML_DECL_RE.sub("", content, count=1).strip()
    if not text:
        raise XmlParseError("Empty XML content")
    parser = LET.XMLParser(huge_tree=True, remove_comments=True, resolve_entities=False)
    try:
        root = LET.fromstring(text, parser=parser)
    except LET.XMLSyntaxError as e:
        raise XmlParseError(f"Invalid XML: {e}") from e
    node = _element_to_node(root)
    if isinstance(node, str):
        # Root without child elements
        return TagNode(LET.QName(root).localname.upper())
    return node


# -------------------------------------------------------------------------
# Typed extraction helpers
# -------------------------------------------------------------------------

def _keys(aliases: Iterable[str]) -> List[str]:
    return [a.upper() for a in aliases]


def text(node: Optional[TagNode], aliases: Iterable[str], default: str = NA) -> str:
    """First non-empty leaf text found under any alias, in alias order."""
    if node is None:
        return default
    for key in _keys(aliases):
        for value in node.fields.get(key, []):
            if isinstance(value, str) and value:
                return value
    return default


def optional_text(node: Optional[TagNode], aliases: Iterable[str]) -> Optional[str]:
    value = text(node, aliases, default="")
    return value or None


def children(node: Optional[TagNode], tag: str) -> List[TagNode]:
    if node is None:
        return []
    return [v for v in node.fields.get(tag.upper(), []) if isinstance(v, TagNode)]


def iter_nodes(node: TagNode) -> Iterator[TagNode]:
    """Depth-first, document-order walk over node and all nested TagNodes."""
    yield node
    for values in node.fields.values():
        for v in values:
            if isinstance(v, TagNode):
                yield from iter_nodes(v)


def find_all(node: Optional[TagNode], tag: str) -> List[TagNode]:
    if node is None:
        return []
    key = tag.upper()
    return [n for n in iter_nodes(node) if n.tag == key]


def _iter_outermost(node: TagNode, key: str) -> Iterator[TagNode]:
    if node.tag == key:
        yield node
        return
    for values in node.fields.values():
        for v in values:
            if isinstance(v, TagNode):
                yield from _iter_outermost(v, key)


def find_outermost(node: Optional[TagNode], tag: str) -> List[TagNode]:
    """Like `find_all` but does not descend into a match, so nested matches are skipped."""
    if node is None:
        return []
    return list(_iter_outermost(node, tag.upper()))


def find_first(node: Optional[TagNode], tag: str) -> Optional[TagNode]:
    if node is None:
        return None
    key = tag.upper()
    if node.tag == key:
        return node
    for n in iter_nodes(node):
        if n.tag == key:
            return n
    return None


def deep_text(node: Optional[TagNode], aliases: Iterable[str], default: str = NA) -> str:
    """Like `text` but searches the whole subtree, nearest levels first."""
    if node is None:
        return default
    keys = _keys(aliases)
    level = [node]
    while level:
        for key in keys:
            for n in level:
                for value in n.fields.get(key, []):
                    if isinstance(value, str) and value:
                        return value
        level = [v for n in level for values in n.fields.values() for v in values if isinstance(v, TagNode)]
    return default


def has_tag(node: Optional[TagNode], tag: str) -> bool:
    if node is None:
        return False
    key = tag.upper()
    return any(n.tag == key or key in n.fields for n in iter_nodes(node))
