from __future__ import annotations

import logging
import posixpath
from typing import Mapping, Union
from urllib.parse import quote, unquote, urlsplit

from lxml import etree as LXML_ET

from .naming import MappingMissError

XHTML_NS = "http://www.w3.org/1999/xhtml"
SVG_NS = "http://www.w3.org/2000/svg"
XLINK_NS = "http://www.w3.org/1999/xlink"

# (element, attribute) pairs whose values point at other container members.
# <link> is left alone: stylesheets are not carried over by a merge.
REWRITTEN_ATTRIBUTES = (
    (f"{{{SVG_NS}}}image", f"{{{XLINK_NS}}}href"),
    (f"{{{XHTML_NS}}}img", "src"),
    (f"{{{XHTML_NS}}}a", "href"),
)

logger = logging.getLogger("collate.links")


class PageParseError(ValueError):
    pass


def _canonical_member(path: str) -> str:
    normalized = posixpath.normpath((path or "").replace("\\", "/")).lstrip("/")
    while normalized.startswith("../"):
        normalized = normalized[3:]
    return "" if normalized in {"", "."} else normalized


def is_internal_reference(uri: str) -> bool:
    if not uri or uri.startswith("#"):
        return False
    try:
        parts = urlsplit(uri)
    except ValueError:
        return False
    if parts.scheme or parts.netloc:
        return False
    return not uri.startswith("/")


def resolve_reference(item_directory: str, path: str) -> str:
    base = item_directory if item_directory not in {"", "."} else "."
    return _canonical_member(posixpath.join(base, path))


def relative_reference(item_directory: str, target: str) -> str:
    start = item_directory if item_directory not in {"", "."} else "."
    return posixpath.relpath(target, start=start)


def fixup_url(uri: str, item_directory: str, paths: Mapping[str, str]) -> str:
    """Point ``uri`` (as written in a page under ``item_directory``) at the renumbered member."""
    if not is_internal_reference(uri):
        return uri

    path, sep, fragment = uri.partition("#")
    target = resolve_reference(item_directory, path)
    quoted = False
    if target not in paths:
        decoded = resolve_reference(item_directory, unquote(path))
        if decoded not in paths:
            raise MappingMissError(target or uri, "path")
        target = decoded
        quoted = True

    new_relative = relative_reference(item_directory, paths[target])
    if quoted:
        new_relative = quote(new_relative, safe="/")
    return f"{new_relative}{sep}{fragment}"


def rewrite_page(
    tree: Union[LXML_ET._Element, LXML_ET._ElementTree],
    item_directory: str,
    paths: Mapping[str, str],
) -> Union[LXML_ET._Element, LXML_ET._ElementTree]:
    root = tree.getroot() if isinstance(tree, LXML_ET._ElementTree) else tree
    for element_name, attribute_name in REWRITTEN_ATTRIBUTES:
        for node in root.iter(element_name):
            value = node.get(attribute_name)
            if value is None:
                continue
            fixed = fixup_url(value, item_directory, paths)
            if fixed != value:
                node.set(attribute_name, fixed)
    return tree


def parse_page(content: bytes) -> LXML_ET._ElementTree:
    parser = LXML_ET.XMLParser(resolve_entities=False, no_network=True, recover=True)
    try:
        root = LXML_ET.fromstring(content, parser=parser)
    except LXML_ET.XMLSyntaxError as exc:
        raise PageParseError(f"Page is not parseable: {exc}") from exc
    if root is None:
        raise PageParseError("Page has no markup to parse")
    return root.getroottree()


def serialize_page(tree: LXML_ET._ElementTree, *, xml_declaration: bool = True) -> bytes:
    encoding = tree.docinfo.encoding or "utf-8"
    return LXML_ET.tostring(tree, encoding=encoding, xml_declaration=xml_declaration)


def rewrite_page_bytes(content: bytes, item_directory: str, paths: Mapping[str, str]) -> bytes:
    tree = parse_page(content)
    rewrite_page(tree, item_directory, paths)
    has_declaration = content.lstrip(b"\xef\xbb\xbf \t\r\n").startswith(b"<?xml")
    return serialize_page(tree, xml_declaration=has_declaration)
