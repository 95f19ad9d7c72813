from __future__ import annotations

import hashlib
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from lxml import etree as LXML_ET

from .links import PageParseError, parse_page
from .models import Epub, EpubItem

EXEMPT_PAGE_NAMES = frozenset({"Cover.xhtml", "0000_Information.xhtml"})
MIN_DISTINCT_FRAGMENTS = 3

logger = logging.getLogger("collate.signature")


class Signature(Counter):
    """Multiset of hashed text fragments found in one page."""


@dataclass(frozen=True)
class PageIssue:
    item_id: str
    path: str
    kind: str
    message: str


def fragment_hash(text: str) -> int:
    digest = hashlib.blake2b(text.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big")


def remove_whitespace(text: str) -> str:
    return "".join(ch for ch in text if not ch.isspace())


def text_fragments(page: Union[bytes, LXML_ET._Element, LXML_ET._ElementTree]) -> list[str]:
    if isinstance(page, (bytes, bytearray)):
        page = parse_page(bytes(page))
    root = page.getroot() if isinstance(page, LXML_ET._ElementTree) else page
    stripped = (remove_whitespace(str(node)) for node in root.xpath("//text()"))
    return [text for text in stripped if text]


def signature_from_fragments(fragments: Iterable[str]) -> Signature:
    return Signature(fragment_hash(text) for text in fragments)


def signature(page: Union[bytes, LXML_ET._Element, LXML_ET._ElementTree]) -> Signature:
    return signature_from_fragments(text_fragments(page))


def probable_duplicate(sig_a: Counter, sig_b: Counter) -> bool:
    """True when at least half of ``sig_a``'s fragments also occur in ``sig_b``.

    Not symmetric: the total is taken from ``sig_a`` alone and halved with
    integer division.
    """
    total_lines = sum(sig_a.values())
    same_lines = sum(min(count, sig_b[key]) for key, count in sig_a.items() if key in sig_b)
    return total_lines // 2 <= same_lines


def is_exempt(item: EpubItem, extra_names: Iterable[str] = ()) -> bool:
    return item.file_name in EXEMPT_PAGE_NAMES or item.file_name in set(extra_names)


def check_for_errors(
    item: EpubItem,
    sig: Counter,
    previous_sig: Counter,
    *,
    extra_exempt: Iterable[str] = (),
) -> Optional[PageIssue]:
    if is_exempt(item, extra_exempt):
        return None
    if len(sig) < MIN_DISTINCT_FRAGMENTS:
        return PageIssue(item.item_id, item.path, "empty", f"{item.path} might be empty")
    if probable_duplicate(sig, previous_sig):
        return PageIssue(item.item_id, item.path, "duplicate", f"Possible duplicate chapter {item.path}")
    return None


def check_pages(epub: Epub, *, extra_exempt: Iterable[str] = ()) -> list[PageIssue]:
    """Compare each spine page with the one read before it."""
    exempt = tuple(extra_exempt)
    issues: list[PageIssue] = []
    previous = Signature()
    for item_id in epub.spine:
        item = epub.item_by_id(item_id)
        if item is None or not item.is_page:
            continue
        try:
            sig = signature(item.content)
        except PageParseError as exc:
            logger.debug("page not parseable item_id=%s path=%s error=%s", item.item_id, item.path, exc)
            sig = Signature()
        issue = check_for_errors(item, sig, previous, extra_exempt=exempt)
        if issue is not None:
            logger.warning("page check %s item_id=%s path=%s", issue.kind, issue.item_id, issue.path)
            issues.append(issue)
        previous = sig
    return issues
