from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from .models import EpubItem

PREFIX_WIDTH = 4
MAX_PREFIX = 9999
PREFIX_RE = re.compile(r"^(\d{4})_(.+)$")

logger = logging.getLogger("collate.naming")


class MappingMissError(ValueError):
    """A path or id referenced by the appendage has no renumbered counterpart."""

    def __init__(self, key: str, kind: str = "path") -> None:
        super().__init__(f"No new {kind} recorded for {key!r}")
        self.key = key
        self.kind = kind


class PrefixOverflowError(ValueError):
    """Renumbering would need a prefix wider than four digits."""

    def __init__(self, path: str, number: int) -> None:
        super().__init__(f"Prefix {number} for {path!r} does not fit in {PREFIX_WIDTH} digits")
        self.path = path
        self.number = number


@dataclass(frozen=True)
class RemapTables:
    paths: Mapping[str, str]
    ids: Mapping[str, str]

    def new_path(self, old_path: str) -> str:
        try:
            return self.paths[old_path]
        except KeyError:
            raise MappingMissError(old_path, "path") from None

    def new_id(self, old_id: str) -> str:
        try:
            return self.ids[old_id]
        except KeyError:
            raise MappingMissError(old_id, "id") from None


def extract_prefix(path: str) -> Optional[str]:
    match = PREFIX_RE.match(posixpath.basename(path or ""))
    return match.group(1) if match else None


def strip_prefix(file_name: str) -> str:
    match = PREFIX_RE.match(file_name or "")
    return match.group(2) if match else file_name


def prefix_as_int(path: str) -> int:
    prefix = extract_prefix(path)
    return int(prefix) if prefix else 0


def format_prefix(number: int) -> str:
    return f"{number:0{PREFIX_WIDTH}d}"


def strip_digits(item_id: str) -> str:
    return "".join(ch for ch in item_id if not ch.isdecimal())


def max_prefix(items: Iterable[EpubItem]) -> int:
    return max((prefix_as_int(item.path) for item in items), default=0)


def renumbered_path(path: str, prefix: str) -> str:
    directory, file_name = posixpath.split(path)
    renamed = f"{prefix}_{strip_prefix(file_name)}"
    return posixpath.join(directory, renamed) if directory else renamed


def _assign(
    items: Iterable[EpubItem],
    start: int,
    taken_paths: set[str],
    taken_ids: set[str],
    paths: dict[str, str],
    ids: dict[str, str],
) -> None:
    cursor = start
    for item in items:
        if item.path in paths or item.item_id in ids:
            raise ValueError(f"Appendage manifest lists {item.path!r} ({item.item_id!r}) twice")
        # A prefixed name steps one further so it cannot land on an
        # unprefixed special page such as cover.xhtml -> 0000_cover.xhtml.
        bump = 0 if extract_prefix(item.path) is None else 1
        bare_id = strip_digits(item.item_id)
        number = cursor + 1 + bump
        while True:
            if number > MAX_PREFIX:
                raise PrefixOverflowError(item.path, number)
            prefix = format_prefix(number)
            new_path = renumbered_path(item.path, prefix)
            new_id = f"{bare_id}{prefix}"
            if new_path not in taken_paths and new_id not in taken_ids:
                break
            number += 1
        paths[item.path] = new_path
        ids[item.item_id] = new_id
        taken_paths.add(new_path)
        taken_ids.add(new_id)
        cursor = number
        logger.debug("renumbered item old_path=%s new_path=%s old_id=%s new_id=%s", item.path, new_path, item.item_id, new_id)


def compute_mapping(
    base_pages: list[EpubItem],
    base_images: list[EpubItem],
    appendage_pages: list[EpubItem],
    appendage_images: list[EpubItem],
    *,
    reserved_paths: Iterable[str] = (),
    reserved_ids: Iterable[str] = (),
) -> RemapTables:
    """Assign every appended page and image a fresh prefixed path and id.

    Pages and images are numbered independently, each continuing after the
    highest prefix the base uses for that kind of item. ``reserved_paths`` and
    ``reserved_ids`` name anything else in the base manifest (stylesheets, nav
    documents) that new names must avoid.
    """

    taken_paths = {item.path for item in (*base_pages, *base_images)}
    taken_paths.update(reserved_paths)
    taken_ids = {item.item_id for item in (*base_pages, *base_images)}
    taken_ids.update(reserved_ids)

    paths: dict[str, str] = {}
    ids: dict[str, str] = {}
    _assign(appendage_pages, max_prefix(base_pages), taken_paths, taken_ids, paths, ids)
    _assign(appendage_images, max_prefix(base_images), taken_paths, taken_ids, paths, ids)
    return RemapTables(paths=MappingProxyType(paths), ids=MappingProxyType(ids))
