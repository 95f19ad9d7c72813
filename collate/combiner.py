from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from .links import PageParseError, rewrite_page_bytes
from .models import Epub, EpubItem, GuideReference, TocEntry, iter_toc
from .naming import RemapTables, compute_mapping

logger = logging.getLogger("collate.combiner")


def copy_toc_entry(entry: TocEntry, tables: RemapTables) -> TocEntry:
    path, sep, fragment = entry.content_src.partition("#")
    return TocEntry(
        title=entry.title,
        content_src=f"{tables.new_path(path)}{sep}{fragment}",
        children=copy_toc_entries(entry.children, tables),
    )


def copy_toc_entries(entries: list[TocEntry], tables: RemapTables) -> list[TocEntry]:
    return [copy_toc_entry(entry, tables) for entry in entries]


def copy_spine_attributes(appendage: Epub, tables: RemapTables) -> dict[str, dict[str, str]]:
    # itemref ids are not carried over.
    copied: dict[str, dict[str, str]] = {}
    for old_id, attributes in appendage.spine_attributes.items():
        kept = {name: value for name, value in attributes.items() if name != "id"}
        if kept and old_id in tables.ids:
            copied[tables.new_id(old_id)] = kept
    return copied


def copy_guide(base: Epub, appendage: Epub, tables: RemapTables) -> list[GuideReference]:
    """Guide references of types the base lacks, pointed at the renumbered pages."""
    known_types = {reference.type for reference in base.guide}
    copied: list[GuideReference] = []
    for reference in appendage.guide:
        path, sep, fragment = reference.href.partition("#")
        if reference.type in known_types or path not in tables.paths:
            continue
        known_types.add(reference.type)
        copied.append(GuideReference(reference.type, f"{tables.new_path(path)}{sep}{fragment}", reference.title))
    return copied


class EpubCombiner:
    """Fold one EPUB onto the end of another.

    The base book is modified in place; the appended book is only read.
    Nothing is added to the base until every page, TOC entry and spine id of
    the appendage has been renumbered, so a ``MappingMissError`` leaves the
    base exactly as it was.
    """

    def __init__(self, initial: Epub, *, workers: int = 1) -> None:
        self.initial = initial
        self.to_append: Optional[Epub] = None
        self.workers = max(1, workers)

    def add(self, to_append: Epub) -> Epub:
        self.to_append = to_append
        return self.combine()

    def calculate_new_paths_and_ids(self, appendage: Epub) -> RemapTables:
        return compute_mapping(
            self.initial.page_items(),
            self.initial.image_items(),
            appendage.page_items(),
            appendage.image_items(),
            reserved_paths=[item.path for item in self.initial.manifest],
            reserved_ids=[item.item_id for item in self.initial.manifest],
        )

    def copy_item(self, item: EpubItem, tables: RemapTables) -> Optional[EpubItem]:
        if item.is_page:
            logger.debug("fixing up page path=%s", item.path)
            try:
                content = rewrite_page_bytes(item.content, item.directory, tables.paths)
            except PageParseError as exc:
                raise PageParseError(f"{item.path}: {exc}") from exc
        elif item.is_image:
            content = item.content
        else:
            return None
        return EpubItem(
            item_id=tables.new_id(item.item_id),
            path=tables.new_path(item.path),
            media_type=item.media_type,
            content=content,
            properties=item.properties,
        )

    def _copy_items(self, appendage: Epub, tables: RemapTables) -> list[tuple[EpubItem, Optional[str]]]:
        source_items = list(appendage.manifest)
        if self.workers > 1 and len(source_items) > 1:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                copied = list(pool.map(lambda item: self.copy_item(item, tables), source_items))
        else:
            copied = [self.copy_item(item, tables) for item in source_items]

        staged: list[tuple[EpubItem, Optional[str]]] = []
        for original, new_item in zip(source_items, copied):
            if new_item is None:
                logger.debug("skipping item path=%s media_type=%s", original.path, original.media_type)
                continue
            staged.append((new_item, appendage.source_for(original)))
        return staged

    def combine(self) -> Epub:
        if self.to_append is None:
            raise ValueError("Nothing to append")
        appendage = self.to_append

        tables = self.calculate_new_paths_and_ids(appendage)
        items = self._copy_items(appendage, tables)
        toc = copy_toc_entries(appendage.toc, tables)
        spine = [tables.new_id(item_id) for item_id in appendage.spine]
        spine_attributes = copy_spine_attributes(appendage, tables)
        guide = copy_guide(self.initial, appendage, tables)

        for item, source in items:
            self.initial.append_item(item, source)
        self.initial.toc.extend(toc)
        self.initial.spine.extend(spine)
        self.initial.spine_attributes.update(spine_attributes)
        self.initial.guide.extend(guide)
        logger.info(
            "combined epub items=%d toc_entries=%d spine=%d title=%r",
            len(items),
            sum(1 for _ in iter_toc(toc)),
            len(spine),
            appendage.metadata.title,
        )
        return self.initial


def combine_epubs(base: Epub, appendage: Epub, *, workers: int = 1) -> Epub:
    return EpubCombiner(base, workers=workers).add(appendage)
