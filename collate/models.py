from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Optional

PAGE_MEDIA_TYPES = {"application/xhtml+xml", "text/html"}


@dataclass(frozen=True)
class EpubItem:
    item_id: str
    path: str
    media_type: str
    content: bytes = b""
    properties: frozenset[str] = frozenset()

    @property
    def is_page(self) -> bool:
        return (self.media_type or "").strip().lower() in PAGE_MEDIA_TYPES

    @property
    def is_image(self) -> bool:
        return (self.media_type or "").strip().lower().startswith("image/")

    @property
    def directory(self) -> str:
        parent = PurePosixPath(self.path).parent.as_posix()
        return "" if parent == "." else parent

    @property
    def file_name(self) -> str:
        return PurePosixPath(self.path).name

    @property
    def metadata_id(self) -> str:
        return f"id.{self.item_id}"


@dataclass
class TocEntry:
    title: str
    content_src: str
    children: list[TocEntry] = field(default_factory=list)


@dataclass
class EpubMetadata:
    title: str = ""
    language: str = "en"
    identifier: Optional[str] = None
    creators: list[str] = field(default_factory=list)
    description: Optional[str] = None
    sources: dict[str, str] = field(default_factory=dict)
    # <metadata> children not modelled above, kept as serialized XML.
    extra: list[str] = field(default_factory=list)


@dataclass
class GuideReference:
    type: str
    href: str
    title: str = ""


@dataclass
class Epub:
    opf_path: str = "OEBPS/content.opf"
    metadata: EpubMetadata = field(default_factory=EpubMetadata)
    manifest: list[EpubItem] = field(default_factory=list)
    spine: list[str] = field(default_factory=list)
    toc: list[TocEntry] = field(default_factory=list)
    spine_attributes: dict[str, dict[str, str]] = field(default_factory=dict)
    guide: list[GuideReference] = field(default_factory=list)

    def page_items(self) -> list[EpubItem]:
        return [item for item in self.manifest if item.is_page]

    def image_items(self) -> list[EpubItem]:
        return [item for item in self.manifest if item.is_image]

    def item_by_id(self, item_id: str) -> Optional[EpubItem]:
        for item in self.manifest:
            if item.item_id == item_id:
                return item
        return None

    def item_by_path(self, path: str) -> Optional[EpubItem]:
        for item in self.manifest:
            if item.path == path:
                return item
        return None

    def source_for(self, item: EpubItem) -> Optional[str]:
        return self.metadata.sources.get(item.metadata_id)

    def append_item(self, item: EpubItem, source: Optional[str] = None) -> None:
        if self.item_by_id(item.item_id) is not None:
            raise ValueError(f"Duplicate manifest id: {item.item_id}")
        if self.item_by_path(item.path) is not None:
            raise ValueError(f"Duplicate manifest path: {item.path}")
        self.manifest.append(item)
        if source is not None:
            self.metadata.sources[item.metadata_id] = source


def iter_toc(entries: list[TocEntry]):
    """Yield every entry of a TOC tree depth-first, parents before children."""
    stack = list(reversed(entries))
    while stack:
        entry = stack.pop()
        yield entry
        stack.extend(reversed(entry.children))
