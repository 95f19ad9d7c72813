from __future__ import annotations

import datetime as dt
import logging
import posixpath
import tempfile
import zipfile
from functools import lru_cache
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import quote, unquote

from jinja2 import Environment, FileSystemLoader, select_autoescape
from lxml import etree as LXML_ET

from .models import Epub, EpubItem, EpubMetadata, GuideReference, TocEntry

NCX_MEDIA_TYPE = "application/x-dtbncx+xml"
MODELLED_METADATA = frozenset({"title", "language", "identifier", "creator", "description", "source"})
EPUB_TEMPLATES_DIR = Path(__file__).resolve().parent / "epub_templates"

logger = logging.getLogger("collate.epub")


class EpubFormatError(ValueError):
    pass


@lru_cache(maxsize=1)
def _epub_template_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(EPUB_TEMPLATES_DIR)),
        autoescape=select_autoescape(
            enabled_extensions=("j2",),
            default_for_string=False,
        ),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def _render_epub_template(template_name: str, **context: object) -> str:
    return _epub_template_env().get_template(template_name).render(**context)


def _canonical_zip_member(name: str) -> str:
    normalized = posixpath.normpath((name or "").replace("\\", "/")).lstrip("/")
    while normalized.startswith("../"):
        normalized = normalized[3:]
    return "" if normalized in {"", "."} else normalized


def _tag_local_name(tag: object) -> str:
    if not tag or not isinstance(tag, str):
        return ""
    if "}" in tag:
        return tag.split("}", 1)[1]
    return tag


def _child_by_local_name(node: LXML_ET._Element, local_name: str) -> Optional[LXML_ET._Element]:
    for child in list(node):
        if _tag_local_name(child.tag) == local_name:
            return child
    return None


def _iter_children_by_local_name(node: LXML_ET._Element, local_name: str) -> list[LXML_ET._Element]:
    return [child for child in list(node) if _tag_local_name(child.tag) == local_name]


def _attr_by_local_name(node: LXML_ET._Element, local_name: str) -> str:
    for key, value in node.attrib.items():
        if _tag_local_name(key) == local_name:
            return str(value or "").strip()
    return ""


def _node_text(node: Optional[LXML_ET._Element]) -> Optional[str]:
    if node is None:
        return None
    text = "".join(node.itertext()).strip()
    return text or None


def _xml_root_from_bytes(raw: bytes) -> LXML_ET._Element:
    parser = LXML_ET.XMLParser(resolve_entities=False, no_network=True, recover=True)
    root = LXML_ET.fromstring(raw, parser=parser)
    if root is None:
        raise EpubFormatError("Empty XML document")
    return root


def _resolve_member_href(from_member: str, href: str) -> str:
    """Resolve ``href`` (relative to ``from_member``) to a decoded container path, fragment kept."""
    raw_path, sep, fragment = (href or "").strip().partition("#")
    from_dir = PurePosixPath(from_member).parent.as_posix()
    base = from_dir if from_dir not in {"", "."} else "."
    if not raw_path:
        return ""
    member = _canonical_zip_member(posixpath.join(base, unquote(raw_path)))
    return f"{member}{sep}{fragment}" if member else ""


def _relative_href(from_member: str, to_member: str) -> str:
    path, sep, fragment = to_member.partition("#")
    from_dir = PurePosixPath(from_member).parent.as_posix()
    start = from_dir if from_dir not in {"", "."} else "."
    return f"{quote(posixpath.relpath(path, start=start), safe='/')}{sep}{fragment}"


def _zip_member_index(zf: zipfile.ZipFile) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for info in zf.infolist():
        canonical = _canonical_zip_member(info.filename)
        if canonical and canonical not in mapping:
            mapping[canonical] = info.filename
    return mapping


def _read_member_bytes(zf: zipfile.ZipFile, index: dict[str, str], member_path: str) -> Optional[bytes]:
    actual = index.get(_canonical_zip_member(member_path))
    if actual is None:
        return None
    return zf.read(actual)


def _opf_path_from_container(zf: zipfile.ZipFile, index: dict[str, str]) -> str:
    container_raw = _read_member_bytes(zf, index, "META-INF/container.xml")
    if container_raw is None:
        raise EpubFormatError("Missing META-INF/container.xml")
    root = _xml_root_from_bytes(container_raw)
    full_path = ""
    for node in root.iter():
        if _tag_local_name(node.tag) != "rootfile":
            continue
        candidate = (node.attrib.get("full-path") or "").strip()
        if candidate:
            full_path = candidate
            break
    normalized = _canonical_zip_member(full_path)
    if not normalized:
        raise EpubFormatError("Missing OPF path in container.xml")
    return normalized


def _guess_media_type(member_path: str) -> str:
    suffix = Path(member_path).suffix.lower()
    return {
        ".xhtml": "application/xhtml+xml",
        ".html": "application/xhtml+xml",
        ".htm": "application/xhtml+xml",
        ".css": "text/css",
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".png": "image/png",
        ".gif": "image/gif",
        ".svg": "image/svg+xml",
        ".webp": "image/webp",
        ".ncx": NCX_MEDIA_TYPE,
    }.get(suffix, "application/octet-stream")


def _metadata_from_opf(root: LXML_ET._Element) -> EpubMetadata:
    meta = EpubMetadata()
    metadata_node = _child_by_local_name(root, "metadata")
    if metadata_node is None:
        return meta

    unique_id = str(root.attrib.get("unique-identifier") or "").strip()
    identifiers = [node for node in _iter_children_by_local_name(metadata_node, "identifier") if _node_text(node)]
    identifier_node = next((node for node in identifiers if node.attrib.get("id") == unique_id), None)
    if identifier_node is None and identifiers:
        identifier_node = identifiers[0]
    if identifier_node is not None:
        meta.identifier = _node_text(identifier_node)

    seen_language = False
    for node in list(metadata_node):
        if not isinstance(node.tag, str) or node is identifier_node:
            continue
        local = _tag_local_name(node.tag)
        text = _node_text(node)
        if local in MODELLED_METADATA and not text:
            continue
        if local == "title" and not meta.title:
            meta.title = text
        elif local == "language" and not seen_language:
            meta.language = text
            seen_language = True
        elif local == "creator":
            meta.creators.append(text)
        elif local == "description" and meta.description is None:
            meta.description = text
        elif local == "source" and _attr_by_local_name(node, "id"):
            meta.sources[_attr_by_local_name(node, "id")] = text
        elif local == "meta" and _attr_by_local_name(node, "property") == "dcterms:modified":
            # regenerated on write
            continue
        else:
            meta.extra.append(LXML_ET.tostring(node, encoding="unicode", with_tail=False))
    return meta


def _spine_attributes(itemref: LXML_ET._Element) -> dict[str, str]:
    return {
        str(key): str(value)
        for key, value in itemref.attrib.items()
        if key != "idref" and not str(key).startswith("{")
    }


def _guide_from_opf(root: LXML_ET._Element, opf_path: str) -> list[GuideReference]:
    guide_node = _child_by_local_name(root, "guide")
    if guide_node is None:
        return []
    references: list[GuideReference] = []
    for node in _iter_children_by_local_name(guide_node, "reference"):
        ref_type = str(node.attrib.get("type") or "").strip()
        href = _resolve_member_href(opf_path, str(node.attrib.get("href") or ""))
        if not ref_type or not href:
            continue
        references.append(GuideReference(type=ref_type, href=href, title=str(node.attrib.get("title") or "").strip()))
    return references


def _ncx_entries(nodes: list[LXML_ET._Element], ncx_path: str) -> list[TocEntry]:
    entries: list[TocEntry] = []
    for point in nodes:
        label = point.xpath("./*[local-name()='navLabel']/*[local-name()='text'][1]")  # noqa: S320
        content = _child_by_local_name(point, "content")
        children = _ncx_entries(_iter_children_by_local_name(point, "navPoint"), ncx_path)
        src = str(content.attrib.get("src") or "") if content is not None else ""
        target = _resolve_member_href(ncx_path, src)
        if not target:
            entries.extend(children)
            continue
        title = _node_text(label[0]) if label else None
        entries.append(TocEntry(title=title or PurePosixPath(target).stem, content_src=target, children=children))
    return entries


def _toc_from_ncx(raw: bytes, ncx_path: str) -> list[TocEntry]:
    root = _xml_root_from_bytes(raw)
    nav_map = root.xpath(".//*[local-name()='navMap']")  # noqa: S320
    if not nav_map:
        return []
    return _ncx_entries(_iter_children_by_local_name(nav_map[0], "navPoint"), ncx_path)


def _nav_list_entries(ol: LXML_ET._Element, nav_path: str) -> list[TocEntry]:
    entries: list[TocEntry] = []
    for li in _iter_children_by_local_name(ol, "li"):
        link = _child_by_local_name(li, "a")
        sub_list = _child_by_local_name(li, "ol")
        children = _nav_list_entries(sub_list, nav_path) if sub_list is not None else []
        target = _resolve_member_href(nav_path, str(link.attrib.get("href") or "")) if link is not None else ""
        if not target:
            entries.extend(children)
            continue
        title = _node_text(link) or PurePosixPath(target).stem
        entries.append(TocEntry(title=title, content_src=target, children=children))
    return entries


def _toc_from_nav(raw: bytes, nav_path: str) -> list[TocEntry]:
    root = _xml_root_from_bytes(raw)
    for nav in root.xpath(".//*[local-name()='nav']"):  # noqa: S320
        nav_type = _attr_by_local_name(nav, "type").lower()
        if nav_type and nav_type != "toc":
            continue
        ol = _child_by_local_name(nav, "ol")
        if ol is not None:
            return _nav_list_entries(ol, nav_path)
    return []


def read_epub(epub_file: Path) -> Epub:
    """Load a whole EPUB into memory.

    The NCX and EPUB 3 nav documents are folded into ``Epub.toc`` and left out
    of the manifest; ``write_epub`` regenerates both from the TOC tree.
    """
    try:
        zf = zipfile.ZipFile(epub_file, "r")
    except zipfile.BadZipFile as exc:
        raise EpubFormatError(f"Not a zip container: {epub_file}") from exc

    with zf:
        index = _zip_member_index(zf)
        opf_path = _opf_path_from_container(zf, index)
        opf_raw = _read_member_bytes(zf, index, opf_path)
        if opf_raw is None:
            raise EpubFormatError(f"Missing package document {opf_path}")
        root = _xml_root_from_bytes(opf_raw)

        epub = Epub(opf_path=opf_path, metadata=_metadata_from_opf(root))
        epub.guide = _guide_from_opf(root, opf_path)
        manifest_node = _child_by_local_name(root, "manifest")
        spine_node = _child_by_local_name(root, "spine")
        ncx_id = str(spine_node.attrib.get("toc") or "").strip() if spine_node is not None else ""

        ncx_path = ""
        nav_path = ""
        toc_ids: set[str] = set()
        for node in _iter_children_by_local_name(manifest_node, "item") if manifest_node is not None else []:
            item_id = str(node.attrib.get("id") or "").strip()
            href = str(node.attrib.get("href") or "").strip()
            member = _resolve_member_href(opf_path, href).partition("#")[0]
            if not item_id or not member:
                continue
            media_type = str(node.attrib.get("media-type") or "").strip().lower() or _guess_media_type(member)
            properties = frozenset(str(node.attrib.get("properties") or "").split())
            if media_type == NCX_MEDIA_TYPE or item_id == ncx_id:
                ncx_path = ncx_path or member
                toc_ids.add(item_id)
                continue
            if "nav" in properties:
                nav_path = nav_path or member
                toc_ids.add(item_id)
                continue
            content = _read_member_bytes(zf, index, member)
            if content is None:
                logger.warning("manifest item missing from archive item_id=%s path=%s", item_id, member)
                continue
            epub.manifest.append(
                EpubItem(item_id=item_id, path=member, media_type=media_type, content=content, properties=properties)
            )

        known_ids = {item.item_id for item in epub.manifest}
        for itemref in _iter_children_by_local_name(spine_node, "itemref") if spine_node is not None else []:
            idref = str(itemref.attrib.get("idref") or "").strip()
            if idref in known_ids:
                epub.spine.append(idref)
                attributes = _spine_attributes(itemref)
                if attributes:
                    epub.spine_attributes[idref] = attributes
            elif idref and idref not in toc_ids:
                logger.warning("spine entry without manifest item idref=%s file=%s", idref, epub_file)

        if ncx_path:
            ncx_raw = _read_member_bytes(zf, index, ncx_path)
            if ncx_raw is not None:
                epub.toc = _toc_from_ncx(ncx_raw, ncx_path)
        if not epub.toc and nav_path:
            nav_raw = _read_member_bytes(zf, index, nav_path)
            if nav_raw is not None:
                epub.toc = _toc_from_nav(nav_raw, nav_path)

    logger.info(
        "read epub file=%s items=%d spine=%d toc_entries=%d",
        epub_file,
        len(epub.manifest),
        len(epub.spine),
        len(epub.toc),
    )
    return epub


def _unique_member(directory: str, name: str, taken: set[str]) -> str:
    stem, suffix = posixpath.splitext(name)
    candidate = posixpath.join(directory, name) if directory else name
    counter = 1
    while candidate in taken:
        renamed = f"{stem}-{counter}{suffix}"
        candidate = posixpath.join(directory, renamed) if directory else renamed
        counter += 1
    return candidate


def _unique_id(base_id: str, taken: set[str]) -> str:
    candidate = base_id
    counter = 1
    while candidate in taken:
        candidate = f"{base_id}-{counter}"
        counter += 1
    return candidate


def _toc_context(entries: list[TocEntry], from_member: str, counter: list[int]) -> list[dict]:
    rendered: list[dict] = []
    for entry in entries:
        counter[0] += 1
        play_order = counter[0]
        rendered.append(
            {
                "title": entry.title,
                "href": _relative_href(from_member, entry.content_src),
                "play_order": play_order,
                "children": _toc_context(entry.children, from_member, counter),
            }
        )
    return rendered


def _toc_depth(entries: list[TocEntry]) -> int:
    if not entries:
        return 0
    return 1 + max(_toc_depth(entry.children) for entry in entries)


def write_epub(epub: Epub, output_path: Path) -> None:
    opf_path = epub.opf_path or "OEBPS/content.opf"
    opf_dir = PurePosixPath(opf_path).parent.as_posix()
    opf_dir = "" if opf_dir == "." else opf_dir

    taken_members = {item.path for item in epub.manifest} | {opf_path, "mimetype", "META-INF/container.xml"}
    ncx_path = _unique_member(opf_dir, "toc.ncx", taken_members)
    taken_members.add(ncx_path)
    nav_path = _unique_member(opf_dir, "nav.xhtml", taken_members)
    taken_ids = {item.item_id for item in epub.manifest}
    ncx_id = _unique_id("ncx", taken_ids)
    nav_id = _unique_id("nav", taken_ids | {ncx_id})

    meta = epub.metadata
    identifier = meta.identifier or "urn:uuid:collate"
    modified = (
        dt.datetime.now(dt.timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )
    manifest_ids = {item.item_id for item in epub.manifest}
    sources = [
        {"id": key, "url": url}
        for key, url in meta.sources.items()
        if key.startswith("id.") and key[3:] in manifest_ids
    ]
    items = [
        {
            "id": item.item_id,
            "href": _relative_href(opf_path, item.path),
            "media_type": item.media_type,
            "properties": " ".join(sorted(item.properties)),
        }
        for item in epub.manifest
    ]
    spine = [
        {"idref": idref, "attributes": sorted(epub.spine_attributes.get(idref, {}).items())}
        for idref in epub.spine
    ]
    manifest_paths = {item.path for item in epub.manifest}
    guide = []
    for reference in epub.guide:
        if reference.href.partition("#")[0] not in manifest_paths:
            logger.debug("dropping guide reference type=%s href=%s", reference.type, reference.href)
            continue
        guide.append(
            {"type": reference.type, "title": reference.title, "href": _relative_href(opf_path, reference.href)}
        )

    container_xml = _render_epub_template("container.xml.j2", opf_path=opf_path)
    opf_xml = _render_epub_template(
        "content.opf.j2",
        identifier=identifier,
        title=meta.title,
        language=meta.language or "en",
        creators=meta.creators,
        description=meta.description,
        sources=sources,
        extra_metadata=meta.extra,
        modified=modified,
        items=items,
        spine=spine,
        guide=guide,
        ncx_id=ncx_id,
        ncx_href=_relative_href(opf_path, ncx_path),
        nav_id=nav_id,
        nav_href=_relative_href(opf_path, nav_path),
    )
    toc_ncx = _render_epub_template(
        "toc.ncx.j2",
        identifier=identifier,
        title=meta.title,
        depth=max(1, _toc_depth(epub.toc)),
        entries=_toc_context(epub.toc, ncx_path, [0]),
    )
    nav_xhtml = _render_epub_template(
        "nav.xhtml.j2",
        title=meta.title,
        lang=meta.language or "en",
        entries=_toc_context(epub.toc, nav_path, [0]),
    )

    output_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_handle = tempfile.NamedTemporaryFile(
        prefix=f"{output_path.stem}.",
        suffix=".epub",
        dir=str(output_path.parent),
        delete=False,
    )
    tmp_path = Path(tmp_handle.name)
    tmp_handle.close()
    try:
        with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            # mimetype must be the first member and stored uncompressed.
            zf.writestr("mimetype", b"application/epub+zip", compress_type=zipfile.ZIP_STORED)
            zf.writestr("META-INF/container.xml", container_xml.encode("utf-8"))
            zf.writestr(opf_path, opf_xml.encode("utf-8"))
            zf.writestr(ncx_path, toc_ncx.encode("utf-8"))
            zf.writestr(nav_path, nav_xhtml.encode("utf-8"))
            for item in epub.manifest:
                zf.writestr(item.path, item.content)
        tmp_path.replace(output_path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)
    logger.info("wrote epub file=%s items=%d", output_path, len(epub.manifest))
