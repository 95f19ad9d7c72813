import unittest

from collate.models import EpubItem
from collate.naming import (
    MappingMissError,
    PrefixOverflowError,
    compute_mapping,
    extract_prefix,
    max_prefix,
    prefix_as_int,
    strip_digits,
    strip_prefix,
)


def _page(item_id: str, path: str) -> EpubItem:
    return EpubItem(item_id=item_id, path=path, media_type="application/xhtml+xml")


def _image(item_id: str, path: str) -> EpubItem:
    return EpubItem(item_id=item_id, path=path, media_type="image/jpeg")


class PrefixTests(unittest.TestCase):
    def test_extract_prefix(self) -> None:
        self.assertEqual(extract_prefix("0003_chapter.xhtml"), "0003")
        self.assertEqual(extract_prefix("OEBPS/Text/0003_chapter.xhtml"), "0003")
        self.assertIsNone(extract_prefix("chapter.xhtml"))
        self.assertIsNone(extract_prefix("abcd_chapter.xhtml"))
        self.assertIsNone(extract_prefix("0003_"))
        self.assertIsNone(extract_prefix("0003/chapter.xhtml"))

    def test_strip_prefix(self) -> None:
        self.assertEqual(strip_prefix("0003_chapter.xhtml"), "chapter.xhtml")
        self.assertEqual(strip_prefix("chapter.xhtml"), "chapter.xhtml")
        self.assertEqual(strip_prefix("12_chapter.xhtml"), "12_chapter.xhtml")

    def test_malformed_prefix_counts_as_zero(self) -> None:
        self.assertEqual(prefix_as_int("OEBPS/Text/Cover.xhtml"), 0)
        self.assertEqual(prefix_as_int("OEBPS/Text/0042_x.xhtml"), 42)
        self.assertEqual(max_prefix([]), 0)

    def test_strip_digits_removes_digits_anywhere(self) -> None:
        self.assertEqual(strip_digits("ch12"), "ch")
        self.assertEqual(strip_digits("x1htm2l3"), "xhtml")
        self.assertEqual(strip_digits("0001"), "")


class ComputeMappingTests(unittest.TestCase):
    def _base_pages(self) -> list[EpubItem]:
        return [
            _page("xhtml0000", "OEBPS/Text/0000_cover.xhtml"),
            _page("xhtml0005", "OEBPS/Text/0005_ch5.xhtml"),
        ]

    def test_prefixed_page_gets_bumped(self) -> None:
        tables = compute_mapping(self._base_pages(), [], [_page("ch12", "OEBPS/Text/0002_intro.xhtml")], [])
        self.assertEqual(tables.new_path("OEBPS/Text/0002_intro.xhtml"), "OEBPS/Text/0007_intro.xhtml")
        self.assertEqual(tables.new_id("ch12"), "ch0007")

    def test_unprefixed_page_is_not_bumped(self) -> None:
        tables = compute_mapping(self._base_pages(), [], [_page("intro", "OEBPS/Text/intro.xhtml")], [])
        self.assertEqual(tables.new_path("OEBPS/Text/intro.xhtml"), "OEBPS/Text/0006_intro.xhtml")
        self.assertEqual(tables.new_id("intro"), "intro0006")

    def test_images_use_their_own_numbering(self) -> None:
        base_images = [_image("img0001", "OEBPS/Images/0001_a.jpg")]
        tables = compute_mapping(
            self._base_pages(),
            base_images,
            [_page("p1", "OEBPS/Text/0001_x.xhtml")],
            [_image("pic1", "OEBPS/Images/0001_b.jpg")],
        )
        self.assertEqual(tables.new_path("OEBPS/Images/0001_b.jpg"), "OEBPS/Images/0003_b.jpg")
        self.assertEqual(tables.new_id("pic1"), "pic0003")
        self.assertEqual(tables.new_path("OEBPS/Text/0001_x.xhtml"), "OEBPS/Text/0007_x.xhtml")

    def test_mapping_is_injective_for_duplicate_names(self) -> None:
        appendage = [
            _page("a1", "OEBPS/Text/0001_chapter.xhtml"),
            _page("a2", "OEBPS/Other/0001_chapter.xhtml"),
            _page("a3", "OEBPS/Text/chapter.xhtml"),
            _page("a4", "OEBPS/Text/0002_chapter.xhtml"),
        ]
        tables = compute_mapping(self._base_pages(), [], appendage, [])
        new_paths = list(tables.paths.values())
        new_names = [path.rsplit("/", 1)[1] for path in new_paths]
        self.assertEqual(len(set(new_paths)), len(appendage))
        self.assertEqual(len(set(new_names)), len(appendage))
        self.assertEqual(len(set(tables.ids.values())), len(appendage))

    def test_ids_avoid_collisions_across_pages_and_images(self) -> None:
        tables = compute_mapping(
            [],
            [],
            [_page("item1", "OEBPS/Text/a.xhtml")],
            [_image("item2", "OEBPS/Images/b.jpg")],
        )
        self.assertEqual(tables.new_id("item1"), "item0001")
        self.assertNotEqual(tables.new_id("item2"), "item0001")
        self.assertEqual(tables.new_id("item2"), "item0002")

    def test_new_names_avoid_reserved_base_members(self) -> None:
        tables = compute_mapping(
            [],
            [],
            [_page("style", "OEBPS/Text/x.xhtml")],
            [],
            reserved_ids=["style0001"],
        )
        self.assertEqual(tables.new_id("style"), "style0002")
        self.assertEqual(tables.new_path("OEBPS/Text/x.xhtml"), "OEBPS/Text/0002_x.xhtml")

    def test_lookup_miss_raises(self) -> None:
        tables = compute_mapping([], [], [], [])
        with self.assertRaises(MappingMissError) as ctx:
            tables.new_path("OEBPS/Text/missing.xhtml")
        self.assertEqual(ctx.exception.key, "OEBPS/Text/missing.xhtml")
        with self.assertRaises(MappingMissError):
            tables.new_id("missing")

    def test_tables_are_read_only(self) -> None:
        tables = compute_mapping([], [], [_page("p", "p.xhtml")], [])
        self.assertEqual(tables.new_path("p.xhtml"), "0001_p.xhtml")
        with self.assertRaises(TypeError):
            tables.paths["p.xhtml"] = "other.xhtml"  # type: ignore[index]

    def test_repeated_item_is_rejected(self) -> None:
        page = _page("p1", "OEBPS/Text/p.xhtml")
        with self.assertRaises(ValueError):
            compute_mapping([], [], [page, page], [])

    def test_prefix_beyond_four_digits_is_refused(self) -> None:
        base = [_page("xhtml9998", "OEBPS/Text/9998_a.xhtml")]
        tables = compute_mapping(base, [], [_page("b", "OEBPS/Text/b.xhtml")], [])
        self.assertEqual(tables.new_path("OEBPS/Text/b.xhtml"), "OEBPS/Text/9999_b.xhtml")

        with self.assertRaises(PrefixOverflowError) as caught:
            compute_mapping(base, [], [_page("b", "OEBPS/Text/b.xhtml"), _page("c", "OEBPS/Text/c.xhtml")], [])
        self.assertEqual(caught.exception.path, "OEBPS/Text/c.xhtml")
        self.assertEqual(caught.exception.number, 10000)


if __name__ == "__main__":
    unittest.main()
