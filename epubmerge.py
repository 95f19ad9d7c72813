#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from collate.combiner import EpubCombiner
from collate.env import MergeSettings
from collate.epub import EpubFormatError, read_epub, write_epub
from collate.logs import configure_logging
from collate.links import PageParseError
from collate.naming import MappingMissError, PrefixOverflowError
from collate.signature import check_pages


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Append one or more EPUB volumes to the end of a base EPUB."
    )
    parser.add_argument("base", help="EPUB the others are appended to")
    parser.add_argument("appendages", nargs="+", help="EPUB files to append, in order")
    parser.add_argument("-o", "--output", help="Output EPUB file path")
    parser.add_argument("--no-check", action="store_true", help="Skip the empty/duplicate page check")
    parser.add_argument("--workers", type=int, default=None, help="Threads used to rewrite pages")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    return parser.parse_args(argv)


def main(argv: list[str]) -> int:
    args = parse_args(argv)
    settings = MergeSettings.from_env()
    configure_logging(args.log_level or settings.log_level)

    base_path = Path(args.base)
    appendage_paths = [Path(value) for value in args.appendages]
    for path in [base_path, *appendage_paths]:
        if not path.exists():
            print(f"Input file not found: {path}", file=sys.stderr)
            return 1

    output_path = Path(args.output) if args.output else base_path.with_suffix(".merged.epub")
    workers = args.workers if args.workers is not None else settings.workers

    try:
        combiner = EpubCombiner(read_epub(base_path), workers=workers)
        for path in appendage_paths:
            combiner.add(read_epub(path))
        merged = combiner.initial
    except MappingMissError as exc:
        print(f"Merge aborted, dangling {exc.kind}: {exc.key}", file=sys.stderr)
        return 1
    except PageParseError as exc:
        print(f"Merge aborted, unreadable page: {exc}", file=sys.stderr)
        return 1
    except PrefixOverflowError as exc:
        print(f"Merge aborted, {exc}", file=sys.stderr)
        return 1
    except (EpubFormatError, OSError) as exc:
        print(f"Failed to read EPUB: {exc}", file=sys.stderr)
        return 1

    if settings.check_pages and not args.no_check:
        issues = check_pages(merged, extra_exempt=settings.exempt_pages)
        for issue in issues:
            print(f"warning: {issue.message}", file=sys.stderr)

    try:
        write_epub(merged, output_path)
    except OSError as exc:
        print(f"Failed to write EPUB: {exc}", file=sys.stderr)
        return 1
    print(f"EPUB saved to: {output_path}")
    return 0


def cli() -> None:
    raise SystemExit(main(sys.argv[1:]))


if __name__ == "__main__":
    cli()
