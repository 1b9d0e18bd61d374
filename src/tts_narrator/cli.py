"""
Command-Line Interface for tts-narrator.

Warms the fragment cache for a book without a reader attached, and inspects
or clears the cache. Fragments are read from a text file: paragraphs are
separated by blank lines and get IDs p00000, p00001, ...

Usage Examples:
    # Synthesize every paragraph of a book into the cache
    narrator --book-id moby-dick --file moby-dick.txt

    # Single fragment
    narrator --book-id moby-dick --fragment-id p00003 --text "Call me Ishmael."

    # Show what would be synthesized (cached vs missing)
    narrator --book-id moby-dick --file moby-dick.txt --dry-run --json

    # Cache usage, or drop one book's audio
    narrator --cache-info
    narrator --book-id moby-dick --clear-cache

Environment Variables:
    NARRATOR_SETTINGS: Settings file (default: config/settings.yaml)
    NARRATOR_CACHE_DIR: Cache directory override
    NARRATOR_SYNTH_URL: Speech provider base URL override
    OPENAI_API_KEY: Provider API key (name configurable)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from tts_narrator.core.config import Settings, default_settings, load_settings
from tts_narrator.core.errors import NarrationError
from tts_narrator.core.logging import configure_logging, get_logger, info, set_request_id, warn
from tts_narrator.services.narration_service import NarrationService
from tts_narrator.tts.cache import FragmentCache

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="tts-narrator CLI (cache warm-up and maintenance)")

    parser.add_argument("--config", help="Settings file (default: $NARRATOR_SETTINGS or config/settings.yaml)")
    parser.add_argument("--book-id", help="Book the fragments belong to")

    # Input options
    parser.add_argument("--file", help="Book text; blank lines separate fragments")
    parser.add_argument("--text", help="Text of a single fragment")
    parser.add_argument("--fragment-id", default="p00000", help="Fragment ID for --text")

    # Synthesis overrides
    parser.add_argument("--voice", help="Voice override")
    parser.add_argument("--rate", type=float, help="Speaking rate override")
    parser.add_argument("--priority", type=int, default=0, help="Queue priority")

    # Execution modes
    parser.add_argument("--dry-run", action="store_true",
                        help="Report cached and missing fragments without synthesis")
    parser.add_argument("--json", action="store_true",
                        help="Print JSON summary")

    # Cache maintenance
    parser.add_argument("--cache-info", action="store_true",
                        help="Show cache usage")
    parser.add_argument("--clear-cache", action="store_true",
                        help="Delete the cached audio of --book-id")

    return parser.parse_args(argv)


def _load_settings(args: argparse.Namespace) -> Settings:
    """
    Load settings from --config, $NARRATOR_SETTINGS or the default path.

    An explicitly named file must exist; the default path may be absent,
    in which case built-in defaults are used.
    """
    path = args.config or os.getenv("NARRATOR_SETTINGS")
    if path:
        return load_settings(path)
    if Path("config/settings.yaml").exists():
        return load_settings("config/settings.yaml")
    return default_settings()


def split_fragments(text: str) -> List[Tuple[str, str]]:
    """
    Split book text into (fragment_id, text) pairs.

    Paragraphs are separated by one or more blank lines. Inner line breaks
    are folded into spaces.
    """
    paragraphs = [" ".join(p.split()) for p in _PARAGRAPH_SPLIT.split(text)]
    return [(f"p{i:05d}", p) for i, p in enumerate(x for x in paragraphs if x)]


class UsageError(Exception):
    """Bad combination of arguments or unusable input; exit code 2."""


def _load_fragments(args: argparse.Namespace) -> List[Tuple[str, str]]:
    if args.file:
        if args.text:
            raise UsageError("Use --file without --text.")
        fragments = split_fragments(Path(args.file).read_text(encoding="utf-8"))
        if not fragments:
            raise UsageError("Input file is empty.")
        return fragments

    if not args.text or not args.text.strip():
        raise UsageError("Provide --file or --text.")
    return [(args.fragment_id, args.text)]


def _summary_for_fragment(cache: FragmentCache, book_id: str, fragment_id: str, text: str) -> dict:
    path, found = cache.lookup(book_id, fragment_id)
    return {
        "fragment_id": fragment_id,
        "chars": len(text),
        "cached": found,
        "path": str(path),
    }


async def warm_book(
    service: NarrationService,
    book_id: str,
    fragments: List[Tuple[str, str]],
    window: int,
    priority: int = 0,
    voice: Optional[str] = None,
    rate: Optional[float] = None,
) -> List[Dict[str, object]]:
    """
    Request audio for every fragment, `window` requests at a time.

    Windows keep the queue below its capacity so nothing is dropped for
    overflow. Failures are reported per fragment.

    Returns:
        One result dict per fragment, in input order.
    """
    results: List[Dict[str, object]] = []
    for start in range(0, len(fragments), window):
        chunk = fragments[start:start + window]
        outcomes = await asyncio.gather(
            *(
                service.request_audio(book_id, fid, text, priority, voice=voice, rate=rate)
                for fid, text in chunk
            ),
            return_exceptions=True,
        )
        for (fid, _text), outcome in zip(chunk, outcomes):
            if isinstance(outcome, NarrationError):
                results.append({"fragment_id": fid, "ok": False, **outcome.to_dict()})
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append({"fragment_id": fid, "ok": True, "path": outcome})
    return results


async def _run_warm(settings: Settings, args: argparse.Namespace, fragments: List[Tuple[str, str]]) -> List[dict]:
    service = NarrationService.from_settings(settings)
    try:
        window = settings.get_config().queue.max_queue_size
        return await warm_book(
            service,
            args.book_id,
            fragments,
            window=window,
            priority=args.priority,
            voice=args.voice,
            rate=args.rate,
        )
    finally:
        await service.close()


def _emit(payload: dict, as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, ensure_ascii=False))
    else:
        print(payload)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Returns:
        Exit code: 0 on success, 1 when any fragment failed, 2 on usage
        errors.
    """
    args = _parse_args(argv)

    configure_logging()
    log = get_logger("tts-narrator.cli")
    set_request_id(str(uuid4())[:12])

    settings = _load_settings(args)
    cache = FragmentCache.from_config(settings.get_config().cache)

    if args.cache_info:
        _emit({"ok": True, "cache": cache.get_info()}, args.json)
        return 0

    if not args.book_id:
        print("--book-id is required")
        return 2

    if args.clear_cache:
        freed = cache.size_of(args.book_id)
        cache.clear(args.book_id)
        info(log, "cache_cleared", book_id=args.book_id, bytes=freed)
        _emit({"ok": True, "book_id": args.book_id, "bytes_freed": freed}, args.json)
        return 0

    try:
        fragments = _load_fragments(args)
    except UsageError as e:
        print(e)
        return 2

    if args.dry_run:
        items = [_summary_for_fragment(cache, args.book_id, fid, text) for fid, text in fragments]
        missing = sum(1 for item in items if not item["cached"])
        info(log, "dry_run", book_id=args.book_id, fragments=len(items), missing=missing)
        _emit({"ok": True, "dry_run": True, "book_id": args.book_id, "missing": missing, "items": items}, args.json)
        print("DRY_RUN_OK")
        return 0

    info(log, "warm_start", book_id=args.book_id, fragments=len(fragments))
    results = asyncio.run(_run_warm(settings, args, fragments))
    failed = sum(1 for r in results if not r["ok"])
    if failed:
        warn(log, "warm_incomplete", book_id=args.book_id, failed=failed)

    _emit({"ok": failed == 0, "dry_run": False, "book_id": args.book_id, "items": results}, args.json)
    print("CLI_OK")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
