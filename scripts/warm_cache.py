#!/usr/bin/env python3
"""
Load the playbook directory through the document cache and print cache stats.

Useful to check that every playbook file parses and to see the approximate
memory footprint before starting the API.

Run from project root:

    python scripts/warm_cache.py
    python scripts/warm_cache.py --dir data/playbook --list
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Project root on path so "playbook" resolves
_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from playbook.core.config import PLAYBOOK_DIR
from playbook.services.document_cache import DocumentCache
from playbook.services.document_repository import DirectoryDocumentRepository


async def _warm(directory: Path, list_documents: bool) -> int:
    cache = DocumentCache(DirectoryDocumentRepository(directory), enabled=True, auto_refresh=False)
    if not await cache.warm():
        print(f"Failed to load documents from {directory}")
        return 1
    if list_documents:
        for entry in await cache.get_all():
            print(f"  {entry.id}: {entry.title} ({len(entry.full_text)} chars)")
    stats = cache.stats()
    print(
        f"Done. Cached {stats['count']} documents, "
        f"~{stats['approx_memory_bytes'] / 1024:.1f} KiB, last refresh {stats['last_refresh']:%Y-%m-%d %H:%M:%S}."
    )
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Warm the playbook document cache and print its stats.")
    parser.add_argument("--dir", default=PLAYBOOK_DIR, help="Playbook directory (default: PLAYBOOK_DIR).")
    parser.add_argument("--list", action="store_true", help="Print every cached document.")
    args = parser.parse_args()

    directory = Path(args.dir)
    if not directory.is_absolute():
        directory = _ROOT / directory
    sys.exit(asyncio.run(_warm(directory, args.list)))


if __name__ == "__main__":
    main()
