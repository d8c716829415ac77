"""Compute embeddings for stored memories that lack one."""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Optional, Sequence

from memcore.core.errors import MemoryEngineError
from memcore.main import create_runtime

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="memcore-backfill", description=__doc__)
    parser.add_argument("--owner", default=None, help="only backfill this owner's memories")
    parser.add_argument(
        "--include-stale",
        action="store_true",
        help="also re-embed vectors produced by another embedding version",
    )
    return parser


async def run(owner_id: Optional[str], include_stale: bool) -> int:
    runtime = create_runtime()
    async with runtime.lifespan():
        service = runtime.memory_service
        await service.pipeline.ensure_ready()
        report = await service.backfill_embeddings(owner_id, include_stale=include_stale)
    print(
        f"scanned={report.scanned} embedded={report.embedded} failed={report.failed} "
        f"version={service.pipeline.version}"
    )
    return 0 if report.failed == 0 else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run(args.owner, args.include_stale))
    except MemoryEngineError as exc:
        logger.error("Backfill failed: %s [%s]", exc.message, exc.code)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
