#!/usr/bin/env python3
"""Map a project's persisted groups (and ungrouped threads) to features.

Usage:
  python -m rundown.scripts.map_features
  python -m rundown.scripts.map_features --project owner/repo --min-similarity 0.5
  python -m rundown.scripts.map_features --mode best_effort --threads
"""
from __future__ import annotations

import argparse
import asyncio
import logging

from rundown import config
from rundown.db import connection, migrations
from rundown.errors import ConfigurationError
from rundown.models import GENERAL_FEATURE
from rundown.project import ProjectIdentity
from rundown.services.feature_mapper import FeatureMappingService


async def _run(project: str | None, min_similarity: float | None, mode: str | None, threads: bool) -> int:
    db = await connection.get_connection()
    service = FeatureMappingService(db)
    try:
        await migrations.run_migrations(db)
        project_id = ProjectIdentity(override=config.PROJECT_ID).resolve(project)
        try:
            groups = await service.map_project_groups(project_id, min_similarity, mode)
        except ConfigurationError as e:
            print(f"[ERROR] {e}")
            return 2
        specific = sum(1 for g in groups if g.affects_features != [GENERAL_FEATURE])
        cross = sum(1 for g in groups if g.is_cross_cutting)
        print(f"{project_id}: groups={len(groups)} specific={specific} cross_cutting={cross}")

        if threads:
            mapped = await service.map_project_threads(project_id, min_similarity)
            print(f"{project_id}: ungrouped_threads={len(mapped)}")
    finally:
        await service.aclose()
        await connection.close_connection()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Map discussion groups to product features")
    parser.add_argument("--project", default="", help="Project ID (default: detected)")
    parser.add_argument("--min-similarity", type=float, default=None, help="Cosine threshold (default 0.6)")
    parser.add_argument("--mode", choices=["strict", "best_effort"], default=None, help="Behaviour without an API key")
    parser.add_argument("--threads", action="store_true", help="Also map ungrouped threads")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)
    return asyncio.run(_run(args.project or None, args.min_similarity, args.mode, args.threads))


if __name__ == "__main__":
    raise SystemExit(main())
