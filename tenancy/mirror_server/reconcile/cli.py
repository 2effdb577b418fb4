"""
Command-line entry point for repair and backfill jobs.

Commands:
- role: Align invited users with their invitation's role and tenant
- context: Fix aggregation pointers of cross-context invitees
- links: Retarget stale cross-tenant links
- backfill: Fan out a canonical tenant's tagged members
- pull: Mirror every canonical member with a tag into one aggregation tenant

Usage:
    mirror-repair role --dry-run
    mirror-repair links
    mirror-repair backfill --tenant tenant_1
    mirror-repair pull --tenant agg_1 --tag Choir

Invariants:
    - Output is the job result as JSON on stdout
    - Exit code 1 when the run recorded errors, 2 on usage errors

How to change safely:
    - Keep the JSON shape stable; operators script against it
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from typing import Any

from ..config import ServerConfig, StoreBackend
from ..directory import TenantDirectoryResolver
from ..overlay import ExclusionRegistry, OverrideStore
from ..store import DocumentStore, create_document_store
from ..sync import BackfillJob, MirrorSyncEngine
from .jobs import JOBS, create_job

logger = logging.getLogger(__name__)


class RepairCLI:
    """Runs jobs against a document store.

    Example:
        >>> cli = RepairCLI(store, config)
        >>> result = await cli.repair("links", dry_run=True)
    """

    def __init__(self, store: DocumentStore, config: ServerConfig) -> None:
        self.store = store
        self.config = config

    async def repair(self, job: str, dry_run: bool = False) -> dict[str, Any]:
        return (await create_job(job, self.store).run(dry_run=dry_run)).to_dict()

    def _backfill_job(self) -> BackfillJob:
        resolver = TenantDirectoryResolver(self.store)
        exclusions = ExclusionRegistry(self.store)
        engine = MirrorSyncEngine(
            self.store, resolver, OverrideStore(self.store), exclusions, config=self.config.sync
        )
        return BackfillJob(self.store, resolver, engine, exclusions)

    async def backfill(self, tenant_id: str) -> dict[str, Any]:
        return (await self._backfill_job().backfill_tenant(tenant_id)).to_dict()

    async def pull(self, tenant_id: str, tag: str) -> dict[str, Any]:
        return (await self._backfill_job().pull_tag_into(tenant_id, tag)).to_dict()


def _build_config(args: argparse.Namespace) -> ServerConfig:
    config = ServerConfig.from_env()
    if args.backend:
        config.store_backend = StoreBackend(args.backend)
    if args.data_dir:
        config.storage = replace(config.storage, data_dir=args.data_dir)
    return config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mirror server repair and backfill jobs")
    parser.add_argument("--backend", choices=[b.value for b in StoreBackend], help="Store backend")
    parser.add_argument("--data-dir", help="SQLite data directory")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, job in JOBS.items():
        job_parser = subparsers.add_parser(name, help=(job.__doc__ or "").strip())
        job_parser.add_argument(
            "--dry-run", action="store_true", help="Report findings without writing"
        )

    backfill_parser = subparsers.add_parser("backfill", help="Fan out a canonical tenant's members")
    backfill_parser.add_argument("--tenant", required=True, help="Canonical tenant id")

    pull_parser = subparsers.add_parser("pull", help="Mirror a tag into an aggregation tenant")
    pull_parser.add_argument("--tenant", required=True, help="Aggregation tenant id")
    pull_parser.add_argument("--tag", required=True, help="Classification tag")

    return parser


async def _run(args: argparse.Namespace) -> dict[str, Any]:
    config = _build_config(args)
    cli = RepairCLI(create_document_store(config), config)

    if args.command in JOBS:
        return await cli.repair(args.command, dry_run=args.dry_run)
    if args.command == "backfill":
        return await cli.backfill(args.tenant)
    return await cli.pull(args.tenant, args.tag)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for repair jobs."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        result = asyncio.run(_run(args))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    print(json.dumps(result, indent=2, sort_keys=True))
    sys.exit(1 if result.get("errors") else 0)


if __name__ == "__main__":
    main()
