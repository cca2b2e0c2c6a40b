"""Settlement engine command line interface.

Provides operational tools for:
- Running one recovery and expiry sweep cycle
- Rebuilding the task pool projection
- Verifying LP quota invariants
- Creating the database schema

Usage:
    python -m unitpay_engine.cli sweep
    python -m unitpay_engine.cli rebuild-task-pool
    python -m unitpay_engine.cli verify-quota --lp-wallet 0x...
    python -m unitpay_engine.cli init-db --database-url sqlite+aiosqlite:///unitpay.db
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncEngine

from unitpay_engine.config import configure_logging, get_settings
from unitpay_engine.database import create_schema, get_engine, make_session_factory
from unitpay_engine.engine import SettlementEngine
from unitpay_engine.engine_config import EngineConfig


class SettlementCli:
    """Settlement engine command line interface."""

    def __init__(self) -> None:
        self.parser = self._build_parser()
        self._db_engine: AsyncEngine | None = None

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m unitpay_engine.cli",
            description="Settlement engine operational tools",
        )
        parser.add_argument(
            "--database-url",
            type=str,
            help="Database URL (default: $DATABASE_URL)",
        )
        parser.add_argument(
            "--json",
            action="store_true",
            help="Print results as JSON",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # sweep command
        sweep = subparsers.add_parser(
            "sweep",
            help="Run one recovery sweep and one expiry sweep",
        )
        sweep.add_argument(
            "--only",
            type=str,
            choices=["recovery", "expiry"],
            help="Run a single sweep",
        )

        # rebuild-task-pool command
        subparsers.add_parser(
            "rebuild-task-pool",
            help="Regenerate the task pool projection from payment intents",
        )

        # verify-quota command
        verify = subparsers.add_parser(
            "verify-quota",
            help="Check available == total - locked and lock pairing for LPs",
        )
        verify.add_argument(
            "--lp-wallet",
            type=str,
            help="Check a single LP",
        )

        # init-db command
        subparsers.add_parser(
            "init-db",
            help="Create all tables",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        configure_logging(get_settings().log_level)

        # Dispatch to command handler
        handlers: dict[str, Callable[[SettlementEngine, argparse.Namespace], Awaitable[int]]] = {
            "sweep": self._cmd_sweep,
            "rebuild-task-pool": self._cmd_rebuild_task_pool,
            "verify-quota": self._cmd_verify_quota,
            "init-db": self._cmd_init_db,
        }

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1
        return asyncio.run(self._with_engine(handler, parsed))

    async def _with_engine(
        self,
        handler: Callable[[SettlementEngine, argparse.Namespace], Awaitable[int]],
        args: argparse.Namespace,
    ) -> int:
        db_engine = self._db_engine = get_engine(args.database_url)
        engine = SettlementEngine(
            make_session_factory(db_engine),
            EngineConfig.from_settings(get_settings()),
        )
        try:
            return await handler(engine, args)
        finally:
            await engine.aclose()
            await db_engine.dispose()

    def _emit(self, args: argparse.Namespace, data: dict[str, Any], lines: list[str]) -> None:
        if args.json:
            print(json.dumps(data, default=str, indent=2))
        else:
            print("\n".join(lines))

    async def _cmd_sweep(self, engine: SettlementEngine, args: argparse.Namespace) -> int:
        """Run sweeps once."""
        results = {}
        if args.only in (None, "recovery"):
            results["recovery"] = await engine.run_recovery_sweep()
        if args.only in (None, "expiry"):
            results["expiry"] = await engine.run_expiry_sweep()

        lines = []
        for name, result in results.items():
            lines.append(
                f"{name}: scanned={result.intents_scanned} reset={result.reset} "
                f"expired={result.expired} orphans={result.orphans_released} "
                f"skipped={result.skipped} failed={result.failed}"
            )
            for error in result.errors:
                lines.append(f"  ! {error['intent_id']} {error['code']}: {error['message']}")
        self._emit(
            args,
            {
                name: {
                    "intents_scanned": r.intents_scanned,
                    "reset_cancelled": r.reset_cancelled,
                    "reset_stalled": r.reset_stalled,
                    "expired": r.expired,
                    "orphans_released": r.orphans_released,
                    "skipped": r.skipped,
                    "failed": r.failed,
                    "errors": r.errors,
                }
                for name, r in results.items()
            },
            lines,
        )
        return 0 if all(r.success for r in results.values()) else 2

    async def _cmd_rebuild_task_pool(self, engine: SettlementEngine, args: argparse.Namespace) -> int:
        """Rebuild the task pool."""
        count = await engine.rebuild_task_pool()
        self._emit(args, {"entries": count}, [f"Task pool rebuilt with {count} entries"])
        return 0

    async def _cmd_verify_quota(self, engine: SettlementEngine, args: argparse.Namespace) -> int:
        """Verify quota invariants."""
        violations = await engine.verify_quota_invariants(args.lp_wallet)
        lines = ["Quota invariants: OK"] if not violations else ["Quota invariants: VIOLATED"]
        lines.extend(f"  {v.lp_wallet} {v.kind}: {v.detail}" for v in violations)
        self._emit(
            args,
            {"violations": [{"lp_wallet": v.lp_wallet, "kind": v.kind, "detail": v.detail} for v in violations]},
            lines,
        )
        return 0 if not violations else 2

    async def _cmd_init_db(self, engine: SettlementEngine, args: argparse.Namespace) -> int:
        """Create all tables."""
        assert self._db_engine is not None
        await create_schema(self._db_engine)
        self._emit(args, {"status": "created"}, ["Schema created"])
        return 0


def main() -> None:
    """CLI entry point."""
    sys.exit(SettlementCli().run())


if __name__ == "__main__":
    main()
