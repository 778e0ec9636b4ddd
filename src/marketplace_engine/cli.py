"""Marketplace engine command line interface.

Operational tools for the periodic sweeps and ledger checks:
- Payout maturation and settlement
- Order deadlines (drop-off, pickup, service release)
- Stuck withdrawal flagging
- Pending payment re-poll
- Missing ticket repair
- Webhook log purge
- Balance replay

Usage:
    python -m marketplace_engine.cli mature-payouts
    python -m marketplace_engine.cli settle-payouts
    python -m marketplace_engine.cli order-deadlines
    python -m marketplace_engine.cli flag-stuck-withdrawals
    python -m marketplace_engine.cli repoll-pending --provider stub
    python -m marketplace_engine.cli repair-artifacts
    python -m marketplace_engine.cli purge-webhook-logs
    python -m marketplace_engine.cli replay-balance --holder-type event --holder-id X
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from marketplace_engine.config import Settings, get_settings
from marketplace_engine.database import init_db
from marketplace_engine.jobs import sweeps
from marketplace_engine.jobs.sweeps import SweepResult
from marketplace_engine.providers.base import PaymentProvider
from marketplace_engine.providers.stub import StubProvider
from marketplace_engine.services.balance_ledger import HOLDER_MODELS, BalanceLedger

PROVIDERS: dict[str, Callable[[], PaymentProvider]] = {
    "stub": StubProvider,
}


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


class MarketplaceCli:
    """Marketplace engine command line interface."""

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: Callable[[], Session] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.parser = self._build_parser()

    @property
    def session_factory(self) -> Callable[[], Session]:
        if self._session_factory is None:
            _, self._session_factory = init_db()
        return self._session_factory

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m marketplace_engine.cli",
            description="Marketplace engine operational tools",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser(
            "mature-payouts",
            help="Move payouts past their maturation window to processing",
        )

        subparsers.add_parser(
            "settle-payouts",
            help="Settle processing payouts to seller wallet balances",
        )

        subparsers.add_parser(
            "order-deadlines",
            help="Cancel orders past their drop-off or pickup deadline and release service orders",
        )

        subparsers.add_parser(
            "flag-stuck-withdrawals",
            help="Flag processing withdrawals with no provider result for review",
        )

        repoll = subparsers.add_parser(
            "repoll-pending",
            help="Poll the provider for recent non-terminal payments",
        )
        repoll.add_argument(
            "--provider",
            choices=sorted(PROVIDERS),
            default="stub",
            help="Provider adapter to poll through",
        )

        subparsers.add_parser(
            "repair-artifacts",
            help="Issue tickets for completed payments missing one",
        )

        subparsers.add_parser(
            "purge-webhook-logs",
            help="Delete webhook logs past the retention window",
        )

        replay = subparsers.add_parser(
            "replay-balance",
            help="Rebuild a balance from the ledger and compare with the stored value",
        )
        replay.add_argument(
            "--holder-type",
            choices=sorted(HOLDER_MODELS),
            required=True,
            help="Balance holder type",
        )
        replay.add_argument(
            "--holder-id",
            type=parse_uuid,
            required=True,
            help="Balance holder ID",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        # Dispatch to command handler
        handlers: dict[str, Callable[..., int]] = {
            "mature-payouts": self._cmd_mature_payouts,
            "settle-payouts": self._cmd_settle_payouts,
            "order-deadlines": self._cmd_order_deadlines,
            "flag-stuck-withdrawals": self._cmd_flag_stuck_withdrawals,
            "repoll-pending": self._cmd_repoll_pending,
            "repair-artifacts": self._cmd_repair_artifacts,
            "purge-webhook-logs": self._cmd_purge_webhook_logs,
            "replay-balance": self._cmd_replay_balance,
        }

        handler = handlers.get(parsed.command)
        if handler:
            return handler(parsed)

        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return 1

    def _report(self, result: SweepResult) -> int:
        print(f"{result.name}: examined {result.examined}, changed {result.changed}")
        for error in result.errors:
            print(f"  - [{error.get('code')}] {error.get('message')}", file=sys.stderr)
        return 0 if result.success else 1

    def _cmd_mature_payouts(self, args: argparse.Namespace) -> int:
        """Run the payout maturation sweep."""
        return self._report(
            sweeps.mature_payouts(self.session_factory, self.settings.engine_config())
        )

    def _cmd_settle_payouts(self, args: argparse.Namespace) -> int:
        """Run the payout settlement sweep."""
        return self._report(
            sweeps.settle_payouts(self.session_factory, self.settings.engine_config())
        )

    def _cmd_order_deadlines(self, args: argparse.Namespace) -> int:
        """Run the order deadline sweeps."""
        results = sweeps.run_order_deadlines(
            self.session_factory, self.settings.engine_config()
        )
        codes = [self._report(result) for result in results]
        return max(codes)

    def _cmd_flag_stuck_withdrawals(self, args: argparse.Namespace) -> int:
        """Run the stuck withdrawal sweep."""
        return self._report(
            sweeps.flag_stuck_withdrawals(self.session_factory, self.settings.engine_config())
        )

    def _cmd_repoll_pending(self, args: argparse.Namespace) -> int:
        """Run the pending payment re-poll sweep."""
        provider = PROVIDERS[args.provider]()
        return self._report(
            sweeps.repoll_pending_payments(
                self.session_factory, provider, self.settings.engine_config()
            )
        )

    def _cmd_repair_artifacts(self, args: argparse.Namespace) -> int:
        """Run the missing ticket repair sweep."""
        return self._report(
            sweeps.repair_missing_tickets(self.session_factory, self.settings.engine_config())
        )

    def _cmd_purge_webhook_logs(self, args: argparse.Namespace) -> int:
        """Run the webhook log purge."""
        return self._report(
            sweeps.purge_webhook_logs(self.session_factory, self.settings.engine_config())
        )

    def _cmd_replay_balance(self, args: argparse.Namespace) -> int:
        """Compare a stored balance with its ledger replay."""
        with self.session_factory() as session:
            replay = BalanceLedger(session).replay_balance(args.holder_type, args.holder_id)

        print(f"Balance for {replay.holder_type} {replay.holder_id}")
        print(f"  Stored:   {replay.stored:>15,.2f}")
        print(f"  Replayed: {replay.replayed:>15,.2f}  ({replay.event_count} events)")
        if replay.matches:
            print("Replay: MATCH")
            return 0
        print("Replay: MISMATCH")
        return 1


def main() -> int:
    """CLI entry point."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cli = MarketplaceCli(settings)
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
