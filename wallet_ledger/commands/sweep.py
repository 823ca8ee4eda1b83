import argparse
import asyncio
from datetime import timedelta
from pathlib import Path
from typing import Optional, Sequence

from wallet_ledger.clients.settlement_client import HttpSettlementGateway
from wallet_ledger.database import SessionLocal, engine, init_db
from wallet_ledger.engine import TransactionEngine
from wallet_ledger.logging_config import get_logger
from wallet_ledger.models import utcnow
from wallet_ledger.reconciliation import generate_reconciliation_csv, reconcile_pending_withdrawals

logger = get_logger(__name__)


async def run(args: argparse.Namespace) -> int:
    gateway = HttpSettlementGateway()
    ledger = TransactionEngine(SessionLocal, gateway)
    try:
        if args.command == "expire":
            result = await ledger.expire_pending_transactions()
            print(result.model_dump_json())
            return 0
        if args.command == "withdrawals":
            result = await reconcile_pending_withdrawals(ledger)
            print(result.model_dump_json())
            return 0
        csv_text, mismatches = await generate_reconciliation_csv(ledger, utcnow() - timedelta(hours=args.hours))
        Path(args.output).write_text(csv_text, newline="")
        logger.info("Wrote reconciliation report path=%s mismatches=%s", args.output, mismatches)
        return 1 if mismatches else 0
    finally:
        await gateway.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wallet-ledger-sweep", description="Ledger maintenance sweeps")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("expire", help="cancel PENDING transactions past the expiry window")
    sub.add_parser("withdrawals", help="settle or compensate stale PENDING withdrawals")
    report = sub.add_parser("report", help="write a ledger vs gateway mismatch CSV")
    report.add_argument("--hours", type=int, default=24, help="look-back window")
    report.add_argument("--output", default="reconciliation.csv")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    init_db(engine)
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
