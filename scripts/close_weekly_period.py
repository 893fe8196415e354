#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT))

from marketplace.core.config import get_settings  # noqa: E402
from marketplace.core.database import SessionLocal  # noqa: E402
from marketplace.core.logging_setup import configure_logging  # noqa: E402
import marketplace.services.event_handlers  # noqa: E402,F401
from marketplace.services.weekly_period import WeeklyPeriodManager  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fecha o período semanal ativo e gera os acertos.")
    parser.add_argument("--closed-by", default="cli", help="Quem está fechando o período")
    parser.add_argument(
        "--settle",
        type=int,
        metavar="PERIOD_ID",
        help="Em vez de fechar, marca um período fechado como liquidado",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    settings = get_settings()
    configure_logging(settings.log_level)

    db = SessionLocal()
    try:
        manager = WeeklyPeriodManager(db, settings=settings)
        if args.settle is not None:
            result = manager.settle_period(args.settle)
            if not result.ok:
                print(f"Erro: {result.error.message}")
                return 1
            print(f"Period {result.value.label} settled")
            return 0

        result = manager.close_current_period(closed_by=args.closed_by)
        if not result.ok:
            print(f"Erro: {result.error.message}")
            return 1
        report = result.value
        summary = report.summary
        print(
            f"Closed {report.period.label}: orders={report.orders_aggregated} "
            f"shops={len(report.shop_settlements)} riders={len(report.rider_settlements)}"
        )
        print(
            f"Gross={summary.gross_sales} commission={summary.total_shop_commissions} "
            f"admin_net={summary.admin_net_revenue} next={report.next_period.label}"
        )
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
