"""Standalone job that completes payouts for resolved markets."""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import Settings, get_settings
from app.db import init_db
from app.domain import MarketError
from app.repositories import ContractRepository, Store
from app.services.notifications import ResolutionNotifier
from app.services.resolution_service import ResolutionService


@dataclass(slots=True)
class ResolutionSummary:
    checked_contracts: int = 0
    completed: int = 0
    already_applied: int = 0
    still_incomplete: int = 0
    credited: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked_contracts": self.checked_contracts,
            "completed": self.completed,
            "already_applied": self.already_applied,
            "still_incomplete": self.still_incomplete,
            "credited": self.credited,
            "failures": self.failures,
        }


class ResolutionPipeline:
    """Re-run disbursement for resolved contracts whose payouts never finished."""

    def __init__(
        self,
        store: Store,
        settings: Settings | None = None,
        *,
        service: ResolutionService | None = None,
        notifier: ResolutionNotifier | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._store = store
        self._service = service or ResolutionService(store, notifier=notifier, settings=self.settings)

    def run(
        self,
        *,
        limit: int | None = None,
        contract_ids: Sequence[str] | None = None,
        notify: bool = False,
    ) -> ResolutionSummary:
        summary = ResolutionSummary()
        candidates = self._store.read(
            lambda session: [
                contract.id
                for contract in ContractRepository(session).list_pending_payouts(
                    limit=limit, contract_ids=contract_ids
                )
            ]
        )

        logger.info(
            "Starting payout sweep: limit={}, contract_filter={}",
            limit,
            list(contract_ids) if contract_ids else None,
        )
        if not candidates:
            logger.info("No resolved contracts with pending payouts; sweep completed with no updates")
            return summary

        logger.info("Payout sweep evaluating {} contracts", len(candidates))
        for contract_id in candidates:
            summary.checked_contracts += 1
            try:
                report = self._service.apply_payouts(contract_id, notify=notify)
            except (MarketError, SQLAlchemyError) as exc:
                logger.exception("Payout sweep failed for contract {}", contract_id)
                summary.still_incomplete += 1
                summary.failures.append({"contract_id": contract_id, "reason": str(exc)})
                continue

            summary.credited += len(report.credited)
            if report.already_applied:
                summary.already_applied += 1
            elif report.payouts_applied:
                summary.completed += 1
            else:
                summary.still_incomplete += 1
                summary.failures.extend({"contract_id": contract_id, **failure} for failure in report.failures)

        logger.info(
            "Payout sweep finished: checked={}, completed={}, still_incomplete={}",
            summary.checked_contracts,
            summary.completed,
            summary.still_incomplete,
        )
        return summary


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Complete payouts for resolved markets whose disbursement did not finish",
    )
    parser.add_argument("--limit", type=int, default=None, help="Maximum number of contracts to check")
    parser.add_argument(
        "--contract-id",
        dest="contract_ids",
        action="append",
        help="Restrict the sweep to specific contract IDs (can be provided multiple times)",
    )
    parser.add_argument(
        "--notify",
        action="store_true",
        help="Send resolution notifications again for completed contracts",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(summary: ResolutionSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Resolution summary written to {}", path)


def main() -> ResolutionSummary:
    args = _parse_args()
    settings = get_settings()
    init_db()
    pipeline = ResolutionPipeline(Store.from_settings(settings), settings)
    summary = pipeline.run(
        limit=args.limit,
        contract_ids=args.contract_ids,
        notify=args.notify,
    )

    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
