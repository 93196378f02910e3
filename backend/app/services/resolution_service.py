"""Market resolution: write-once finalization followed by idempotent disbursement."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.domain import (
    BetState,
    ConflictError,
    ContractState,
    LedgerReason,
    MarketError,
    PartialFailureError,
    UserState,
    ValidationError,
    parse_outcome,
    restore_outcome,
)
from app.domain.payouts import (
    compute_bet_payouts,
    compute_creator_fee,
    compute_liquidity_payouts,
    group_payouts_by_user,
    open_bets,
)
from app.models import utcnow
from app.repositories import ContractRepository, Store, UserRepository, ledger_key
from app.repositories.mappers import bet_state, contract_state, user_state
from app.schemas import OperationResult

from .notifications import ResolutionNotice, ResolutionNotifier, build_notifier, dispatch_notifications


@dataclass(slots=True)
class PayoutReport:
    contract_id: str
    resolution: str | None = None
    credited: list[dict[str, Any]] = field(default_factory=list)
    skipped: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)
    payouts_applied: bool = False
    already_applied: bool = False
    notified: int = 0
    notification_failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "contract_id": self.contract_id,
            "resolution": self.resolution,
            "credited": self.credited,
            "skipped": self.skipped,
            "failures": self.failures,
            "payouts_applied": self.payouts_applied,
            "already_applied": self.already_applied,
            "notified": self.notified,
            "notification_failures": self.notification_failures,
        }

    def raise_for_failures(self) -> None:
        if self.failures:
            raise PartialFailureError(
                "Market resolved but some payouts could not be applied", self.failures
            )


class ResolutionService:
    """Resolve markets and pay out their open bets."""

    def __init__(
        self,
        store: Store,
        *,
        notifier: ResolutionNotifier | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._store = store
        self._notifier = notifier or build_notifier(self.settings)
        self._clock = clock or utcnow

    def resolve_market(
        self,
        *,
        user_id: str | None,
        contract_id: str,
        outcome: str,
        probability_int: float | None = None,
        resolutions: dict[str, float] | None = None,
    ) -> OperationResult:
        try:
            if not user_id:
                raise ValidationError("Not authorized")
            contract, _ = self._store.run_transaction(
                partial(
                    self._write_resolution,
                    user_id,
                    contract_id,
                    outcome,
                    probability_int,
                    resolutions,
                ),
                description=f"resolution of contract {contract_id}",
            )
        except ValidationError as exc:
            logger.info("Rejected resolution of contract {}: {}", contract_id, exc)
            return OperationResult.error(str(exc))
        except ConflictError as exc:
            logger.warning("Resolution of contract {} kept conflicting: {}", contract_id, exc)
            return OperationResult.error(str(exc), error_type="conflict")

        logger.info("Contract {} resolved to {}", contract_id, contract.resolution)
        try:
            report = self.apply_payouts(contract_id)
        except (ConflictError, SQLAlchemyError) as exc:
            logger.exception("Payouts for resolved contract {} did not complete", contract_id)
            return OperationResult.error(
                "Market resolved but payouts did not complete; the payout sweep will finish them",
                error_type="partial_failure",
                failures=[{"contract_id": contract_id, "error": str(exc)}],
                contract_id=contract_id,
                resolution=contract.resolution,
            )
        data = {
            "contract_id": contract_id,
            "resolution": contract.resolution,
            "payouts": report.credited,
            "notification_failures": report.notification_failures,
        }
        try:
            report.raise_for_failures()
        except PartialFailureError as exc:
            return OperationResult.error(
                str(exc), error_type="partial_failure", failures=exc.failures, **data
            )
        return OperationResult.success(**data)

    def apply_payouts(self, contract_id: str, *, notify: bool = True) -> PayoutReport:
        """Credit every payout of a resolved contract exactly once.

        Each user is credited in an independent transaction keyed in the
        ledger, so a re-run only pays the users a previous run missed. The
        contract is flagged ``payouts_applied`` once nothing failed.
        """

        contract, creator, bets = self._store.read(partial(self._load_resolved, contract_id))
        report = PayoutReport(contract_id=contract_id, resolution=contract.resolution)
        if contract.payouts_applied:
            logger.info("Payouts for contract {} were already applied", contract_id)
            report.already_applied = True
            report.payouts_applied = True
            return report

        outcome = restore_outcome(contract)
        live_bets = open_bets(bets)
        bettor_payouts = compute_bet_payouts(outcome, live_bets)
        fee = compute_creator_fee(
            outcome, contract, bettor_payouts, self.settings.resolution_creator_fee_rate
        )
        fee_payouts = [fee] if fee is not None else []
        liquidity_payouts = compute_liquidity_payouts(outcome, contract)

        for reason, payouts in (
            (LedgerReason.PAYOUT, bettor_payouts),
            (LedgerReason.CREATOR_FEE, fee_payouts),
            (LedgerReason.LIQUIDITY, liquidity_payouts),
        ):
            for user_id, amount in group_payouts_by_user(payouts).items():
                if amount <= 0:
                    continue
                self._credit_user(report, contract.id, user_id, amount, reason)

        if report.failures:
            logger.warning(
                "Contract {} has {} incomplete payouts; re-run the payout job to finish",
                contract_id,
                len(report.failures),
            )
        else:
            self._store.run_transaction(
                lambda session: ContractRepository(session).mark_payouts_applied(contract_id),
                description=f"payout completion of contract {contract_id}",
            )
            report.payouts_applied = True

        logger.info(
            "Contract {} payouts: credited={}, skipped={}, failed={}",
            contract_id,
            len(report.credited),
            report.skipped,
            len(report.failures),
        )

        if notify:
            totals = group_payouts_by_user([*bettor_payouts, *fee_payouts, *liquidity_payouts])
            for bet in live_bets:
                totals.setdefault(bet.user_id, 0.0)
            notices = [ResolutionNotice(user_id=user_id, payout=payout) for user_id, payout in totals.items()]
            report.notification_failures = dispatch_notifications(
                self._notifier,
                notices,
                creator=creator,
                contract=contract,
                max_workers=self.settings.notification_max_workers,
            )
            report.notified = len(notices) - len(report.notification_failures)
        return report

    def _credit_user(
        self,
        report: PayoutReport,
        contract_id: str,
        user_id: str,
        amount: float,
        reason: LedgerReason,
    ) -> None:
        entry = {"user_id": user_id, "reason": reason.value, "amount": amount}
        try:
            applied = self._store.run_transaction(
                partial(self._credit, contract_id, user_id, amount, reason),
                description=f"{reason.value} credit for {user_id}",
            )
        except (MarketError, SQLAlchemyError) as exc:
            logger.exception("Failed to credit {} {} for contract {}", user_id, reason.value, contract_id)
            report.failures.append({**entry, "error": str(exc)})
            return
        if applied:
            report.credited.append(entry)
        else:
            report.skipped += 1

    def _credit(
        self,
        contract_id: str,
        user_id: str,
        amount: float,
        reason: LedgerReason,
        session: Session,
    ) -> bool:
        return UserRepository(session).credit_balance(
            user_id,
            amount,
            reason=reason,
            idempotency_key=ledger_key(contract_id, user_id, reason),
            contract_id=contract_id,
            now=self._clock(),
        )

    def _write_resolution(
        self,
        user_id: str,
        contract_id: str,
        outcome: str,
        probability_int: float | None,
        resolutions: dict[str, float] | None,
        session: Session,
    ) -> tuple[ContractState, UserState]:
        contracts = ContractRepository(session)
        record = contracts.get_contract(contract_id)
        if record is None:
            raise ValidationError("Invalid contract")

        parsed = parse_outcome(
            record.outcome_type,
            outcome,
            probability_int,
            resolutions,
            answers=record.answers,
        )
        if record.creator_id != user_id:
            raise ValidationError("User not creator of contract")
        if record.is_resolved or record.resolution is not None:
            raise ValidationError("Contract already resolved")

        creator = UserRepository(session).get_user(record.creator_id)
        if creator is None:
            raise ValidationError("Creator not found")

        contracts.apply_resolution(record, parsed, resolved_at=self._clock())
        session.flush()
        return contract_state(record), user_state(creator)

    def _load_resolved(
        self, contract_id: str, session: Session
    ) -> tuple[ContractState, UserState, list[BetState]]:
        contracts = ContractRepository(session)
        record = contracts.get_contract(contract_id)
        if record is None:
            raise ValidationError("Invalid contract")
        if not record.is_resolved:
            raise ValidationError("Contract not resolved")
        creator = UserRepository(session).get_user(record.creator_id)
        if creator is None:
            raise ValidationError("Creator not found")
        bets = [bet_state(bet) for bet in contracts.list_bets(contract_id)]
        return contract_state(record), user_state(creator), bets


__all__ = ["PayoutReport", "ResolutionService"]
