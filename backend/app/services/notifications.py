"""Resolution notification collaborators and their concurrent fan-out."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

import httpx
from loguru import logger

from app.core.config import Settings
from app.domain import ContractState, UserState


class ResolutionNotifier(Protocol):
    def send_resolution_notification(
        self,
        user_id: str,
        payout: float,
        creator: UserState,
        contract: ContractState,
        outcome: str,
        resolution_probability: float | None = None,
        resolutions: dict[str, float] | None = None,
    ) -> None:
        ...


@dataclass(slots=True)
class ResolutionNotice:
    user_id: str
    payout: float


def build_payload(
    user_id: str,
    payout: float,
    creator: UserState,
    contract: ContractState,
    outcome: str,
    resolution_probability: float | None = None,
    resolutions: dict[str, float] | None = None,
) -> dict[str, Any]:
    return {
        "type": "market_resolved",
        "user_id": user_id,
        "payout": payout,
        "contract_id": contract.id,
        "question": contract.question,
        "outcome": outcome,
        "resolution_probability": resolution_probability,
        "resolutions": resolutions,
        "creator": {"id": creator.id, "name": creator.name},
    }


class LoggingResolutionNotifier:
    """Default notifier that only records the notification in the log."""

    def send_resolution_notification(
        self,
        user_id: str,
        payout: float,
        creator: UserState,
        contract: ContractState,
        outcome: str,
        resolution_probability: float | None = None,
        resolutions: dict[str, float] | None = None,
    ) -> None:
        logger.info(
            "Notify user {}: contract {} resolved {} by {}, payout {:.2f}",
            user_id,
            contract.id,
            outcome,
            creator.id,
            payout,
        )


class WebhookResolutionNotifier:
    """POST each notification as JSON to a configured webhook."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def send_resolution_notification(
        self,
        user_id: str,
        payout: float,
        creator: UserState,
        contract: ContractState,
        outcome: str,
        resolution_probability: float | None = None,
        resolutions: dict[str, float] | None = None,
    ) -> None:
        payload = build_payload(
            user_id,
            payout,
            creator,
            contract,
            outcome,
            resolution_probability,
            resolutions,
        )
        response = self._client.post(self._url, json=payload)
        response.raise_for_status()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def build_notifier(settings: Settings) -> ResolutionNotifier:
    if settings.notification_webhook_url:
        return WebhookResolutionNotifier(
            str(settings.notification_webhook_url),
            timeout=settings.notification_timeout_seconds,
        )
    return LoggingResolutionNotifier()


def dispatch_notifications(
    notifier: ResolutionNotifier,
    notices: Sequence[ResolutionNotice],
    *,
    creator: UserState,
    contract: ContractState,
    max_workers: int = 8,
) -> list[dict[str, Any]]:
    """Send every notice concurrently; failures are collected, never raised."""

    if not notices:
        return []

    failures: list[dict[str, Any]] = []
    workers = max(1, min(max_workers, len(notices)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {
            executor.submit(
                notifier.send_resolution_notification,
                notice.user_id,
                notice.payout,
                creator,
                contract,
                contract.resolution or "",
                contract.resolution_probability,
                contract.resolutions,
            ): notice
            for notice in notices
        }
        for future in as_completed(futures):
            notice = futures[future]
            try:
                future.result()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Notification to user {} failed: {}", notice.user_id, exc)
                failures.append({"user_id": notice.user_id, "reason": str(exc)})
    return failures


__all__ = [
    "LoggingResolutionNotifier",
    "ResolutionNotice",
    "ResolutionNotifier",
    "WebhookResolutionNotifier",
    "build_notifier",
    "build_payload",
    "dispatch_notifications",
]
