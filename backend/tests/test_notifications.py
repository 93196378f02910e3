from __future__ import annotations

import json
import threading

import httpx
import pytest

from app.core.config import Settings
from app.services.notifications import (
    LoggingResolutionNotifier,
    ResolutionNotice,
    WebhookResolutionNotifier,
    build_notifier,
    dispatch_notifications,
)
from factories import make_contract, make_user


@pytest.fixture
def resolved_contract():
    return make_contract(is_resolved=True, resolution="MKT", resolution_probability=0.7)


class RecordingNotifier:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.calls: list[tuple] = []
        self._failing = failing or set()
        self._lock = threading.Lock()

    def send_resolution_notification(self, user_id, payout, creator, contract, outcome, *args):
        with self._lock:
            self.calls.append((user_id, payout, outcome, *args))
        if user_id in self._failing:
            raise RuntimeError(f"cannot reach {user_id}")


def test_dispatch_sends_every_notice(resolved_contract):
    notifier = RecordingNotifier()
    notices = [ResolutionNotice(user_id=f"u{index}", payout=float(index)) for index in range(5)]

    failures = dispatch_notifications(
        notifier, notices, creator=make_user("creator"), contract=resolved_contract, max_workers=3
    )

    assert failures == []
    assert sorted(call[0] for call in notifier.calls) == ["u0", "u1", "u2", "u3", "u4"]
    assert {call[2] for call in notifier.calls} == {"MKT"}
    assert {call[3] for call in notifier.calls} == {0.7}


def test_dispatch_collects_failures_without_stopping(resolved_contract):
    notifier = RecordingNotifier(failing={"u1"})
    notices = [ResolutionNotice("u0", 1.0), ResolutionNotice("u1", 0.0), ResolutionNotice("u2", 2.0)]

    failures = dispatch_notifications(notifier, notices, creator=make_user("creator"), contract=resolved_contract)

    assert failures == [{"user_id": "u1", "reason": "cannot reach u1"}]
    assert len(notifier.calls) == 3


def test_dispatch_without_notices_is_a_no_op(resolved_contract):
    notifier = RecordingNotifier()
    assert dispatch_notifications(notifier, [], creator=make_user("creator"), contract=resolved_contract) == []
    assert notifier.calls == []


def test_webhook_notifier_posts_json(resolved_contract):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(204)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    notifier = WebhookResolutionNotifier("https://hooks.example.test/resolved", client=client)

    notifier.send_resolution_notification(
        "u1", 12.5, make_user("creator", name="Creator"), resolved_contract, "MKT", 0.7
    )

    assert len(requests) == 1
    body = json.loads(requests[0].content)
    assert body["user_id"] == "u1"
    assert body["payout"] == 12.5
    assert body["contract_id"] == "c1"
    assert body["resolution_probability"] == 0.7
    assert body["creator"] == {"id": "creator", "name": "Creator"}


def test_webhook_notifier_raises_on_http_errors(resolved_contract):
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    notifier = WebhookResolutionNotifier("https://hooks.example.test/resolved", client=client)

    with pytest.raises(httpx.HTTPStatusError):
        notifier.send_resolution_notification("u1", 1.0, make_user("creator"), resolved_contract, "YES")


def test_build_notifier_depends_on_webhook_setting():
    assert isinstance(build_notifier(Settings(notification_webhook_url=None)), LoggingResolutionNotifier)
    webhook = build_notifier(Settings(notification_webhook_url="https://hooks.example.test/resolved"))
    assert isinstance(webhook, WebhookResolutionNotifier)
    webhook.close()
