"""
Run notification tests.

Guards against:
1. A failing webhook raising into the caller
2. on_success / on_failure filters being ignored
3. Permanent 4xx webhook failures being retried
"""
from commerce_sync.errors import ConnectorError
from commerce_sync.models.sync import RunStatus, SyncStrategy
from commerce_sync.services.notification_service import (
    NotificationConfig,
    NotificationService,
    WebhookNotifier,
    build_payload,
)
from commerce_sync.services.sync_engine import RunResult
from commerce_sync.utils.retry import RetryPolicy

from conftest import SleepRecorder


def run_result(status=RunStatus.COMPLETED, **kwargs):
    return RunResult(
        run_id="run_1",
        job_id="job_1",
        status=status,
        strategy=SyncStrategy.INCREMENTAL,
        store_id="store_1",
        platform="shopify",
        **kwargs,
    )


class ScriptedWebhook(WebhookNotifier):
    """Webhook whose HTTP call is replaced by a script of outcomes"""

    def __init__(self, outcomes, **kwargs):
        super().__init__(
            "https://hooks.example.com/sync",
            retry_policy=RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0),
            sleep=SleepRecorder(),
            **kwargs,
        )
        self.outcomes = list(outcomes)
        self.payloads = []

    async def _post(self, payload):
        self.payloads.append(payload)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_build_payload():
    payload = build_payload(run_result(
        status=RunStatus.FAILED,
        records_processed=10,
        records_created=4,
        records_updated=5,
        records_skipped=1,
        errors=[{"code": "timeout", "message": "slow"}],
    ))

    assert payload["event"] == "sync.failed"
    assert payload["success"] is False
    assert payload["recordsProcessed"] == 10
    assert payload["errors"] == [{"code": "timeout", "message": "slow"}]
    assert payload["storeId"] == "store_1"


def test_build_payload_from_dict():
    payload = build_payload({"success": True, "runId": "r"})

    assert payload["status"] == "completed"
    assert payload["event"] == "sync.completed"


async def test_webhook_retries_server_errors():
    webhook = ScriptedWebhook([ConnectorError("HTTP 502", status_code=502), 200])

    result = await webhook.send({"runId": "run_1"})

    assert result.success
    assert result.attempts == 2
    assert webhook.sleep.delays == [1.0]


async def test_webhook_gives_up_on_client_errors():
    webhook = ScriptedWebhook([ConnectorError("HTTP 400", status_code=400, retryable=False)])

    result = await webhook.send({"runId": "run_1"})

    assert not result.success
    assert result.attempts == 1
    assert result.final_error == "HTTP 400"


async def test_failed_delivery_returns_false_without_raising():
    webhook = ScriptedWebhook([ConnectorError("down", status_code=503) for _ in range(3)])
    service = NotificationService(notifiers={"webhook": webhook})

    delivered = await service.notify_sync_completion(run_result(), {"webhookUrl": "https://hooks.example.com/sync"})

    assert delivered is False
    assert len(webhook.payloads) == 3
    assert service.total_failed == 1


async def test_on_success_filter_skips_delivery():
    webhook = ScriptedWebhook([200])
    service = NotificationService(notifiers={"webhook": webhook})
    config = {"channels": ["webhook"], "onSuccess": False}

    assert await service.notify_sync_completion(run_result(), config)
    assert webhook.payloads == []

    assert await service.notify_sync_completion(run_result(status=RunStatus.FAILED), config)
    assert webhook.payloads[0]["status"] == "failed"


async def test_unsupported_channel_is_reported_not_raised():
    service = NotificationService()

    assert await service.notify_sync_completion(run_result(), {"channels": ["email"]}) is False


async def test_log_channel_by_default():
    service = NotificationService()

    assert await service.notify_sync_completion(run_result()) is True
    assert service.total_sent == 1


async def test_garbage_result_never_raises():
    service = NotificationService()

    assert await service.notify_sync_completion(object()) is False


def test_config_defaults_to_webhook_when_url_given():
    assert NotificationConfig.from_dict({"webhookUrl": "https://x"}).channels == ["webhook"]
    assert NotificationConfig.from_dict(None).channels == ["log"]
