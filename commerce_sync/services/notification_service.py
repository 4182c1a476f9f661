"""
Notification Service
Tells operators a sync run finished, via webhook or the log.

Delivery failures are logged and swallowed; they never change a run's status.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import aiohttp

from commerce_sync.config import get_settings
from commerce_sync.errors import ConnectorError
from commerce_sync.services.sync_engine import RunResult
from commerce_sync.utils.logger import log
from commerce_sync.utils.retry import RetryPolicy, retry_async


@dataclass
class DeliveryResult:
    """Tracks delivery attempt results for auditing."""
    success: bool = False
    channel: str = ""
    attempts: int = 0
    total_delay_seconds: float = 0.0
    errors: List[str] = field(default_factory=list)
    final_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "channel": self.channel,
            "attempts": self.attempts,
            "total_delay_seconds": round(self.total_delay_seconds, 2),
            "errors": self.errors[:5],
            "final_error": self.final_error,
        }


@dataclass
class NotificationConfig:
    """
    Who hears about a run

    channels: "webhook" and/or "log". on_success / on_failure filter by outcome.
    """
    channels: List[str] = field(default_factory=lambda: ["log"])
    webhook_url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    on_success: bool = True
    on_failure: bool = True
    recipients: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "NotificationConfig":
        if isinstance(data, NotificationConfig):
            return data
        data = data or {}
        webhook_url = data.get("webhookUrl", data.get("webhook_url"))
        channels = data.get("channels")
        if channels is None:
            channels = ["webhook"] if webhook_url else ["log"]
        return cls(
            channels=list(channels),
            webhook_url=webhook_url,
            headers=dict(data.get("headers") or {}),
            on_success=bool(data.get("onSuccess", data.get("on_success", True))),
            on_failure=bool(data.get("onFailure", data.get("on_failure", True))),
            recipients=list(data.get("recipients") or []),
        )


def build_payload(run_result: Union[RunResult, Dict[str, Any]]) -> Dict[str, Any]:
    """Notification body for a run"""
    data = run_result.to_dict() if isinstance(run_result, RunResult) else dict(run_result)
    status = data.get("status") or ("completed" if data.get("success") else "failed")
    return {
        "event": f"sync.{status}",
        "runId": data.get("runId"),
        "jobId": data.get("jobId"),
        "storeId": data.get("storeId"),
        "platform": data.get("platform"),
        "status": status,
        "success": bool(data.get("success", status == "completed")),
        "recordsProcessed": data.get("recordsProcessed", 0),
        "recordsCreated": data.get("recordsCreated", 0),
        "recordsUpdated": data.get("recordsUpdated", 0),
        "recordsSkipped": data.get("recordsSkipped", 0),
        "errors": list(data.get("errors") or [])[:10],
        "warnings": list(data.get("warnings") or [])[:10],
        "duration": data.get("duration"),
    }


class Notifier(ABC):
    """Delivery channel for run notifications"""

    channel = ""

    @abstractmethod
    async def send(self, payload: Dict[str, Any]) -> DeliveryResult:
        pass


class LogNotifier(Notifier):
    """Writes the notification to the application log"""

    channel = "log"

    async def send(self, payload: Dict[str, Any]) -> DeliveryResult:
        message = (
            f"Sync {payload['status']} for {payload.get('platform')} store {payload.get('storeId')} "
            f"(job {payload.get('jobId')}, run {payload.get('runId')}): "
            f"{payload.get('recordsProcessed', 0)} records processed, {len(payload.get('errors') or [])} errors"
        )
        if payload.get("success"):
            log.info(message)
        else:
            log.warning(message)
        return DeliveryResult(success=True, channel=self.channel, attempts=1)


class WebhookNotifier(Notifier):
    """
    POSTs the notification as JSON

    429 and 5xx responses and connection errors are retried with the shared
    retry helper; other 4xx responses fail immediately.
    """

    channel = "webhook"

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep=asyncio.sleep
    ):
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout if timeout is not None else get_settings().notification_timeout
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay=2.0, max_delay=30.0)
        self.sleep = sleep

    async def _post(self, payload: Dict[str, Any]) -> int:
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(self.url, json=payload, headers=self.headers) as response:
                    if response.status < 300:
                        return response.status
                    raise ConnectorError(
                        f"Webhook returned HTTP {response.status}",
                        status_code=response.status,
                        retryable=response.status == 429 or response.status >= 500,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ConnectorError(f"Webhook delivery failed: {type(e).__name__}: {e}", retryable=True) from e

    async def send(self, payload: Dict[str, Any]) -> DeliveryResult:
        result = DeliveryResult(channel=self.channel)
        retries = []
        try:
            _, stats = await retry_async(
                lambda: self._post(payload),
                self.retry_policy,
                operation_name=f"Webhook notification {payload.get('runId')}",
                on_retry=lambda attempt, error, delay: retries.append((str(error), delay)),
                sleep=self.sleep,
            )
        except ConnectorError as e:
            result.attempts = len(retries) + 1
            result.total_delay_seconds = sum(delay for _, delay in retries)
            result.errors = [error for error, _ in retries] + [str(e)]
            result.final_error = str(e)
            return result

        result.success = True
        result.attempts = stats.attempts
        result.total_delay_seconds = stats.total_delay_seconds
        result.errors = list(stats.errors)
        return result


class NotificationService:
    """Fans a run result out to the configured channels"""

    def __init__(self, notifiers: Optional[Dict[str, Notifier]] = None):
        # Channel overrides, mainly for tests
        self.notifiers = notifiers or {}
        self.total_sent = 0
        self.total_failed = 0

    def _notifier_for(self, channel: str, config: NotificationConfig) -> Optional[Notifier]:
        if channel in self.notifiers:
            return self.notifiers[channel]
        if channel == "log":
            return LogNotifier()
        if channel == "webhook":
            url = config.webhook_url or get_settings().notification_webhook_url
            if not url:
                log.warning("Webhook notification requested but no webhook URL is configured")
                return None
            return WebhookNotifier(url, headers=config.headers)
        log.warning(f"Notification channel '{channel}' is not supported")
        return None

    async def notify_sync_completion(
        self,
        run_result: Union[RunResult, Dict[str, Any]],
        notification_config: Union[NotificationConfig, Dict[str, Any], None] = None
    ) -> bool:
        """
        Notify the configured channels about a finished run

        Returns:
            True when every channel that should hear about this outcome got
            it; never raises.
        """
        try:
            config = NotificationConfig.from_dict(notification_config)
            payload = build_payload(run_result)

            if payload["success"] and not config.on_success:
                return True
            if not payload["success"] and not config.on_failure:
                return True

            delivered = True
            for channel in config.channels:
                notifier = self._notifier_for(channel, config)
                if notifier is None:
                    delivered = False
                    continue

                result = await notifier.send(payload)
                if result.success:
                    self.total_sent += 1
                else:
                    self.total_failed += 1
                    delivered = False
                    log.error(
                        f"Notification via {channel} failed for run {payload.get('runId')}: {result.final_error}"
                    )
            return delivered

        except Exception as e:
            self.total_failed += 1
            log.error(f"Notification failed: {type(e).__name__}: {e}")
            return False
