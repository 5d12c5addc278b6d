"""Delivery channels for operator notifications (email, Slack, generic webhook)."""

from __future__ import annotations

import smtplib
import time
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence
from urllib.parse import urlparse

import httpx

from core.env import env_bool, env_int, env_str
from core.logging import get_logger

logger = get_logger(__name__)

NOTIFY_EMAIL_FROM = env_str("EXCEPTION_EMAIL_FROM", "errors@localhost") or "errors@localhost"
SMTP_HOST = env_str("SMTP_HOST")
SMTP_PORT = env_int("SMTP_PORT", 587, minimum=1)
SMTP_USERNAME = env_str("SMTP_USERNAME")
SMTP_PASSWORD = env_str("SMTP_PASSWORD")
SMTP_USE_TLS = env_bool("SMTP_USE_TLS", True)
SLACK_DEFAULT_WEBHOOK = env_str("EXCEPTION_SLACK_WEBHOOK")
WEBHOOK_TIMEOUT = float(env_int("EXCEPTION_WEBHOOK_TIMEOUT_SECONDS", 5, minimum=1))
WEBHOOK_RETRIES = env_int("EXCEPTION_WEBHOOK_RETRIES", 3, minimum=1)


@dataclass
class NotificationResult:
    status: str
    error: Optional[str] = None
    delivered: int = 0
    failed: int = 0
    metadata: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status == "delivered"


def _unique_targets(targets: Optional[Iterable[str]]) -> List[str]:
    unique: List[str] = []
    for item in targets or ():
        if not isinstance(item, str):
            continue
        candidate = item.strip()
        if candidate and candidate not in unique:
            unique.append(candidate)
    return unique


def _aggregate_results(results: Sequence[NotificationResult]) -> NotificationResult:
    if not results:
        return NotificationResult(status="failed", error="No delivery targets configured.")
    delivered = sum(result.delivered for result in results)
    failed = sum(result.failed for result in results)
    errors = [result.error for result in results if result.error]
    if failed and delivered:
        status = "partial"
    elif failed:
        status = "failed"
    else:
        status = "delivered"
    return NotificationResult(
        status=status,
        error="; ".join(errors) if errors else None,
        delivered=delivered,
        failed=failed,
    )


def _post_with_backoff(
    url: str,
    payload: dict,
    *,
    timeout: float = WEBHOOK_TIMEOUT,
    max_attempts: int = WEBHOOK_RETRIES,
    result_metadata: Optional[Dict[str, Any]] = None,
) -> NotificationResult:
    delay = 0.5
    attempts = max(1, max_attempts)
    error_message = "unknown error"
    for attempt in range(1, attempts + 1):
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(url, json=payload)
                response.raise_for_status()
            return NotificationResult(status="delivered", delivered=1, metadata=result_metadata)
        except httpx.HTTPStatusError as exc:
            logger.warning("Notification HTTP error (attempt %s/%s): %s", attempt, attempts, exc.response.text)
            error_message = exc.response.text or str(exc)
        except httpx.RequestError as exc:
            logger.warning("Notification request error (attempt %s/%s): %s", attempt, attempts, exc)
            error_message = str(exc)
        if attempt < attempts:
            time.sleep(delay)
            delay *= 2
    return NotificationResult(status="failed", error=error_message, failed=1, metadata=result_metadata)


def _send_email(subject: str, body: str, targets: Sequence[str], metadata: Dict[str, Any]) -> NotificationResult:
    if not targets:
        return NotificationResult(status="failed", error="No email recipients configured.")
    if not SMTP_HOST:
        return NotificationResult(status="failed", error="SMTP_HOST is not configured.", failed=len(targets))

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = NOTIFY_EMAIL_FROM
    message["To"] = ", ".join(targets)
    message.set_content(body)
    try:
        with smtplib.SMTP(SMTP_HOST, SMTP_PORT) as smtp:
            if SMTP_USE_TLS:
                smtp.starttls()
            if SMTP_USERNAME and SMTP_PASSWORD:
                smtp.login(SMTP_USERNAME, SMTP_PASSWORD)
            smtp.send_message(message)
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("SMTP delivery to %s failed: %s", ", ".join(targets), exc)
        return NotificationResult(status="failed", error=str(exc), failed=len(targets))
    return NotificationResult(status="delivered", delivered=len(targets), metadata={"recipients": list(targets)})


def _send_slack(subject: str, body: str, targets: Sequence[str], metadata: Dict[str, Any]) -> NotificationResult:
    webhooks = list(targets) or ([SLACK_DEFAULT_WEBHOOK] if SLACK_DEFAULT_WEBHOOK else [])
    results: List[NotificationResult] = []
    for url in webhooks:
        if not url.startswith("https://"):
            results.append(NotificationResult(status="failed", error=f"Invalid Slack webhook URL: {url}", failed=1))
            continue
        payload = {"text": f"*{subject}*\n```{body}```"}
        results.append(_post_with_backoff(url, payload, result_metadata={"webhook": url}))
    return _aggregate_results(results)


def _send_webhook(subject: str, body: str, targets: Sequence[str], metadata: Dict[str, Any]) -> NotificationResult:
    results: List[NotificationResult] = []
    for url in targets:
        if urlparse(url).scheme not in {"http", "https"}:
            results.append(NotificationResult(status="failed", error=f"Unsupported webhook URL: {url}", failed=1))
            continue
        payload = {"subject": subject, "message": body, "payload": metadata.get("payload")}
        results.append(_post_with_backoff(url, payload, result_metadata={"webhook": url}))
    return _aggregate_results(results)


ChannelHandler = Callable[[str, str, Sequence[str], Dict[str, Any]], NotificationResult]

CHANNEL_REGISTRY: Dict[str, ChannelHandler] = {
    "email": _send_email,
    "slack": _send_slack,
    "webhook": _send_webhook,
}


def dispatch_notification(
    channel: str,
    subject: str,
    body: str,
    *,
    targets: Optional[Sequence[str]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> NotificationResult:
    """Route a notification to the requested channel."""
    handler = CHANNEL_REGISTRY.get((channel or "").lower())
    if handler is None:
        logger.warning("Unsupported notification channel requested: %s", channel)
        return NotificationResult(status="failed", error=f"Unsupported channel {channel}")
    return handler(subject, body, _unique_targets(targets), metadata or {})


__all__ = ["CHANNEL_REGISTRY", "NotificationResult", "dispatch_notification"]
