"""Per-channel-type transport adapters.

Each adapter translates a generic NotificationPayload into its provider's
wire shape and delivers it:

- EmailTransport: SMTP multipart message (recipients, subject, html, text)
- ChatTransport: Slack attachment / Discord embed via incoming webhook
- SmsTransport: Twilio Messages API, one message per recipient
- PushTransport: FCM topic message (notification + data), one per topic
- WebhookTransport: POST ``{alert, source, timestamp}`` JSON to a URL

HTTP goes through stdlib urllib.request; no extra dependencies required.
Adapters raise ChannelSendError on delivery failure; the dispatcher
catches it. Custom transports just need ``send(config, payload)``.
"""

from __future__ import annotations

import base64
import html
import json
import smtplib
import urllib.error
import urllib.parse
import urllib.request
from datetime import UTC, datetime
from email.message import EmailMessage
from typing import Any, Protocol, runtime_checkable

from alertflow.models import (
    ChannelType,
    ChatConfig,
    ChatPlatform,
    EmailConfig,
    NotificationPayload,
    PushConfig,
    SmsConfig,
    WebhookConfig,
    severity_color,
)

DEFAULT_TIMEOUT = 10.0


class ChannelSendError(Exception):
    """Raised when a channel transport fails to deliver a payload."""


@runtime_checkable
class Transport(Protocol):
    """Protocol for channel transports."""

    def send(self, config: Any, payload: NotificationPayload) -> None:
        """Deliver *payload* using the channel's transport *config*."""
        ...


def _post(
    url: str,
    body: bytes,
    headers: dict[str, str],
    timeout: float,
) -> None:
    req = urllib.request.Request(url, data=body, headers=headers, method="POST")
    try:
        with urllib.request.urlopen(req, timeout=timeout):  # noqa: S310
            pass
    except urllib.error.HTTPError as exc:
        raise ChannelSendError(f"HTTP {exc.code} from {url}") from exc
    except (urllib.error.URLError, OSError) as exc:
        raise ChannelSendError(f"Request to {url} failed: {exc}") from exc


def _post_json(
    url: str,
    data: dict[str, Any],
    timeout: float,
    headers: dict[str, str] | None = None,
) -> None:
    body = json.dumps(data).encode("utf-8")
    _post(
        url,
        body,
        {"Content-Type": "application/json", **(headers or {})},
        timeout,
    )


# ----------------------------------------------------------------------
# Email
# ----------------------------------------------------------------------


def format_email_subject(payload: NotificationPayload) -> str:
    return f"[{payload.severity.value.upper()}] {payload.title}"


def format_email_html(payload: NotificationPayload) -> str:
    color = severity_color(payload.severity)
    details = ""
    if payload.action_url:
        details += (
            f'<p><a href="{html.escape(payload.action_url)}">View Details</a></p>'
        )
    if payload.metadata:
        dumped = json.dumps(payload.metadata, indent=2, default=str)
        details += (
            '<div class="metadata"><strong>Additional Information:</strong>'
            f"<pre>{html.escape(dumped)}</pre></div>"
        )

    return (
        "<html><head><style>"
        "body { font-family: Arial, sans-serif; margin: 0; padding: 20px; }"
        f".alert-header {{ background: {color}; color: white; padding: 15px; "
        "border-radius: 5px 5px 0 0; }"
        ".alert-body { border: 1px solid #ddd; padding: 15px; "
        "border-radius: 0 0 5px 5px; }"
        ".metadata { background: #f5f5f5; padding: 10px; margin-top: 10px; "
        "border-radius: 3px; }"
        "</style></head><body>"
        '<div class="alert-header">'
        f"<h2>{html.escape(payload.title)}</h2>"
        f"<p>Severity: {payload.severity.value.upper()}</p>"
        "</div>"
        '<div class="alert-body">'
        f"<p><strong>Time:</strong> {payload.timestamp.isoformat()}</p>"
        f"<p><strong>Message:</strong> {html.escape(payload.message)}</p>"
        f"{details}"
        "</div></body></html>"
    )


def format_email_text(payload: NotificationPayload) -> str:
    lines = [
        f"ALERT: {payload.title}",
        f"Severity: {payload.severity.value.upper()}",
        f"Time: {payload.timestamp.isoformat()}",
        "",
        payload.message,
    ]
    if payload.action_url:
        lines += ["", f"View Details: {payload.action_url}"]
    if payload.metadata:
        dumped = json.dumps(payload.metadata, indent=2, default=str)
        lines += ["", f"Additional Info: {dumped}"]
    return "\n".join(lines) + "\n"


def build_email_message(
    config: EmailConfig, payload: NotificationPayload,
) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = format_email_subject(payload)
    msg["From"] = config.from_address
    msg["To"] = ", ".join(config.recipients)
    msg.set_content(format_email_text(payload))
    msg.add_alternative(format_email_html(payload), subtype="html")
    return msg


class EmailTransport:
    """Send alerts as multipart email over SMTP."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._timeout = timeout

    def send(self, config: EmailConfig, payload: NotificationPayload) -> None:
        msg = build_email_message(config, payload)
        try:
            with smtplib.SMTP(
                config.smtp_host, config.smtp_port, timeout=self._timeout,
            ) as smtp:
                if config.use_tls:
                    smtp.starttls()
                if config.username:
                    smtp.login(config.username, config.password or "")
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelSendError(
                f"SMTP delivery via {config.smtp_host}:{config.smtp_port} failed: {exc}"
            ) from exc


# ----------------------------------------------------------------------
# Chat (Slack / Discord)
# ----------------------------------------------------------------------


def build_slack_message(
    config: ChatConfig, payload: NotificationPayload,
) -> dict[str, Any]:
    attachment: dict[str, Any] = {
        "color": severity_color(payload.severity),
        "fields": [
            {"title": "Severity", "value": payload.severity.value.upper(), "short": True},
            {"title": "Time", "value": payload.timestamp.isoformat(), "short": True},
            {"title": "Message", "value": payload.message, "short": False},
        ],
    }
    if payload.action_url:
        attachment["actions"] = [
            {"type": "button", "text": "View Details", "url": payload.action_url},
        ]

    message: dict[str, Any] = {
        "username": config.username,
        "text": f":rotating_light: {payload.title}",
        "attachments": [attachment],
    }
    if config.channel:
        message["channel"] = config.channel
    return message


def build_discord_message(
    config: ChatConfig, payload: NotificationPayload,
) -> dict[str, Any]:
    embed: dict[str, Any] = {
        "title": payload.title,
        "description": payload.message,
        "color": int(severity_color(payload.severity).lstrip("#"), 16),
        "fields": [
            {"name": "Severity", "value": payload.severity.value.upper(), "inline": True},
            {"name": "Time", "value": payload.timestamp.isoformat(), "inline": True},
        ],
        "timestamp": payload.timestamp.isoformat(),
    }
    if payload.action_url:
        embed["url"] = payload.action_url

    message: dict[str, Any] = {"username": config.username, "embeds": [embed]}
    if config.avatar_url:
        message["avatar_url"] = config.avatar_url
    return message


class ChatTransport:
    """Post to a Slack or Discord incoming webhook."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._timeout = timeout

    def send(self, config: ChatConfig, payload: NotificationPayload) -> None:
        if config.platform == ChatPlatform.DISCORD:
            message = build_discord_message(config, payload)
        else:
            message = build_slack_message(config, payload)
        _post_json(config.webhook_url, message, self._timeout)


# ----------------------------------------------------------------------
# SMS (Twilio)
# ----------------------------------------------------------------------


def format_sms_body(payload: NotificationPayload) -> str:
    return f"[{payload.severity.value.upper()}] {payload.title}: {payload.message}"


class SmsTransport:
    """Send one SMS per recipient through the Twilio Messages API."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._timeout = timeout

    def send(self, config: SmsConfig, payload: NotificationPayload) -> None:
        url = f"{config.api_base}/Accounts/{config.account_sid}/Messages.json"
        credentials = f"{config.account_sid}:{config.auth_token}".encode()
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Authorization": "Basic " + base64.b64encode(credentials).decode("ascii"),
        }
        body = format_sms_body(payload)

        for recipient in config.recipients:
            form = urllib.parse.urlencode(
                {"From": config.from_number, "To": recipient, "Body": body},
            ).encode("utf-8")
            _post(url, form, headers, self._timeout)


# ----------------------------------------------------------------------
# Push (FCM topics)
# ----------------------------------------------------------------------


def build_push_message(
    payload: NotificationPayload, topic: str,
) -> dict[str, Any]:
    notification: dict[str, Any] = {
        "title": payload.title,
        "body": payload.message,
        "icon": "/favicon.ico",
    }
    if payload.action_url:
        notification["click_action"] = payload.action_url

    return {
        "to": f"/topics/{topic}",
        "notification": notification,
        "data": {
            "severity": payload.severity.value,
            "timestamp": payload.timestamp.isoformat(),
            "metadata": json.dumps(payload.metadata, default=str),
        },
    }


class PushTransport:
    """Send an FCM push notification to every configured topic."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._timeout = timeout

    def send(self, config: PushConfig, payload: NotificationPayload) -> None:
        headers = {"Authorization": f"key={config.server_key}"}
        for topic in config.topics:
            _post_json(
                config.endpoint,
                build_push_message(payload, topic),
                self._timeout,
                headers,
            )


# ----------------------------------------------------------------------
# Generic webhook
# ----------------------------------------------------------------------


def build_webhook_body(
    config: WebhookConfig, payload: NotificationPayload,
) -> dict[str, Any]:
    return {
        "alert": payload.model_dump(mode="json"),
        "source": config.source,
        "timestamp": datetime.now(tz=UTC).isoformat(),
    }


class WebhookTransport:
    """POST the payload as JSON to a configured URL with custom headers."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._timeout = timeout

    def send(self, config: WebhookConfig, payload: NotificationPayload) -> None:
        _post_json(
            config.url,
            build_webhook_body(config, payload),
            self._timeout,
            config.headers,
        )


def build_transports(timeout: float = DEFAULT_TIMEOUT) -> dict[ChannelType, Transport]:
    """One transport per channel type."""
    return {
        ChannelType.EMAIL: EmailTransport(timeout),
        ChannelType.CHAT: ChatTransport(timeout),
        ChannelType.SMS: SmsTransport(timeout),
        ChannelType.PUSH: PushTransport(timeout),
        ChannelType.WEBHOOK: WebhookTransport(timeout),
    }
