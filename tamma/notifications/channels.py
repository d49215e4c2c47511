"""
Concrete notification channels: CLI, webhook and email.

Example:
    >>> channels = build_channels(settings.notifications)
    >>> await channels[ChannelType.WEBHOOK].send(alert)
"""

import asyncio
import smtplib
from email.message import EmailMessage

import click
import httpx
import structlog

from tamma.config.settings import EmailConfig, NotificationsConfig, WebhookConfig
from tamma.enums import ChannelType, Severity
from tamma.exceptions import NotificationDeliveryError
from tamma.notifications.base import Alert, DeliveryResult, NotificationChannel

log = structlog.get_logger(__name__)

SEVERITY_COLORS = {
    Severity.INFO: "cyan",
    Severity.WARNING: "yellow",
    Severity.ERROR: "red",
    Severity.CRITICAL: "magenta",
}


class CLIChannel(NotificationChannel):
    """Print alerts to the operator's terminal (stderr)."""

    channel_type = ChannelType.CLI

    def __init__(self, color: bool | None = None) -> None:
        self.color = color

    async def send(self, alert: Alert) -> DeliveryResult:
        try:
            click.secho(
                alert.render_text(),
                fg=SEVERITY_COLORS.get(alert.severity),
                err=True,
                color=self.color,
            )
        except OSError as e:
            raise NotificationDeliveryError(f"Cannot write alert to terminal: {e}", "cli") from e
        return DeliveryResult(channel=self.channel_type, delivered=True)


class WebhookChannel(NotificationChannel):
    """POST alerts as JSON to an HTTP endpoint."""

    channel_type = ChannelType.WEBHOOK

    def __init__(self, config: WebhookConfig, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        return self._client

    async def send(self, alert: Alert) -> DeliveryResult:
        try:
            response = await self.client.post(
                self.config.url,
                json=alert.to_dict(),
                headers=self.config.headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationDeliveryError(f"Webhook delivery failed: {e}", "webhook") from e

        log.debug("webhook_delivered", url=self.config.url, status=response.status_code)
        return DeliveryResult(
            channel=self.channel_type,
            delivered=True,
            detail=f"HTTP {response.status_code}",
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class EmailChannel(NotificationChannel):
    """Send alerts over SMTP.

    smtplib is blocking, so delivery runs in a worker thread.
    """

    channel_type = ChannelType.EMAIL

    def __init__(self, config: EmailConfig) -> None:
        self.config = config

    def build_message(self, alert: Alert) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = f"[tamma/{alert.severity.value}] {alert.title}"
        message["From"] = self.config.sender
        message["To"] = ", ".join(self.config.recipients)
        message.set_content(alert.render_text())
        return message

    def _send_sync(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=self.config.timeout) as smtp:
            if self.config.use_tls:
                smtp.starttls()
            if self.config.username and self.config.password:
                smtp.login(self.config.username, self.config.password.get_secret_value())
            smtp.send_message(message)

    async def send(self, alert: Alert) -> DeliveryResult:
        message = self.build_message(alert)
        try:
            await asyncio.to_thread(self._send_sync, message)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationDeliveryError(f"Email delivery failed: {e}", "email") from e

        return DeliveryResult(
            channel=self.channel_type,
            delivered=True,
            detail=f"{len(self.config.recipients)} recipient(s)",
        )


def build_channels(config: NotificationsConfig) -> dict[ChannelType, NotificationChannel]:
    """Create every channel that has a concrete configuration."""
    channels: dict[ChannelType, NotificationChannel] = {}
    if config.cli_enabled:
        channels[ChannelType.CLI] = CLIChannel()
    if config.webhook is not None:
        channels[ChannelType.WEBHOOK] = WebhookChannel(config.webhook)
    if config.email is not None:
        channels[ChannelType.EMAIL] = EmailChannel(config.email)
    return channels
