"""Alert notification channels (email, slack, webhook). Delivery is fire-and-forget."""

from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass, field
from email.mime.text import MIMEText
from email.utils import formatdate
from typing import Any, Dict, Mapping, Optional

import httpx

from src.automation.config import BackendConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationMessage:
    subject: str
    text: str
    payload: Dict[str, Any] = field(default_factory=dict)


class Notifier:
    """
    Dispatches a message to one configured channel.

    channel_config shape (as stored on alert rules):
      {"type": "email"|"slack"|"webhook", "enabled": bool, "config": {...}}

    - email:   config.to
    - slack:   config.webhook_url
    - webhook: config.url, optional config.headers
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_from: Optional[str] = None,
        http_timeout_sec: int = 10,
        http_client: Optional[httpx.Client] = None,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_from = smtp_from
        self.http_timeout_sec = http_timeout_sec
        self._http_client = http_client

    @classmethod
    def from_config(cls, config: BackendConfig) -> "Notifier":
        return cls(
            smtp_host=config.smtp_host,
            smtp_port=config.smtp_port,
            smtp_user=config.smtp_user,
            smtp_password=config.smtp_password,
            smtp_from=config.smtp_from,
            http_timeout_sec=config.notify_http_timeout_sec,
        )

    # PUBLIC_INTERFACE
    def notify(self, channel_config: Mapping[str, Any], message: NotificationMessage) -> bool:
        """Deliver a message; failures are logged and reported as False, never raised or retried."""
        if not channel_config.get("enabled", True):
            return False
        kind = channel_config.get("type")
        cfg = channel_config.get("config") or {}
        try:
            if kind == "email":
                return self._send_email(cfg, message)
            if kind == "slack":
                return self._post_json(cfg.get("webhook_url"), {"text": f"*{message.subject}*\n{message.text}"}, {})
            if kind == "webhook":
                body = {"subject": message.subject, "message": message.text, **message.payload}
                return self._post_json(cfg.get("url"), body, cfg.get("headers") or {})
            logger.warning("Unknown notification channel type=%s", kind)
            return False
        except Exception:
            logger.exception("Notification via %s failed", kind)
            return False

    def _post_json(self, url: Optional[str], body: Dict[str, Any], headers: Dict[str, str]) -> bool:
        if not url:
            logger.warning("Notification channel missing url; skipped")
            return False
        if self._http_client is not None:
            res = self._http_client.post(url, json=body, headers=headers, timeout=self.http_timeout_sec)
        else:
            res = httpx.post(url, json=body, headers=headers, timeout=self.http_timeout_sec)
        res.raise_for_status()
        return True

    def _send_email(self, cfg: Mapping[str, Any], message: NotificationMessage) -> bool:
        to_address = cfg.get("to")
        if not (self.smtp_host and self.smtp_from and to_address):
            logger.warning("SMTP not configured or recipient missing; email notification skipped")
            return False

        mime = MIMEText(message.text, "plain", "utf-8")
        mime["Subject"] = message.subject
        mime["From"] = self.smtp_from
        mime["To"] = to_address
        mime["Date"] = formatdate(localtime=True)

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.http_timeout_sec) as server:
            server.starttls(context=ssl.create_default_context())
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.smtp_from, [to_address], mime.as_string())
        return True
