from __future__ import annotations

import json
import time
import urllib.request
from typing import Callable, Dict, Mapping, Optional

from condor.logging_utils import get_logger

Transport = Callable[[str, bytes, Dict[str, str]], None]

LOG = get_logger("Alerts")


class AlertService:
    """
    Slack/Telegram notification sink.

    ``notify`` never raises: a transport failure is logged and reported as
    ``False``. Telegram credentials are operator settings and can be swapped
    at runtime through ``set_telegram_credentials``.
    """

    def __init__(
        self,
        throttle_seconds: float = 0.0,
        transport: Optional[Transport] = None,
        *,
        slack_url: Optional[str] = None,
        telegram_token: Optional[str] = None,
        telegram_chat: Optional[str] = None,
    ):
        self.throttle_seconds = max(throttle_seconds, 0.0)
        self._last_sent: Dict[str, float] = {}
        self._transport = transport or self._http_post
        self.slack_url = slack_url
        self.telegram_token = telegram_token
        self.telegram_chat = telegram_chat

    def set_telegram_credentials(self, token: Optional[str], chat_id: Optional[str]) -> None:
        self.telegram_token = token or None
        self.telegram_chat = chat_id or None

    def notify(self, level: str, title: str, body: str, tags: Optional[Mapping[str, str]] = None) -> bool:
        now = time.monotonic()
        last = self._last_sent.get(title)
        if last is not None and now - last < self.throttle_seconds:
            return False
        payload = {"level": level, "title": title, "body": body, "tags": dict(tags or {})}
        sent = False
        if self.slack_url:
            sent |= self._send_slack(payload)
        if self.telegram_token and self.telegram_chat:
            sent |= self._send_telegram(payload)
        if sent:
            self._last_sent[title] = now
        return sent

    @staticmethod
    def _tag_text(tags: Mapping[str, str]) -> str:
        return ", ".join(f"{key}={value}" for key, value in tags.items())

    def _send_slack(self, payload: Dict[str, object]) -> bool:
        tags = self._tag_text(payload["tags"])  # type: ignore[arg-type]
        data = {
            "text": f"*{payload['title']}* ({payload['level']})\n{payload['body']}",
            "attachments": [{"text": tags}] if tags else [],
        }
        return self._post_json(self.slack_url, data)

    def _send_telegram(self, payload: Dict[str, object]) -> bool:
        url = f"https://api.telegram.org/bot{self.telegram_token}/sendMessage"
        text = f"{payload['title']} [{payload['level']}]\n{payload['body']}"
        tags = self._tag_text(payload["tags"])  # type: ignore[arg-type]
        if tags:
            text += f"\n{tags}"
        data = {"chat_id": self.telegram_chat, "text": text}
        return self._post_json(url, data)

    def _post_json(self, url: Optional[str], data: Dict[str, object]) -> bool:
        if not url:
            return False
        try:
            body = json.dumps(data).encode("utf-8")
            self._transport(url, body, {"Content-Type": "application/json"})
            return True
        except Exception as exc:
            LOG.log_event(30, "alert_send_failed", error=str(exc))
            return False

    @staticmethod
    def _http_post(url: str, body: bytes, headers: Dict[str, str]) -> None:
        req = urllib.request.Request(url, data=body, headers=headers, method="POST")
        with urllib.request.urlopen(req, timeout=5):
            pass


__all__ = ["AlertService", "Transport"]
