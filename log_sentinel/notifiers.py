from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Set
from urllib.parse import quote_plus

import requests

from .errors import NotifierError
from .metrics import MonitorStats
from .templating import render

if TYPE_CHECKING:
    from .config import NotifierConfig

logger = logging.getLogger(__name__)
alert_logger = logging.getLogger("log_sentinel.alerts")

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_TEMPLATE = "🚨 Log alert\n\nFile: {{path}}\nTime: {{time}}\nLine: {{line}}"
HTTP_TIMEOUT = 10.0


@dataclass
class Alert:
    path: str
    line: str
    timestamp: datetime = field(default_factory=datetime.now)
    keyword: Optional[str] = None


def format_alert(alert: Alert, template: Optional[str] = None) -> str:
    ctx = {
        "path": alert.path,
        "time": alert.timestamp.strftime(TIME_FORMAT),
        "line": alert.line,
        "keyword": alert.keyword or "",
    }
    return render(template or DEFAULT_TEMPLATE, ctx)


class Notifier:
    name = "notifier"

    def send(self, message: str) -> None:
        raise NotImplementedError


class WebhookNotifier(Notifier):
    def __init__(self, webhook: str, timeout: float = HTTP_TIMEOUT):
        self.webhook = webhook
        self.timeout = timeout

    def payload(self, message: str) -> Dict[str, Any]:
        raise NotImplementedError

    def url(self) -> str:
        return self.webhook

    def send(self, message: str) -> None:
        try:
            resp = requests.post(self.url(), json=self.payload(message), timeout=self.timeout)
        except requests.RequestException as e:
            raise NotifierError(f"{self.name}: request failed: {e}") from e
        if resp.status_code != 200:
            raise NotifierError(f"{self.name}: HTTP {resp.status_code}: {resp.text[:200]}")


class FeishuNotifier(WebhookNotifier):
    name = "feishu"

    def payload(self, message: str) -> Dict[str, Any]:
        return {"msg_type": "text", "content": {"text": message}}


class DingtalkNotifier(WebhookNotifier):
    name = "dingtalk"

    def __init__(self, webhook: str, secret: str = "", timeout: float = HTTP_TIMEOUT):
        super().__init__(webhook, timeout)
        self.secret = secret or ""

    def payload(self, message: str) -> Dict[str, Any]:
        return {"msgtype": "text", "text": {"content": message}}

    def sign(self, timestamp_ms: int) -> str:
        string_to_sign = f"{timestamp_ms}\n{self.secret}"
        digest = hmac.new(self.secret.encode(), string_to_sign.encode(), hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def url(self) -> str:
        if not self.secret:
            return self.webhook
        ts = int(time.time() * 1000)
        sep = "&" if "?" in self.webhook else "?"
        return f"{self.webhook}{sep}timestamp={ts}&sign={quote_plus(self.sign(ts))}"


class LogNotifier(Notifier):
    """Writes alerts to the ``log_sentinel.alerts`` logger."""
    name = "log"

    def send(self, message: str) -> None:
        alert_logger.warning("%s", message)


def create_notifiers(configs: Iterable["NotifierConfig"]) -> List[Notifier]:
    out: List[Notifier] = []
    for cfg in configs:
        if not cfg.enabled:
            continue
        if cfg.type == "feishu":
            out.append(FeishuNotifier(cfg.webhook))
        elif cfg.type == "dingtalk":
            out.append(DingtalkNotifier(cfg.webhook, cfg.secret))
        elif cfg.type == "log":
            out.append(LogNotifier())
        else:
            logger.warning("unknown notifier type %r, skipping", cfg.type)
    return out


class AlertDispatcher:
    """Fan one alert out to every notifier, each as an independent task.

    Delivery is fire-and-forget: the caller never waits and failures are
    only logged and counted.
    """

    def __init__(self, notifiers: Iterable[Notifier], stats: Optional[MonitorStats] = None,
                 template: Optional[str] = None):
        self.notifiers = list(notifiers)
        self.stats = stats or MonitorStats()
        self.template = template
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, alert: Alert) -> List[asyncio.Task]:
        message = format_alert(alert, self.template)
        self.stats.alerts += 1
        tasks = []
        for n in self.notifiers:
            task = asyncio.get_running_loop().create_task(self._deliver(n, message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        return tasks

    async def _deliver(self, notifier: Notifier, message: str) -> bool:
        name = getattr(notifier, "name", type(notifier).__name__)
        try:
            await asyncio.to_thread(notifier.send, message)
        except Exception as e:
            logger.warning("notifier %s failed: %s", name, e)
            self.stats.increment_delivery(name, False)
            return False
        logger.debug("notifier %s delivered alert", name)
        self.stats.increment_delivery(name, True)
        return True

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
