from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError
from .rules import DirectoryRule, FileRule
from .tailer import DEFAULT_BUFFER_SIZE, DEFAULT_MAX_FILE_SIZE

NOTIFIER_TYPES = ("feishu", "dingtalk", "log")
WEBHOOK_TYPES = ("feishu", "dingtalk")
BACKENDS = ("native", "polling")


@dataclass
class NotifierConfig:
    type: str
    webhook: str = ""
    secret: str = ""
    enabled: bool = True

    @classmethod
    def from_dict(cls, item: Dict[str, Any]) -> "NotifierConfig":
        return cls(
            type=str(item.get("type") or ""),
            webhook=str(item.get("webhook") or ""),
            secret=str(item.get("secret") or ""),
            enabled=bool(item.get("enabled", True)),
        )


@dataclass
class Settings:
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    buffer_size: int = DEFAULT_BUFFER_SIZE
    cleanup_interval: float = 30 * 60.0
    backend: str = "native"
    poll_interval: float = 1.0
    alert_template: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, item: Dict[str, Any]) -> "Settings":
        d = cls()
        try:
            return cls(
                max_file_size=int(item.get("max_file_size", d.max_file_size)),
                buffer_size=int(item.get("buffer_size", d.buffer_size)),
                cleanup_interval=float(item.get("cleanup_interval", d.cleanup_interval)),
                backend=str(item.get("backend", d.backend)),
                poll_interval=float(item.get("poll_interval", d.poll_interval)),
                alert_template=item.get("alert_template") or None,
                log_level=str(item.get("log_level", d.log_level)).upper(),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid settings: {e}") from e


@dataclass
class SentinelConfig:
    log_files: List[FileRule] = field(default_factory=list)
    log_directories: List[DirectoryRule] = field(default_factory=list)
    notifiers: List[NotifierConfig] = field(default_factory=list)
    settings: Settings = field(default_factory=Settings)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SentinelConfig":
        if not isinstance(data, dict):
            raise ConfigError("config root must be a mapping")
        return cls(
            log_files=[FileRule.from_dict(x) for x in data.get("log_files") or []],
            log_directories=[DirectoryRule.from_dict(x) for x in data.get("log_directories") or []],
            notifiers=[NotifierConfig.from_dict(x) for x in data.get("notifiers") or []],
            settings=Settings.from_dict(data.get("settings") or {}),
        )

    def validate(self) -> "SentinelConfig":
        if not self.log_files and not self.log_directories:
            raise ConfigError("at least one log file or log directory must be configured")
        if not any(n.enabled for n in self.notifiers):
            raise ConfigError("at least one enabled notifier must be configured")
        for i, r in enumerate(self.log_files):
            if not r.path:
                raise ConfigError(f"log_files[{i}]: path must not be empty")
            if not r.keywords:
                raise ConfigError(f"log_files[{i}]: keywords must not be empty")
        for i, r in enumerate(self.log_directories):
            if not r.path:
                raise ConfigError(f"log_directories[{i}]: path must not be empty")
            if not r.keywords:
                raise ConfigError(f"log_directories[{i}]: keywords must not be empty")
            if not r.extensions:
                raise ConfigError(f"log_directories[{i}]: at least one extension is required")
        for i, n in enumerate(self.notifiers):
            if n.type not in NOTIFIER_TYPES:
                raise ConfigError(f"notifiers[{i}]: type must be one of {', '.join(NOTIFIER_TYPES)}")
            if n.type in WEBHOOK_TYPES and not n.webhook:
                raise ConfigError(f"notifiers[{i}]: webhook must not be empty")
        s = self.settings
        if s.max_file_size <= 0 or s.buffer_size <= 0:
            raise ConfigError("settings: max_file_size and buffer_size must be positive")
        if s.cleanup_interval <= 0 or s.poll_interval <= 0:
            raise ConfigError("settings: cleanup_interval and poll_interval must be positive")
        if s.backend not in BACKENDS:
            raise ConfigError(f"settings: backend must be one of {', '.join(BACKENDS)}")
        return self

    def enabled_rules(self) -> List[Any]:
        return [r for r in self.log_files if r.enabled] + [r for r in self.log_directories if r.enabled]


def load_config(path: Path) -> SentinelConfig:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse config {path}: {e}") from e
    return SentinelConfig.from_dict(data)


def default_config_yaml() -> str:
    return """
log_files:
  - path: /var/log/app/app.log
    keywords: ["ERROR", "FATAL", "panic", "Exception"]
    enabled: true

log_directories:
  - path: /var/log/services
    keywords: ["ERROR", "FATAL", "panic"]
    extensions: [".log", ".txt"]
    recursive: true
    exclude_dirs: ["archive", "tmp"]
    enabled: true

notifiers:
  - type: log
    enabled: true
  - type: feishu
    webhook: https://open.feishu.cn/open-apis/bot/v2/hook/your-token
    enabled: false
  - type: dingtalk
    webhook: https://oapi.dingtalk.com/robot/send?access_token=your-token
    secret: your-secret
    enabled: false

settings:
  max_file_size: 104857600   # 100 MiB
  buffer_size: 65536         # 64 KiB
  cleanup_interval: 1800     # seconds
  backend: native            # native | polling
  poll_interval: 1.0
  log_level: INFO
"""
