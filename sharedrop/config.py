from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_LOG_FILE = "/tmp/sharedrop.log"


def _default_data_dir() -> Path:
    return Path.home() / ".sharedrop"


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _bool_env(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    server_path: str
    data_dir: Path = field(default_factory=_default_data_dir)
    server_port: int = 8080
    control_port: int = 7777
    tunnel_path: str | None = None  # tried before the built-in candidates
    tunnel_disabled: bool = False
    probe_interval: float = 0.5
    probe_grace: float = 0.5
    probe_timeout: float = 2.0
    readiness_timeout: float | None = None  # None = poll until stopped
    stop_timeout: float = 5.0
    share_timeout: float = 10.0
    log_file: str = DEFAULT_LOG_FILE
    log_level: str = "INFO"

    @property
    def local_base_url(self) -> str:
        return f"http://localhost:{self.server_port}"

    @property
    def pid_file(self) -> Path:
        return self.data_dir / "children.pid"

    @classmethod
    def from_env(cls) -> Config:
        load_dotenv()
        server_path = os.environ.get("SHAREDROP_SERVER_PATH", "")
        if not server_path:
            raise ValueError("SHAREDROP_SERVER_PATH is required")

        data_dir = os.environ.get("SHAREDROP_DATA_DIR", "")
        readiness_timeout = _float_env("SHAREDROP_READINESS_TIMEOUT", 0.0)
        return cls(
            server_path=server_path,
            data_dir=Path(data_dir).expanduser() if data_dir else _default_data_dir(),
            server_port=_int_env("SHAREDROP_SERVER_PORT", 8080),
            control_port=_int_env("SHAREDROP_CONTROL_PORT", 7777),
            tunnel_path=os.environ.get("SHAREDROP_TUNNEL_PATH") or None,
            tunnel_disabled=_bool_env("SHAREDROP_TUNNEL_DISABLED"),
            probe_interval=_float_env("SHAREDROP_PROBE_INTERVAL", 0.5),
            probe_grace=_float_env("SHAREDROP_PROBE_GRACE", 0.5),
            probe_timeout=_float_env("SHAREDROP_PROBE_TIMEOUT", 2.0),
            readiness_timeout=readiness_timeout if readiness_timeout > 0 else None,
            stop_timeout=_float_env("SHAREDROP_STOP_TIMEOUT", 5.0),
            share_timeout=_float_env("SHAREDROP_SHARE_TIMEOUT", 10.0),
            log_file=os.environ.get("SHAREDROP_LOG_FILE", "") or DEFAULT_LOG_FILE,
            log_level=os.environ.get("SHAREDROP_LOG_LEVEL", "") or "INFO",
        )
