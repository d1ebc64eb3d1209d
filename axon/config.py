import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml


CONFIG_DIR = Path(os.environ.get("AXON_CONFIG_DIR", "~/.config/axon")).expanduser()
CONFIG_FILE = CONFIG_DIR / "config.yaml"

SORT_MODES = ("none", "name", "size", "progress")


@dataclass
class RpcConfig:
    server: str = os.environ.get("AXON_SERVER", "ws://localhost:8412")
    password: str | None = os.environ.get("AXON_PASSWORD") or None
    timeout: float = float(os.environ.get("AXON_TIMEOUT", "10.0"))
    connect_timeout: float = float(os.environ.get("AXON_CONNECT_TIMEOUT", "10.0"))
    autoconnect: bool = os.environ.get("AXON_AUTOCONNECT", "false").lower() == "true"


@dataclass
class ReconnectConfig:
    initial_delay: float = 0.6
    factor: float = 1.6
    max_delay: float = 30.0


@dataclass
class UIConfig:
    refresh_interval: float = 1.0
    filter_text: str = ""
    case_sensitive: bool = False
    sort_mode: str = "none"
    page_size: int = 20


@dataclass
class AppConfig:
    rpc: RpcConfig = field(default_factory=RpcConfig)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    ui: UIConfig = field(default_factory=UIConfig)


def ensure_config_dir() -> None:
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)


def load_config() -> AppConfig:
    ensure_config_dir()
    if CONFIG_FILE.exists():
        data = yaml.safe_load(CONFIG_FILE.read_text()) or {}
    else:
        data = {}

    rpc_data: Dict[str, Any] = data.get("rpc", {})
    reconnect_data: Dict[str, Any] = data.get("reconnect", {})
    ui_data: Dict[str, Any] = data.get("ui", {})

    sort_mode = ui_data.get("sort_mode", UIConfig().sort_mode)
    if sort_mode not in SORT_MODES:
        sort_mode = UIConfig().sort_mode

    config = AppConfig(
        rpc=RpcConfig(
            server=rpc_data.get("server", RpcConfig().server),
            password=rpc_data.get("password") or RpcConfig().password,
            timeout=float(rpc_data.get("timeout", RpcConfig().timeout)),
            connect_timeout=float(rpc_data.get("connect_timeout", RpcConfig().connect_timeout)),
            autoconnect=bool(rpc_data.get("autoconnect", RpcConfig().autoconnect)),
        ),
        reconnect=ReconnectConfig(
            initial_delay=float(reconnect_data.get("initial_delay", ReconnectConfig().initial_delay)),
            factor=float(reconnect_data.get("factor", ReconnectConfig().factor)),
            max_delay=float(reconnect_data.get("max_delay", ReconnectConfig().max_delay)),
        ),
        ui=UIConfig(
            refresh_interval=float(ui_data.get("refresh_interval", UIConfig().refresh_interval)),
            filter_text=ui_data.get("filter_text", UIConfig().filter_text) or "",
            case_sensitive=bool(ui_data.get("case_sensitive", UIConfig().case_sensitive)),
            sort_mode=sort_mode,
            page_size=int(ui_data.get("page_size", UIConfig().page_size)),
        ),
    )

    if config.rpc.autoconnect and not config.rpc.server:
        raise ValueError("autoconnect is enabled but no server is configured")

    save_config(config)
    return config


def save_config(config: AppConfig) -> None:
    ensure_config_dir()
    payload = {
        "rpc": {
            "server": config.rpc.server,
            "password": config.rpc.password or "",
            "timeout": config.rpc.timeout,
            "connect_timeout": config.rpc.connect_timeout,
            "autoconnect": config.rpc.autoconnect,
        },
        "reconnect": {
            "initial_delay": config.reconnect.initial_delay,
            "factor": config.reconnect.factor,
            "max_delay": config.reconnect.max_delay,
        },
        "ui": {
            "refresh_interval": config.ui.refresh_interval,
            "filter_text": config.ui.filter_text,
            "case_sensitive": config.ui.case_sensitive,
            "sort_mode": config.ui.sort_mode,
            "page_size": config.ui.page_size,
        },
    }
    CONFIG_FILE.write_text(yaml.safe_dump(payload, sort_keys=False, allow_unicode=False))
