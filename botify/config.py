"""Config loader. Loads config.local.yaml, provides get() and BridgeConfig.

Precedence for bridge settings: defaults < config.local.yaml < environment.
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, Field

ROOT_DIR = Path(__file__).parent.parent
LOCAL_CONFIG_FILE = Path(os.environ.get("BOTIFY_CONFIG", str(ROOT_DIR / "config.local.yaml")))

_config: dict = {}
_loaded = False

BOOL_TRUE = {"1", "true", "yes", "on", "y"}
BOOL_FALSE = {"0", "false", "no", "off", "n"}


def load() -> dict:
    """Load config.local.yaml. Safe to call multiple times (cached)."""
    global _config, _loaded
    if _loaded:
        return _config

    if not LOCAL_CONFIG_FILE.exists():
        raise FileNotFoundError(
            f"Required config file not found: {LOCAL_CONFIG_FILE}\n"
            f"Copy config.example.yaml to config.local.yaml and fill in your values."
        )

    with open(LOCAL_CONFIG_FILE) as f:
        _config = yaml.safe_load(f) or {}

    _loaded = True
    return _config


def get(dotpath: str, default: Any = None) -> Any:
    """Get a config value by dot-separated path. e.g. get('codex.command')"""
    load()
    keys = dotpath.split(".")
    node = _config
    for key in keys:
        if isinstance(node, dict) and key in node:
            node = node[key]
        else:
            return default
    return node


class BridgeConfig(BaseModel, frozen=True):
    """Everything the bridge needs to launch and talk to the Codex MCP server."""

    command: str = "codex mcp-server"
    cwd: str
    codex_home: str
    sandbox_mode: Optional[str] = "danger-full-access"
    approval_policy: Optional[str] = "never"
    profile: Optional[str] = None
    model: Optional[str] = None
    include_plan_tool: Optional[bool] = None
    base_instructions: Optional[str] = None
    config_overrides: Any = None

    rpc_timeout_ms: float = 900000   # 0 disables per-call timeouts
    exit_log_lines: int = 40         # tail buffer capacity
    output_chunk: int = 3500         # max characters per outbound message
    missing_id_warning_delay: float = 0.3

    owner_chat_id: Optional[str] = None
    allowed_chat_ids: list[str] = Field(default_factory=list)  # empty = any chat
    inbox_dir: Optional[str] = None
    outbox_dir: Optional[str] = None
    poll_interval: float = 0.5

    @property
    def rpc_timeout(self) -> Optional[float]:
        """Per-call timeout in seconds, or None when disabled."""
        if self.rpc_timeout_ms and self.rpc_timeout_ms > 0:
            return self.rpc_timeout_ms / 1000
        return None

    def is_chat_allowed(self, chat_id: str) -> bool:
        return not self.allowed_chat_ids or str(chat_id) in self.allowed_chat_ids


def _blank_to_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    trimmed = str(value).strip()
    return trimmed or None


def _to_number(value: Any, fallback: float) -> float:
    if value is None or (isinstance(value, str) and not value.strip()):
        return fallback
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    if parsed != parsed or parsed in (float("inf"), float("-inf")):
        return fallback
    return parsed


def _to_optional_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in BOOL_TRUE:
        return True
    if normalized in BOOL_FALSE:
        return False
    return None


def _parse_overrides(raw: Any) -> Any:
    if raw is None:
        return None
    if not isinstance(raw, str):
        return raw  # already structured (from YAML)
    raw = raw.strip()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Failed to parse CODEX_CONFIG_OVERRIDES as JSON. {e}") from e


def _file_settings() -> dict:
    """Settings from config.local.yaml, or {} when there is no config file."""
    if not LOCAL_CONFIG_FILE.exists():
        return {}
    return {
        "command": get("codex.command"),
        "cwd": get("codex.cwd"),
        "codex_home": get("codex.home"),
        "sandbox_mode": get("codex.sandbox"),
        "approval_policy": get("codex.approval_policy"),
        "profile": get("codex.profile"),
        "model": get("codex.model"),
        "include_plan_tool": get("codex.include_plan_tool"),
        "base_instructions": get("codex.base_instructions"),
        "config_overrides": get("codex.config_overrides"),
        "rpc_timeout_ms": get("codex.rpc_timeout_ms"),
        "exit_log_lines": get("codex.exit_log_lines"),
        "output_chunk": get("chat.output_chunk"),
        "owner_chat_id": get("chat.owner_chat_id"),
        "allowed_chat_ids": get("chat.allowed_chat_ids"),
        "inbox_dir": get("chat.inbox_dir"),
        "outbox_dir": get("chat.outbox_dir"),
    }


def load_bridge_config(env: Optional[Mapping[str, str]] = None, cwd: Optional[str] = None) -> BridgeConfig:
    """Build a BridgeConfig from config.local.yaml (if present) and the environment."""
    env = os.environ if env is None else env
    file_values = _file_settings()

    def pick(env_key: str, file_key: str) -> Any:
        value = env.get(env_key)
        if value is not None and str(value).strip():
            return value
        return file_values.get(file_key)

    base_cwd = _blank_to_none(pick("CODEX_CWD", "cwd")) or cwd or os.getcwd()
    codex_home = _blank_to_none(pick("CODEX_HOME", "codex_home")) or str(Path(base_cwd) / ".codex_mcp_home")

    allowed = pick("BOTIFY_ALLOWED_CHATS", "allowed_chat_ids") or []
    if isinstance(allowed, str):
        allowed = [part.strip() for part in allowed.split(",") if part.strip()]
    else:
        allowed = [str(part) for part in allowed]

    defaults = BridgeConfig.model_fields
    return BridgeConfig(
        command=_blank_to_none(pick("CODEX_COMMAND", "command")) or defaults["command"].default,
        cwd=base_cwd,
        codex_home=codex_home,
        sandbox_mode=_blank_to_none(pick("CODEX_SANDBOX", "sandbox_mode")) or defaults["sandbox_mode"].default,
        approval_policy=_blank_to_none(pick("CODEX_APPROVAL_POLICY", "approval_policy")) or defaults["approval_policy"].default,
        profile=_blank_to_none(pick("CODEX_PROFILE", "profile")),
        model=_blank_to_none(pick("CODEX_MODEL", "model")),
        include_plan_tool=_to_optional_bool(pick("CODEX_INCLUDE_PLAN_TOOL", "include_plan_tool")),
        base_instructions=_blank_to_none(pick("CODEX_BASE_INSTRUCTIONS", "base_instructions")),
        config_overrides=_parse_overrides(pick("CODEX_CONFIG_OVERRIDES", "config_overrides")),
        rpc_timeout_ms=_to_number(pick("CODEX_RPC_TIMEOUT_MS", "rpc_timeout_ms"), defaults["rpc_timeout_ms"].default),
        exit_log_lines=int(_to_number(pick("CODEX_EXIT_LOG_LINES", "exit_log_lines"), defaults["exit_log_lines"].default)),
        output_chunk=int(_to_number(pick("CODEX_OUTPUT_CHUNK", "output_chunk"), defaults["output_chunk"].default)),
        owner_chat_id=_blank_to_none(pick("BOTIFY_OWNER_CHAT_ID", "owner_chat_id")),
        allowed_chat_ids=allowed,
        inbox_dir=_blank_to_none(pick("BOTIFY_INBOX_DIR", "inbox_dir")),
        outbox_dir=_blank_to_none(pick("BOTIFY_OUTBOX_DIR", "outbox_dir")),
    )
