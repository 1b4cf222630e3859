from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

# Providers reachable through an OpenAI-compatible chat completions endpoint.
DEFAULT_PROVIDER_BASE_URLS: Dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com/v1",
    "google": "https://generativelanguage.googleapis.com/v1beta/openai",
    "deepseek": "https://api.deepseek.com/v1",
    "grok": "https://api.x.ai/v1",
    "minimax": "https://api.minimax.io/v1",
    "openrouter": "https://openrouter.ai/api/v1",
}


@dataclass
class ProviderConfig:
    name: str
    base_url: str
    api_key: Optional[str]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(name: str) -> list[str]:
    return [v.strip() for v in os.getenv(name, "").split(",") if v.strip()]


def _parse_delays(raw: str) -> tuple[float, ...]:
    delays: list[float] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            delays.append(max(0.0, float(part)))
        except ValueError:
            continue
    return tuple(delays)


@dataclass
class Settings:
    log_level: str
    log_dir: str
    data_dir: str
    host: str
    port: int
    planner_model: str
    executor_model: str
    max_turns: int
    task_timeout: float
    report_every: int
    clarification_timeout: float
    dependency_poll_interval: float
    retry_delays: tuple[float, ...]
    watchdog_interval: float
    watchdog_stuck_after: float
    watchdog_cleanup_after: float
    watchdog_max_respawns: int
    task_retention: float
    restore_max_age: float
    tool_output_limit: int
    shell_timeout: float
    background_timeout: float
    background_max_concurrent: int
    vision_model: str
    telegram_bot_token: Optional[str]
    telegram_allow_from: list[str]
    telegram_owner_chat_id: Optional[str]
    providers: Dict[str, ProviderConfig] = field(default_factory=dict)

    @staticmethod
    def from_env() -> "Settings":
        default_home = str(Path(os.path.expanduser("~")) / ".subclaw")
        default_log_dir = str(Path(default_home) / ".logs")
        default_data_dir = str(Path(default_home) / ".data")
        providers: Dict[str, ProviderConfig] = {}
        for name, default_url in DEFAULT_PROVIDER_BASE_URLS.items():
            prefix = name.upper()
            providers[name] = ProviderConfig(
                name=name,
                base_url=os.getenv(f"{prefix}_BASE_URL") or default_url,
                api_key=os.getenv(f"{prefix}_API_KEY"),
            )
        return Settings(
            log_level=os.getenv("subclaw_LOG_LEVEL", "info"),
            log_dir=os.getenv("subclaw_LOG_DIR") or default_log_dir,
            data_dir=os.getenv("subclaw_DATA_DIR") or default_data_dir,
            host=os.getenv("subclaw_HOST", "127.0.0.1"),
            port=_env_int("subclaw_PORT", 18791),
            planner_model=os.getenv("subclaw_PLANNER_MODEL", "openai/gpt-4o"),
            executor_model=os.getenv("subclaw_EXECUTOR_MODEL", "openai/gpt-4o-mini"),
            max_turns=_env_int("subclaw_MAX_TURNS", 100),
            task_timeout=_env_float("subclaw_TASK_TIMEOUT", 3600.0),
            report_every=_env_int("subclaw_REPORT_EVERY", 5),
            clarification_timeout=_env_float("subclaw_CLARIFICATION_TIMEOUT", 300.0),
            dependency_poll_interval=_env_float("subclaw_DEPENDENCY_POLL_INTERVAL", 2.0),
            retry_delays=_parse_delays(os.getenv("subclaw_RETRY_DELAYS", "10,20,30")),
            watchdog_interval=_env_float("subclaw_WATCHDOG_INTERVAL", 300.0),
            watchdog_stuck_after=_env_float("subclaw_WATCHDOG_STUCK_AFTER", 300.0),
            watchdog_cleanup_after=_env_float("subclaw_WATCHDOG_CLEANUP_AFTER", 1800.0),
            watchdog_max_respawns=_env_int("subclaw_WATCHDOG_MAX_RESPAWNS", 3),
            task_retention=_env_float("subclaw_TASK_RETENTION", 7200.0),
            restore_max_age=_env_float("subclaw_RESTORE_MAX_AGE", 86400.0),
            tool_output_limit=_env_int("subclaw_TOOL_OUTPUT_LIMIT", 10240),
            shell_timeout=_env_float("subclaw_SHELL_TIMEOUT", 60.0),
            background_timeout=_env_float("subclaw_BACKGROUND_TIMEOUT", 120.0),
            background_max_concurrent=_env_int("subclaw_BACKGROUND_MAX_CONCURRENT", 3),
            vision_model=os.getenv("subclaw_VISION_MODEL", "google/gemini-2.5-flash"),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
            telegram_allow_from=_env_list("TELEGRAM_ALLOW_FROM"),
            telegram_owner_chat_id=os.getenv("TELEGRAM_OWNER_CHAT_ID"),
            providers=providers,
        )
