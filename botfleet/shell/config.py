"""Configuration loading — merges settings.toml and .env."""

from __future__ import annotations

import os
import socket
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"


@dataclass
class LeaderConfig:
    mode: str = "single"                # 'single' (always leader) or 'lease'
    node_id: str = ""
    lease_ttl_seconds: int = 30
    renew_interval_seconds: int = 10


@dataclass
class WorkerConfig:
    """Tick intervals (seconds) and backoff policy for every supervised worker."""
    job_monitor_interval: int = 60
    instance_supervisor_interval: int = 60
    autonomy_interval: int = 300
    backtest_consumer_interval: int = 15
    improve_consumer_interval: int = 30
    evolve_consumer_interval: int = 60
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 600.0
    backoff_jitter: float = 0.3
    critical_failure_threshold: int = 5
    backend_circuit_cooldown_seconds: float = 30.0


@dataclass
class TimeoutConfig:
    """Per-job-type timeouts in minutes."""
    health_check: int = 5
    promotion_check: int = 10
    demotion_check: int = 10
    backtester: int = 30
    improving: int = 45
    evolving: int = 45
    matrix_run: int = 60
    default: int = 30


@dataclass
class SupervisorConfig:
    runner_stale_minutes: int = 3
    job_stale_minutes: int = 30
    stuck_job_minutes: int = 90
    breaker_threshold: int = 3
    breaker_cooldown_minutes: int = 15
    lock_ttl_seconds: int = 60
    auto_start: bool = True
    paper_account_id: str = ""          # shared account for non-LIVE stages


@dataclass
class GovernorConfig:
    safety_margin: float = 0.7
    heavy_cost_mb: int = 1500
    light_cost_mb: int = 300
    heavy_min: int = 1
    heavy_max: int = 4
    light_min: int = 2
    light_max: int = 12
    cache_seconds: int = 30


@dataclass
class AutonomyConfig:
    enabled: bool = True
    max_bots_per_cycle: int = 50


@dataclass
class PromotionConfig:
    hold_log_suppress_minutes: int = 60
    consistency_sessions: int = 3
    revert_window_generations: int = 10
    revert_decline_pct: float = 0.20
    best_cell_max_age_days: int = 0     # 0 = no recency bound
    large_loss_usd: float = 1000.0      # PAPER demotes when net P&L is below -large_loss_usd


@dataclass
class ApiConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""


@dataclass
class TelegramConfig:
    enabled: bool = True
    bot_token: str = ""
    chat_id: str = ""
    allowed_user_ids: list[int] = field(default_factory=list)


@dataclass
class Config:
    timezone: str = "UTC"
    log_level: str = "INFO"
    db_path: str = ""
    leader: LeaderConfig = field(default_factory=LeaderConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    governor: GovernorConfig = field(default_factory=GovernorConfig)
    autonomy: AutonomyConfig = field(default_factory=AutonomyConfig)
    promotion: PromotionConfig = field(default_factory=PromotionConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def _apply(section, values: dict) -> None:
    for key in vars(section):
        if key in values:
            setattr(section, key, values[key])


def load_config(settings_path: Path | None = None) -> Config:
    """Load configuration from settings.toml and environment variables."""
    load_dotenv(PROJECT_ROOT / ".env")

    config = Config()
    config.db_path = str(PROJECT_ROOT / "data" / "fleet.db")

    settings_path = settings_path or CONFIG_DIR / "settings.toml"
    if settings_path.exists():
        with open(settings_path, "rb") as f:
            settings = tomllib.load(f)

        general = settings.get("general", {})
        config.timezone = general.get("timezone", config.timezone)
        config.log_level = general.get("log_level", config.log_level)
        config.db_path = general.get("db_path", config.db_path)
        if not Path(config.db_path).is_absolute():
            config.db_path = str(PROJECT_ROOT / config.db_path)

        _apply(config.leader, settings.get("leader", {}))
        _apply(config.workers, settings.get("workers", {}))
        _apply(config.timeouts, settings.get("timeouts", {}))
        _apply(config.supervisor, settings.get("supervisor", {}))
        _apply(config.governor, settings.get("governor", {}))
        _apply(config.autonomy, settings.get("autonomy", {}))
        _apply(config.promotion, settings.get("promotion", {}))

        tg = settings.get("telegram", {})
        config.telegram.enabled = tg.get("enabled", config.telegram.enabled)
        config.telegram.allowed_user_ids = tg.get("allowed_user_ids", config.telegram.allowed_user_ids)

        api = settings.get("api", {})
        config.api.enabled = api.get("enabled", config.api.enabled)
        config.api.host = api.get("host", config.api.host)
        config.api.port = api.get("port", config.api.port)

    # Environment variables (secrets, per-node identity)
    config.telegram.bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "")
    config.telegram.chat_id = os.getenv("TELEGRAM_CHAT_ID", "")
    config.api.api_key = os.getenv("API_KEY", "")
    config.leader.node_id = os.getenv("BOTFLEET_NODE_ID", config.leader.node_id) or socket.gethostname()
    config.supervisor.paper_account_id = os.getenv(
        "BOTFLEET_PAPER_ACCOUNT_ID", config.supervisor.paper_account_id
    )

    _validate_config(config)

    return config


def _validate_config(config: Config) -> None:
    """Check critical config values at startup. Raises ValueError on invalid config."""
    errors = []

    if config.leader.mode not in ("single", "lease"):
        errors.append(f"leader.mode must be 'single' or 'lease', got '{config.leader.mode}'")
    if config.leader.mode == "lease" and config.leader.renew_interval_seconds >= config.leader.lease_ttl_seconds:
        errors.append(
            f"leader.renew_interval_seconds ({config.leader.renew_interval_seconds}) must be "
            f"< lease_ttl_seconds ({config.leader.lease_ttl_seconds})"
        )
    if config.workers.backoff_base_seconds <= 0:
        errors.append(f"workers.backoff_base_seconds must be > 0, got {config.workers.backoff_base_seconds}")
    if config.workers.backoff_max_seconds < config.workers.backoff_base_seconds:
        errors.append(
            f"workers.backoff_max_seconds ({config.workers.backoff_max_seconds}) < "
            f"backoff_base_seconds ({config.workers.backoff_base_seconds})"
        )
    if not 0 <= config.workers.backoff_jitter <= 1:
        errors.append(f"workers.backoff_jitter must be 0-1, got {config.workers.backoff_jitter}")
    if config.workers.critical_failure_threshold < 1:
        errors.append(f"workers.critical_failure_threshold must be >= 1, got {config.workers.critical_failure_threshold}")
    for key, value in vars(config.timeouts).items():
        if value < 1:
            errors.append(f"timeouts.{key} must be >= 1 minute, got {value}")
    if config.supervisor.breaker_threshold < 1:
        errors.append(f"supervisor.breaker_threshold must be >= 1, got {config.supervisor.breaker_threshold}")
    if config.supervisor.runner_stale_minutes < 1 or config.supervisor.job_stale_minutes < 1:
        errors.append("supervisor stale thresholds must be >= 1 minute")
    if not 0 < config.governor.safety_margin <= 1:
        errors.append(f"governor.safety_margin must be 0-1, got {config.governor.safety_margin}")
    if config.governor.heavy_min > config.governor.heavy_max:
        errors.append(f"governor.heavy_min ({config.governor.heavy_min}) > heavy_max ({config.governor.heavy_max})")
    if config.governor.light_min > config.governor.light_max:
        errors.append(f"governor.light_min ({config.governor.light_min}) > light_max ({config.governor.light_max})")
    if config.governor.heavy_cost_mb <= 0 or config.governor.light_cost_mb <= 0:
        errors.append("governor job costs must be > 0 MB")
    if not 0 < config.promotion.revert_decline_pct < 1:
        errors.append(f"promotion.revert_decline_pct must be 0-1, got {config.promotion.revert_decline_pct}")
    if config.promotion.consistency_sessions < 1:
        errors.append(f"promotion.consistency_sessions must be >= 1, got {config.promotion.consistency_sessions}")
    if config.promotion.best_cell_max_age_days < 0:
        errors.append(f"promotion.best_cell_max_age_days must be >= 0, got {config.promotion.best_cell_max_age_days}")
    if config.api.enabled:
        if not (1 <= config.api.port <= 65535):
            errors.append(f"api.port must be 1-65535, got {config.api.port}")

    try:
        ZoneInfo(config.timezone)
    except (KeyError, Exception):
        errors.append(f"Invalid timezone: '{config.timezone}'")

    if errors:
        raise ValueError("Config validation failed:\n  " + "\n  ".join(errors))
