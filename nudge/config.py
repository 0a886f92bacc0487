"""
Nudge -- Configuration Module

Centralizes all configuration for the Nudge reminder service.
Loads defaults from dataclasses, then overlays any overrides from config.yaml.
Secrets (cron secret, SMTP credentials) come from the environment.

Usage:
    from nudge.config import get_config
    cfg = get_config()                         # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")    # loads a specific file
    print(cfg.sender.from_address)             # reminders@nudge.app
    print(cfg.scheduler.stale_after_days)      # 180
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

import yaml

# ---------------------------------------------------------------------------
# Path constants -- everything relative to the project root
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # nudge/
PROJECT_ROOT = _THIS_DIR.parent                       # repository root
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
PACKAGE_TEMPLATE_DIR = _THIS_DIR / "templates"


# ===================================================================
# 1. Sender Identity
# ===================================================================

@dataclass
class SenderSettings:
    """Default FROM identity and fixed copy for outgoing emails."""
    from_address: str = "reminders@nudge.app"
    fallback_name: str = "Nudge"
    resend_subject: str = "Friendly reminder about your invoice"

    def __post_init__(self):
        self.from_address = os.environ.get("NUDGE_FROM_ADDRESS", "") or self.from_address


# ===================================================================
# 2. SMTP / Delivery
# ===================================================================

@dataclass
class SMTPSettings:
    """SMTP relay used by the transactional sender."""
    host: str = "smtp.resend.com"
    port: int = 587
    use_tls: bool = True
    timeout_seconds: float = 30.0
    username: str = ""        # set via env var SMTP_USERNAME
    password: str = ""        # set via env var SMTP_PASSWORD

    def __post_init__(self):
        self.username = self.username or os.environ.get("SMTP_USERNAME", "")
        self.password = self.password or os.environ.get("SMTP_PASSWORD", "")


@dataclass
class DeliverySettings:
    """Which email backend to use: "smtp" sends, "log" only logs."""
    backend: str = "smtp"


# ===================================================================
# 3. Scheduler Policy
# ===================================================================

@dataclass
class SchedulerSettings:
    """Daily reminder batch rules."""
    # Invoices whose due date is further back than this are abandoned.
    stale_after_days: int = 180
    # 0 = a reminder fires only on its exact target date.
    catch_up_days: int = 0
    default_schedule: str = "standard"
    default_tone: str = "friendly"


# ===================================================================
# 4. Cron Trigger
# ===================================================================

@dataclass
class CronSettings:
    """Shared secret for the HTTP batch trigger."""
    secret: str = ""          # set via env var NUDGE_CRON_SECRET

    def __post_init__(self):
        self.secret = self.secret or os.environ.get("NUDGE_CRON_SECRET", "")


# ===================================================================
# 5. Rate Limits
# ===================================================================

@dataclass
class RateLimitRule:
    """Fixed-window limit: at most ``max_requests`` per ``window_seconds``."""
    window_seconds: int
    max_requests: int
    message: str = "Too many requests. Please try again later."


DEFAULT_RATE_LIMITS: dict[str, RateLimitRule] = {
    "standard": RateLimitRule(window_seconds=60, max_requests=100),
    "ai": RateLimitRule(
        window_seconds=60,
        max_requests=10,
        message="AI rewrite rate limit exceeded. Please wait before trying again.",
    ),
    "email": RateLimitRule(
        window_seconds=60,
        max_requests=20,
        message="Email rate limit exceeded. Please wait before sending more emails.",
    ),
    "auth": RateLimitRule(window_seconds=60, max_requests=10),
}


@dataclass
class RateLimitSettings:
    """Counter backend ("memory" or "sqlite") plus the named rules."""
    backend: str = "memory"
    rules: dict[str, RateLimitRule] = field(
        default_factory=lambda: {name: replace(rule) for name, rule in DEFAULT_RATE_LIMITS.items()}
    )


# ===================================================================
# 6. Storage
# ===================================================================

@dataclass
class DatabaseSettings:
    """Where the SQLite document store lives (relative to project root)."""
    path: str = "nudge.db"

    def __post_init__(self):
        self.path = os.environ.get("NUDGE_DB_PATH", "") or self.path

    @property
    def resolved_path(self) -> Path:
        p = Path(self.path)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 7. Template Paths
# ===================================================================

@dataclass
class TemplatePaths:
    """Where the HTML Jinja2 layouts live."""
    template_dir: str = ""
    layout_file: str = "reminder_email.html"

    @property
    def resolved_dir(self) -> Path:
        if not self.template_dir:
            return PACKAGE_TEMPLATE_DIR
        p = Path(self.template_dir)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 8. Logging
# ===================================================================

@dataclass
class LoggingSettings:
    level: str = "INFO"
    format: str = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
    datefmt: str = "%H:%M:%S"
    log_file: str = ""


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class NudgeConfig:
    """Top-level configuration container for Nudge."""
    sender: SenderSettings = field(default_factory=SenderSettings)
    smtp: SMTPSettings = field(default_factory=SMTPSettings)
    delivery: DeliverySettings = field(default_factory=DeliverySettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    cron: CronSettings = field(default_factory=CronSettings)
    rate_limits: RateLimitSettings = field(default_factory=RateLimitSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    template_paths: TemplatePaths = field(default_factory=TemplatePaths)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# ===================================================================
# YAML Loading
# ===================================================================

def _apply_yaml_to_config(cfg: NudgeConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto a NudgeConfig instance."""

    # --- rate limit rules (nested dict of dataclasses) ---
    rate_data = data.get("rate_limits")
    if isinstance(rate_data, dict):
        if "backend" in rate_data:
            cfg.rate_limits.backend = rate_data["backend"]
        for rule_name, rule_data in (rate_data.get("rules") or {}).items():
            if rule_name in cfg.rate_limits.rules:
                for attr, val in rule_data.items():
                    if hasattr(cfg.rate_limits.rules[rule_name], attr):
                        setattr(cfg.rate_limits.rules[rule_name], attr, val)
            else:
                cfg.rate_limits.rules[rule_name] = RateLimitRule(**rule_data)

    # --- simple sub-configs ---
    _section_map = {
        "sender": cfg.sender,
        "smtp": cfg.smtp,
        "delivery": cfg.delivery,
        "scheduler": cfg.scheduler,
        "cron": cfg.cron,
        "database": cfg.database,
        "template_paths": cfg.template_paths,
        "logging": cfg.logging,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if hasattr(section_obj, attr):
                    setattr(section_obj, attr, val)


def get_config(yaml_path: Optional[str | Path] = None) -> NudgeConfig:
    """Build a NudgeConfig, optionally overlaying values from a YAML file.

    Args:
        yaml_path: Path to a config.yaml file.  If None, looks for the
                   default config.yaml at the project root.  If that file
                   doesn't exist, returns pure defaults.

    Returns:
        Fully populated NudgeConfig instance.
    """
    cfg = NudgeConfig()

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        _apply_yaml_to_config(cfg, data)
        _apply_env_overrides(cfg)

    return cfg


def _apply_env_overrides(cfg: NudgeConfig) -> None:
    """NUDGE_FROM_ADDRESS and NUDGE_DB_PATH win over config.yaml."""
    cfg.sender.from_address = os.environ.get("NUDGE_FROM_ADDRESS", "") or cfg.sender.from_address
    cfg.database.path = os.environ.get("NUDGE_DB_PATH", "") or cfg.database.path


def configure_logging(settings: LoggingSettings, verbose: bool = False) -> None:
    """Install the root handler(s) described by ``settings``.

    ``verbose`` forces DEBUG regardless of the configured level.
    """
    level = logging.DEBUG if verbose else getattr(logging, settings.level.upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        log_path = Path(settings.log_file)
        if not log_path.is_absolute():
            log_path = PROJECT_ROOT / log_path
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    logging.basicConfig(
        level=level,
        format=settings.format,
        datefmt=settings.datefmt,
        handlers=handlers,
    )
