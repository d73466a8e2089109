"""Runtime configuration for the Modular Health backend.

Reads from environment with sensible defaults. ``load_backend_env`` pulls in
``config/env/.env.backend`` when present.
"""
from dataclasses import dataclass, field
from typing import Optional
import os, sys
from pathlib import Path
from dotenv import load_dotenv  # type: ignore


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.getenv(name)
    return val if val not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_flag(name: str, default: str = "0") -> bool:
    return (_env(name, default) or "").lower() in ("1", "true", "yes")


@dataclass
class Settings:
    # Environment lookups happen per instance, after .env.backend is loaded
    default_timezone: str = field(default_factory=lambda: _env("MHEALTH_DEFAULT_TIMEZONE", "Europe/Stockholm"))
    # Allowed distance in minutes between "now" and a scheduled slot. 0 keeps
    # the exact-minute rule, which requires the trigger cadence to be 1 minute.
    match_tolerance_minutes: int = field(default_factory=lambda: _env_int("MHEALTH_MATCH_TOLERANCE_MIN", 0))
    scheduler_cadence_minutes: int = field(default_factory=lambda: _env_int("MHEALTH_SCHEDULER_CADENCE_MIN", 1))
    scheduler_enabled: bool = field(default_factory=lambda: _env_flag("MHEALTH_SCHEDULER_ENABLED"))
    cron_secret: Optional[str] = field(default_factory=lambda: _env("MHEALTH_CRON_SECRET"))
    vapid_public_key: Optional[str] = field(default_factory=lambda: _env("VAPID_PUBLIC_KEY"))
    vapid_private_key: Optional[str] = field(default_factory=lambda: _env("VAPID_PRIVATE_KEY"))
    vapid_subject: str = field(default_factory=lambda: _env("VAPID_SUBJECT", "mailto:support@modularhealth.app"))
    notification_icon: str = field(default_factory=lambda: _env("MHEALTH_NOTIFICATION_ICON", "/modular-health-logo.png"))

    def _bundle_base(self) -> Optional[str]:
        base = getattr(sys, "_MEIPASS", None)
        if base and os.path.isdir(base):
            return base
        return None

    def repo_root(self) -> str:
        base = self._bundle_base()
        if base:
            return base
        # Walk upward from this file looking for the project markers
        cur = os.path.abspath(os.path.dirname(__file__))
        for _ in range(8):
            if os.path.isfile(os.path.join(cur, "pyproject.toml")) and os.path.isdir(os.path.join(cur, "packages")):
                return cur
            parent = os.path.dirname(cur)
            if parent == cur:
                break
            cur = parent
        # Fallback: fixed ascent from packages/core/src/mhealth_core
        return os.path.abspath(os.path.join(os.path.dirname(__file__), "../../../../"))

    def load_backend_env(self) -> None:
        """Load canonical backend env file if present (idempotent)."""
        env_file = Path(self.repo_root()) / "config" / "env" / ".env.backend"
        if env_file.exists():
            load_dotenv(env_file, override=False)

    def resolve_path(self, p: Optional[str]) -> Optional[str]:
        if not p:
            return None
        if os.path.isabs(p):
            return p
        return os.path.abspath(os.path.join(self.repo_root(), p))

    def data_dir(self) -> str:
        return self.resolve_path(_env("MHEALTH_DATA_DIR", "data")) or os.path.join(self.repo_root(), "data")

    @property
    def push_configured(self) -> bool:
        return bool(self.vapid_public_key and self.vapid_private_key)

    @property
    def poll_interval_seconds(self) -> int:
        return max(1, self.scheduler_cadence_minutes) * 60


# Pull in config/env/.env.backend once, before anything builds a Settings
Settings().load_backend_env()
