"""Central logging configuration helper.

``configure_logging`` renders ``config/logging.ini`` (replacing the
``__LOG_LEVEL__`` placeholder) and installs ``RedactionFilter`` on every
handler so bearer tokens, cron secrets and push keys never reach log files.
"""
from __future__ import annotations
import logging
import logging.config
import os
import re
from io import StringIO
from pathlib import Path

DEFAULT_CONFIG_PATHS = [
    Path("config/logging.ini"),
    Path(__file__).resolve().parents[4] / "config" / "logging.ini",
]


class RedactionFilter(logging.Filter):
    PATTERNS = [
        (re.compile(r"(Authorization\s*[:=]\s*Bearer\s+)([A-Za-z0-9._~+\-=/]+)", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(X-Cron-Secret\s*[:=]\s*)(\S+)", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"([?&])token=([^&\s]+)", re.IGNORECASE), r"\1token=[REDACTED]"),
        (
            re.compile(r"(\"?(?:token|access_token|p256dh(?:_key)?|auth_key|vapid_private_key)\"?\s*[:=]\s*\"?)([A-Za-z0-9._~+\-=/]+)(\"?)", re.IGNORECASE),
            r"\1[REDACTED]\3",
        ),
    ]

    @classmethod
    def redact(cls, s: str) -> str:
        out = s
        for pattern, repl in cls.PATTERNS:
            out = pattern.sub(repl, out)
        return out

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        try:
            if record.args:
                # Format first, then drop args so the handler doesn't format twice
                record.msg = self.redact(record.getMessage())
                record.args = None
            elif isinstance(record.msg, str):
                record.msg = self.redact(record.msg)
        except (TypeError, ValueError):
            pass
        return True


def _install_redaction(redactor: logging.Filter) -> None:
    seen = set()
    loggers = [logging.getLogger()] + [
        logging.getLogger(name) for name in list(logging.root.manager.loggerDict.keys())  # type: ignore[attr-defined]
    ]
    for logger_obj in loggers:
        for h in logger_obj.handlers:
            if id(h) not in seen:
                h.addFilter(redactor)
                seen.add(id(h))
        logger_obj.addFilter(redactor)


def configure_logging(level: str | None = None, config_file: str | os.PathLike[str] | None = None) -> None:
    """Configure logging from an INI template, falling back to basicConfig."""
    lvl = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    if config_file:
        cfg_path: Path | None = Path(config_file)
    else:
        cfg_path = next((p for p in DEFAULT_CONFIG_PATHS if p.exists()), None)
    if not cfg_path or not cfg_path.exists():
        logging.basicConfig(level=getattr(logging, lvl, logging.INFO), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
        _install_redaction(RedactionFilter())
        return
    text = cfg_path.read_text(encoding="utf-8").replace("__LOG_LEVEL__", lvl)
    Path("logs").mkdir(exist_ok=True)  # FileHandlers in the INI write here
    if os.environ.get("MHEALTH_LOG_RENDER", "0").lower() in ("1", "true", "yes"):  # pragma: no cover - opt-in
        Path("logs", "rendered_logging.ini").write_text(text, encoding="utf-8")
    logging.config.fileConfig(StringIO(text), disable_existing_loggers=False)
    _install_redaction(RedactionFilter())


__all__ = ["configure_logging", "RedactionFilter"]
