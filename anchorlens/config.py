import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from anchorlens.models import Severity

load_dotenv()

logger = logging.getLogger("anchorlens.config")

DEFAULT_COMPUTE_BUDGET = 200_000
DEFAULT_PORT = 3000


@dataclass(frozen=True)
class Settings:
    compute_budget: int = DEFAULT_COMPUTE_BUDGET
    severity_threshold: Severity = Severity.INFO
    rules_path: Optional[str] = None
    log_level: str = "INFO"
    port: int = DEFAULT_PORT


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


def get_settings() -> Settings:
    """Read settings from the environment (.env is loaded on import)."""
    threshold = os.getenv("ANCHORLENS_SEVERITY_THRESHOLD", "info").lower()
    try:
        severity = Severity(threshold)
    except ValueError:
        logger.warning(f"Unknown ANCHORLENS_SEVERITY_THRESHOLD={threshold!r}, using info")
        severity = Severity.INFO

    return Settings(
        compute_budget=_int_env("ANCHORLENS_COMPUTE_BUDGET", DEFAULT_COMPUTE_BUDGET),
        severity_threshold=severity,
        rules_path=os.getenv("ANCHORLENS_RULES_PATH") or None,
        log_level=os.getenv("ANCHORLENS_LOG_LEVEL", "INFO").upper(),
        port=_int_env("PORT", DEFAULT_PORT),
    )
