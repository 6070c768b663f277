"""Engine configuration loaded from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .models import normalize_address


DEFAULT_HOME = Path.home() / ".bundl"
DEFAULT_POLL_SECONDS = 60.0


def _parse_addresses(raw: str) -> list[str]:
    if not raw.strip():
        return []
    return [normalize_address(item.strip()) for item in raw.split(",") if item.strip()]


@dataclass
class EngineConfig:
    """Where state lives and who may trigger payments."""

    home: Path = DEFAULT_HOME
    trigger_authorities: list[str] = field(default_factory=list)
    ledger_path: Optional[Path] = None
    treasury_account: Optional[str] = None
    poll_seconds: float = DEFAULT_POLL_SECONDS

    @property
    def store_dir(self) -> Path:
        return self.home / "store"

    @property
    def audit_path(self) -> Path:
        return self.home / "audit.jsonl"

    @property
    def audit_key_path(self) -> Path:
        return self.home.parent / f"{self.home.name}-secrets" / "audit_hmac.key"

    @property
    def resolved_ledger_path(self) -> Path:
        return self.ledger_path or self.home / "ledger.json"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        env = os.environ if environ is None else environ
        home = Path(env["BUNDL_HOME"]).expanduser() if env.get("BUNDL_HOME") else DEFAULT_HOME
        ledger = env.get("BUNDL_LEDGER_PATH")
        treasury = env.get("BUNDL_TREASURY_ACCOUNT")
        poll = env.get("BUNDL_POLL_SECONDS")
        return cls(
            home=home,
            trigger_authorities=_parse_addresses(env.get("BUNDL_TRIGGER_AUTHORITIES", "")),
            ledger_path=Path(ledger).expanduser() if ledger else None,
            treasury_account=normalize_address(treasury) if treasury else None,
            poll_seconds=float(poll) if poll else DEFAULT_POLL_SECONDS,
        )
