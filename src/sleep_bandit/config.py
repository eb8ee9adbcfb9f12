import os
from dataclasses import dataclass
from pathlib import Path

_DEFAULT_DIR = Path.home() / ".sleep-bandit"


@dataclass(frozen=True)
class Config:
    log_path: Path = _DEFAULT_DIR / "events.json"
    legacy_path: Path | None = _DEFAULT_DIR / "data.json"
    database_url: str | None = None
    log_format: str = "text"
    log_level: str = "INFO"
    seed: int | None = None

    @classmethod
    def from_env(cls) -> "Config":
        log_format = os.environ.get("SLEEP_BANDIT_LOG_FORMAT", "text").strip().lower()
        if log_format not in {"json", "text"}:
            raise RuntimeError("SLEEP_BANDIT_LOG_FORMAT must be 'json' or 'text'")

        seed_raw = os.environ.get("SLEEP_BANDIT_SEED", "").strip()
        legacy_raw = os.environ.get("SLEEP_BANDIT_LEGACY_PATH")

        return cls(
            log_path=Path(os.environ.get("SLEEP_BANDIT_LOG_PATH", str(_DEFAULT_DIR / "events.json"))).expanduser(),
            legacy_path=Path(legacy_raw).expanduser() if legacy_raw else _DEFAULT_DIR / "data.json",
            database_url=os.environ.get("DATABASE_URL") or None,
            log_format=log_format,
            log_level=os.environ.get("SLEEP_BANDIT_LOG_LEVEL", "INFO").strip().upper(),
            seed=int(seed_raw) if seed_raw else None,
        )
