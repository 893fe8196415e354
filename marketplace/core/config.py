import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from functools import lru_cache

from dotenv import load_dotenv

# Carrega o .env da raiz do projeto
load_dotenv()

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./marketplace.db"
    env: str = "dev"
    log_level: str = "INFO"
    default_commission_rate: Decimal = Decimal("0.10")
    settlement_utc_offset_hours: int = 2
    referral_bonus_points: int = 2
    auto_open_period: bool = True
    cors_origins: tuple[str, ...] = field(default_factory=tuple)

    @property
    def env_normalized(self) -> str:
        return self.env.strip().lower()

    @property
    def is_dev(self) -> bool:
        return self.env_normalized in {"dev", "development", "local"}

    @property
    def is_test(self) -> bool:
        return self.env_normalized == "test"

    @property
    def is_prod(self) -> bool:
        return self.env_normalized in {"prod", "production"}


def _decimal_env(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default).strip()
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise RuntimeError(f"Invalid {name}: {raw}") from exc


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid {name}: {raw}") from exc


def load_settings() -> Settings:
    """Read the environment into an immutable Settings value.

    Services receive the returned object through their constructors; nothing
    in the package reads configuration from module globals.
    """
    env = os.getenv("ENV", "dev")

    _cors_env = os.getenv("CORS_ORIGINS", "")
    cors_origins = [origin.strip() for origin in _cors_env.split(",") if origin.strip() and origin.strip() != "*"]
    if not cors_origins and env.strip().lower() in {"dev", "development", "local"}:
        cors_origins = [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]

    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./marketplace.db"),
        env=env,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        default_commission_rate=_decimal_env("DEFAULT_COMMISSION_RATE", "0.10"),
        settlement_utc_offset_hours=_int_env("SETTLEMENT_UTC_OFFSET_HOURS", 2),
        referral_bonus_points=_int_env("REFERRAL_BONUS_POINTS", 2),
        auto_open_period=os.getenv("AUTO_OPEN_PERIOD", "1").strip().lower() in _TRUE_VALUES,
        cors_origins=tuple(cors_origins),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
