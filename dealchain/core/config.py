from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent.parent  # project root
ENV_PATH = BASE_DIR / ".env"

# Values already present in the environment win over the .env file
load_dotenv(dotenv_path=ENV_PATH, override=False)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",   # ✅ ignore unknown keys in .env
        case_sensitive=False,
    )

    DATABASE_URL: str
    CREATE_TABLES_ON_STARTUP: bool = False

    JWT_SECRET: str
    JWT_ACCESS_MINUTES: int = 30
    JWT_ALG: str = "HS256"

    # scheduler / internal callers (sweeps, outbox dispatch)
    SERVICE_API_KEY: str = "change-me"

    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Redemption
    REDEMPTION_WINDOW_SECONDS: int = 30

    # Auctions
    AUCTION_ENDING_SOON_SECONDS: int = 1800
    AUCTION_DEFAULT_EXTENSION_SECONDS: int = 300
    MAX_AUCTION_EXTENSIONS: int = 0  # 0 = unbounded

    # Staking: lock days -> APY percent
    STAKING_TIERS: dict[int, float] = {7: 5.0, 30: 12.0, 90: 25.0, 180: 40.0}
    SECONDS_PER_YEAR: int = 31_536_000

    # External settlement (payments / on-chain mirror)
    SETTLEMENT_API_BASE_URL: str | None = None
    SETTLEMENT_API_TOKEN: str | None = None
    SETTLEMENT_TIMEOUT_SECONDS: float = 10.0
    SETTLEMENT_MAX_ATTEMPTS: int = 3
    SETTLEMENT_BACKOFF_SECONDS: float = 0.5

    # Reward / reputation ledger
    REWARD_API_BASE_URL: str | None = None
    REWARD_API_TOKEN: str | None = None

    # Periodic expiry sweep, 0 disables it
    EXPIRE_SWEEP_INTERVAL_SECONDS: int = 0


settings = Settings()
