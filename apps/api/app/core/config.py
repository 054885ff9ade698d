from pydantic_settings import BaseSettings
from pydantic import ConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    SECRET_KEY: str
    ENCRYPTION_KEY: str
    CRON_SECRET: str = ""
    LOG_LEVEL: str = "INFO"

    BINANCE_BASE_URL: str = "https://api.binance.com"
    BTCC_BASE_URL: str = "https://api.btcc.com"
    QUOTE_ASSET: str = "USDT"
    STABLE_ASSETS: str = "USDT,USDC,BUSD,DAI"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    DB_TIMEOUT_SECONDS: float = 10.0

    SIGNAL_WINDOW_MINUTES: int = 30
    SIGNAL_REGISTER_DEDUP_MINUTES: int = 30
    SIGNAL_NOTIFY_LOOKBACK_MINUTES: int = 15
    NOTIFICATION_COOLDOWN_MINUTES: int = 30
    TOKEN_SUPPRESSION_HOURS: int = 24

    BUY_ALLOCATION_PCT: float = 10.0
    QUANTITY_DECIMALS: int = 8
    AUTO_EXECUTION_MAX_WORKERS: int = 4
    AUTO_EXECUTION_BUDGET_SECONDS: float = 240.0
    CLAIM_BATCH_SIZE: int = 10

    TELEGRAM_BOT_TOKEN: str = ""

    model_config = ConfigDict(
        env_file=".env",
        extra="ignore"
    )

    @property
    def stable_assets(self) -> set[str]:
        return {a.strip().upper() for a in self.STABLE_ASSETS.split(",") if a.strip()}


settings = Settings()
