import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Bearer token verification (tokens are issued elsewhere)
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_ALGORITHMS: str = "HS256"  # comma-separated

    # Stripe (live keys used only when ENV=production)
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_TEST_SECRET_KEY: Optional[str] = None
    STRIPE_TEST_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_PRO: Optional[str] = None
    STRIPE_PRICE_PREMIUM: Optional[str] = None

    # Hosted crypto charges
    SUPPORT_CRYPTO_PAYMENT: bool = False
    COINBASE_COMMERCE_API_KEY: Optional[str] = None
    COINBASE_COMMERCE_WEBHOOK_SECRET: Optional[str] = None
    COINBASE_COMMERCE_API_URL: str = "https://api.commerce.coinbase.com"

    # Direct wallet payments
    BASE_RPC_URL: str = "https://mainnet.base.org"
    SOLANA_RPC_URL: str = "https://api.mainnet-beta.solana.com"
    BASE_WALLET_ADDRESS: Optional[str] = None
    SOLANA_WALLET_ADDRESS: Optional[str] = None
    BASE_USDC_CONTRACT: str = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
    SOLANA_USDC_MINT: str = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
    WALLET_QUOTE_TTL_MINUTES: int = 30
    AMOUNT_TOLERANCE: float = 0.01
    CHAIN_HTTP_TIMEOUT_SECONDS: float = 10.0

    # Renewal reminders
    RENEWAL_REMINDER_DAYS: int = 7

    # App URLs
    FRONTEND_URL: str = "http://localhost:3000"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return (self.ENV or "").lower() == "production"

    @property
    def stripe_secret_key(self) -> Optional[str]:
        """Live key in production, test key everywhere else (live name as fallback)."""
        if self.is_production:
            return self.STRIPE_SECRET_KEY
        return self.STRIPE_TEST_SECRET_KEY or self.STRIPE_SECRET_KEY

    @property
    def stripe_webhook_secret(self) -> Optional[str]:
        if self.is_production:
            return self.STRIPE_WEBHOOK_SECRET
        return self.STRIPE_TEST_WEBHOOK_SECRET or self.STRIPE_WEBHOOK_SECRET

settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("cryptowatch")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "AUTH_JWT_SECRET",
    ]
    if (getattr(cfg, "ENV", "") or "").lower() == "production":
        required_keys += ["STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"]
    else:
        if not (getattr(cfg, "STRIPE_TEST_SECRET_KEY", None) or getattr(cfg, "STRIPE_SECRET_KEY", None)):
            required_keys.append("STRIPE_TEST_SECRET_KEY")
    if getattr(cfg, "SUPPORT_CRYPTO_PAYMENT", False):
        required_keys += ["BASE_WALLET_ADDRESS", "SOLANA_WALLET_ADDRESS"]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
