from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development, production, test
    DATABASE_URL: str = "sqlite:///./strava_weather.db"

    # URLs
    APP_URL: str = "http://localhost:8000"
    FRONTEND_URL: str = "http://localhost:5173"
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:5173"

    # Strava API
    STRAVA_CLIENT_ID: str = ""
    STRAVA_CLIENT_SECRET: str = ""
    STRAVA_WEBHOOK_VERIFY_TOKEN: str = ""
    REDIRECT_URI: str = "http://localhost:8000/api/auth/strava/callback"
    STRAVA_API_BASE_URL: str = "https://www.strava.com/api/v3"
    STRAVA_OAUTH_BASE_URL: str = "https://www.strava.com/oauth"
    STRAVA_API_TIMEOUT_S: float = 10.0
    TOKEN_REFRESH_BUFFER_S: int = 300  # 5 minutes

    # OpenWeatherMap One Call 3.0
    OPENWEATHERMAP_API_KEY: str = ""
    OPENWEATHERMAP_ONECALL_URL: str = "https://api.openweathermap.org/data/3.0/onecall"
    OPENWEATHERMAP_UNITS: str = "metric"  # metric, imperial, standard
    WEATHER_API_TIMEOUT_S: float = 5.0
    WEATHER_CACHE_TTL_S: int = 30 * 60
    WEATHER_CACHE_SWEEP_INTERVAL_S: int = 15 * 60

    # Security
    SECRET_KEY: str = "change_this_to_a_secure_random_key_in_production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 30  # 30 days
    ENCRYPTION_KEY: Optional[str] = None
    ADMIN_TOKEN: Optional[str] = None

    # Webhook intake
    WEBHOOK_MAX_ATTEMPTS: int = 3
    WEBHOOK_MAX_PROCESSING_S: float = 8.0
    WEBHOOK_RETRY_DELAYS_S: List[float] = [1.5, 3.0]

    # Subscription lifecycle
    WEBHOOK_SETUP_ON_STARTUP: Optional[bool] = None  # None -> production only
    WEBHOOK_SETUP_DELAY_S: float = 5.0
    NGROK_URL: Optional[str] = None
    CLEANUP_WEBHOOK_ON_SHUTDOWN: bool = False

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    PROCESS_RATE_LIMIT: str = "30/minute"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"  # text or json

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def webhook_callback_url(self) -> str:
        return f"{self.APP_URL.rstrip('/')}/api/strava/webhook"

    @property
    def should_setup_webhook_on_startup(self) -> bool:
        if self.WEBHOOK_SETUP_ON_STARTUP is None:
            return self.is_production
        return self.WEBHOOK_SETUP_ON_STARTUP


settings = Settings()
