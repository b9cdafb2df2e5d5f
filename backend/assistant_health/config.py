import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./assistant_health.db")
    APP_URL: str = os.getenv("APP_URL", "http://localhost:5173")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Session tokens issued by the hosted auth service (HS256, shared secret)
    AUTH_JWT_SECRET: str = os.getenv("AUTH_JWT_SECRET", "")
    AUTH_JWT_AUDIENCE: str = os.getenv("AUTH_JWT_AUDIENCE", "authenticated")

    FITBIT_CLIENT_ID: str = os.getenv("FITBIT_CLIENT_ID", "")
    FITBIT_CLIENT_SECRET: str = os.getenv("FITBIT_CLIENT_SECRET", "")
    FITBIT_REDIRECT_URI: str = os.getenv(
        "FITBIT_REDIRECT_URI", "http://localhost:8000/api/health-oauth-callback"
    )
    FITBIT_AUTH_URL: str = "https://www.fitbit.com/oauth2/authorize"
    FITBIT_TOKEN_URL: str = "https://api.fitbit.com/oauth2/token"
    FITBIT_API_BASE: str = "https://api.fitbit.com"
    FITBIT_MAX_DAYS: int = 90
    FITBIT_DAY_DELAY_SECONDS: float = 0.22

    GOOGLE_FIT_CLIENT_ID: str = os.getenv("GOOGLE_FIT_CLIENT_ID", "")
    GOOGLE_FIT_CLIENT_SECRET: str = os.getenv("GOOGLE_FIT_CLIENT_SECRET", "")
    GOOGLE_FIT_REDIRECT_URI: str = os.getenv(
        "GOOGLE_FIT_REDIRECT_URI", "http://localhost:8000/api/health-oauth-callback"
    )
    GOOGLE_AUTH_URL: str = "https://accounts.google.com/o/oauth2/v2/auth"
    GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"
    GOOGLE_FIT_API_BASE: str = "https://www.googleapis.com/fitness/v1/users/me"
    GOOGLE_FIT_MAX_DAYS: int = 120
    GOOGLE_FIT_DAY_DELAY_SECONDS: float = 0.18

    OAUTH_STATE_TTL_MINUTES: int = 15
    TOKEN_EXPIRY_BUFFER_SECONDS: int = 60
    COLD_START_SYNC_DAYS: int = 60
    INCREMENTAL_SYNC_DAYS: int = 7
    AUTO_SYNC_COOLDOWN_MINUTES: int = int(os.getenv("AUTO_SYNC_COOLDOWN_MINUTES", "30"))
    SYNC_LOCK_TTL_SECONDS: int = int(os.getenv("SYNC_LOCK_TTL_SECONDS", "600"))
    DATA_TYPE_RETRY_DAYS: int = int(os.getenv("DATA_TYPE_RETRY_DAYS", "7"))
    PROVIDER_HTTP_TIMEOUT_SECONDS: float = float(
        os.getenv("PROVIDER_HTTP_TIMEOUT_SECONDS", "30")
    )


settings = Settings()
