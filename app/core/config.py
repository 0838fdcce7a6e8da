from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Optional
import os


# Define the acceptable environments for type checking
Environment = Literal["development", "staging", "production", "test"]


class Settings(BaseSettings):
    """
    Application-wide settings.
    Settings are loaded from environment variables (case-insensitive)
    or from a .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", case_sensitive=False
    )

    # CORE APPLICATION SETTINGS ---
    PROJECT_NAME: str = "University Query Service"
    ENVIRONMENT: Environment = "development"
    DEBUG: bool = True
    VERSION: str = "1.0.0"
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # PERSISTENCE (MongoDB) ---
    MONGO_HOST: str = "localhost"
    MONGO_PORT: int = 27017
    MONGO_USERNAME: Optional[str] = None
    MONGO_PASSWORD: Optional[str] = None
    MONGO_DB_NAME: str = "university_platform"
    MONGO_QUERIES_COLLECTION: str = "queries"

    @property
    def MONGO_URL(self) -> str:
        """
        Resolve the MongoDB connection string.

        - Prefer explicit MONGO_URL / MONGODB_URI env var (providers often supply this).
        - Otherwise build it from host, port and optional credentials.
        """
        env_url = os.getenv("MONGO_URL") or os.getenv("MONGODB_URI")
        if env_url:
            return env_url

        host = os.getenv("MONGO_HOST", self.MONGO_HOST)
        port = os.getenv("MONGO_PORT", str(self.MONGO_PORT))
        user = os.getenv("MONGO_USERNAME", self.MONGO_USERNAME)
        pwd = os.getenv("MONGO_PASSWORD", self.MONGO_PASSWORD)

        # Strip a scheme if the host was given as a URL fragment
        if host.startswith("mongodb://"):
            host = host.split("://", 1)[1]

        creds = ""
        if user and pwd:
            creds = f"{user}:{pwd}@"

        return f"mongodb://{creds}{host}:{port}"

    # --- REDIS (Caching) ---
    CACHE_ENABLED: bool = True
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    CACHE_KEY_PREFIX: str = "uqs"

    @property
    def REDIS_URL(self) -> str:
        """Resolve Redis URL. Prefer explicit REDIS_URL/REDIS_URI env var, otherwise build from parts."""
        env_url = os.getenv("REDIS_URL") or os.getenv("REDIS_URI")
        if env_url:
            return env_url

        host = os.getenv("REDIS_HOST", self.REDIS_HOST)
        port = os.getenv("REDIS_PORT", str(self.REDIS_PORT))
        db = os.getenv("REDIS_DB", str(self.REDIS_DB))
        pwd = (
            os.getenv("REDIS_PASSWORD")
            or os.getenv("REDIS_PASS")
            or self.REDIS_PASSWORD
        )
        if pwd:
            return f"redis://:{pwd}@{host}:{port}/{db}"
        return f"redis://{host}:{port}/{db}"

    # Cache TTLs (seconds)
    QUERY_CACHE_TTL_SECONDS: int = 7200  # 2 hours
    PERFORMANCE_CACHE_TTL_SECONDS: int = 300  # 5 minutes

    # Query Execution
    QUERY_EXECUTION_TIMEOUT_SECONDS: float = 30.0
    QUERY_RESULT_LIMIT: int = 1000
    POPULAR_QUERIES_DEFAULT_LIMIT: int = 10

    # Pagination
    PAGINATION_DEFAULT_LIMIT: int = 10
    PAGINATION_MAX_LIMIT: int = 100

    # Circuit Breaker Settings
    CIRCUIT_BREAKER_MAX_FAILURES: int = 5
    CIRCUIT_BREAKER_RESET_TIMEOUT: int = 30


settings = Settings()
