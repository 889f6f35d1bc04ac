from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Fernet key for stored connection targets, derived from SECRET_KEY when empty
    CONNECTION_ENCRYPTION_KEY: Optional[str] = None

    # Target store limits
    MONGO_CONNECT_TIMEOUT_MS: int = 5000
    MAX_RESULT_DOCUMENTS: int = 1000
    QUERY_MAX_TIME_MS: int = 30000

    # Accounts signing up with these emails become admins
    BOOTSTRAP_ADMIN_EMAILS: List[str] = []

    LOG_LEVEL: str = "INFO"
    SQL_ECHO: bool = False

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Create a single instance of the settings to use everywhere
settings = Settings()
