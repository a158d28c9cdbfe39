# chatrelay/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Core
    LOG_LEVEL: str = "INFO"

    # Listener
    HOST: str = "0.0.0.0"
    PORT: int = 8765

    # WebSocket
    WS_READ_TIMEOUT: float = 300.0       # seconds, 0 disables
    WS_MAX_MESSAGE_SIZE: int = 2 ** 20   # bytes per frame

    # Outbound delivery
    OUTBOUND_QUEUE_SIZE: int = 256       # frames buffered per connection
    SEND_TIMEOUT: float = 10.0           # seconds per frame write

    # Message limits
    MAX_MESSAGE_LENGTH: int = 4000

    # Protocol extras
    ACK_REGISTER: bool = False
    REPORT_ERRORS: bool = True

    # Persistence
    MESSAGE_LOG_PATH: str = "storage/messages.jsonl"

    # Identity
    REQUIRE_AUTH: bool = False
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=True,
    )


settings = Settings()
