from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # mpv IPC
    MPV_SOCKET_PATH: str = "/tmp/mpvsocket"
    MPV_CONNECT_TIMEOUT_SECONDS: float = 5.0
    SEEK_PRECISION: Optional[str] = "exact"  # appended to seek commands; None to let mpv decide

    # Dispatcher
    COMMAND_TIMEOUT_URGENT_SECONDS: float = 1.0
    COMMAND_TIMEOUT_NORMAL_SECONDS: float = 2.0
    RATE_LIMIT_SEEK_SECONDS: float = 0.05
    RATE_LIMIT_PAUSE_SECONDS: float = 0.1
    RATE_LIMIT_SPEED_SECONDS: float = 0.2
    RATE_LIMIT_VOLUME_SECONDS: float = 0.1

    # Sync Logic
    SYNC_INTERVAL_SECONDS: float = 0.1
    SYNC_DRIFT_THRESHOLD_SECONDS: float = 0.25
    SYNC_POSITION_EPSILON_SECONDS: float = 0.1
    SYNC_TRANSITION_LOCK_SECONDS: float = 0.05
    SYNC_ECHO_GRACE_SECONDS: float = 0.1
    SYNC_REMOTE_JUMP_SECONDS: float = 1.0

    # Health
    HEARTBEAT_INTERVAL_SECONDS: float = 3.0
    HEARTBEAT_PROPERTY: str = "pause"
    STATUS_WINDOW_SIZE: int = 20
    STATUS_MIN_SAMPLES: int = 5
    STATUS_DEGRADED_SUCCESS_RATE: float = 0.8
    RECONNECT_INITIAL_DELAY_SECONDS: float = 0.5
    RECONNECT_MAX_DELAY_SECONDS: float = 10.0

    # System
    LOG_LEVEL: str = "INFO"
    DRY_RUN: bool = False
    HTTP_SERVER_ENABLED: bool = True
    HTTP_SERVER_HOST: str = "127.0.0.1"
    HTTP_SERVER_PORT: int = 3001
    REQUEST_TIMEOUT_SECONDS: int = 30

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

settings = Settings()
