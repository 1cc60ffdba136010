from pydantic import BaseModel
import os


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./sensorhub.db")
    db_pool_size: int = int(os.getenv("DB_POOL_SIZE", "5"))
    db_max_overflow: int = int(os.getenv("DB_MAX_OVERFLOW", "0"))
    db_retries: int = int(os.getenv("DB_RETRIES", "3"))
    db_retry_backoff: float = float(os.getenv("DB_RETRY_BACKOFF", "1.0"))
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")
    api_token: str | None = os.getenv("API_TOKEN") or None

    mqtt_enabled: bool = _flag("MQTT_ENABLED", "1")
    mqtt_host: str = os.getenv("MQTT_HOST", "localhost")
    mqtt_port: int = int(os.getenv("MQTT_PORT", "1883"))
    mqtt_username: str | None = os.getenv("MQTT_USERNAME") or None
    mqtt_password: str | None = os.getenv("MQTT_PASSWORD") or None
    mqtt_client_id: str = os.getenv("MQTT_CLIENT_ID", "sensorhub-bridge")
    mqtt_keepalive: int = int(os.getenv("MQTT_KEEPALIVE", "30"))
    mqtt_qos: int = int(os.getenv("MQTT_QOS", "1"))
    mqtt_reconnect_min: int = int(os.getenv("MQTT_RECONNECT_MIN", "1"))
    mqtt_reconnect_max: int = int(os.getenv("MQTT_RECONNECT_MAX", "30"))
    mqtt_publish_timeout: float = float(os.getenv("MQTT_PUBLISH_TIMEOUT", "5"))
    mqtt_health_timeout: float = float(os.getenv("MQTT_HEALTH_TIMEOUT", "5"))

    telemetry_default_device: str = os.getenv("TELEMETRY_DEFAULT_DEVICE", "esp32-001")
    ws_queue_size: int = int(os.getenv("WS_QUEUE_SIZE", "100"))
    query_default_limit: int = int(os.getenv("QUERY_DEFAULT_LIMIT", "100"))
    query_max_limit: int = int(os.getenv("QUERY_MAX_LIMIT", "1000"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "3000"))

    @property
    def expected_token(self) -> str | None:
        # empty, whitespace-only or quoted-empty tokens disable the check
        raw = (self.api_token or "").strip().strip("'\"")
        return raw or None


settings = Settings()
