from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    # Tokens are issued by the identity service; this service only verifies them
    SECRET_KEY: str
    ALGORITHM: str

    REDIS_URL: str

    # --- Kafka ---
    KAFKA_BOOTSTRAP_SERVERS: str = "kafka:9092"
    KAFKA_NOTIFICATION_TOPIC: str = "notifications"
    KAFKA_CATALOG_TOPIC: str = "catalog_items"

    # Notifications addressed to this user ID are routed to the admin console
    ADMIN_USER_ID: str = "0"

    BOOKING_ID_MAX_ATTEMPTS: int = 5

    # --- Background monitor ---
    MONITOR_INTERVAL_SECONDS: int = 60
    DELAY_GRACE_MINUTES: int = 20
    DELAY_COMPENSATION_RATE: float = 0.05
    SEARCH_TIMEOUT_HOURS: int = 6

    # --- Abuse / fraud signals ---
    REJECTION_ALERT_THRESHOLD: int = 3
    REJECTION_WINDOW_HOURS: int = 24
    PAYMENT_SPIKE_THRESHOLD: int = 10
    PAYMENT_SPIKE_WINDOW_MINUTES: int = 10

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
