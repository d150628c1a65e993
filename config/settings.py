# config/settings.py
import os

from dotenv import load_dotenv

from core.errors import ConfigurationError
from core.logger import logger

# Load environment variables from a .env file, if available
load_dotenv(override=False)


def _as_bool(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    # Data provider settings
    PROVIDER = os.getenv("PROVIDER", "etherscan")
    NETWORK = os.getenv("NETWORK", "mainnet")
    ETHERSCAN_API_KEY = os.getenv("ETHERSCAN_API_KEY")
    ALCHEMY_API_KEY = os.getenv("ALCHEMY_API_KEY")
    REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", 30))

    # Collection engine knobs
    WINDOW_SIZE = int(os.getenv("WINDOW_SIZE", 50000))
    PAGE_SIZE = int(os.getenv("PAGE_SIZE", 100))
    REQUESTS_PER_SECOND = float(os.getenv("REQUESTS_PER_SECOND", 5))
    RATE_TIME_WINDOW = float(os.getenv("RATE_TIME_WINDOW", 1.0))  # seconds
    MAX_RETRIES = int(os.getenv("MAX_RETRIES", 3))
    RETRY_DELAY = float(os.getenv("RETRY_DELAY", 10))
    RATE_LIMIT_COOLDOWN = float(os.getenv("RATE_LIMIT_COOLDOWN", 5))
    CONCURRENT_TYPES = _as_bool(os.getenv("CONCURRENT_TYPES", "true"))

    # Persistence
    PROGRESS_BACKEND = os.getenv("PROGRESS_BACKEND", "file")  # file | redis | database
    SINK_BACKEND = os.getenv("SINK_BACKEND", "csv")  # csv | rabbitmq
    STORAGE_BASE_DIR = os.getenv("STORAGE_BASE_DIR", os.path.join(os.getcwd(), "data"))
    DATABASE_DSN = os.getenv("DATABASE_DSN", f"sqlite+aiosqlite:///{os.path.join(STORAGE_BASE_DIR, 'collector.db')}")
    SQL_ECHO = _as_bool(os.getenv("SQL_ECHO", "false"))

    # Redis Settings
    REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
    REDIS_PASSWORD = os.getenv("REDIS_PASSWORD")
    REDIS_TIMEOUT = float(os.getenv("REDIS_TIMEOUT", 5))
    REDIS_STATE_PREFIX = os.getenv("REDIS_STATE_PREFIX", "collector:state:")

    # RabbitMQ settings
    RABBITMQ_HOST = os.getenv("RABBITMQ_HOST", "localhost")
    RABBITMQ_PORT = int(os.getenv("RABBITMQ_PORT", 5672))
    RABBITMQ_VHOST = os.getenv("RABBITMQ_VHOST", "/")
    RABBITMQ_USER = os.getenv("RABBITMQ_USER", "guest")
    RABBITMQ_PASSWORD = os.getenv("RABBITMQ_PASSWORD", "guest")
    RABBITMQ_QUEUE_PREFIX = os.getenv("RABBITMQ_QUEUE_PREFIX", "chain")

    PROGRESS_BACKENDS = ("file", "redis", "database")
    SINK_BACKENDS = ("csv", "rabbitmq")
    PROVIDERS = ("etherscan", "alchemy")

    # Logging the loaded configuration values (without sensitive data)
    logger.info(f"Provider {PROVIDER} on {NETWORK}, progress={PROGRESS_BACKEND}, sink={SINK_BACKEND}")

    def validate(self) -> None:
        """Reject knob values the engine cannot run with, before any work starts."""
        positives = {
            "WINDOW_SIZE": self.WINDOW_SIZE,
            "PAGE_SIZE": self.PAGE_SIZE,
            "REQUESTS_PER_SECOND": self.REQUESTS_PER_SECOND,
            "RATE_TIME_WINDOW": self.RATE_TIME_WINDOW,
            "MAX_RETRIES": self.MAX_RETRIES,
            "REQUEST_TIMEOUT": self.REQUEST_TIMEOUT,
        }
        for name, value in positives.items():
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")
        for name, value in {"RETRY_DELAY": self.RETRY_DELAY,
                            "RATE_LIMIT_COOLDOWN": self.RATE_LIMIT_COOLDOWN}.items():
            if value < 0:
                raise ConfigurationError(f"{name} must not be negative, got {value}")
        if self.PROGRESS_BACKEND not in self.PROGRESS_BACKENDS:
            raise ConfigurationError(f"Unknown PROGRESS_BACKEND: {self.PROGRESS_BACKEND}")
        if self.SINK_BACKEND not in self.SINK_BACKENDS:
            raise ConfigurationError(f"Unknown SINK_BACKEND: {self.SINK_BACKEND}")
        if self.PROVIDER not in self.PROVIDERS:
            raise ConfigurationError(f"Unknown PROVIDER: {self.PROVIDER}")


# Initialize settings instance
settings = Settings()
