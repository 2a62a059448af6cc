import os

from pydantic import BaseModel, Field

from email_worker.constants import AUTHORIZED_SENDER, QUEUE_NAME


# Fixed broker coordinates; only the host is supplied by the environment
RABBITMQ_PORT: int = 5672
RABBITMQ_USER: str = "ops1"
RABBITMQ_PASSWORD: str = "ops1"
DEFAULT_RABBIT_HOSTNAME: str = "localhost"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


class Settings(BaseModel):
    """Typed configuration for the order confirmation email worker.

    Why this exists:
    - Centralize environment configuration for the worker process
    - Read everything once at startup; nothing here is reloadable

    How to use:
    - Instantiate once in the worker entrypoint and pass it around
    - Override values via environment variables

    Examples:
    - Point the worker at a broker running in another container:
      ```bash
      export RABBIT_HOSTNAME=rabbitmq
      ```
    - Shorten the simulated email latency for local smoke runs:
      ```bash
      export SEND_DELAY_MIN_S=0.1
      export SEND_DELAY_MAX_S=0.2
      ```
    """
    rabbit_hostname: str = Field(
        default_factory=lambda: os.getenv("RABBIT_HOSTNAME") or DEFAULT_RABBIT_HOSTNAME
    )
    rabbitmq_port: int = RABBITMQ_PORT
    rabbitmq_user: str = RABBITMQ_USER
    rabbitmq_password: str = RABBITMQ_PASSWORD
    queue_name: str = QUEUE_NAME
    authorized_sender: str = AUTHORIZED_SENDER

    # Connection retry/backoff at startup
    connect_attempts: int = Field(default_factory=lambda: _env_int("RABBITMQ_CONNECT_ATTEMPTS", "12"))
    connect_base_delay_ms: int = Field(default_factory=lambda: _env_int("RABBITMQ_CONNECT_BASE_DELAY_MS", "500"))
    connect_max_delay_ms: int = Field(default_factory=lambda: _env_int("RABBITMQ_CONNECT_MAX_DELAY_MS", "3000"))

    # Simulated email send latency in seconds
    send_delay_min_s: float = Field(default_factory=lambda: _env_float("SEND_DELAY_MIN_S", "1.0"))
    send_delay_max_s: float = Field(default_factory=lambda: _env_float("SEND_DELAY_MAX_S", "3.0"))

    # Observability
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())
    payload_preview_chars: int = Field(default_factory=lambda: _env_int("PAYLOAD_PREVIEW_CHARS", "512"))
    metrics_enabled: bool = Field(default_factory=lambda: _env_bool("METRICS_ENABLED", "true"))
    metrics_port: int = Field(default_factory=lambda: _env_int("METRICS_PORT", "9000"))
