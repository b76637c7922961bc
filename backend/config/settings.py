"""
Configuration Management for Refit
Centralizes all environment-based configuration and settings
"""

import os
import logging
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from typing import List


class HealthCheckFilter(logging.Filter):
    """Filter out health check and status polling requests to reduce log noise"""
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()

        # For uvicorn access logs, the message format is:
        # 'IP:PORT - "METHOD /path HTTP/1.1" STATUS'
        if '200 OK' in message or '200' in str(getattr(record, 'args', '')):
            if '/health' in message:
                return False
            # In-flight status polling from the UI
            if '/api/updates/status' in message:
                return False
        return True


def setup_logging():
    """Configure application logging with rotation"""
    from .paths import DATA_DIR

    # Create logs directory with secure permissions
    log_dir = os.path.join(DATA_DIR, 'logs')
    os.makedirs(log_dir, mode=0o700, exist_ok=True)

    root_logger = logging.getLogger()

    # Close and clear any existing handlers to prevent file descriptor leaks
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    level = getattr(logging, AppConfig.LOG_LEVEL.upper(), logging.INFO)
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # Max 10MB per file, keep 14 backups
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'refit.log'),
        maxBytes=10*1024*1024,
        backupCount=14,
        encoding='utf-8'
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(console_formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_list(name: str) -> List[str]:
    value = os.getenv(name, '')
    return [item.strip() for item in value.split(',') if item.strip()]


@dataclass
class UpdaterConfig:
    """
    Update engine tuning, read from REFIT_* environment variables.

    Attributes:
        concurrency: Worker count for batch digest checks
        registry_timeout: Total timeout (seconds) per registry request
        retry_attempts: Attempts per registry request for transient failures (1 = no retry)
        retry_initial_delay: First backoff delay in seconds
        retry_max_delay: Backoff ceiling in seconds
        retry_backoff_multiplier: Exponential backoff factor
        insecure_registries: Hosts contacted over plain http
        filter_used_images: Only plan updates for images used by running resources
        check_interval_seconds: Scheduler interval between check runs
        auto_apply: Apply pending updates after each scheduled check
        error_retry_seconds: Scheduler wait after a failed run
        docker_host: Docker daemon URL (None = environment defaults)
    """
    concurrency: int = 8
    registry_timeout: float = 30.0
    retry_attempts: int = 3
    retry_initial_delay: float = 0.5
    retry_max_delay: float = 10.0
    retry_backoff_multiplier: float = 2.0
    insecure_registries: List[str] = field(default_factory=list)
    filter_used_images: bool = True
    check_interval_seconds: int = 6 * 60 * 60
    auto_apply: bool = False
    error_retry_seconds: int = 60 * 60
    docker_host: str = None

    @classmethod
    def from_env(cls) -> 'UpdaterConfig':
        """Build configuration from environment variables"""
        return cls(
            concurrency=int(os.getenv('REFIT_UPDATE_CONCURRENCY', 8)),
            registry_timeout=float(os.getenv('REFIT_REGISTRY_TIMEOUT', 30)),
            retry_attempts=int(os.getenv('REFIT_REGISTRY_RETRY_ATTEMPTS', 3)),
            retry_initial_delay=float(os.getenv('REFIT_REGISTRY_RETRY_INITIAL_DELAY', 0.5)),
            retry_max_delay=float(os.getenv('REFIT_REGISTRY_RETRY_MAX_DELAY', 10)),
            retry_backoff_multiplier=float(os.getenv('REFIT_REGISTRY_RETRY_MULTIPLIER', 2)),
            insecure_registries=_env_list('REFIT_INSECURE_REGISTRIES'),
            filter_used_images=_env_bool('REFIT_FILTER_USED_IMAGES', True),
            check_interval_seconds=int(os.getenv('REFIT_CHECK_INTERVAL_SECONDS', 6 * 60 * 60)),
            auto_apply=_env_bool('REFIT_AUTO_APPLY', False),
            error_retry_seconds=int(os.getenv('REFIT_ERROR_RETRY_SECONDS', 60 * 60)),
            docker_host=os.getenv('REFIT_DOCKER_HOST') or None,
        )

    def validate(self) -> 'UpdaterConfig':
        """Validate configuration"""
        if self.concurrency < 1:
            raise ValueError(f"Update concurrency must be at least 1: {self.concurrency}")
        if self.retry_attempts < 1:
            raise ValueError(f"Registry retry attempts must be at least 1: {self.retry_attempts}")
        if self.registry_timeout <= 0:
            raise ValueError(f"Registry timeout must be positive: {self.registry_timeout}")
        return self


class AppConfig:
    """Main application configuration"""

    # Server settings
    HOST = os.getenv('REFIT_HOST', '0.0.0.0')
    PORT = int(os.getenv('REFIT_PORT', 8080))

    from .paths import DATABASE_PATH as DEFAULT_DATABASE_PATH

    DATABASE_PATH = os.getenv('REFIT_DATABASE_PATH', DEFAULT_DATABASE_PATH)

    LOG_LEVEL = os.getenv('REFIT_LOG_LEVEL', 'INFO')

    @classmethod
    def validate(cls):
        """Validate configuration"""
        if cls.PORT < 1 or cls.PORT > 65535:
            raise ValueError(f"Invalid port: {cls.PORT}")
        return True
