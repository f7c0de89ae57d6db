"""
Configuration Management for DockGuard
Centralizes all environment-based configuration and settings
"""

import os
import logging
from logging.handlers import RotatingFileHandler


class HealthCheckFilter(logging.Filter):
    """Filter out health check and event-stream requests to reduce log noise"""
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()

        # For uvicorn access logs, the message format is:
        # 'IP:PORT - "METHOD /path HTTP/1.1" STATUS'
        if '200' in message or '200' in str(getattr(record, 'args', '')):
            if '/health' in message:
                return False
            # Every UI tab holds one of these open and reconnects on drop
            if '/api/events' in message and '/ack' not in message:
                return False
            if '/metrics' in message:
                return False
        return True


def setup_logging(log_to_file: bool = True):
    """
    Configure application logging with rotation.

    The self-update helper container runs with AutoRemove, so it logs to the
    console only (log_to_file=False); its output is read with `docker logs`
    while the helper is alive.
    """
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
    root_logger.addHandler(console_handler)

    if log_to_file:
        from .paths import LOG_DIR

        os.makedirs(LOG_DIR, mode=0o700, exist_ok=True)

        # Max 10MB per file, keep 14 backups
        file_handler = RotatingFileHandler(
            os.path.join(LOG_DIR, 'dockguard.log'),
            maxBytes=10*1024*1024,
            backupCount=14,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(console_formatter)
        root_logger.addHandler(file_handler)

    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())


def _get_int(name: str, default: int) -> int:
    """Read a positive integer from the environment, falling back to default"""
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        logging.getLogger(__name__).warning(f"Invalid integer for {name}: {raw!r}, using {default}")
        return default
    return value if value > 0 else default


class AppConfig:
    """Main application configuration"""

    # Server settings
    HOST = os.getenv('DOCKGUARD_HOST', '0.0.0.0')
    PORT = int(os.getenv('DOCKGUARD_PORT', 8080))

    from .paths import DATABASE_PATH as DEFAULT_DATABASE_PATH

    DATABASE_PATH = os.getenv('DOCKGUARD_DATABASE_PATH', DEFAULT_DATABASE_PATH)

    # Logging
    LOG_LEVEL = os.getenv('DOCKGUARD_LOG_LEVEL', 'INFO')

    # Trust X-Forwarded-For (only behind a reverse proxy you control)
    REVERSE_PROXY_MODE = os.getenv('DOCKGUARD_REVERSE_PROXY_MODE', 'false').lower() == 'true'

    # Runtime
    DOCKER_SOCKET_PATH = os.getenv('DOCKGUARD_DOCKER_SOCKET', '/var/run/docker.sock')

    # Self-update: image repository (without registry/tag) that identifies our own container
    SELF_IMAGE_NAME = os.getenv('DOCKGUARD_SELF_IMAGE_NAME', 'dockguard')
    SELF_UPDATE_START_TIMEOUT_MS = _get_int('DOCKGUARD_SELF_UPDATE_START_TIMEOUT_MS', 30000)
    SELF_UPDATE_HEALTH_TIMEOUT_MS = _get_int('DOCKGUARD_SELF_UPDATE_HEALTH_TIMEOUT_MS', 120000)
    SELF_UPDATE_POLL_INTERVAL_MS = _get_int('DOCKGUARD_SELF_UPDATE_POLL_INTERVAL_MS', 1000)
    SELF_UPDATE_ACK_TIMEOUT_MS = _get_int('DOCKGUARD_SELF_UPDATE_ACK_TIMEOUT_MS', 3000)

    # Number of image backups kept per container name
    BACKUP_RETENTION_COUNT = _get_int('DOCKGUARD_BACKUP_RETENTION_COUNT', 3)

    # Health gate between starting the new container and removing the old one
    UPDATE_HEALTH_TIMEOUT_SECONDS = _get_int('DOCKGUARD_UPDATE_HEALTH_TIMEOUT_SECONDS', 120)
    IMAGE_PULL_TIMEOUT_SECONDS = _get_int('DOCKGUARD_IMAGE_PULL_TIMEOUT_SECONDS', 1800)

    # Event stream
    SSE_MAX_CONNECTIONS_PER_IP = _get_int('DOCKGUARD_SSE_MAX_CONNECTIONS_PER_IP', 10)
    SSE_HEARTBEAT_SECONDS = _get_int('DOCKGUARD_SSE_HEARTBEAT_SECONDS', 15)

    @classmethod
    def validate(cls):
        """Validate configuration"""
        if cls.PORT < 1 or cls.PORT > 65535:
            raise ValueError(f"Invalid port: {cls.PORT}")

        if not cls.SELF_IMAGE_NAME.strip():
            raise ValueError("DOCKGUARD_SELF_IMAGE_NAME must not be empty")

        if cls.SELF_UPDATE_POLL_INTERVAL_MS >= cls.SELF_UPDATE_START_TIMEOUT_MS:
            raise ValueError(
                "DOCKGUARD_SELF_UPDATE_POLL_INTERVAL_MS must be smaller than "
                "DOCKGUARD_SELF_UPDATE_START_TIMEOUT_MS"
            )

        return True
