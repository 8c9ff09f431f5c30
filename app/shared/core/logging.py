import sys
import structlog
import logging
from app.shared.core.config import get_settings

SENSITIVE_FIELDS = {
    "password", "token", "secret", "api_key",
    "access_key_id", "secret_access_key", "accessKeyId", "secretAccessKey",
    "client_secret", "clientSecret", "service_account_key", "serviceAccountKey",
    "credentials", "credentials_encrypted",
}


def credential_redactor(logger, method_name, event_dict):
    """
    Redact cloud credential material from log events.
    Adapters log request context freely, so secrets must be stripped before rendering.
    """
    for field in SENSITIVE_FIELDS:
        if field in event_dict:
            event_dict[field] = "[REDACTED]"

    for container in ["metadata", "payload", "details", "extra"]:
        if container in event_dict and isinstance(event_dict[container], dict):
            for field in SENSITIVE_FIELDS:
                if field in event_dict[container]:
                    event_dict[container] = {**event_dict[container], field: "[REDACTED]"}

    return event_dict


def setup_logging():
    settings = get_settings()

    # 1. Choose the renderer based on environment
    if settings.DEBUG:
        renderer = structlog.dev.ConsoleRenderer()
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        min_level = logging.INFO

    # 2. Processor pipeline
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        credential_redactor,
        renderer
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # 3. Route stdlib logging (botocore, azure, uvicorn) to stdout at the same level
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=min_level,
    )
