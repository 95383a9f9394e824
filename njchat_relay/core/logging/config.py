"""
Logging configuration for the NJ-Chat relay.

One named logger writes to the console, logs/app.log and, at LOG_LEVEL=DEBUG,
logs/debug.log. Relay context passed as structured fields (session, chat,
provider...) is appended to every line so a single turn can be followed with
grep.
"""

import json
import logging
import os
import re


LOGGER_NAME = "njchat-relay"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Structured fields rendered as "[key=value ...]" after the message, in this order
CONTEXT_FIELDS = (
    "request_id",
    "session_id",
    "user_id",
    "chat_id",
    "message_id",
    "provider_name",
    "model_id",
    "error_code",
)

_UNICODE_ESCAPE = re.compile(r'\\u([0-9a-fA-F]{4})')


def decode_unicode_escapes(text: str) -> str:
    """
    Provider error bodies often arrive JSON-escaped ({"error": "\\u041e..."});
    turn them back into readable characters.
    """
    if not text or '\\u' not in text:
        return text

    stripped = text.strip()
    if stripped.startswith('{') and stripped.endswith('}'):
        try:
            decoded = json.loads(stripped)
        except ValueError:
            decoded = None
        if isinstance(decoded, dict):
            return json.dumps(decoded, ensure_ascii=False)

    def replace(match):
        return chr(int(match.group(1), 16))

    return _UNICODE_ESCAPE.sub(replace, text)


class RelayLogFormatter(logging.Formatter):
    """Plain text formatter with relay context and readable Unicode."""

    def format(self, record):
        formatted = super().format(record)

        context = [
            f"{name}={getattr(record, name)}"
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) not in (None, "", "-")
        ]
        if context:
            first_line, sep, rest = formatted.partition("\n")
            formatted = f"{first_line} [{' '.join(context)}]{sep}{rest}"

        return decode_unicode_escapes(formatted)


def _handler(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging():
    """
    Единая настройка логирования для всего проекта.

    Safe to call again: previous handlers are closed and replaced.

    Returns:
        logging.Logger: Configured logger instance
    """
    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    if not isinstance(getattr(logging, level_name, None), int):
        level_name = "INFO"
    debug = level_name == "DEBUG"

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level_name))
    logger.propagate = False

    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)

    log_dir = os.environ.get("LOG_DIR", "logs")
    os.makedirs(log_dir, exist_ok=True)
    formatter = RelayLogFormatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    logger.addHandler(_handler(
        logging.FileHandler(os.path.join(log_dir, "app.log"), encoding="utf-8"),
        logging.INFO, formatter
    ))
    if debug:
        logger.addHandler(_handler(
            logging.FileHandler(os.path.join(log_dir, "debug.log"), encoding="utf-8"),
            logging.DEBUG, formatter
        ))
    logger.addHandler(_handler(
        logging.StreamHandler(),
        logging.DEBUG if debug else logging.INFO, formatter
    ))

    return logger
