import json
import logging
import logging.handlers
import re
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Context variables for correlation
playlist_id_var: ContextVar[Optional[str]] = ContextVar('playlist_id', default=None)
mutation_id_var: ContextVar[Optional[str]] = ContextVar('mutation_id', default=None)
stage_var: ContextVar[Optional[str]] = ContextVar('stage', default=None)
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)

_CORRELATION_VARS = {
    'playlist_id': (playlist_id_var, 'playlistId'),
    'mutation_id': (mutation_id_var, 'mutationId'),
    'stage': (stage_var, 'stage'),
    'request_id': (request_id_var, 'requestId'),
}

ROOT_LOGGER = 'playlist_studio'


class SecretMasker:
    """Masks sensitive information in log messages."""

    def __init__(self):
        self.patterns = [
            # API tokens and keys
            r'(?i)(token|api_key|key|secret|password|auth)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{10,})["\']?',
            # Spotify access/refresh tokens
            r'(?i)(spotify_access_token|access_token|refresh_token)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # Client secrets
            r'(?i)(client_secret)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # Authorization headers
            r'(?i)(authorization|bearer)[\s]*[:=]?[\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # OAuth codes
            r'(?i)(code|authorization_code)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
        ]
        self.compiled_patterns = [re.compile(pattern) for pattern in self.patterns]
        self.sensitive_keys = {'token', 'access_token', 'refresh_token', 'api_key',
                               'client_secret', 'authorization', 'password', 'code'}

    @staticmethod
    def _mask_value(secret: str) -> str:
        # Keep first 4 and last 4 characters, mask the rest
        if len(secret) > 8:
            return secret[:4] + '*' * (len(secret) - 8) + secret[-4:]
        return '*' * len(secret)

    def mask_secrets(self, text: str) -> str:
        """Mask sensitive information in text."""
        if not text:
            return text

        masked_text = text
        for pattern in self.compiled_patterns:
            masked_text = pattern.sub(
                lambda m: f"{m.group(1)}: {self._mask_value(m.group(2))}", masked_text
            )
        return masked_text

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Mask sensitive information in dictionary."""
        if not data:
            return data

        masked_data = {}
        for key, value in data.items():
            if isinstance(value, str) and key.lower() in self.sensitive_keys:
                masked_data[key] = self._mask_value(value)
            elif isinstance(value, str):
                masked_data[key] = self.mask_secrets(value)
            elif isinstance(value, dict):
                masked_data[key] = self.mask_dict(value)
            elif isinstance(value, list):
                masked_data[key] = [self.mask_dict(item) if isinstance(item, dict)
                                    else self.mask_secrets(item) if isinstance(item, str)
                                    else item for item in value]
            else:
                masked_data[key] = value
        return masked_data


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self):
        super().__init__()
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            'ts': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': self.mask_secrets(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        # Add correlation fields if available
        for var, json_key in _CORRELATION_VARS.values():
            value = var.get()
            if value:
                log_entry[json_key] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        fields = getattr(record, 'fields', None)
        if fields:
            log_entry['fields'] = self.masker.mask_dict(fields)

        return json.dumps(log_entry, ensure_ascii=False, default=str)

    def mask_secrets(self, text: str) -> str:
        return self.masker.mask_secrets(text)


class MaskingConsoleFormatter(logging.Formatter):
    """Human-readable formatter that still masks secrets."""

    def __init__(self, fmt: str = '%(asctime)s %(levelname)-7s %(name)s: %(message)s'):
        super().__init__(fmt)
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        return self.masker.mask_secrets(super().format(record))


class CorrelationContext:
    """Context manager for correlation data."""

    def __init__(self, playlist_id: Optional[str] = None,
                 mutation_id: Optional[str] = None,
                 stage: Optional[str] = None,
                 request_id: Optional[str] = None):
        self.values = {
            'playlist_id': playlist_id,
            'mutation_id': mutation_id,
            'stage': stage,
            'request_id': request_id,
        }
        self._tokens = []

    def __enter__(self):
        for name, value in self.values.items():
            if value is not None:
                var = _CORRELATION_VARS[name][0]
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


def setup_logging(level: str = 'INFO',
                  log_file: Optional[str] = None,
                  json_logs: bool = True,
                  max_bytes: int = 5 * 1024 * 1024,
                  backup_count: int = 3) -> logging.Logger:
    """Configure the package logger with a console handler and an optional rotating file."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers.clear()

    console_formatter = StructuredFormatter() if json_logs else MaskingConsoleFormatter()
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
        )
        # Files are always JSON so they can be grepped by mutationId
        file_handler.setFormatter(StructuredFormatter())
        logger.addHandler(file_handler)

    return logger


def log_with_fields(logger: logging.Logger, level: str, message: str,
                    fields: Optional[Dict[str, Any]] = None,
                    exc_info: Any = False, **kwargs):
    """Log message with additional structured fields."""
    merged = dict(fields or {})
    merged.update(kwargs)
    logger.log(getattr(logging, level.upper()), message,
               extra={'fields': merged} if merged else None, exc_info=exc_info)


def log_mutation_started(logger: logging.Logger, mutation_id: str, playlist_id: str,
                         kind: str, **kwargs):
    with CorrelationContext(playlist_id=playlist_id, mutation_id=mutation_id, stage='optimistic'):
        log_with_fields(logger, 'INFO', f'{kind.capitalize()} mutation started', {'kind': kind, **kwargs})


def log_mutation_finished(logger: logging.Logger, mutation_id: str, playlist_id: str,
                          kind: str, state: str, **kwargs):
    level = 'INFO' if state == 'confirmed' else 'WARNING'
    with CorrelationContext(playlist_id=playlist_id, mutation_id=mutation_id, stage=state):
        log_with_fields(logger, level, f'{kind.capitalize()} mutation {state}',
                        {'kind': kind, 'state': state, **kwargs})


def log_error(logger: logging.Logger, message: str, error: BaseException, **kwargs):
    """Log error with exception details."""
    log_with_fields(logger, 'ERROR', message, {
        'error_type': type(error).__name__,
        'error_message': str(error),
        **kwargs
    }, exc_info=error)
