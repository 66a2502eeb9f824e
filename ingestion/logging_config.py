"""
Knowledge Pipeline Logging Configuration

Stdlib logging with a JSON formatter, optional rotating files and a structlog
layer for the service facade. Pipeline code attaches tenant / entry / stage
context through `extra`, which the formatter lifts into top-level JSON keys.
"""

import json
import logging
import logging.handlers
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from ingestion.config import LOGGING_CONFIG

CONTEXT_FIELDS = ('tenant_id', 'knowledge_base_id', 'source_type', 'stage', 'operation', 'error_type')

PIPELINE_LOGGERS = (
    'ingestion.document_chunker',
    'ingestion.vector_embedder',
    'ingestion.knowledge_ingestor',
    'database.repositories',
    'database.vector_search',
    'rag.context_builder',
    'rag.response_generator',
    'rag.generation_client',
    'rag.rag_service',
)

NOISY_LOGGERS = ('sqlalchemy.engine', 'sqlalchemy.pool', 'aiohttp.access', 'httpx')

PLAIN_FORMAT = '[%(asctime)s] %(levelname)s in %(name)s: %(message)s'


def _context(**fields: Any) -> Dict[str, Any]:
    """Drop unset context fields so they never show up as nulls"""
    return {key: value for key, value in fields.items() if value is not None}


class PipelineFormatter(logging.Formatter):
    """One JSON object per record, with pipeline context lifted to the top level"""

    def __init__(self):
        super().__init__()
        self.hostname = os.getenv('HOSTNAME', 'localhost')
        self.pid = os.getpid()

    def format(self, record):
        entry: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'hostname': self.hostname,
            'process_id': self.pid,
        }
        entry.update({name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)})

        if hasattr(record, 'duration'):
            entry['duration_seconds'] = record.duration
        if hasattr(record, 'metrics'):
            entry['metrics'] = record.metrics

        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': self.formatException(record.exc_info),
            }
        if record.levelno <= logging.DEBUG:
            entry['source'] = f"{record.filename}:{record.lineno} in {record.funcName}"

        return json.dumps(entry, ensure_ascii=False, default=str)


class PipelineLoggerAdapter(logging.LoggerAdapter):
    """Merges bound context into each call's `extra`; per-call keys win"""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def _build_handlers(
    formatter: logging.Formatter,
    level: int,
    console: bool,
    logs_dir: Optional[Path],
    max_bytes: int,
    backup_count: int,
) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler(sys.stdout))

    if logs_dir is not None:
        logs_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            logs_dir / "knowledge_pipeline.log", maxBytes=max_bytes, backupCount=backup_count
        ))
        errors = logging.handlers.RotatingFileHandler(
            logs_dir / "knowledge_pipeline_errors.log", maxBytes=max_bytes, backupCount=backup_count
        )
        errors.setLevel(logging.ERROR)
        handlers.append(errors)

    for handler in handlers:
        if handler.level == logging.NOTSET:
            handler.setLevel(level)
        handler.setFormatter(formatter)
    return handlers


def setup_logging(
    log_level: Optional[str] = None,
    enable_file_logging: Optional[bool] = None,
    enable_console_logging: bool = True,
    enable_structured_logging: Optional[bool] = None,
    log_rotation_size: int = 10 * 1024 * 1024,
    log_retention_count: int = 5
) -> None:
    """
    Configure the root logger for the service.

    Unset arguments fall back to LOGGING_CONFIG (LOG_LEVEL, LOG_ENABLE_FILE,
    LOG_STRUCTURED, LOG_DIR).
    """
    log_level = log_level or LOGGING_CONFIG['level']
    if enable_file_logging is None:
        enable_file_logging = LOGGING_CONFIG['enable_file_logging']
    if enable_structured_logging is None:
        enable_structured_logging = LOGGING_CONFIG['enable_structured_logging']

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    formatter = PipelineFormatter() if enable_structured_logging else logging.Formatter(PLAIN_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()
    for handler in _build_handlers(
        formatter,
        numeric_level,
        console=enable_console_logging,
        logs_dir=Path(LOGGING_CONFIG['logs_dir']) if enable_file_logging else None,
        max_bytes=log_rotation_size,
        backup_count=log_retention_count,
    ):
        root_logger.addHandler(handler)

    configure_pipeline_loggers(numeric_level)
    if enable_structured_logging:
        setup_structured_logging()

    logging.getLogger(__name__).info(
        f"Pipeline logging configured: level={log_level}, file_logging={enable_file_logging}, "
        f"structured_logging={enable_structured_logging}"
    )


def configure_pipeline_loggers(log_level: int) -> None:
    for name in PIPELINE_LOGGERS:
        logging.getLogger(name).setLevel(log_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_pipeline_logger(
    name: str,
    tenant_id: Optional[str] = None,
    knowledge_base_id: Optional[str] = None,
    stage: Optional[str] = None
) -> PipelineLoggerAdapter:
    """Logger bound to a tenant, knowledge base entry and/or pipeline stage"""
    return PipelineLoggerAdapter(
        logging.getLogger(name),
        _context(tenant_id=tenant_id, knowledge_base_id=knowledge_base_id, stage=stage),
    )


class PipelineLogContext:
    """
    Logs the start and end of an operation with its duration.

    Failures are logged at ERROR with the exception type and re-raised.
    """

    def __init__(
        self,
        logger: logging.Logger,
        operation: str,
        tenant_id: Optional[str] = None,
        stage: Optional[str] = None,
        log_level: int = logging.INFO
    ):
        self.logger = logger
        self.operation = operation
        self.log_level = log_level
        self.extra = _context(operation=operation, tenant_id=tenant_id, stage=stage)
        self._started: Optional[float] = None
        self.duration = 0.0

    def __enter__(self):
        self._started = time.perf_counter()
        self.logger.log(self.log_level, f"Starting {self.operation}", extra=self.extra)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self._started
        extra = {**self.extra, 'duration': self.duration}

        if exc_type is None:
            self.logger.log(self.log_level, f"Completed {self.operation} in {self.duration:.2f}s", extra=extra)
            return False

        extra['error_type'] = exc_type.__name__
        self.logger.error(
            f"Failed {self.operation} after {self.duration:.2f}s: {exc_val}",
            extra=extra,
            exc_info=(exc_type, exc_val, exc_tb),
        )
        return False


def log_pipeline_metrics(
    logger: logging.Logger,
    metrics: Dict[str, Any],
    tenant_id: Optional[str] = None,
    stage: Optional[str] = None
) -> None:
    """Summary line for one pipeline stage; the dict is kept on the record as `metrics`"""
    logger.info(
        f"Pipeline Metrics: {json.dumps(metrics, default=str)}",
        extra={'metrics': metrics, **_context(tenant_id=tenant_id, stage=stage)},
    )


def setup_structured_logging() -> None:
    """Route structlog through the stdlib handlers configured above"""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
