"""Structured JSON logging with trace context."""

import json
import logging
import sys

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource

from orchestrator.telemetry.tracing import SERVICE_NAME, SERVICE_VERSION


class JsonFormatter(logging.Formatter):
    """One JSON object per line, carrying the active trace and span ids when there are any."""

    def format(self, record: logging.LogRecord) -> str:
        ctx = trace.get_current_span().get_span_context()
        data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "trace_id": format(ctx.trace_id, "032x") if ctx.is_valid else "0",
            "span_id": format(ctx.span_id, "016x") if ctx.is_valid else "0",
            "service": SERVICE_NAME,
        }
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def _otlp_handler(otlp_endpoint: str, level: int) -> LoggingHandler:
    resource = Resource.create(
        {
            "service.name": SERVICE_NAME,
            "service.version": SERVICE_VERSION,
        }
    )

    log_provider = LoggerProvider(resource=resource)
    otlp_exporter = OTLPLogExporter(endpoint=otlp_endpoint, insecure=True)
    log_provider.add_log_record_processor(BatchLogRecordProcessor(otlp_exporter))

    return LoggingHandler(level=level, logger_provider=log_provider)


def setup_logging(level: str = "INFO", otlp_endpoint: str = "") -> logging.Logger:
    """Log JSON lines to stdout, and ship records over OTLP when an endpoint is set."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    if otlp_endpoint:
        root.addHandler(_otlp_handler(otlp_endpoint, numeric_level))
    root.setLevel(numeric_level)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    return logging.getLogger("orchestrator")
