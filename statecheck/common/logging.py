"""Structured JSON logging with run/path/state context fields."""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from statecheck.common.config import settings


run_id_ctx: ContextVar[str] = ContextVar("run_id", default="")
path_id_ctx: ContextVar[str] = ContextVar("path_id", default="")
state_name_ctx: ContextVar[str] = ContextVar("state_name", default="")


class ContextFilter(logging.Filter):
    """Inject service and traversal identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.run_id = run_id_ctx.get()
        record.path_id = path_id_ctx.get()
        record.state_name = state_name_ctx.get()
        return True


def configure_logging() -> None:
    """Configure root logger once per harness process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(run_id)s %(path_id)s %(state_name)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)


logger = logging.getLogger("statecheck")
