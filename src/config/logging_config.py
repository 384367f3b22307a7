"""
Logging configuration with Grafana Loki integration.

Console logging is always on. When LOKI_ENABLED is set, records are also
queued and pushed to Loki in batches by a background thread, so request
handlers never wait on the log sink.
"""

import atexit
import json
import logging
import queue
import sys
import threading

import httpx

from src.config.config import Config

logger = logging.getLogger(__name__)


class LokiLogHandler(logging.Handler):
    """
    Log handler that ships records to Grafana Loki asynchronously.

    Records are formatted on the caller's thread and put on a bounded queue.
    A daemon worker drains the queue and posts batches with httpx. When the
    queue is full the record is dropped.
    """

    def __init__(
        self,
        loki_url: str,
        tags: dict[str, str],
        max_queue_size: int = 10000,
        batch_size: int = 100,
    ):
        super().__init__()
        self.loki_url = loki_url
        self.tags = tags
        self.batch_size = batch_size
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._shutdown = threading.Event()
        self._client = httpx.Client(
            timeout=httpx.Timeout(5.0, connect=2.0),
            limits=httpx.Limits(max_connections=4, max_keepalive_connections=2),
        )
        self._worker_thread = threading.Thread(target=self._worker, daemon=True)
        self._worker_thread.start()
        atexit.register(self.close)

    def _drain_batch(self, first: tuple[dict, list]) -> list[tuple[dict, list]]:
        batch = [first]
        while len(batch) < self.batch_size:
            try:
                batch.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return batch

    def _worker(self) -> None:
        while True:
            try:
                first = self._queue.get(timeout=0.5)
            except queue.Empty:
                if self._shutdown.is_set():
                    return
                continue

            batch = self._drain_batch(first)
            streams = [{"stream": labels, "values": [value]} for labels, value in batch]
            try:
                response = self._client.post(self.loki_url, json={"streams": streams})
                response.raise_for_status()
            except httpx.HTTPError as e:
                # Don't log through the logging system here, it would recurse
                sys.stderr.write(f"Loki push failed: {e}\n")
            finally:
                for _ in batch:
                    self._queue.task_done()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            labels = {**self.tags, "level": record.levelname, "logger": record.name}
            if record.exc_info and record.exc_info[0]:
                labels["error_type"] = record.exc_info[0].__name__
            value = [str(int(record.created * 1_000_000_000)), self.format(record)]
            self._queue.put_nowait((labels, value))
        except queue.Full:
            pass
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()
        if self._worker_thread.is_alive():
            self._worker_thread.join(timeout=5.0)
        self._client.close()
        super().close()


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Fields passed through ``extra={"context": {...}}`` are merged into the
    top-level object.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if isinstance(context, dict):
            log_data.update(context)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging() -> bool:
    """
    Configure application logging.

    Returns:
        bool: True if Loki integration was enabled, False otherwise
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)

    # Use simple format for console in development, JSON elsewhere
    if Config.IS_DEVELOPMENT or Config.IS_TESTING:
        console_formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
    else:
        console_formatter = StructuredFormatter()

    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    loki_enabled = False
    if Config.LOKI_ENABLED:
        try:
            loki_handler = LokiLogHandler(
                loki_url=Config.LOKI_PUSH_URL,
                tags={"app": Config.SERVICE_NAME, "environment": Config.APP_ENV},
            )
        except (httpx.HTTPError, RuntimeError) as e:
            logger.warning(f"⚠️  Failed to configure Loki logging: {e}")
        else:
            loki_handler.setLevel(logging.INFO)
            loki_handler.setFormatter(StructuredFormatter())
            root_logger.addHandler(loki_handler)
            logger.info(f"✅ Loki logging enabled: {Config.LOKI_PUSH_URL}")
            loki_enabled = True
    else:
        logger.info("⏭️  Loki logging disabled (LOKI_ENABLED=false)")

    # Set log levels for noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)

    return loki_enabled
