import os
import sys
import socket
import logging
import threading
import requests
from collections import deque
from typing import Deque, Dict, Any, Optional
from cloudlibs.local.config import effective_settings as config


class LokiHandler(logging.Handler):
    """
    A logging handler that sends records to a Grafana Loki instance
    in batches using a background thread.

    Supervisor and worker processes are short-lived, so the buffer is
    always flushed on close.
    """
    def __init__(self, url: str, org_id: Optional[str] = None, job: str = "cloudlibs",
                 flush_interval: Optional[float] = None, batch_size: int = 200):
        """
        Initializes the Loki handler.

        :param url: The base URL of the Loki instance.
        :param org_id: The tenant ID for Loki (sent as 'X-Scope-OrgID').
        :param job: Value of the 'job' stream label.
        :param flush_interval: Seconds between periodic flushes.
        :param batch_size: Flush as soon as this many records are buffered.
        """
        super().__init__()
        self.url = f"{url.rstrip('/')}/loki/api/v1/push"
        self.org_id = org_id
        self.job = job
        self.log_buffer: Deque[Dict[str, Any]] = deque()
        self.buffer_lock = threading.Lock()
        self.flush_interval = flush_interval if flush_interval is not None else config.LOG_BUFFER_FLUSH_INTERVAL
        self.batch_size = batch_size
        self.hostname = os.getenv('HOSTNAME') or socket.gethostname()

        self.stop_event = threading.Event()
        self.flush_thread = threading.Thread(target=self._periodic_flush, daemon=True)
        self.flush_thread.name = "LokiFlushThread"
        self.flush_thread.start()

    def _periodic_flush(self) -> None:
        """Periodically flushes the log buffer. Runs in a background thread."""
        while not self.stop_event.wait(self.flush_interval):
            self.flush()
        self.flush()

    def emit(self, record: logging.LogRecord) -> None:
        """
        Formats a log record and adds it to the internal buffer.

        :param record: The log record to be processed.
        """
        try:
            log_entry = {
                "stream": {
                    "job": self.job,
                    "level": record.levelname.lower(),
                    "hostname": self.hostname,
                    "logger": record.name,
                    "pid": str(record.process),
                },
                "values": [
                    [str(int(record.created * 1e9)), self.format(record)]
                ]
            }
            with self.buffer_lock:
                self.log_buffer.append(log_entry)
                if len(self.log_buffer) >= self.batch_size:
                    self._flush_locked()
        except Exception as e:
            print(f"ERROR: LokiHandler failed to process a log record: {e}", file=sys.stderr)

    def _flush_locked(self) -> None:
        """
        Sends the buffered logs to Loki. Assumes the buffer lock is already held.
        """
        if not self.log_buffer:
            return

        logs_to_send = list(self.log_buffer)
        self.log_buffer.clear()

        # Release the lock before making a blocking network call
        self.buffer_lock.release()
        try:
            headers = {'Content-Type': 'application/json'}
            if self.org_id:
                headers['X-Scope-OrgID'] = self.org_id

            response = requests.post(self.url, json={"streams": logs_to_send}, headers=headers, timeout=5)
            # 204 No Content is the success status for Loki push
            if response.status_code != 204:
                print(f"ERROR: Loki returned non-204 status: {response.status_code} - {response.text}", file=sys.stderr)
        except requests.RequestException as e:
            print(f"CRITICAL: Failed to send {len(logs_to_send)} logs to Loki: {e}", file=sys.stderr)
        finally:
            self.buffer_lock.acquire()

    def flush(self) -> None:
        """Triggers a manual flush of the log buffer in a thread-safe manner."""
        with self.buffer_lock:
            self._flush_locked()

    def close(self) -> None:
        """Shuts down the handler, flushing the buffer and joining the flush thread."""
        self.stop_event.set()
        if self.flush_thread.is_alive():
            self.flush_thread.join(timeout=self.flush_interval + 2)
        super().close()
