"""
Audit sinks for Field Vault.

Every field the codec touches produces an AuditEvent. Sinks receive them
through a fire-and-forget ``emit(event)``; delivery is best-effort and a
sink failure never fails the protect/unprotect call that produced it.

The SIEM sink reports to Boundary-SIEM style collectors over HTTP/JSON or
CEF (UDP/TCP) from a background worker thread.
"""

import os
import uuid
import json
import socket
import logging
import threading
import queue
import time
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from enum import Enum

import requests

from .errors import AuditError, FieldVaultError
from .models import AuditEvent


logger = logging.getLogger(__name__)


def emit_safely(sink: "AuditSink", event: AuditEvent) -> None:
    """Hand an event to a sink, logging instead of raising on failure."""
    try:
        sink.emit(event)
    except Exception as e:
        logger.warning(f"Audit emission for {event.action} on {event.field_path} failed: {e}")


class AuditSink:
    """Receives audit events. Implementations must not block for long."""

    def emit(self, event: AuditEvent) -> None:
        raise NotImplementedError

    def shutdown(self, timeout: float = 5.0) -> None:
        pass


class NullAuditSink(AuditSink):
    def emit(self, event):
        pass


class LoggingAuditSink(AuditSink):
    """Writes one log line per event to the ``field_vault.audit`` logger."""

    def __init__(self, logger_name: str = "field_vault.audit", level: int = logging.INFO):
        self._logger = logging.getLogger(logger_name)
        self._level = level

    def emit(self, event):
        self._logger.log(
            self._level,
            f"{event.action} {event.outcome} path={event.field_path} "
            f"class={event.sensitivity_class} caller={event.caller or 'unknown'} "
            f"key={event.key_ref}@{event.key_version}"
        )


class FanOutAuditSink(AuditSink):
    """Delivers each event to several sinks; one failing sink does not starve the rest."""

    def __init__(self, *sinks: AuditSink):
        self.sinks = list(sinks)

    def emit(self, event):
        for sink in self.sinks:
            emit_safely(sink, event)

    def shutdown(self, timeout: float = 5.0) -> None:
        for sink in self.sinks:
            sink.shutdown(timeout)


# ==================== SIEM ====================

class Protocol(Enum):
    """SIEM communication protocols."""
    HTTP_JSON = "http"
    CEF_UDP = "cef_udp"
    CEF_TCP = "cef_tcp"


@dataclass
class SIEMConfig:
    """Configuration for the SIEM audit sink.

    Attributes:
        endpoint: SIEM endpoint URL (for HTTP) or host:port (for CEF)
        api_key: API key for authentication (HTTP only)
        protocol: Communication protocol
        verify_ssl: Whether to verify SSL certificates
        timeout: Connection timeout in seconds
        retry_count: Number of attempts per event before it is dropped
        max_queue: Pending events kept before new ones are dropped
        async_reporting: Use background thread for reporting
        source_host: Hostname to report as event source
    """
    endpoint: str = ""
    api_key: str = ""
    protocol: Protocol = Protocol.HTTP_JSON
    verify_ssl: bool = True
    timeout: float = 5.0
    retry_count: int = 3
    max_queue: int = 10000
    async_reporting: bool = True
    source_host: str = field(default_factory=socket.gethostname)

    @classmethod
    def from_env(cls) -> "SIEMConfig":
        """Create config from FIELD_VAULT_SIEM_* environment variables."""
        return cls(
            endpoint=os.environ.get("FIELD_VAULT_SIEM_ENDPOINT", "http://localhost:8080/v1/events"),
            api_key=os.environ.get("FIELD_VAULT_SIEM_API_KEY", ""),
            protocol=Protocol(os.environ.get("FIELD_VAULT_SIEM_PROTOCOL", "http")),
            verify_ssl=os.environ.get("FIELD_VAULT_SIEM_VERIFY_SSL", "true").lower() == "true",
            timeout=float(os.environ.get("FIELD_VAULT_SIEM_TIMEOUT", "5.0")),
            retry_count=int(os.environ.get("FIELD_VAULT_SIEM_RETRY_COUNT", "3")),
            max_queue=int(os.environ.get("FIELD_VAULT_SIEM_MAX_QUEUE", "10000")),
            async_reporting=os.environ.get("FIELD_VAULT_SIEM_ASYNC", "true").lower() == "true",
            source_host=os.environ.get("FIELD_VAULT_SIEM_SOURCE_HOST", socket.gethostname()),
        )


class SIEMAuditSink(AuditSink):
    """Reports audit events and errors to a SIEM.

    ``emit`` only enqueues; a daemon worker transmits with retries and
    exponential backoff. When the queue is full the event is dropped and a
    warning logged, so a slow collector can never stall the codec.
    """

    def __init__(self, config: Optional[SIEMConfig] = None):
        self.config = config or SIEMConfig.from_env()
        self._queue: queue.Queue = queue.Queue(maxsize=self.config.max_queue)
        self._worker_thread: Optional[threading.Thread] = None
        self._shutdown = threading.Event()
        self.dropped = 0

        if self.config.async_reporting:
            self._start_worker()

    def _start_worker(self) -> None:
        self._worker_thread = threading.Thread(
            target=self._worker_loop,
            name="field-vault-siem",
            daemon=True
        )
        self._worker_thread.start()
        logger.debug("SIEM audit worker thread started")

    def _worker_loop(self) -> None:
        """Drain the queue until shutdown is requested and nothing is pending."""
        while not (self._shutdown.is_set() and self._queue.empty()):
            try:
                payload = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self._transmit(payload)
            except Exception as e:
                logger.error(f"SIEM audit worker error: {e}")
            finally:
                self._queue.task_done()

    def emit(self, event: AuditEvent) -> None:
        from . import __version__

        self._submit(event.to_siem_event(self.config.source_host, __version__))

    def report_exception(self, exc: FieldVaultError) -> None:
        """Report a FieldVaultError as a SIEM event."""
        payload = exc.to_siem_event(source_host=self.config.source_host)
        payload["event_id"] = _event_id()
        self._submit(payload)

    def _submit(self, payload: Dict[str, Any]) -> None:
        if not self.config.async_reporting:
            try:
                self._transmit(payload)
            except AuditError as e:
                logger.error(f"SIEM audit delivery failed: {e}")
            return
        if self._shutdown.is_set():
            logger.warning("SIEM audit sink is shut down, dropping event")
            self.dropped += 1
            return
        try:
            self._queue.put_nowait(payload)
        except queue.Full:
            self.dropped += 1
            logger.warning(f"SIEM audit queue full, dropped event {payload.get('event_id')}")

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop accepting events and wait up to ``timeout`` for pending ones."""
        self._shutdown.set()
        if self._worker_thread and self._worker_thread.is_alive():
            self._worker_thread.join(timeout=timeout)

    def _transmit(self, payload: Dict[str, Any]) -> None:
        protocol = self.config.protocol
        attempts = max(1, self.config.retry_count)

        for attempt in range(attempts):
            try:
                if protocol == Protocol.HTTP_JSON:
                    self._send_http(payload)
                elif protocol == Protocol.CEF_UDP:
                    self._send_cef_udp(payload)
                else:
                    self._send_cef_tcp(payload)
                return
            except (requests.exceptions.RequestException, OSError) as e:
                logger.warning(
                    f"SIEM transmission attempt {attempt + 1}/{attempts} failed: {e}"
                )
                if attempt < attempts - 1:
                    time.sleep(2 ** attempt)

        raise AuditError(
            f"SIEM transmission failed after {attempts} attempts",
            metadata={"event_id": payload.get("event_id")},
        )

    def _send_http(self, payload: Dict[str, Any]) -> None:
        from . import __version__

        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"field-vault/{__version__}",
        }
        if self.config.api_key:
            headers["X-API-Key"] = self.config.api_key
        response = requests.post(
            self.config.endpoint,
            data=json.dumps(payload),
            headers=headers,
            timeout=self.config.timeout,
            verify=self.config.verify_ssl,
        )
        response.raise_for_status()

    def _send_cef_udp(self, payload: Dict[str, Any]) -> None:
        host, port = _parse_host_port(self.config.endpoint, default_port=514)
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.settimeout(self.config.timeout)
            sock.sendto(format_cef(payload).encode("utf-8"), (host, port))

    def _send_cef_tcp(self, payload: Dict[str, Any]) -> None:
        host, port = _parse_host_port(self.config.endpoint, default_port=514)
        with socket.create_connection((host, port), timeout=self.config.timeout) as sock:
            sock.sendall((format_cef(payload) + "\n").encode("utf-8"))


def _event_id() -> str:
    return str(uuid.uuid4())


def _parse_host_port(endpoint: str, default_port: int) -> tuple:
    if ":" in endpoint:
        host, port = endpoint.rsplit(":", 1)
        return host, int(port)
    return endpoint, default_port


def _cef_escape(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace("=", "\\=").replace("\n", " ")


def format_cef(event: Dict[str, Any]) -> str:
    """Format an event as CEF (Common Event Format).

    Format: CEF:Version|Device Vendor|Device Product|Device Version|
            Signature ID|Name|Severity|Extension
    """
    cef_severity = min(10, max(0, int(event.get("severity", 5))))
    extensions: List[str] = [
        f"rt={_cef_escape(event.get('timestamp', ''))}",
        f"act={_cef_escape(event.get('action', 'unknown'))}",
        f"outcome={_cef_escape(event.get('outcome', 'unknown'))}",
    ]

    actor = event.get("actor") or {}
    if actor.get("id"):
        extensions.append(f"suid={_cef_escape(actor['id'])}")

    target = event.get("target") or {}
    if target.get("id"):
        extensions.append(f"cs1={_cef_escape(target['id'])}")
        extensions.append("cs1Label=fieldPath")

    metadata = event.get("metadata") or {}
    if metadata.get("sensitivity_class"):
        extensions.append(f"cs2={_cef_escape(metadata['sensitivity_class'])}")
        extensions.append("cs2Label=sensitivityClass")

    extensions.append(f"externalId={_cef_escape(event.get('event_id', ''))}")
    source = event.get("source") or {}
    extensions.append(f"dvchost={_cef_escape(source.get('host', 'unknown'))}")

    version = source.get("version", "")
    action = str(event.get("action", "unknown")).replace("|", "\\|")
    return (
        f"CEF:0|FieldVault|field-vault|{version}|"
        f"{action}|Field Vault Event|{cef_severity}|{' '.join(extensions)}"
    )
