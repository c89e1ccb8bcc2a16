"""Side channel between the orchestrator and the dashboard.

Philosophy:
- Never fatal: a dashboard that is absent, slow or gone does not touch the run
- Bounded: every client has a fixed-size outbound buffer, oldest events dropped
- Live only: a client receives events published while it is connected

Wire format (one message per line, UTF-8 JSON):
    {"v": 1, "type": "TargetStateChanged", "payload": {...}}

Orchestrator -> dashboard: TargetStateChanged, SummaryReady, ControlAck
Dashboard -> orchestrator: RedeployHost {address}, ScaleRequest {count}

Public API (the "studs"):
    NotifierServer: Orchestrator-side listener and event publisher
    DashboardClient: Dashboard-side client (subscribe, send control)
    Message, encode_message, decode_message, ProtocolError
"""

import json
import logging
import socket
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from maestro.models import DeploymentSummary, TargetStateChanged

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1
MAX_LINE_BYTES = 1024 * 1024
ACCEPT_POLL_SECONDS = 0.5

TARGET_STATE_CHANGED = "TargetStateChanged"
SUMMARY_READY = "SummaryReady"
CONTROL_ACK = "ControlAck"
REDEPLOY_HOST = "RedeployHost"
SCALE_REQUEST = "ScaleRequest"

CONTROL_TYPES = (REDEPLOY_HOST, SCALE_REQUEST)


class ProtocolError(Exception):
    """Raised when a side-channel message cannot be decoded."""

    pass


@dataclass
class Message:
    """One side-channel message."""

    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    version: int = PROTOCOL_VERSION


def encode_message(message_type: str, payload: dict[str, Any] | None = None) -> bytes:
    """Encode a message as one newline-terminated JSON line."""
    data = {"v": PROTOCOL_VERSION, "type": message_type, "payload": payload or {}}
    return (json.dumps(data, separators=(",", ":")) + "\n").encode("utf-8")


def decode_message(line: bytes | str) -> Message:
    """Decode one line into a Message.

    Newer protocol versions are accepted; unknown fields are ignored.

    Raises:
        ProtocolError: If the line is not a versioned message object
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")

    version = data.get("v")
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        raise ProtocolError(f"Missing or invalid protocol version: {version!r}")

    message_type = data.get("type")
    if not isinstance(message_type, str) or not message_type:
        raise ProtocolError("Missing message type")

    payload = data.get("payload", {})
    if not isinstance(payload, dict):
        raise ProtocolError("Payload must be a JSON object")

    if version > PROTOCOL_VERSION:
        logger.debug(f"Peer speaks protocol v{version}, reading as v{PROTOCOL_VERSION}")

    _validate_control(message_type, payload)
    return Message(type=message_type, payload=payload, version=version)


def _validate_control(message_type: str, payload: dict[str, Any]) -> None:
    if message_type == REDEPLOY_HOST:
        address = payload.get("address")
        if not isinstance(address, str) or not address:
            raise ProtocolError("RedeployHost requires a non-empty address")
    elif message_type == SCALE_REQUEST:
        count = payload.get("count")
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            raise ProtocolError("ScaleRequest requires a non-negative integer count")


class _LineReader:
    """Split a socket byte stream into lines."""

    def __init__(self, sock: socket.socket):
        self._sock = sock
        self._buffer = bytearray()

    def readline(self) -> bytes | None:
        """Return the next line without its newline, or None at EOF.

        Raises:
            socket.timeout: If the socket timeout expires first
            ProtocolError: If a line exceeds MAX_LINE_BYTES
        """
        while True:
            newline = self._buffer.find(b"\n")
            if newline >= 0:
                line = bytes(self._buffer[:newline])
                del self._buffer[: newline + 1]
                return line
            if len(self._buffer) > MAX_LINE_BYTES:
                raise ProtocolError("Message exceeds maximum size")
            chunk = self._sock.recv(65536)
            if not chunk:
                return None
            self._buffer.extend(chunk)


class _ClientSession:
    """One connected dashboard: a reader thread and a buffered writer thread."""

    def __init__(self, server: "NotifierServer", sock: socket.socket, peer: Any, buffer_size: int):
        self.server = server
        self.sock = sock
        self.peer = peer
        self.queue: deque[bytes] = deque(maxlen=buffer_size)
        self.dropped = 0
        self._cond = threading.Condition()
        self._closed = False
        self._reader = threading.Thread(target=self._read_loop, daemon=True)
        self._writer = threading.Thread(target=self._write_loop, daemon=True)

    def start(self) -> None:
        self._reader.start()
        self._writer.start()

    def enqueue(self, data: bytes) -> None:
        with self._cond:
            if self._closed:
                return
            if len(self.queue) == self.queue.maxlen:
                self.dropped += 1
            self.queue.append(data)
            self._cond.notify()

    def _write_loop(self) -> None:
        while True:
            with self._cond:
                while not self.queue and not self._closed:
                    self._cond.wait()
                if self._closed:
                    return
                data = self.queue.popleft()
            try:
                self.sock.sendall(data)
            except OSError as e:
                logger.info(f"Dashboard {self.peer} disconnected: {e}")
                self.close()
                return

    def _read_loop(self) -> None:
        reader = _LineReader(self.sock)
        try:
            while not self._closed:
                line = reader.readline()
                if line is None:
                    break
                if not line.strip():
                    continue
                try:
                    message = decode_message(line)
                except ProtocolError as e:
                    logger.warning(f"Ignoring malformed message from {self.peer}: {e}")
                    continue
                self.server.dispatch(message, self)
        except (OSError, ProtocolError) as e:
            if not self._closed:
                logger.debug(f"Read from {self.peer} failed: {e}")
        finally:
            self.close()

    def close(self) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()
        self.server._forget(self)


class NotifierServer:
    """
    Orchestrator side of the side channel.

    Example:
        >>> server = NotifierServer(port=3010)
        >>> server.on_control("RedeployHost", lambda payload: redeploy(payload["address"]))
        >>> server.start()
        >>> server.publish_state_change(event)
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 3010, buffer_size: int = 256):
        if buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        self.host = host
        self.port = port
        self.buffer_size = buffer_size
        self._listener: socket.socket | None = None
        self._accept_thread: threading.Thread | None = None
        self._clients: list[_ClientSession] = []
        self._handlers: dict[str, Callable[[dict[str, Any]], Any]] = {}
        self._lock = threading.Lock()
        self._stopped = threading.Event()

    @property
    def running(self) -> bool:
        return self._listener is not None and not self._stopped.is_set()

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def on_control(self, message_type: str, handler: Callable[[dict[str, Any]], Any]) -> None:
        """Register the handler for an inbound control message type."""
        self._handlers[message_type] = handler

    def start(self) -> bool:
        """Start listening. Returns False (and logs) if the port cannot be bound."""
        try:
            listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind((self.host, self.port))
            listener.listen()
            listener.settimeout(ACCEPT_POLL_SECONDS)
        except OSError as e:
            logger.error(f"Side channel unavailable on {self.host}:{self.port}: {e}")
            return False

        self._listener = listener
        self.port = listener.getsockname()[1]
        self._stopped.clear()
        self._accept_thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._accept_thread.start()
        logger.info(f"Side channel listening on {self.host}:{self.port}")
        return True

    def _accept_loop(self) -> None:
        while not self._stopped.is_set():
            try:
                sock, peer = self._listener.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if not self._stopped.is_set():
                    logger.warning(f"Side channel accept failed: {e}")
                break

            sock.settimeout(None)
            session = _ClientSession(self, sock, peer, self.buffer_size)
            with self._lock:
                self._clients.append(session)
            session.start()
            logger.info(f"Dashboard connected from {peer[0]}:{peer[1]}")

    def _forget(self, session: _ClientSession) -> None:
        with self._lock:
            if session in self._clients:
                self._clients.remove(session)

    def publish(self, message_type: str, payload: dict[str, Any] | None = None) -> int:
        """Queue an event for every connected client. Returns the number of recipients."""
        data = encode_message(message_type, payload)
        with self._lock:
            clients = list(self._clients)
        for client in clients:
            client.enqueue(data)
        return len(clients)

    def publish_state_change(self, event: TargetStateChanged) -> None:
        self.publish(TARGET_STATE_CHANGED, event.to_dict())

    def publish_summary(self, summary: DeploymentSummary) -> None:
        self.publish(SUMMARY_READY, summary.to_dict())

    def dispatch(self, message: Message, session: _ClientSession | None = None) -> None:
        """Run the handler for an inbound control message and acknowledge it."""
        if message.type not in CONTROL_TYPES:
            logger.debug(f"Ignoring unknown message type {message.type}")
            return

        handler = self._handlers.get(message.type)
        if handler is None:
            accepted, reason = False, f"{message.type} is not supported"
        else:
            try:
                result = handler(message.payload)
                accepted, reason = result if isinstance(result, tuple) else (True, None)
            except Exception as e:
                logger.error(f"Control handler for {message.type} failed: {e}")
                accepted, reason = False, str(e)

        ack = encode_message(
            CONTROL_ACK,
            {**message.payload, "type": message.type, "accepted": accepted, "reason": reason},
        )
        if session is not None:
            session.enqueue(ack)

    def stop(self) -> None:
        """Stop listening and disconnect every client."""
        self._stopped.set()
        if self._listener is not None:
            self._listener.close()
        if self._accept_thread is not None:
            self._accept_thread.join(timeout=2)
        with self._lock:
            clients = list(self._clients)
        for client in clients:
            client.close()


class DashboardClient:
    """
    Dashboard side of the side channel.

    Example:
        >>> with DashboardClient(port=3010) as client:
        ...     client.redeploy_host("10.0.0.5")
        ...     message = client.receive(timeout=5)
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 3010):
        self.host = host
        self.port = port
        self._sock: socket.socket | None = None
        self._reader: _LineReader | None = None

    def connect(self, timeout: float = 5.0) -> "DashboardClient":
        self._sock = socket.create_connection((self.host, self.port), timeout=timeout)
        self._reader = _LineReader(self._sock)
        return self

    def send(self, message_type: str, payload: dict[str, Any] | None = None) -> None:
        if self._sock is None:
            raise ConnectionError("Dashboard client is not connected")
        self._sock.sendall(encode_message(message_type, payload))

    def redeploy_host(self, address: str) -> None:
        self.send(REDEPLOY_HOST, {"address": address})

    def request_scale(self, count: int) -> None:
        self.send(SCALE_REQUEST, {"count": count})

    def receive(self, timeout: float | None = 5.0) -> Message | None:
        """Return the next message, or None if the orchestrator closed the channel.

        Raises:
            socket.timeout: If nothing arrives within timeout
        """
        if self._sock is None or self._reader is None:
            raise ConnectionError("Dashboard client is not connected")
        self._sock.settimeout(timeout)
        while True:
            line = self._reader.readline()
            if line is None:
                return None
            if line.strip():
                return decode_message(line)

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None
            self._reader = None

    def __enter__(self) -> "DashboardClient":
        if self._sock is None:
            self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = [
    "CONTROL_ACK",
    "PROTOCOL_VERSION",
    "REDEPLOY_HOST",
    "SCALE_REQUEST",
    "SUMMARY_READY",
    "TARGET_STATE_CHANGED",
    "DashboardClient",
    "Message",
    "NotifierServer",
    "ProtocolError",
    "decode_message",
    "encode_message",
]
