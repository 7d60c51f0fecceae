"""session.py — A live websocket attachment to a running container's shell.

``ExecutionSession`` owns one connection to the Docker ``attach/ws``
endpoint of a single container.  A background reader thread drains the
stream into an unbounded queue of text lines, in exactly the order they
arrived; the calling thread sends commands and pulls lines off the queue.

Lifecycle::

    UNATTACHED --attach()--> ATTACHED --close() / stream ends--> CLOSED
"""

import queue
import threading
from collections.abc import Callable
from enum import Enum
from urllib.parse import urlsplit

from rich.markup import escape
from websockets.exceptions import ConnectionClosed, InvalidURI, WebSocketException
from websockets.sync.client import ClientConnection, connect, unix_connect

from steprunner.config import _console, is_verbose

ATTACH_QUERY = "stdin=1&stderr=1&stdout=1&stream=1"

# Seconds allowed for the websocket handshake.
_OPEN_TIMEOUT = 30


class SessionError(RuntimeError):
    """Raised for transport problems: attach failures or use in the wrong state."""


class SessionClosed(SessionError):
    """Raised when the stream has ended and no more lines can be exchanged."""


class ReceiveTimeout(SessionError):
    """Raised when no line arrived within the requested timeout."""


class SessionState(Enum):
    UNATTACHED = "unattached"
    ATTACHED = "attached"
    CLOSED = "closed"


# Marks the end of the stream in the line queue.
_EOF = object()


def attach_url(docker_host: str, container_id: str) -> str:
    """Build the websocket attach URL for *container_id* on *docker_host*.

    ``tcp://`` and ``http://`` hosts map to ``ws://``, ``https://`` to
    ``wss://``.  Unix-socket hosts get a ``ws://localhost`` URL; the socket
    path is used separately when connecting.
    """
    parts = urlsplit(docker_host)
    scheme = parts.scheme or "tcp"
    if scheme == "unix":
        base = "ws://localhost"
    elif scheme in ("tcp", "http"):
        base = f"ws://{parts.netloc}{parts.path.rstrip('/')}"
    elif scheme == "https":
        base = f"wss://{parts.netloc}{parts.path.rstrip('/')}"
    elif scheme in ("ws", "wss"):
        base = docker_host.rstrip("/")
    else:
        raise SessionError(f"Unsupported docker host scheme: {docker_host}")
    return f"{base}/containers/{container_id}/attach/ws?{ATTACH_QUERY}"


def _open_connection(docker_host: str, url: str) -> ClientConnection:
    """Open the websocket, over the Docker unix socket when the host is one."""
    parts = urlsplit(docker_host)
    if parts.scheme == "unix":
        return unix_connect(parts.path, url, open_timeout=_OPEN_TIMEOUT)
    return connect(url, open_timeout=_OPEN_TIMEOUT)


class ExecutionSession:
    """One attachment to one container's combined stdin/stdout/stderr.

    Args:
        docker_host:  Docker API endpoint (``unix://``, ``tcp://``, ``https://``).
        container_id: ID of an already-running container.
        connector:    Zero-argument callable returning an open connection
                      (anything with ``send``/``recv``/``close``).  Defaults
                      to a real websocket connection.
    """

    def __init__(
        self,
        docker_host: str,
        container_id: str,
        *,
        connector: Callable[[], object] | None = None,
    ) -> None:
        self.url = attach_url(docker_host, container_id)
        self.container_id = container_id
        self._connector = connector or (lambda: _open_connection(docker_host, self.url))
        self._conn = None
        self._lines: queue.Queue = queue.Queue()
        self._partial = ""
        self._reader: threading.Thread | None = None
        self._lock = threading.Lock()
        self._state = SessionState.UNATTACHED
        self.error: BaseException | None = None

    # ── State ────────────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_attached(self) -> bool:
        return self._state is SessionState.ATTACHED

    def __enter__(self) -> "ExecutionSession":
        if self._state is SessionState.UNATTACHED:
            self.attach()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ── Attach ───────────────────────────────────────────────────────────────

    def attach(self) -> "ExecutionSession":
        """Open the stream and start the background reader."""
        with self._lock:
            if self._state is not SessionState.UNATTACHED:
                raise SessionError(f"Cannot attach a session that is {self._state.value}")
            try:
                self._conn = self._connector()
            except (InvalidURI, WebSocketException, OSError) as exc:
                self._state = SessionState.CLOSED
                self.error = exc
                # No reader will ever end the stream.
                self._lines.put(_EOF)
                raise SessionError(f"Could not attach to {self.container_id}: {exc}") from exc
            self._state = SessionState.ATTACHED

        self._reader = threading.Thread(
            target=self._read_loop, name=f"attach-{self.container_id[:12]}", daemon=True
        )
        self._reader.start()
        return self

    def _read_loop(self) -> None:
        """Drain the connection into the line queue until the stream ends."""
        try:
            while True:
                message = self._conn.recv()
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                self._feed(message)
        except ConnectionClosed as exc:
            if self._state is SessionState.ATTACHED:
                self.error = exc
        except (WebSocketException, OSError) as exc:
            self.error = exc
        finally:
            if self._partial:
                self._lines.put(self._partial)
                self._partial = ""
            with self._lock:
                self._state = SessionState.CLOSED
            self._lines.put(_EOF)

    def _feed(self, data: str) -> None:
        """Split *data* into lines, holding back a trailing partial line."""
        self._partial += data
        *lines, self._partial = self._partial.split("\n")
        for line in lines:
            line = line.rstrip("\r")
            if is_verbose():
                _console.print(f"[dim]recv:[/] {escape(line)}")
            self._lines.put(line)

    # ── Send / receive ───────────────────────────────────────────────────────

    def _check_usable(self) -> None:
        if self._state is SessionState.UNATTACHED:
            raise SessionError("Session is not attached")
        if self._state is SessionState.CLOSED:
            raise SessionClosed(self._closed_reason())

    def _closed_reason(self) -> str:
        if self.error is not None:
            return f"Session to {self.container_id} closed: {self.error}"
        return f"Session to {self.container_id} closed"

    def send(self, *commands: str) -> None:
        """Write each command as its own newline-terminated message, in order."""
        self._check_usable()
        for command in commands:
            if is_verbose():
                _console.print(f"[dim]send:[/] {escape(command)}")
            try:
                self._conn.send(command + "\n")
            except (ConnectionClosed, WebSocketException, OSError) as exc:
                with self._lock:
                    self.error = exc
                    self._state = SessionState.CLOSED
                raise SessionClosed(self._closed_reason()) from exc

    def recv(self, timeout: float | None = None) -> str:
        """Return the next received line, blocking up to *timeout* seconds.

        Lines already queued are still returned after the stream ends; once
        they are drained ``SessionClosed`` is raised.

        Raises:
            SessionError:   The session was never attached.
            SessionClosed:  The stream ended and the queue is empty.
            ReceiveTimeout: Nothing arrived within *timeout*.
        """
        if self._state is SessionState.UNATTACHED:
            raise SessionError("Session is not attached")
        try:
            item = self._lines.get(timeout=timeout)
        except queue.Empty:
            raise ReceiveTimeout(f"No output from {self.container_id} for {timeout}s") from None
        if item is _EOF:
            # Leave the marker for any later caller.
            self._lines.put(_EOF)
            raise SessionClosed(self._closed_reason())
        return item

    # ── Close ────────────────────────────────────────────────────────────────

    def close(self) -> None:
        """Close the connection and wait for the reader.  Safe to call twice."""
        with self._lock:
            was_attached = self._state is SessionState.ATTACHED
            never_attached = self._state is SessionState.UNATTACHED
            self._state = SessionState.CLOSED
        if never_attached:
            self._lines.put(_EOF)
        if self._conn is not None and was_attached:
            try:
                self._conn.close()
            except (WebSocketException, OSError) as exc:
                _console.print(f"[dim](error closing session: {escape(str(exc))})[/]")
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(timeout=5)
