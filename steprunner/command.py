"""command.py — Run shell command batches over an ExecutionSession and recover exit status.

The attached stream is raw shell I/O: there is no framing that says which
output belongs to which command, and no out-of-band channel for exit codes.
``CommandRunner`` makes the container's own shell do the framing: after the
caller's commands it sends ``echo <token> $?`` and reads lines until the
token comes back, followed by the status of the last command.

Hard requirement on the container: its shell must execute the lines it is
sent strictly in order, one at a time.  This module does not (and cannot)
verify that.

Known weakness: a command whose own output starts with the token ends the
batch early with whatever follows it parsed as the status.  The token is a
random UUID, so this only happens when output echoes it deliberately.
"""

import re
import threading
import time
import uuid
from dataclasses import dataclass, field

from steprunner.session import ExecutionSession, ReceiveTimeout, SessionError


class CommandError(Exception):
    """Base class for failures of an in-flight batch.

    ``output`` holds every line captured before the failure, for diagnostics.
    """

    def __init__(self, message: str, output: list[str] | None = None) -> None:
        super().__init__(message)
        self.output: list[str] = list(output or [])


class ProtocolError(CommandError):
    """The sentinel was malformed, or the stream ended before it arrived."""


class CommandTimeout(CommandError):
    """The batch went silent or ran too long.  Fatal: never retried."""


@dataclass
class CommandResult:
    exit_code: int
    output: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def new_token() -> str:
    """Return an unpredictable completion token, unique for the process lifetime."""
    return uuid.uuid4().hex


def sentinel_command(token: str) -> str:
    """Shell line that reports completion of everything sent before it."""
    return f"echo {token} $?"


def parse_status(line: str, token: str) -> int:
    """Extract the exit status from a ``<token> <status>`` line.

    Raises:
        ProtocolError: The line carries the token but no integer status.
    """
    m = re.fullmatch(rf"{re.escape(token)}\s+(-?\d+)\s*", line)
    if not m:
        raise ProtocolError(f"Malformed status line: {line!r}")
    return int(m.group(1))


class CommandRunner:
    """Execute command batches one at a time on *session*.

    Args:
        session:             An attached ``ExecutionSession``.
        command_timeout:     Seconds a whole batch may take (None = no limit).
        no_response_timeout: Seconds allowed between two received lines
                             (None = no limit).
    """

    def __init__(
        self,
        session: ExecutionSession,
        *,
        command_timeout: float | None = None,
        no_response_timeout: float | None = None,
    ) -> None:
        self.session = session
        self.command_timeout = command_timeout
        self.no_response_timeout = no_response_timeout
        # The protocol has no multiplexing: one batch in flight per session.
        self._busy = threading.Lock()

    def run(self, commands: list[str]) -> CommandResult:
        """Send *commands* as one unit and return their aggregate exit status and output.

        The exit status is that of the last command the shell ran, so 0 means
        the batch succeeded under normal shell semantics.

        Raises:
            ProtocolError:  Bad status line, or the stream closed first.
            CommandTimeout: No output for ``no_response_timeout`` seconds, or
                            the batch exceeded ``command_timeout``.
            RuntimeError:   Another batch is already running on this session.
        """
        if not self._busy.acquire(blocking=False):
            raise RuntimeError("A command batch is already running on this session")
        try:
            return self._run(commands)
        finally:
            self._busy.release()

    def _run(self, commands: list[str]) -> CommandResult:
        token = new_token()
        output: list[str] = []

        try:
            self.session.send(*commands)
            self.session.send(sentinel_command(token))
        except SessionError as exc:
            # Keep whatever the container managed to print before the stream broke.
            self._drain(output)
            raise ProtocolError(f"Could not send commands: {exc}", output) from exc

        deadline = (
            time.monotonic() + self.command_timeout
            if self.command_timeout is not None
            else None
        )

        while True:
            wait = self._next_wait(deadline, output)
            try:
                line = self.session.recv(timeout=wait)
            except ReceiveTimeout as exc:
                if deadline is not None and time.monotonic() >= deadline:
                    raise CommandTimeout(
                        f"Command timed out after {self.command_timeout:g}s", output
                    ) from exc
                raise CommandTimeout(
                    f"No output received for {self.no_response_timeout:g}s", output
                ) from exc
            except SessionError as exc:
                raise ProtocolError(
                    f"Stream ended before the command completed: {exc}", output
                ) from exc

            if line.startswith(token):
                try:
                    exit_code = parse_status(line, token)
                except ProtocolError as exc:
                    exc.output = output
                    raise
                return CommandResult(exit_code=exit_code, output=output)
            output.append(line)

    def _drain(self, output: list[str]) -> None:
        """Move lines already queued on the session into *output* without blocking."""
        while True:
            try:
                output.append(self.session.recv(timeout=0))
            except SessionError:
                return

    def _next_wait(self, deadline: float | None, output: list[str]) -> float | None:
        """Seconds to block for the next line: the tighter of both timeouts."""
        if deadline is None:
            return self.no_response_timeout
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise CommandTimeout(
                f"Command timed out after {self.command_timeout:g}s", output
            )
        if self.no_response_timeout is None:
            return remaining
        return min(remaining, self.no_response_timeout)
