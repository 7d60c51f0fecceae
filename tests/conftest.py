"""Shared fixtures for steprunner unit tests."""

import queue
import textwrap
from pathlib import Path

import pytest
from websockets.exceptions import ConnectionClosedOK

from steprunner.options import PipelineOptions
from steprunner.session import ExecutionSession

SAMPLE_YML = textwrap.dedent(
    """\
    box: python:3.12
    command-timeout: 10
    services:
      - redis
    build:
      base-path: app/
      steps:
        - pip-install
        - script:
            name: run tests
            code: pytest
        - script:
          name: lint
          code: ruff check .
      after-steps:
        - slack-notifier:
            url: https://hooks.example.com/x
    deploy:
      box:
        id: alpine
        tag: "3.19"
      steps:
        - script:
            code: ./deploy.sh
      production:
        - script:
            code: ./deploy.sh --prod
    """
)


class FakeShell:
    """In-memory stand-in for a container shell behind the attach websocket.

    Understands just enough shell to drive the protocol: ``true``, ``false``,
    ``exit-status N``, ``echo`` (with ``$?``), and treats ``cd``/``export``/``.``
    as successful no-ops.  Anything else prints a "not found" error.

    Args:
        silent:    Never print anything (for timeout tests).
        hangup_on: Command that makes the "container" drop the connection.
    """

    def __init__(self, *, silent: bool = False, hangup_on: str | None = None) -> None:
        self._out: queue.Queue = queue.Queue()
        self.sent: list[str] = []
        self.last_status = 0
        self.silent = silent
        self.hangup_on = hangup_on
        self.closed = False

    # ── connection interface used by ExecutionSession ────────────────────────

    def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(message)
        self._execute(message.rstrip("\n"))

    def recv(self):
        item = self._out.get()
        if item is None:
            raise ConnectionClosedOK(None, None)
        return item

    def close(self) -> None:
        self.closed = True
        self._out.put(None)

    # ── test helpers ─────────────────────────────────────────────────────────

    def push(self, data) -> None:
        """Deliver a raw message to the session, as if the container printed it."""
        self._out.put(data)

    def hang_up(self) -> None:
        """Drop the connection from the container side."""
        self._out.put(None)

    def _print(self, text: str) -> None:
        if not self.silent:
            self._out.put(text + "\n")

    def _execute(self, command: str) -> None:
        if command == self.hangup_on:
            self.hang_up()
        elif command == "true":
            self.last_status = 0
        elif command == "false":
            self.last_status = 1
        elif command.startswith("exit-status "):
            self.last_status = int(command.split()[1])
        elif command.startswith("echo "):
            self._print(command[len("echo "):].replace("$?", str(self.last_status)))
            self.last_status = 0
        elif command.startswith(("cd ", "export ", ". ")):
            self.last_status = 0
        else:
            self._print(f"sh: 1: {command}: not found")
            self.last_status = 127


@pytest.fixture()
def shell() -> FakeShell:
    return FakeShell()


@pytest.fixture()
def make_session():
    """Return a factory that attaches an ExecutionSession to a given FakeShell."""
    sessions: list[ExecutionSession] = []

    def _make(fake: FakeShell) -> ExecutionSession:
        session = ExecutionSession("tcp://docker.local:2375", "c0ffee", connector=lambda: fake)
        session.attach()
        sessions.append(session)
        return session

    yield _make
    for s in sessions:
        s.close()


@pytest.fixture()
def session(shell: FakeShell, make_session) -> ExecutionSession:
    return make_session(shell)


@pytest.fixture()
def options(tmp_path: Path) -> PipelineOptions:
    return PipelineOptions(container_id="c0ffee", working_dir=str(tmp_path / "work"))


@pytest.fixture()
def sample_yml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Write SAMPLE_YML as stepline.yml in tmp_path and chdir there."""
    path = tmp_path / "stepline.yml"
    path.write_text(SAMPLE_YML, encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    return path


@pytest.fixture()
def fake_shell():
    """Return the FakeShell class, for tests that need a non-default shell."""
    return FakeShell
