"""Tests for steprunner.command — the sentinel protocol on top of ExecutionSession."""

import threading

import pytest

from steprunner.command import (
    CommandRunner,
    CommandTimeout,
    ProtocolError,
    new_token,
    parse_status,
    sentinel_command,
)


class TestToken:
    def test_tokens_are_unique(self) -> None:
        tokens = {new_token() for _ in range(1000)}
        assert len(tokens) == 1000

    def test_sentinel_command(self) -> None:
        assert sentinel_command("abc") == "echo abc $?"

    def test_parse_status(self) -> None:
        assert parse_status("abc 0", "abc") == 0
        assert parse_status("abc 127", "abc") == 127
        assert parse_status("abc   3 ", "abc") == 3

    def test_parse_status_malformed(self) -> None:
        for line in ("abc", "abc x", "abc 1 2", "abc1"):
            with pytest.raises(ProtocolError, match="Malformed status"):
                parse_status(line, "abc")


class TestRun:
    def test_success_with_no_output(self, session) -> None:
        result = CommandRunner(session).run(["true"])
        assert result.exit_code == 0
        assert result.output == []
        assert result.ok

    def test_failure_status(self, session) -> None:
        result = CommandRunner(session).run(["false"])
        assert result.exit_code != 0
        assert not result.ok

    def test_output_in_order(self, session) -> None:
        result = CommandRunner(session).run(["echo a", "echo b"])
        assert result.exit_code == 0
        assert result.output == ["a", "b"]

    def test_status_is_that_of_the_last_command(self, session) -> None:
        assert CommandRunner(session).run(["false", "true"]).exit_code == 0
        assert CommandRunner(session).run(["true", "exit-status 42"]).exit_code == 42

    def test_sentinel_follows_commands(self, session, shell) -> None:
        CommandRunner(session).run(["echo a", "true"])
        assert shell.sent[:2] == ["echo a\n", "true\n"]
        assert shell.sent[2].startswith("echo ") and shell.sent[2].endswith(" $?\n")

    def test_batches_run_back_to_back(self, session) -> None:
        runner = CommandRunner(session)
        assert runner.run(["echo one"]).output == ["one"]
        assert runner.run(["exit-status 2"]).exit_code == 2
        assert runner.run(["echo two"]).output == ["two"]

    def test_unknown_command_output_captured(self, session) -> None:
        result = CommandRunner(session).run(["frobnicate"])
        assert result.exit_code == 127
        assert result.output == ["sh: 1: frobnicate: not found"]

    def test_malformed_status_line(self, monkeypatch, fake_shell) -> None:
        from steprunner.session import ExecutionSession

        monkeypatch.setattr("steprunner.command.new_token", lambda: "tok")
        fake = fake_shell(silent=True)
        with ExecutionSession("tcp://docker:2375", "c0ffee", connector=lambda: fake) as session:
            fake.push("before\n")
            fake.push("tok oops\n")
            with pytest.raises(ProtocolError, match="Malformed") as excinfo:
                CommandRunner(session).run(["true"])
        assert excinfo.value.output == ["before"]

    def test_stream_ends_mid_batch(self, make_session, fake_shell) -> None:
        fake = fake_shell(hangup_on="boom")
        session = make_session(fake)
        with pytest.raises(ProtocolError) as excinfo:
            CommandRunner(session).run(["echo partial", "boom", "echo never"])
        assert excinfo.value.output == ["partial"]

    def test_no_response_timeout(self, make_session, fake_shell) -> None:
        session = make_session(fake_shell(silent=True))
        runner = CommandRunner(session, no_response_timeout=0.2)
        with pytest.raises(CommandTimeout, match="No output received"):
            runner.run(["sleep 60"])

    def test_command_timeout(self, make_session, fake_shell) -> None:
        session = make_session(fake_shell(silent=True))
        runner = CommandRunner(session, command_timeout=0.2, no_response_timeout=10)
        with pytest.raises(CommandTimeout, match="timed out after 0.2s"):
            runner.run(["sleep 60"])

    def test_timeout_keeps_partial_output(self, make_session, fake_shell) -> None:
        fake = fake_shell()
        session = make_session(fake)
        # The shell goes quiet after the first command, so the sentinel never answers.
        original = fake._execute

        def execute(command: str) -> None:
            original(command)
            fake.silent = True

        fake._execute = execute
        with pytest.raises(CommandTimeout) as excinfo:
            CommandRunner(session, no_response_timeout=0.2).run(["echo started"])
        assert excinfo.value.output == ["started"]

    def test_concurrent_batches_rejected(self, make_session, fake_shell) -> None:
        session = make_session(fake_shell(silent=True))
        runner = CommandRunner(session, no_response_timeout=1)
        started = threading.Event()
        errors: list[BaseException] = []

        def first() -> None:
            started.set()
            try:
                runner.run(["sleep 60"])
            except CommandTimeout as exc:
                errors.append(exc)

        t = threading.Thread(target=first)
        t.start()
        started.wait()
        # Give the first batch time to take the lock.
        t.join(timeout=0.2)
        with pytest.raises(RuntimeError, match="already running"):
            runner.run(["true"])
        t.join()
        assert len(errors) == 1
