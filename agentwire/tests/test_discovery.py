"""Tests for CLI discovery and command construction."""

import os
import sys

import pytest

from agentwire.client import discovery
from agentwire.client.discovery import CLI_PATH_ENV_VAR, PROTOCOL_FLAGS, build_command, find_cli
from agentwire.client.options import PermissionMode, SessionOptions
from agentwire.errors import CLINotFoundError


@pytest.fixture
def fake_cli(tmp_path):
    path = tmp_path / "claude"
    path.write_text("#!/bin/sh\nexit 0\n")
    path.chmod(0o755)
    return path


@pytest.fixture
def no_cli(monkeypatch, tmp_path):
    """Hide every real installation of the CLI."""
    monkeypatch.delenv(CLI_PATH_ENV_VAR, raising=False)
    monkeypatch.setattr(discovery.shutil, "which", lambda name: None)
    monkeypatch.setattr(discovery, "_fallback_locations", lambda: [tmp_path / "nowhere" / "claude"])


class TestFindCli:
    """Search order and failures."""

    def test_explicit_path(self, fake_cli):
        assert find_cli(str(fake_cli)) == str(fake_cli)

    def test_explicit_path_must_be_executable(self, tmp_path):
        plain = tmp_path / "claude"
        plain.write_text("")
        plain.chmod(0o644)
        with pytest.raises(CLINotFoundError) as exc_info:
            find_cli(str(plain))
        assert exc_info.value.path == str(plain)

    def test_explicit_missing_path(self, tmp_path):
        with pytest.raises(CLINotFoundError):
            find_cli(str(tmp_path / "missing"))

    def test_explicit_bare_name_uses_path_lookup(self, monkeypatch, fake_cli):
        monkeypatch.setattr(discovery.shutil, "which", lambda name: str(fake_cli))
        assert find_cli("claude") == str(fake_cli)

    def test_interpreter_as_cli(self):
        assert find_cli(sys.executable) == sys.executable

    def test_env_var(self, no_cli, monkeypatch, fake_cli):
        monkeypatch.setenv(CLI_PATH_ENV_VAR, str(fake_cli))
        assert find_cli() == str(fake_cli)

    def test_env_var_pointing_nowhere_falls_through(self, no_cli, monkeypatch, tmp_path, caplog):
        monkeypatch.setenv(CLI_PATH_ENV_VAR, str(tmp_path / "gone"))
        with pytest.raises(CLINotFoundError):
            find_cli()
        assert CLI_PATH_ENV_VAR in caplog.text

    def test_path_lookup(self, no_cli, monkeypatch, fake_cli):
        monkeypatch.setattr(discovery.shutil, "which", lambda name: str(fake_cli))
        assert find_cli() == str(fake_cli)

    def test_fallback_location(self, no_cli, monkeypatch, fake_cli):
        monkeypatch.setattr(discovery, "_fallback_locations", lambda: [fake_cli])
        assert find_cli() == str(fake_cli)

    def test_not_found_mentions_install(self, no_cli):
        with pytest.raises(CLINotFoundError, match="npm install"):
            find_cli()


class TestBuildCommand:
    """Flags derived from SessionOptions."""

    def test_defaults(self):
        assert build_command("/bin/claude") == ["/bin/claude", *PROTOCOL_FLAGS]

    def test_stream_json_both_ways(self):
        args = build_command("/bin/claude")
        assert args[args.index("--input-format") + 1] == "stream-json"
        assert args[args.index("--output-format") + 1] == "stream-json"

    def test_launcher_args_come_first(self):
        args = build_command(sys.executable, SessionOptions(launcher_args=["agent.py"]))
        assert args[:2] == [sys.executable, "agent.py"]

    def test_all_options(self, tmp_path):
        options = SessionOptions(
            model="sonnet",
            fallback_model="haiku",
            system_prompt="Be terse",
            append_system_prompt="Use British spelling",
            allowed_tools=["Read", "Grep"],
            disallowed_tools=["Bash"],
            permission_mode=PermissionMode.ACCEPT_EDITS,
            max_turns=3,
            max_thinking_tokens=2000,
            resume="sess-1",
            fork_session=True,
            settings="settings.json",
            mcp_config="mcp.json",
            add_dirs=[tmp_path],
            include_partial_messages=True,
        )
        args = build_command("/bin/claude", options)

        def value(flag):
            return args[args.index(flag) + 1]

        assert value("--model") == "sonnet"
        assert value("--fallback-model") == "haiku"
        assert value("--system-prompt") == "Be terse"
        assert value("--append-system-prompt") == "Use British spelling"
        assert value("--allowed-tools") == "Read,Grep"
        assert value("--disallowed-tools") == "Bash"
        assert value("--permission-mode") == "acceptEdits"
        assert value("--max-turns") == "3"
        assert value("--max-thinking-tokens") == "2000"
        assert value("--resume") == "sess-1"
        assert value("--settings") == "settings.json"
        assert value("--mcp-config") == "mcp.json"
        assert value("--add-dir") == str(tmp_path)
        assert "--fork-session" in args
        assert "--include-partial-messages" in args
        assert "--continue" not in args

    def test_empty_system_prompt_is_passed(self):
        args = build_command("/bin/claude", SessionOptions(system_prompt=""))
        assert args[args.index("--system-prompt") + 1] == ""

    def test_permission_mode_string(self):
        args = build_command("/bin/claude", SessionOptions(permission_mode="plan"))
        assert args[args.index("--permission-mode") + 1] == "plan"

    def test_continue(self):
        assert "--continue" in build_command("/bin/claude", SessionOptions(continue_conversation=True))

    def test_extra_args(self):
        args = build_command("/bin/claude", SessionOptions(extra_args={"debug": None, "betas": "x,y"}))
        assert args[-3:] == ["--debug", "--betas", "x,y"]

    def test_every_flag_is_a_separate_argument(self):
        args = build_command("/bin/claude", SessionOptions(system_prompt="has spaces; and $vars"))
        assert "has spaces; and $vars" in args
        assert not any(" --" in a for a in args)
        assert os.sep in args[0]
