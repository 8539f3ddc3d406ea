"""Tests for the git command runner."""

from unittest.mock import MagicMock, patch

import pytest

from code_deployer.exceptions import GitCommandError
from code_deployer.utils.exception_logger import ExceptionLogger
from code_deployer.utils.git_runner import (
    get_git_environment,
    run_git_command,
    run_git_command_with_retry,
)


class TestGitEnvironment:
    def test_marks_repo_as_safe_directory(self, tmp_path):
        env = get_git_environment(tmp_path)

        assert env["GIT_CONFIG_KEY_0"] == "safe.directory"
        assert env["GIT_CONFIG_VALUE_0"] == str(tmp_path.resolve())
        assert env["GIT_TERMINAL_PROMPT"] == "0"

    def test_existing_config_entries_are_shifted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GIT_CONFIG_KEY_0", "core.autocrlf")
        monkeypatch.setenv("GIT_CONFIG_VALUE_0", "false")

        env = get_git_environment(tmp_path)

        assert env["GIT_CONFIG_KEY_1"] == "core.autocrlf"
        assert env["GIT_CONFIG_VALUE_1"] == "false"
        assert env["GIT_CONFIG_COUNT"] == "2"


class TestRunGitCommand:
    def test_rejects_non_git_commands(self, tmp_path):
        with pytest.raises(ValueError):
            run_git_command(["rm", "-rf", "/"], cwd=tmp_path)

    @patch("subprocess.run")
    def test_returns_result_on_success(self, mock_run, tmp_path):
        mock_run.return_value = MagicMock(returncode=0, stdout="ok", stderr="")

        result = run_git_command(["git", "status"], cwd=tmp_path)

        assert result.stdout == "ok"
        assert mock_run.call_args[1]["cwd"] == tmp_path

    @patch("subprocess.run")
    def test_raises_git_command_error_on_failure(self, mock_run, tmp_path):
        mock_run.return_value = MagicMock(returncode=128, stdout="", stderr="fatal: bad")

        with pytest.raises(GitCommandError) as exc_info:
            run_git_command(["git", "status"], cwd=tmp_path)

        assert exc_info.value.returncode == 128
        assert "fatal: bad" in str(exc_info.value)

    @patch("subprocess.run")
    def test_no_raise_when_check_disabled(self, mock_run, tmp_path):
        mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="")

        result = run_git_command(["git", "config", "--get", "x"], cwd=tmp_path, check=False)

        assert result.returncode == 1

    @patch("subprocess.run")
    def test_failure_is_recorded_in_exception_log(self, mock_run, tmp_path):
        ExceptionLogger.initialize(tmp_path)
        mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="boom")

        with pytest.raises(GitCommandError):
            run_git_command(["git", "fetch"], cwd=tmp_path)

        content = ExceptionLogger.get_instance().log_file_path.read_text()
        assert "git fetch" in content
        assert "boom" in content


class TestRunGitCommandWithRetry:
    @patch("code_deployer.utils.git_runner.time.sleep")
    @patch("subprocess.run")
    def test_retries_once_then_succeeds(self, mock_run, mock_sleep, tmp_path):
        mock_run.side_effect = [
            MagicMock(returncode=1, stdout="", stderr="network"),
            MagicMock(returncode=0, stdout="", stderr=""),
        ]

        result = run_git_command_with_retry(["git", "fetch", "origin"], cwd=tmp_path)

        assert result.returncode == 0
        assert mock_run.call_count == 2
        mock_sleep.assert_called_once()

    @patch("code_deployer.utils.git_runner.time.sleep")
    @patch("subprocess.run")
    def test_raises_after_retry_fails(self, mock_run, mock_sleep, tmp_path):
        mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="network")

        with pytest.raises(GitCommandError):
            run_git_command_with_retry(["git", "fetch", "origin"], cwd=tmp_path)

        assert mock_run.call_count == 2
