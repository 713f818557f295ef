"""Tests for logging helpers and the command line entry point."""

import json
import logging

import pytest

import file_sync
from file_sync import PROJECT_CONFIG_NAME, Ansi, ColorizingFormatter, log_action, parse_args


def _record(level=logging.INFO, action=None, path_text=None, is_dir=False, msg="COPY | hello"):
    record = logging.LogRecord("file_sync", level, __file__, 1, msg, None, None)
    if action:
        record.action = action
    if path_text:
        record.path_text = path_text
        record.is_dir = is_dir
    return record


def test_formatter_colors_action_and_path():
    formatter = ColorizingFormatter(use_color=True, fmt="%(message)s")
    text = formatter.format(_record(action="COPY", path_text="/x/a.txt", msg="COPY | /x/a.txt"))

    assert f"{Ansi.GREEN}COPY{Ansi.RESET}" in text
    assert f"{Ansi.WHITE}/x/a.txt{Ansi.RESET}" in text


def test_formatter_errors_are_red():
    formatter = ColorizingFormatter(use_color=True, fmt="%(message)s")
    text = formatter.format(_record(level=logging.ERROR, action="COPY"))
    assert text.startswith(Ansi.RED) and text.endswith(Ansi.RESET)


def test_formatter_plain_without_color():
    formatter = ColorizingFormatter(use_color=False, fmt="%(message)s")
    assert formatter.format(_record(action="COPY")) == "COPY | hello"


def test_log_action_attaches_extras(tmp_path, caplog):
    logger = logging.getLogger("file_sync")
    with caplog.at_level(logging.INFO, logger="file_sync"):
        log_action(logger, "RMDIR", "Removed", path=tmp_path, is_dir=True)

    record = caplog.records[-1]
    assert record.action == "RMDIR"
    assert record.path_text == str(tmp_path)
    assert record.is_dir is True
    assert record.getMessage() == "RMDIR | Removed"


def test_parse_args_defaults():
    args = parse_args([])
    assert args.root is None
    assert args.output is None
    assert args.settle_delay is None
    assert args.no_commands is False


def test_parse_args_options():
    args = parse_args(["--root", "/p", "--output", "/m", "--settle-delay", "0.2", "--no-commands"])
    assert (args.root, args.output, args.settle_delay, args.no_commands) == ("/p", "/m", 0.2, True)


@pytest.fixture
def quiet_logger(monkeypatch):
    logger = logging.getLogger("file_sync.cli-test")
    monkeypatch.setattr(file_sync, "setup_logger", lambda log_dir=None: logger)
    return logger


def test_main_without_output_is_config_error(tmp_path, quiet_logger):
    assert file_sync.main(["--root", str(tmp_path), "--no-commands"]) == 2


def test_main_rejects_output_equal_to_root(tmp_path, quiet_logger):
    (tmp_path / PROJECT_CONFIG_NAME).write_text(json.dumps({"outputFolder": "."}), encoding="utf-8")
    assert file_sync.main(["--root", str(tmp_path), "--no-commands"]) == 2


def test_main_runs_until_cancelled(tmp_path, quiet_logger, monkeypatch):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "a.txt").write_text("a")
    (tmp_path / "src" / PROJECT_CONFIG_NAME).write_text(
        json.dumps({"srcFiles": [r"\.txt$"], "outputFolder": "../out"}), encoding="utf-8"
    )

    class ExitAfterStart(file_sync.FileSyncSystem):
        def start_listening(self, root, settings, cancellation=None):
            handle = super().start_listening(root, settings, cancellation)
            self.sync_all().result(timeout=10)
            cancellation.set()
            return handle

    monkeypatch.setattr(file_sync, "FileSyncSystem", ExitAfterStart)

    assert file_sync.main(["--root", str(tmp_path / "src"), "--no-commands", "--settle-delay", "0"]) == 0
    assert (tmp_path / "out" / "a.txt").read_text() == "a"
