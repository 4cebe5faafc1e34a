"""Tests for log tags and color handling."""

from __future__ import annotations

from gridconquest.config import Config
from gridconquest.logging_utils import (
    Color,
    LOG_TAG_DEBUG,
    LOG_TAG_STORE,
    colored,
    log_debug,
    log_deterministic,
    log_error,
    log_store,
)


def test_colored_respects_no_color(monkeypatch):
    monkeypatch.setenv("GRIDCONQUEST_NO_COLOR", "1")

    assert colored("hello", Color.RED, bold=True) == "hello"


def test_colored_wraps_with_ansi_codes(monkeypatch):
    monkeypatch.delenv("GRIDCONQUEST_NO_COLOR", raising=False)

    text = colored("hello", Color.GREEN)

    assert text.startswith(Color.GREEN.value)
    assert text.endswith(Color.RESET.value)


def test_log_helpers_prefix_their_tag(monkeypatch, capsys):
    monkeypatch.setenv("GRIDCONQUEST_NO_COLOR", "1")

    log_store("committed 3 cells")
    log_deterministic("rasterized")
    log_error("retrying")

    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == f"{LOG_TAG_STORE} committed 3 cells"
    assert lines[1] == "[•] rasterized"
    assert lines[2] == "[!] retrying"


def test_debug_lines_only_at_debug_level(monkeypatch, capsys):
    monkeypatch.setenv("GRIDCONQUEST_NO_COLOR", "1")

    monkeypatch.setattr(Config, "LOG_LEVEL", "INFO")
    log_debug("cell 1_1: conquest")
    assert capsys.readouterr().out == ""

    monkeypatch.setattr(Config, "LOG_LEVEL", "debug")
    log_debug("cell 1_1: conquest")
    assert capsys.readouterr().out.strip() == f"{LOG_TAG_DEBUG} cell 1_1: conquest"
