"""Tests for the cai-bridge CLI commands."""

from __future__ import annotations

import json
import subprocess
import sys

import pytest


@pytest.fixture()
def tmp_cwd(tmp_path, monkeypatch):
    """Run test in a clean temporary directory."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _run_cli(*args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "cai_bridge.cli.main", *args],
        capture_output=True,
        text=True,
    )


def test_no_command_prints_help(tmp_cwd):
    result = _run_cli()
    assert result.returncode == 1
    assert "serve" in result.stdout


def test_config_validate_ok(tmp_cwd):
    (tmp_cwd / "cai-bridge.yaml").write_text("character_id: char-1\n")
    result = _run_cli("config", "validate")
    assert result.returncode == 0
    assert "Config is valid." in result.stdout
    assert "Default model: cai-default" in result.stdout


def test_config_validate_reports_errors(tmp_cwd):
    path = tmp_cwd / "broken.yaml"
    path.write_text("character_id: c\nsync:\n  mode: telepathy\n")
    result = _run_cli("-c", str(path), "config", "validate")
    assert result.returncode == 1
    assert "sync.mode" in result.stdout


def test_models_lists_aliases(tmp_cwd):
    (tmp_cwd / "cai-bridge.yaml").write_text(
        "default_model: bob\nmodels:\n  bob: char-bob\n  alice: char-alice\n"
    )
    result = _run_cli("models")
    assert result.returncode == 0
    assert "bob -> char-bob (default)" in result.stdout
    assert "alice -> char-alice" in result.stdout


def test_reconstruct_transcript_blob(tmp_cwd):
    path = tmp_cwd / "blob.txt"
    path.write_text(
        "You are Bob.\n\n"
        "Conversation history:\n"
        "User: hi\n"
        "Assistant: hello\n"
        "Current user message:\n"
        "how are you\n",
        encoding="utf-8",
    )
    result = _run_cli("reconstruct", str(path))
    assert result.returncode == 0
    data = json.loads(result.stdout)
    assert data["system"] == "You are Bob."
    assert data["live_message"] == "how are you"
    assert [t["role"] for t in data["turns"]] == ["user", "assistant", "user"]


def test_reconstruct_request_body(tmp_cwd):
    path = tmp_cwd / "body.json"
    path.write_text(json.dumps({
        "model": "cai-default",
        "messages": [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hi"},
        ],
    }))
    result = _run_cli("reconstruct", str(path))
    data = json.loads(result.stdout)
    assert data["system"] == "sys"
    assert data["turns"] == [{"role": "user", "content": "hi"}]


def test_reconstruct_missing_file(tmp_cwd):
    result = _run_cli("reconstruct", "nope.txt")
    assert result.returncode == 1
    assert "File not found" in result.stderr
