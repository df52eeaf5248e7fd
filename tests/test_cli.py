"""Tests for the command line entry point."""

import json

import pytest

from mediabridge.cli import main


@pytest.fixture
def workdir(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("APP_MAX_FILE_SIZE_MB", "APP_TWITTER_APIS", "APP_TWITTER_ENABLED"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def test_classify_prints_json(workdir, capsys):
    assert main(["classify", "https://mobile.twitter.com/alice/status/42?utm_source=share"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["platform"] == "twitter"
    assert payload["clean_url"] == "https://mobile.twitter.com/alice/status/42"
    assert len(payload["cache_key"]) == 16


def test_fix_prints_canonical_links(workdir, capsys):
    status = main(["fix", "https://x.com/alice/status/42", "https://vimeo.com/1"])
    lines = capsys.readouterr().out.splitlines()
    assert status == 1
    assert lines[0] == "https://fxtwitter.com/alice/status/42"
    assert lines[1].endswith("(no provider)")


def test_cache_stats_on_empty_cache(workdir, capsys):
    assert main(["cache-stats"]) == 0
    assert json.loads(capsys.readouterr().out)["total_entries"] == 0


def test_invalid_environment_exits_with_config_error(workdir, monkeypatch, capsys):
    monkeypatch.setenv("APP_MAX_FILE_SIZE_MB", "lots")
    assert main(["classify", "https://x.com/a/status/1"]) == 2
    assert "Configuration error" in capsys.readouterr().err
