"""Tests for the bot entry point."""

import pytest

import main as entry


class StubBot:
    instances = []

    def __init__(self, config):
        self.config = config
        self.ran = False
        StubBot.instances.append(self)

    async def run(self):
        self.ran = True


class CrashingBot(StubBot):
    async def run(self):
        raise RuntimeError("transport exploded")


@pytest.fixture
def workdir(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    # setenv first so teardown also removes what load_dotenv writes
    monkeypatch.setenv("APP_MAX_FILE_SIZE_MB", "50")
    monkeypatch.delenv("APP_MAX_FILE_SIZE_MB")
    StubBot.instances.clear()
    return tmp_path


def test_main_runs_the_bot_with_loaded_settings(workdir, monkeypatch):
    monkeypatch.setattr(entry, "MediaBridgeBot", StubBot)
    assert entry.main([]) == 0
    (bot,) = StubBot.instances
    assert bot.ran


def test_env_file_is_honoured(workdir, monkeypatch):
    env_file = workdir / "bot.env"
    env_file.write_text("APP_MAX_FILE_SIZE_MB=12\n")
    monkeypatch.setattr(entry, "MediaBridgeBot", StubBot)
    assert entry.main(["--env-file", str(env_file)]) == 0
    assert StubBot.instances[0].config.max_file_size_bytes == 12 * 1024 * 1024


def test_invalid_settings_exit_before_the_bot_starts(workdir, monkeypatch, capsys):
    monkeypatch.setenv("APP_MAX_FILE_SIZE_MB", "lots")
    monkeypatch.setattr(entry, "MediaBridgeBot", StubBot)
    assert entry.main([]) == 2
    assert StubBot.instances == []
    assert "Configuration error" in capsys.readouterr().err


def test_unhandled_error_is_a_non_zero_exit(workdir, monkeypatch):
    monkeypatch.setattr(entry, "MediaBridgeBot", CrashingBot)
    assert entry.main([]) == 1
