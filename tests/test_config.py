from pathlib import Path

from shellrunner.config import Settings, normalize


def test_shell_args_from_env_string(monkeypatch):
    monkeypatch.setenv("APP_SHELL_ARGS", "-NoLogo -Command -")
    s = normalize(Settings(AUDIT_DB_PATH=":memory:"))
    assert s.SHELL_ARGS == ["-NoLogo", "-Command", "-"]


def test_redis_host_read_without_prefix(monkeypatch):
    monkeypatch.delenv("APP_QUEUE_URL", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.setenv("REDIS_HOST", "cache")
    s = Settings(AUDIT_DB_PATH=":memory:")
    assert s.queue_url == "redis://cache:6379"


def test_normalize_creates_audit_directory(tmp_path):
    s = normalize(Settings(AUDIT_DB_PATH=str(tmp_path / "nested" / "audit.db"), LOG_LEVEL="debug"))
    assert isinstance(s.AUDIT_DB_PATH, Path)
    assert s.AUDIT_DB_PATH.parent.is_dir()
    assert s.LOG_LEVEL == "DEBUG"


def test_memory_audit_path_is_kept():
    assert normalize(Settings(AUDIT_DB_PATH=":memory:")).AUDIT_DB_PATH == ":memory:"
