"""Settings are read from the environment with documented defaults."""

from __future__ import annotations

from config import CapacityPolicy, Settings


def test_defaults(monkeypatch) -> None:
    for name in (
        "DATABASE_URL",
        "USE_TRANSACTIONS",
        "CORS_ORIGINS",
        "MENTOR_STUDENT_LIMIT",
        "MENTOR_CLASSROOM_LIMIT",
        "CLASSROOM_MENTOR_LIMIT",
        "CLASSROOM_STUDENT_LIMIT",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.database_url is None
    assert settings.use_transactions is True
    assert settings.cors_origins == ("*",)
    assert settings.capacity == CapacityPolicy()


def test_overrides(monkeypatch) -> None:
    monkeypatch.setenv("USE_TRANSACTIONS", "false")
    monkeypatch.setenv("MENTOR_CLASSROOM_LIMIT", "7")
    monkeypatch.setenv("CORS_ORIGINS", "http://a.test, http://b.test")
    monkeypatch.setenv("DEFAULT_PAGE_SIZE", "20")

    settings = Settings.from_env()

    assert settings.use_transactions is False
    assert settings.capacity.mentor_classrooms == 7
    assert settings.capacity.mentor_students == 25
    assert settings.cors_origins == ("http://a.test", "http://b.test")
    assert settings.default_page_size == 20
