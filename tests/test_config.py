import pytest

from crash_round.config import env_flag


@pytest.mark.parametrize("value", ["1", "true", "TRUE", " yes ", "on"])
def test_env_flag_true_values(monkeypatch, value):
    monkeypatch.setenv("DB_ECHO", value)
    assert env_flag("DB_ECHO") is True


@pytest.mark.parametrize("value", ["0", "false", "False", "no", "off", ""])
def test_env_flag_false_values(monkeypatch, value):
    monkeypatch.setenv("DB_ECHO", value)
    assert env_flag("DB_ECHO") is False


def test_env_flag_unset_uses_default(monkeypatch):
    monkeypatch.delenv("DB_ECHO", raising=False)
    assert env_flag("DB_ECHO") is False
    assert env_flag("DB_ECHO", "yes") is True
