import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

sys.path.append(str(Path(__file__).resolve().parents[1]))

from config.settings import Settings


def test_defaults():
    settings = Settings(_env_file=None)
    assert settings.acceptance_threshold == 0.5
    assert settings.min_sample_size == 5
    assert settings.deactivation_floor == 0.3
    assert settings.include_generic_patterns is True
    assert settings.pattern_db_dsn is None


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("ACCEPTANCE_THRESHOLD", "0.75")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    settings = Settings(_env_file=None)
    assert settings.acceptance_threshold == 0.75
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize("field", ["acceptance_threshold", "deactivation_floor", "supplier_bonus"])
def test_probabilities_are_bounded(field):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **{field: 1.5})


def test_sample_size_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, min_sample_size=0)
