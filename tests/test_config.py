import pytest

from planner.config_manager import SchedulerConfig, get_config
from planner.exceptions import ConfigError


def test_defaults_without_runtime_file(tmp_path):
    cfg = get_config(tmp_path / "missing.yaml")

    assert cfg.DEFAULT_TRAVEL_MINUTES == 30
    assert cfg.DUPLICATE_RETRY_DELAYS == [0.05, 0.1, 0.15]
    assert cfg.energy_level("low") == 2
    assert cfg.energy_level("unknown") == 3


def test_runtime_yaml_overrides_and_ignores_unknown_keys(tmp_path):
    path = tmp_path / "runtime.yaml"
    path.write_text(
        "DEFAULT_TRAVEL_MINUTES: 25\n"
        "NOT_A_SETTING: true\n"
        "ENERGY_PREP_MULTIPLIERS:\n"
        "  '1': 1.5\n",
        encoding="utf-8",
    )

    cfg = get_config(path)

    assert cfg.DEFAULT_TRAVEL_MINUTES == 25
    assert cfg.ENERGY_PREP_MULTIPLIERS == {1: 1.5}
    assert not hasattr(cfg, "NOT_A_SETTING")


def test_broken_yaml_falls_back_to_defaults(tmp_path):
    path = tmp_path / "runtime.yaml"
    path.write_text("DEFAULT_TRAVEL_MINUTES: [unclosed\n", encoding="utf-8")

    assert get_config(path).DEFAULT_TRAVEL_MINUTES == 30


def test_invalid_values_raise_config_error():
    with pytest.raises(ConfigError) as exc:
        SchedulerConfig(DEFAULT_TRAVEL_MINUTES=0)

    assert exc.value.code == "CONFIG_ERROR"
    assert "config" in exc.value.get_user_message().lower()


def test_wake_profiles_must_cover_every_energy_state():
    with pytest.raises(ConfigError):
        SchedulerConfig(WAKE_RAMP_PROFILES={"low": [["Alarm", 10]]})


def test_meal_settings_must_cover_every_meal():
    with pytest.raises(ConfigError):
        SchedulerConfig(MEAL_DURATIONS={"breakfast": 15, "lunch": 30})


def test_wake_ramp_caps_default_to_profile_totals():
    cfg = SchedulerConfig()

    for state, steps in cfg.WAKE_RAMP_PROFILES.items():
        assert cfg.WAKE_RAMP_MAX_MINUTES[state] == sum(minutes for _, minutes in steps)
