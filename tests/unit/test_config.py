"""
Unit tests for settings classes and run-file loading.
"""

from pathlib import Path

import pytest

from rampload.config import (
    Config,
    DevelopmentConfig,
    ProductionConfig,
    RunConfig,
    TestingConfig,
    get_config,
    load_run_file,
)
from rampload.exceptions import ConfigurationError, ThresholdSyntaxError
from rampload.stages import RampProfile

pytestmark = pytest.mark.unit


def test_get_config_by_name():
    assert get_config("development") is DevelopmentConfig
    assert get_config("testing") is TestingConfig
    assert get_config("production") is ProductionConfig
    assert get_config("unknown") is Config


def test_get_config_reads_environment(monkeypatch):
    monkeypatch.setenv("RAMPLOAD_ENV", "production")

    assert get_config() is ProductionConfig


def test_from_dict_parses_durations_and_thresholds():
    # Arrange
    data = {
        "stages": [{"duration": "30s", "target": 20}, {"duration": "1m", "target": 0}],
        "vus_initial": 5,
        "graceful_stop": "10s",
        "iterations": 3,
        "abort_on_fail": True,
        "thresholds": {"http_req_duration": ["p(95)<500"]},
    }

    # Act
    run_config = RunConfig.from_dict(data, TestingConfig)

    # Assert
    assert run_config.ramp_profile.total_duration == 90
    assert run_config.ramp_profile.start_target == 5
    assert run_config.graceful_stop == 10
    assert run_config.iterations == 3
    assert run_config.abort_on_fail is True
    assert run_config.tick_interval == TestingConfig.TICK_INTERVAL
    assert run_config.thresholds[0].description == "http_req_duration: p(95)<500"


def test_start_vus_alias():
    run_config = RunConfig.from_dict({"stages": [{"duration": 1, "target": 1}], "start_vus": 2}, Config)

    assert run_config.vus_initial == 2


@pytest.mark.parametrize(
    "data",
    [
        {},
        {"stages": []},
        {"stages": "30s"},
        {"stages": [{"duration": "30s"}]},
        {"stages": [{"duration": "-1s", "target": 1}]},
        {"stages": [{"duration": "1s", "target": 1}], "iterations": 0},
        {"stages": [{"duration": "1s", "target": 1}], "vus_initial": "many"},
        {"stages": [{"duration": "1s", "target": 1}], "graceful_stop": "soon"},
    ],
)
def test_invalid_run_configuration_raises(data):
    with pytest.raises(ConfigurationError):
        RunConfig.from_dict(data, Config)


def test_bad_threshold_fails_before_run():
    with pytest.raises(ThresholdSyntaxError):
        RunConfig.from_dict(
            {"stages": [{"duration": 1, "target": 1}], "thresholds": {"checks": ["rate >> 1"]}},
            Config,
        )


def test_vus_initial_rebuilds_profile_start():
    profile = RampProfile.from_stages([{"duration": 10, "target": 0}])

    run_config = RunConfig(ramp_profile=profile, vus_initial=6)

    assert run_config.ramp_profile.target_at(0) == 6


def test_load_run_file(tmp_path):
    # Arrange
    path = tmp_path / "run.yml"
    path.write_text(
        "scenario: rampload.scenarios.orders:basic_scenario\n"
        "base_url: http://orders.test\n"
        "stages:\n"
        "  - duration: 5s\n"
        "    target: 2\n",
        encoding="utf-8",
    )

    # Act
    run_config, raw = load_run_file(path, TestingConfig)

    # Assert
    assert run_config.ramp_profile.peak_target == 2
    assert raw["scenario"] == "rampload.scenarios.orders:basic_scenario"
    assert raw["base_url"] == "http://orders.test"


def test_load_run_file_errors(tmp_path):
    missing = tmp_path / "missing.yml"
    broken = tmp_path / "broken.yml"
    broken.write_text("stages: [\n", encoding="utf-8")
    listing = tmp_path / "list.yml"
    listing.write_text("- 1\n- 2\n", encoding="utf-8")

    for path in (missing, broken, listing):
        with pytest.raises(ConfigurationError):
            load_run_file(path, Config)


def test_shipped_run_file_is_valid():
    path = Path(__file__).resolve().parents[2] / "loadtest" / "basic-load.yml"

    run_config, raw = load_run_file(path, Config)

    assert run_config.ramp_profile.total_duration == 240
    assert [t.abort_on_fail for t in run_config.thresholds] == [False, True, False]
    assert raw["scenario"] == "rampload.scenarios.orders:basic_scenario"
