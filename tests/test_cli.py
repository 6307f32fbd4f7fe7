"""Command line tests with the run itself replaced by a canned result."""

import json
import time

import pytest

from loadgate import cli
from loadgate import metrics as m
from loadgate.actors import ActorPool, load_actors
from loadgate.errors import ConfigurationError
from loadgate.metrics import MetricsRegistry
from loadgate.result import RunResult


def write_config(tmp_path, **overrides):
    data = {
        "base_url": "http://localhost:8080",
        "flows": {"browse": {"steps": [{"name": "list", "path": "/groups"}]}},
        "scenarios": {"smoke": {"executor": "constant-vus", "vus": 1, "duration": "1s"}},
        "thresholds": {"fail_rate": ["rate<0.1"]},
    }
    data.update(overrides)
    path = tmp_path / "run.json"
    path.write_text(json.dumps(data))
    return path


@pytest.fixture
def fake_execute(monkeypatch):
    """Replace the real run with one that records ``fails`` failed requests out of 10."""
    state = {"fails": 0, "configs": []}

    async def execute(config, show_live=True):
        state["configs"].append(config)
        metrics = MetricsRegistry()
        for i in range(10):
            metrics.counter(m.REQUESTS).add()
            metrics.rate(m.FAIL_RATE).add(i < state["fails"])
        now = time.time()
        return RunResult.build(metrics, config.thresholds, now - 1, now, [s.name for s in config.scenarios])

    monkeypatch.setattr(cli, "execute", execute)
    monkeypatch.delenv(cli.BASE_URL_ENV, raising=False)
    return state


class TestExitCodes:
    def test_passing_run(self, tmp_path, fake_execute):
        assert cli.main(["run", "--config", str(write_config(tmp_path)), "--no-live"]) == cli.EXIT_PASSED

    def test_failed_threshold(self, tmp_path, fake_execute):
        fake_execute["fails"] = 5
        assert cli.main(["run", "-c", str(write_config(tmp_path)), "--no-live"]) == cli.EXIT_THRESHOLDS_FAILED

    def test_missing_base_url_is_configuration_error(self, tmp_path, fake_execute):
        path = write_config(tmp_path, base_url=None)
        assert cli.main(["run", "-c", str(path)]) == cli.EXIT_CONFIG_ERROR
        assert fake_execute["configs"] == []

    def test_base_url_from_environment(self, tmp_path, fake_execute, monkeypatch):
        monkeypatch.setenv(cli.BASE_URL_ENV, "http://staging:9000")
        path = write_config(tmp_path, base_url=None)
        assert cli.main(["run", "-c", str(path), "--no-live"]) == cli.EXIT_PASSED
        assert fake_execute["configs"][0].base_url == "http://staging:9000"

    def test_flag_beats_environment(self, tmp_path, fake_execute, monkeypatch):
        monkeypatch.setenv(cli.BASE_URL_ENV, "http://staging:9000")
        path = write_config(tmp_path)
        cli.main(["run", "-c", str(path), "-u", "http://other:1234", "--no-live"])
        assert fake_execute["configs"][0].base_url == "http://other:1234"

    def test_no_command(self):
        assert cli.main([]) == cli.EXIT_CONFIG_ERROR


class TestOutput:
    def test_json_summary_written(self, tmp_path, fake_execute):
        fake_execute["fails"] = 5
        output = tmp_path / "summary.json"

        cli.main(["run", "-c", str(write_config(tmp_path)), "--no-live", "--output", str(output)])

        summary = json.loads(output.read_text())
        assert summary["passed"] is False
        assert summary["scenarios"] == ["smoke"]
        assert "fail_rate" in summary["series"]
        assert len(summary["thresholds"]) == 1


class TestPresets:
    def test_list_presets(self, capsys):
        assert cli.main(["presets"]) == cli.EXIT_PASSED

    def test_dangerous_preset_requires_flag(self, fake_execute):
        assert cli.main(["preset", "http://localhost:8080/", "stress"]) == cli.EXIT_CONFIG_ERROR
        assert fake_execute["configs"] == []

    def test_dangerous_preset_with_flag(self, fake_execute):
        code = cli.main(["preset", "http://localhost:8080/", "stress", "--i-know-what-im-doing", "--no-live"])
        assert code in (cli.EXIT_PASSED, cli.EXIT_THRESHOLDS_FAILED)
        assert fake_execute["configs"][0].scenarios[0].name == "stress"

    def test_unknown_preset(self, fake_execute):
        assert cli.main(["preset", "http://localhost:8080/", "tsunami"]) == cli.EXIT_CONFIG_ERROR


class TestActors:
    def test_load_from_users_document(self):
        pool = load_actors({"users": [{"id": 1, "role": "HOST"}, {"id": 2, "role": "GUEST"}]})
        assert [a.id for a in pool] == [1, 2]
        assert pool[0].get("role") == "HOST"
        assert pool[1].context() == {"role": "GUEST", "actor_id": 2}

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ConfigurationError):
            ActorPool.from_records([{"id": 1}, {"id": 1}])

    def test_round_robin_over_empty_pool(self):
        with pytest.raises(ConfigurationError):
            next(ActorPool([]).round_robin())


class TestConfigurationErrors:
    @pytest.mark.parametrize("target", ["ten", None])
    def test_bad_stage_target_exits_with_config_error(self, tmp_path, fake_execute, target):
        path = write_config(tmp_path, scenarios={
            "ramp": {"executor": "ramping-vus", "stages": [{"duration": "1s", "target": target}]},
        })
        assert cli.main(["run", "-c", str(path), "--no-live"]) == cli.EXIT_CONFIG_ERROR
        assert fake_execute["configs"] == []

    def test_non_object_defaults_exits_with_config_error(self, tmp_path, fake_execute):
        path = write_config(tmp_path, defaults="fast")
        assert cli.main(["run", "-c", str(path), "--no-live"]) == cli.EXIT_CONFIG_ERROR
