import pytest

from conftest import FakePsql, FakeSystemd, make_config
from pgserver_ops import main as cli
from pgserver_ops.optimizer import Optimizer
from pgserver_ops.pipeline import FAILED, SKIPPED, SUCCESS, StepSkipped, run_pipeline
from pgserver_ops.state_store import ensure_defaults, load_state, save_state
from pgserver_ops.steps import DynamicOptimizationStep, StepContext, UserMonitorStep


class Recorder:
    def __init__(self, step_id, calls, error=None):
        self.step_id = step_id
        self.calls = calls
        self.error = error

    def run(self, state):
        self.calls.append(self.step_id)
        if self.error is not None:
            raise self.error
        state.setdefault("touched", []).append(self.step_id)
        return state


def make_steps(calls):
    return [
        Recorder("10_a", calls),
        Recorder("20_b", calls, error=RuntimeError("boom")),
        Recorder("30_c", calls, error=StepSkipped("not needed")),
        Recorder("40_d", calls),
    ]


def test_failure_does_not_stop_later_steps():
    calls = []
    state = ensure_defaults({})
    result = run_pipeline(state=state, steps=make_steps(calls))

    assert calls == ["10_a", "20_b", "30_c", "40_d"]
    assert result.outcomes == [("10_a", SUCCESS), ("20_b", FAILED), ("30_c", SKIPPED), ("40_d", SUCCESS)]
    assert not result.ok
    assert state["execution"]["completed_steps"] == ["10_a", "40_d"]
    assert state["execution"]["errors"] == [{"step": "20_b", "error": "boom"}]
    assert state["execution"]["results"]["20_b"] == FAILED
    assert state["execution"]["current_step"] is None


def test_resume_skips_completed_steps():
    calls = []
    state = ensure_defaults({})
    run_pipeline(state=state, steps=make_steps(calls))
    calls.clear()

    result = run_pipeline(state=state, steps=make_steps(calls))
    assert calls == ["20_b", "30_c"]
    assert result.skipped_steps == ["10_a", "30_c", "40_d"]

    calls.clear()
    run_pipeline(state=state, steps=make_steps(calls), force=True)
    assert calls == ["10_a", "20_b", "30_c", "40_d"]


def test_start_at_and_stop_after():
    calls = []
    run_pipeline(state={}, steps=make_steps(calls), start_at="20_b", stop_after="30_c")
    assert calls == ["20_b", "30_c"]


def test_state_roundtrip_yaml(tmp_path):
    path = str(tmp_path / "state.yaml")
    state = ensure_defaults({})
    state["hardware"] = {"cpu_cores": 4}
    save_state(path, state)
    assert load_state(path)["hardware"] == {"cpu_cores": 4}


def test_load_state_rejects_non_mapping(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("[1, 2]")
    with pytest.raises(ValueError):
        load_state(str(path))


def make_ctx(tmp_path, **overrides):
    config = make_config(tmp_path, **overrides)
    systemd = FakeSystemd(tmp_path / "units")
    psql = FakePsql()
    optimizer = Optimizer(config, psql=psql, systemd=systemd, which_fn=lambda name: None)
    return StepContext(config=config, psql=psql, systemd=systemd, optimizer=optimizer)


def test_optimization_step_skips_when_disabled_or_missing_psql(tmp_path):
    with pytest.raises(StepSkipped):
        DynamicOptimizationStep(make_ctx(tmp_path, ENABLE_DYNAMIC_OPTIMIZATION="false")).run({})
    with pytest.raises(StepSkipped, match="not installed"):
        DynamicOptimizationStep(make_ctx(tmp_path)).run({})


def test_user_monitor_step_skips_when_postgres_down(tmp_path):
    with pytest.raises(StepSkipped, match="not running"):
        UserMonitorStep(make_ctx(tmp_path)).run({})


def test_init_requires_root(tmp_path, monkeypatch):
    monkeypatch.setattr(cli.os, "geteuid", lambda: 1000, raising=False)
    rc = cli.main(["--conf-dir", str(tmp_path), "--log", str(tmp_path / "init.log"), "init"])
    assert rc == 1


def test_parser_accepts_subcommands():
    parser = cli.build_parser()
    args = parser.parse_args(["--dry-run", "optimize", "--minimal"])
    assert args.dry_run and args.minimal
    args = parser.parse_args(["recovery", "check"])
    assert args.action == "check"
    with pytest.raises(SystemExit):
        parser.parse_args(["optimize", "--minimal", "--full"])
