import json
from datetime import datetime
from pathlib import Path

import pytest

from conftest import FakePsql, FixedClock
from pgserver_ops import hwchange
from pgserver_ops.hwchange import HardwareChange, HardwareChangeDetector, is_production_hours, percent_change
from pgserver_ops.lib.hwdetect import HardwareSpecs
from pgserver_ops.optimizer import OptimizationError

NIGHT = datetime(2026, 5, 1, 2, 0, 0)
NOON = datetime(2026, 5, 1, 12, 0, 0)


class FakeOptimizer:
    def __init__(self, systemd, hw=None, fail_with=None, on_run=None):
        self.psql = FakePsql()
        self.systemd = systemd
        self.hw = hw
        self.fail_with = fail_with
        self.on_run = on_run
        self.runs = []

    def detect(self):
        return self.hw

    def run(self, *, minimal=False, hw=None):
        self.runs.append(minimal)
        if self.on_run is not None:
            self.on_run()
        if self.fail_with is not None:
            raise self.fail_with
        return "report.txt"


def specs(cores=2, mem=4096, disk=50):
    return HardwareSpecs(cpu_cores=cores, total_memory_mb=mem, disk_size_gb=disk, timestamp="t")


def make_detector(config, systemd, optimizer, now=NIGHT, which=lambda name: None):
    return HardwareChangeDetector(config, optimizer, systemd=systemd, clock=FixedClock(now), which_fn=which)


def test_percent_change_truncates_toward_zero():
    assert percent_change(4, 8) == 100
    assert percent_change(8, 4) == -50
    assert percent_change(3, 2) == -33
    assert percent_change(0, 16) == 0


def test_threshold_is_inclusive():
    assert HardwareChange(specs(mem=4096), specs(mem=4506)).significant
    assert not HardwareChange(specs(mem=4096), specs(mem=4505)).significant
    assert HardwareChange(specs(disk=100), specs(disk=80)).significant


def test_production_hours_window():
    assert is_production_hours(datetime(2026, 1, 1, 8), 8, 20)
    assert is_production_hours(datetime(2026, 1, 1, 19, 59), 8, 20)
    assert not is_production_hours(datetime(2026, 1, 1, 20), 8, 20)
    assert not is_production_hours(datetime(2026, 1, 1, 7, 59), 8, 20)


def test_first_run_only_records_snapshot(config, systemd):
    opt = FakeOptimizer(systemd, hw=specs())
    det = make_detector(config, systemd, opt)
    assert det.check() is None
    saved = json.loads(det.specs_file.read_text())
    assert saved["cpu"]["cores"] == 2
    assert opt.runs == []


def _seed_previous(det, hw):
    det.specs_file.parent.mkdir(parents=True, exist_ok=True)
    det.specs_file.write_text(json.dumps(hw.to_snapshot()))


def test_significant_change_at_night_runs_full_optimization(config, systemd):
    opt = FakeOptimizer(systemd, hw=specs(cores=4))
    det = make_detector(config, systemd, opt, now=NIGHT)
    _seed_previous(det, specs(cores=2))

    assert det.check() == "full"
    assert opt.runs == [False]
    assert "CPU Cores: 2 → 4 (100% change)" in det.changes_file.read_text(encoding="utf-8")
    backup = det.latest_backup()
    assert backup is not None and (backup / "backup_info.txt").is_file()
    assert json.loads(det.previous_specs_file.read_text())["cpu"]["cores"] == 2


def test_significant_change_in_production_hours_is_phased(config, systemd):
    opt = FakeOptimizer(systemd, hw=specs(mem=8192))
    det = make_detector(config, systemd, opt, now=NOON)
    _seed_previous(det, specs(mem=4096))

    assert det.check() == "phased"
    assert opt.runs == [True]
    text = (Path(systemd.unit_dir) / "pg-full-optimization.timer").read_text()
    assert "OnCalendar=*-*-* 01:00:00" in text
    assert "Persistent=false" in text
    assert "pg-full-optimization.timer" in systemd.verbs("start")


def test_phased_optimization_prefers_at(config, systemd, monkeypatch):
    calls = []
    monkeypatch.setattr(hwchange, "run_cmd", lambda argv, **kw: calls.append((argv, kw)))
    opt = FakeOptimizer(systemd, hw=specs())
    det = make_detector(config, systemd, opt, now=NOON, which=lambda name: "/usr/bin/at" if name == "at" else None)

    assert det.perform_phased_optimization() == "at"
    (argv, kw), = calls
    assert argv == ["at", "01:00"]
    assert "optimize --full" in kw["input_text"]
    assert f"--conf-dir {config.conf_dir} optimize" in kw["input_text"]


def test_small_change_takes_no_action(config, systemd):
    opt = FakeOptimizer(systemd, hw=specs(mem=4200))
    det = make_detector(config, systemd, opt)
    _seed_previous(det, specs(mem=4096))
    assert det.check() is None
    assert opt.runs == []


def test_failed_reconfiguration_restores_backup(config, systemd):
    pgb = config.pgb_conf_path
    pgb.parent.mkdir(parents=True)
    pgb.write_text("[pgbouncer]\nlisten_port = 6432\n")

    def clobber():
        pgb.write_text("broken\n")

    opt = FakeOptimizer(systemd, fail_with=OptimizationError("reload failed"), on_run=clobber)
    det = make_detector(config, systemd, opt)

    with pytest.raises(OptimizationError):
        det.trigger_reconfiguration()
    assert pgb.read_text() == "[pgbouncer]\nlisten_port = 6432\n"
    assert "pgbouncer" in systemd.verbs("restart")


def test_restore_without_backup_fails(config, systemd):
    det = make_detector(config, systemd, FakeOptimizer(systemd))
    with pytest.raises(FileNotFoundError):
        det.restore_previous_config()


def test_backup_includes_postgres_configuration(tmp_path, config, systemd):
    main = tmp_path / "etc" / "postgresql" / "16" / "main"
    (main / "conf.d").mkdir(parents=True)
    (main / "postgresql.conf").write_text("port = 5432\n")
    (main / "conf.d" / "90-dynamic-optimization.conf").write_text("work_mem = '4MB'\n")
    opt = FakeOptimizer(systemd)
    opt.psql = FakePsql(versions=["16"])

    backup = make_detector(config, systemd, opt).backup_current_config()
    assert (backup / "postgresql.conf").read_text() == "port = 5432\n"
    assert (backup / "conf.d" / "90-dynamic-optimization.conf").is_file()


def test_install_timer(config, systemd):
    det = make_detector(config, systemd, FakeOptimizer(systemd))
    det.install_timer()
    service = (Path(systemd.unit_dir) / "hardware-change-detector.service").read_text()
    timer = (Path(systemd.unit_dir) / "hardware-change-detector.timer").read_text()
    assert f"--conf-dir {config.conf_dir} hardware check" in service
    assert "OnCalendar=daily" in timer and "Persistent=true" in timer
    assert systemd.verbs("enable") == ["hardware-change-detector.timer"]


def _cluster(tmp_path, conf_d=True):
    main = tmp_path / "etc" / "postgresql" / "16" / "main"
    main.mkdir(parents=True)
    (main / "postgresql.conf").write_text("port = 5432\n")
    if conf_d:
        (main / "conf.d").mkdir()
    return main


def _failing_optimizer(systemd, main):
    def write_tuning():
        (main / "conf.d").mkdir(exist_ok=True)
        (main / "conf.d" / "90-dynamic-optimization.conf").write_text("shared_buffers = '2048MB'\n")

    return FakeOptimizer(systemd, fail_with=OptimizationError("pgbouncer restart failed"), on_run=write_tuning)


def test_restore_removes_tuning_added_to_empty_conf_d(tmp_path, config, systemd):
    main = _cluster(tmp_path)
    det = make_detector(config, systemd, _failing_optimizer(systemd, main))

    with pytest.raises(OptimizationError):
        det.trigger_reconfiguration()
    assert (main / "conf.d").is_dir()
    assert list((main / "conf.d").iterdir()) == []
    assert systemd.verbs("reload") == ["postgresql"]


def test_restore_removes_conf_d_that_did_not_exist(tmp_path, config, systemd):
    main = _cluster(tmp_path, conf_d=False)
    det = make_detector(config, systemd, _failing_optimizer(systemd, main))

    with pytest.raises(OptimizationError):
        det.trigger_reconfiguration()
    assert not (main / "conf.d").exists()
    assert "PostgreSQL conf.d present: no" in (det.latest_backup() / "backup_info.txt").read_text()


def test_restore_conf_d_without_postgresql_conf(tmp_path, config, systemd):
    main = tmp_path / "etc" / "postgresql" / "16" / "main"
    (main / "conf.d").mkdir(parents=True)
    (main / "conf.d" / "10-site.conf").write_text("port = 5433\n")
    det = make_detector(config, systemd, FakeOptimizer(systemd))
    det.backup_current_config()

    (main / "conf.d" / "10-site.conf").write_text("port = 6000\n")
    (main / "conf.d" / "90-dynamic-optimization.conf").write_text("work_mem = '64MB'\n")
    det.restore_previous_config()
    assert sorted(p.name for p in (main / "conf.d").iterdir()) == ["10-site.conf"]
    assert (main / "conf.d" / "10-site.conf").read_text() == "port = 5433\n"
