import os
import stat

import pytest

from pgserver_ops.lib import env, mail
from pgserver_ops.lib.command import CommandError, run_cmd
from pgserver_ops.lib.files import backup_file, copy_tree, remove_tree, write_text
from pgserver_ops.lib.systemd import render_service_unit, render_timer_unit

MISSING = "pgserver-ops-no-such-binary"


def test_missing_executable_is_127():
    assert run_cmd([MISSING, "--help"], check=False).returncode == 127
    with pytest.raises(CommandError) as exc:
        run_cmd([MISSING])
    assert exc.value.returncode == 127


def test_dry_run_never_executes():
    r = run_cmd([MISSING], dry_run=True)
    assert r.ok and r.stdout == ""


def test_write_text_sets_mode_and_leaves_no_temp(tmp_path):
    target = tmp_path / "sub" / "userlist.txt"
    write_text(target, "x\n", mode=0o640)
    assert target.read_text() == "x\n"
    assert stat.S_IMODE(os.stat(target).st_mode) == 0o640
    assert [p.name for p in target.parent.iterdir()] == ["userlist.txt"]


def test_write_text_dry_run(tmp_path):
    write_text(tmp_path / "nope.conf", "x", dry_run=True)
    assert not (tmp_path / "nope.conf").exists()


def test_backup_file(tmp_path):
    assert backup_file(tmp_path / "missing.ini", "1") is None
    src = tmp_path / "pgbouncer.ini"
    src.write_text("a")
    assert backup_file(src, "20260101000000").read_text() == "a"


def test_copy_tree(tmp_path):
    (tmp_path / "src" / "nested").mkdir(parents=True)
    (tmp_path / "src" / "nested" / "a.conf").write_text("a")
    copy_tree(tmp_path / "src", tmp_path / "dst")
    assert (tmp_path / "dst" / "nested" / "a.conf").read_text() == "a"
    with pytest.raises(FileNotFoundError):
        copy_tree(tmp_path / "absent", tmp_path / "dst")


def test_unit_rendering():
    unit = render_service_unit(
        description="x",
        exec_start="/usr/bin/pgserver-ops recovery daemon",
        service_type="simple",
        restart="always",
        restart_sec=30,
        log_path="/var/log/dr.log",
        environment={"A": "1"},
    )
    assert "StandardOutput=append:/var/log/dr.log" in unit
    assert "Environment=A=1" in unit
    assert unit.endswith("WantedBy=multi-user.target\n")
    assert "OnCalendar=daily" in render_timer_unit(description="t", on_calendar="daily", persistent=True)


def test_send_mail_without_mta(monkeypatch):
    monkeypatch.setattr(mail, "which", lambda name: None)
    assert mail.send_mail("dba@example.com", "s", "b") is False


def test_send_mail_uses_sendmail_with_sender(monkeypatch):
    calls = []

    class Result:
        returncode = 0
        stderr = ""

    monkeypatch.setattr(mail, "which", lambda name: "/usr/sbin/sendmail" if name == "sendmail" else None)
    monkeypatch.setattr(mail, "run_cmd", lambda argv, **kw: calls.append((argv, kw)) or Result())
    assert mail.send_mail("dba@example.com", "subj", "body", sender="pg@example.com")
    argv, kw = calls[0]
    assert argv == ["sendmail", "-f", "pg@example.com", "dba@example.com"]
    assert kw["input_text"].startswith("Subject: subj\nFrom: pg@example.com\n")


def test_cli_invocation_puts_global_flags_first(monkeypatch):
    monkeypatch.setattr(env.shutil, "which", lambda name: "/usr/bin/pgserver-ops")
    line = env.cli_invocation("hardware", "check", global_args=("--conf-dir", "/opt/site conf"))
    assert line == "/usr/bin/pgserver-ops --conf-dir '/opt/site conf' hardware check"


def test_remove_tree(tmp_path):
    (tmp_path / "conf.d").mkdir()
    (tmp_path / "conf.d" / "a.conf").write_text("a")
    remove_tree(tmp_path / "conf.d", dry_run=True)
    assert (tmp_path / "conf.d").is_dir()
    remove_tree(tmp_path / "conf.d")
    assert not (tmp_path / "conf.d").exists()
    remove_tree(tmp_path / "conf.d")
