"""
Tests for the db-backup command line entry point and scheduler loop.
"""

import logging
import threading

import pytest

from db_backup import cli
from db_backup.logger import configure_logging
from db_backup.job_engine import UploadFailure

from .conftest import RecordingDumper, RecordingRemover, RecordingUploader


@pytest.fixture
def backup_env(clean_env, tmp_path):
    clean_env.setenv("PROJECT_NAMES", "app|billing")
    clean_env.setenv("BACKUP_DATABASE_URLS", "postgres://a|postgres://b")
    clean_env.setenv("AWS_S3_BUCKET", "backups")
    clean_env.setenv("AWS_S3_REGION", "eu-west-1")
    clean_env.setenv("BACKUP_TEMP_DIR", str(tmp_path))
    return clean_env


@pytest.fixture
def fake_adapters(backup_env, call_log):
    adapters = {
        "dumper": RecordingDumper(call_log),
        "uploader": RecordingUploader(call_log),
        "remover": RecordingRemover(call_log),
    }
    backup_env.setattr(
        "db_backup.orchestrator.build_adapters",
        lambda config: (adapters["dumper"], adapters["uploader"], adapters["remover"]),
    )
    return adapters


class TestMain:
    def test_successful_run_exits_zero(self, fake_adapters, call_log):
        assert cli.main([]) == cli.EXIT_OK
        assert call_log.stages_for("app") == ["dump", "upload", "delete"]
        assert call_log.stages_for("billing") == ["dump", "upload", "delete"]

    def test_failed_job_exits_one(self, fake_adapters, caplog):
        fake_adapters["uploader"].failures = {"billing": UploadFailure("network unreachable")}

        assert cli.main([]) == cli.EXIT_FAILED
        assert "Backup of billing failed at upload stage: network unreachable" in caplog.text

    def test_project_filter(self, fake_adapters, call_log):
        assert cli.main(["--project", "billing"]) == cli.EXIT_OK
        assert call_log.stages_for("app") == []

    def test_unknown_project_is_configuration_error(self, fake_adapters):
        assert cli.main(["--project", "crm"]) == cli.EXIT_CONFIG

    def test_invalid_configuration_exits_two(self, clean_env):
        assert cli.main([]) == cli.EXIT_CONFIG

    def test_invalid_endpoint_exits_two(self, backup_env, caplog):
        backup_env.setenv("AWS_S3_ENDPOINT", "not a url")

        assert cli.main([]) == cli.EXIT_CONFIG
        assert "Could not set up backup adapters" in caplog.text

    def test_trailing_separator_in_project_names(self, fake_adapters, backup_env, call_log, capsys):
        backup_env.setenv("PROJECT_NAMES", "app|billing|")
        backup_env.setenv("BACKUP_DATABASE_URLS", "postgres://a|postgres://b|")

        assert cli.main(["--list-projects"]) == cli.EXIT_OK
        assert capsys.readouterr().out.splitlines() == ["app", "billing"]
        assert cli.main([]) == cli.EXIT_OK
        assert len(call_log.calls) == 6

    def test_list_projects(self, backup_env, capsys):
        backup_env.setenv("BACKUP_DATABASE_URLS", "postgres://a")

        assert cli.main(["--list-projects"]) == cli.EXIT_OK
        assert capsys.readouterr().out.splitlines() == ["app", "billing (no database URL)"]

    def test_config_file_option(self, clean_env, fake_adapters, tmp_path, call_log):
        for name in ("PROJECT_NAMES", "BACKUP_DATABASE_URLS", "AWS_S3_BUCKET", "AWS_S3_REGION"):
            clean_env.delenv(name)
        path = tmp_path / "db-backup.yaml"
        path.write_text(
            "project_names: [crm]\n"
            "database_urls: ['postgres://c']\n"
            "storage: {bucket: nightly, region: us-east-1}\n",
            encoding="utf-8",
        )

        assert cli.main(["--config", str(path)]) == cli.EXIT_OK
        assert call_log.stages_for("crm") == ["dump", "upload", "delete"]

    def test_once_skips_scheduler(self, fake_adapters, backup_env, monkeypatch):
        backup_env.setenv("BACKUP_CRON_SCHEDULE", "0 3 * * *")

        def fail_scheduler(**_kwargs):
            raise AssertionError("scheduler should not start")

        monkeypatch.setattr(cli, "run_with_scheduler", fail_scheduler)

        assert cli.main(["--once"]) == cli.EXIT_OK


class TestScheduler:
    def test_runs_on_startup_then_stops(self, backup_env, make_config, monkeypatch):
        monkeypatch.setattr(cli.signal, "signal", lambda *_args: None)
        config = make_config(["app"], ["postgres://a"], scheduler={"cron": "0 3 * * *"})
        monkeypatch.setattr(cli, "load_config", lambda _path: config)
        stop_event = threading.Event()
        runs = []

        def fake_run_once(cfg, projects):
            runs.append((cfg, projects))
            stop_event.set()
            return cli.EXIT_FAILED

        monkeypatch.setattr(cli, "run_once", fake_run_once)

        exit_code = cli.run_with_scheduler(None, config, ["app"], stop_event=stop_event)

        assert exit_code == cli.EXIT_OK
        assert runs == [(config, ["app"])]

    def test_keeps_running_after_failed_runs(self, backup_env, make_config, monkeypatch, caplog):
        caplog.set_level(logging.INFO)
        monkeypatch.setattr(cli.signal, "signal", lambda *_args: None)
        monkeypatch.setattr(cli, "_next_run", lambda _cron, reference: reference)
        config = make_config(["app"], ["postgres://a"], scheduler={"cron": "0 3 * * *"})
        monkeypatch.setattr(cli, "load_config", lambda _path: config)
        stop_event = threading.Event()
        runs = []

        def fake_run_once(cfg, projects):
            runs.append(projects)
            if len(runs) == 2:
                stop_event.set()
            return cli.EXIT_FAILED

        monkeypatch.setattr(cli, "run_once", fake_run_once)

        exit_code = cli.run_with_scheduler(None, config, None, stop_event=stop_event)

        assert exit_code == cli.EXIT_OK
        assert runs == [None, None]
        assert "Scheduled run #2 failed (exit code 1); 2 consecutive failed run(s)" in caplog.text
        assert "Scheduler stopped after 2 run(s)" in caplog.text

    def test_keeps_previous_config_when_reload_fails(self, backup_env, make_config, monkeypatch):
        monkeypatch.setattr(cli.signal, "signal", lambda *_args: None)
        config = make_config(["app"], ["postgres://a"], scheduler={"cron": "0 3 * * *"})
        stop_event = threading.Event()
        runs = []

        def broken_load_config(_path):
            raise cli.ConfigurationError("PROJECT_NAMES missing")

        def fake_run_once(cfg, projects):
            runs.append(cfg)
            stop_event.set()
            return cli.EXIT_OK

        monkeypatch.setattr(cli, "load_config", broken_load_config)
        monkeypatch.setattr(cli, "run_once", fake_run_once)

        assert cli.run_with_scheduler(None, config, None, stop_event=stop_event) == cli.EXIT_OK
        assert runs == [config]

    def test_exits_when_schedule_removed(self, backup_env, make_config, monkeypatch):
        monkeypatch.setattr(cli.signal, "signal", lambda *_args: None)
        scheduled = make_config(["app"], ["postgres://a"], scheduler={"cron": "0 3 * * *"})
        unscheduled = make_config(["app"], ["postgres://a"])
        monkeypatch.setattr(cli, "load_config", lambda _path: unscheduled)
        monkeypatch.setattr(cli, "run_once", lambda *_args: pytest.fail("no run expected"))

        assert cli.run_with_scheduler(None, scheduled, None, stop_event=threading.Event()) == cli.EXIT_OK


def test_configure_logging_is_idempotent():
    root = logging.getLogger()
    previous_level = root.level
    try:
        configure_logging("debug")
        configure_logging("warning")
        ours = [handler for handler in root.handlers if getattr(handler, "_db_backup", False)]

        assert len(ours) == 1
        assert root.level == logging.WARNING
        assert logging.getLogger("botocore").level == logging.WARNING
    finally:
        root.setLevel(previous_level)
