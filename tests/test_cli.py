import json
import textwrap
from unittest.mock import patch

import pytest

from jobrunner.cli import main


@pytest.fixture
def cli_config(tmp_path, monkeypatch):
    """Config file pointing at a temp SQLite database, with fast pool timings."""
    monkeypatch.chdir(tmp_path)
    config_path = tmp_path / "jobrunner.yaml"
    db_path = tmp_path / "cli.db"
    config_path.write_text(
        textwrap.dedent(
            f"""
            backend:
              type: sqlite
              sqlite:
                path: {db_path}
            queue:
              retry_base_delay_s: 0
              poll_interval_s: 0.01
            pool:
              dequeue_timeout_s: 0.2
              heartbeat_interval_s: 0.05
              monitor_interval_s: 0.1
              shutdown_timeout_s: 5.0
            queues:
              - name: general
                workers: 2
              - name: translations
                workers: 1
            logging:
              level: WARNING
            """
        )
    )
    return str(config_path)


def run_cli(*argv):
    """Run main() and return its exit code."""
    with patch("sys.argv", ["jobrunner", *argv]):
        with pytest.raises(SystemExit) as exc_info:
            main()
    return exc_info.value.code


def enqueue(cli_config, capsys, *extra):
    assert run_cli("enqueue", "--config", cli_config, *extra) == 0
    return capsys.readouterr().out.strip()


def test_cli_help_displays():
    """Test --help works without errors."""
    assert run_cli("--help") == 0


def test_cli_worker_help():
    """Test worker subcommand help."""
    assert run_cli("worker", "--help") == 0


def test_cli_no_command_prints_usage(capsys):
    with patch("sys.argv", ["jobrunner"]):
        main()
    assert "usage" in capsys.readouterr().out.lower()


def test_enqueue_and_status(cli_config, capsys):
    job_id = enqueue(
        cli_config, capsys, "--type", "send_email", "--payload", '{"to": "a@b.c"}', "--priority", "8"
    )
    assert job_id

    assert run_cli("status", job_id, "--config", cli_config) == 0
    out = capsys.readouterr().out
    assert f"JOB {job_id}" in out
    assert "send_email" in out
    assert "pending" in out


def test_enqueue_explicit_id_and_queue(cli_config, capsys):
    job_id = enqueue(
        cli_config, capsys, "--type", "translate", "--queue", "translations", "--id", "job-42"
    )
    assert job_id == "job-42"

    assert run_cli("queue", "list", "--queue", "translations", "--config", cli_config) == 0
    out = capsys.readouterr().out
    assert "1 job(s) in translations" in out
    assert "job-42" in out


def test_enqueue_invalid_payload(cli_config, capsys):
    code = run_cli("enqueue", "--config", cli_config, "--type", "x", "--payload", "{not json")
    assert code == 2
    assert "invalid --payload" in capsys.readouterr().out


def test_enqueue_unknown_queue(cli_config, capsys):
    code = run_cli("enqueue", "--config", cli_config, "--type", "x", "--queue", "nope")
    assert code == 1
    assert "queue not found: nope" in capsys.readouterr().out


def test_queue_stats(cli_config, capsys):
    enqueue(cli_config, capsys, "--type", "noop")
    enqueue(cli_config, capsys, "--type", "noop")

    assert run_cli("queue", "stats", "--queue", "general", "--config", cli_config) == 0
    out = capsys.readouterr().out
    assert "QUEUE STATUS: general" in out
    assert "Pending:              2" in out


def test_health(cli_config, capsys):
    assert run_cli("health", "--config", cli_config) == 0
    health = json.loads(capsys.readouterr().out)
    assert health["status"] == "healthy"
    assert set(health["queues"]) == {"general", "translations"}


def test_unknown_job_ids(cli_config, capsys):
    assert run_cli("queue", "retry", "missing-id", "--config", cli_config) == 1
    assert run_cli("queue", "delete", "missing-id", "--config", cli_config) == 1
    assert run_cli("status", "missing-id", "--config", cli_config) == 1
    assert "job not found: missing-id" in capsys.readouterr().out


def test_invalid_worker_count(cli_config, capsys):
    assert run_cli("worker", "--config", cli_config, "--workers", "0") == 2


def test_unknown_worker_queue(cli_config, capsys):
    assert run_cli("worker", "--config", cli_config, "--queue", "missing") == 2


def test_worker_drain_processes_jobs(cli_config, capsys, tmp_path, monkeypatch):
    (tmp_path / "cli_processors.py").write_text(
        textwrap.dedent(
            """
            from jobrunner.queue import job_processor


            @job_processor("shout")
            def shout(ctx, job):
                return {"text": job.payload["text"].upper()}
            """
        )
    )
    monkeypatch.syspath_prepend(str(tmp_path))
    job_id = enqueue(cli_config, capsys, "--type", "shout", "--payload", '{"text": "hi"}')

    code = run_cli(
        "worker", "--config", cli_config, "-q", "general", "-p", "cli_processors:shout", "--drain"
    )
    assert code == 0
    out = capsys.readouterr().out
    assert "WORKER SUMMARY" in out
    assert "succeeded=1" in out

    assert run_cli("status", job_id, "--config", cli_config) == 0
    out = capsys.readouterr().out
    assert "completed" in out
    assert '"HI"' in out


def test_worker_bad_processor_path(cli_config, capsys):
    code = run_cli("worker", "--config", cli_config, "-p", "no_such_module:thing", "--drain")
    assert code == 2
    assert "cannot load processor" in capsys.readouterr().out


def test_cleanup(cli_config, capsys):
    assert run_cli("queue", "cleanup", "--hours", "1", "--config", cli_config) == 0
    assert "Removed 0 job(s) older than 1h" in capsys.readouterr().out
