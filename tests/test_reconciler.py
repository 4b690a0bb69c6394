from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from proxy_sync.backup import BackupError
from proxy_sync.config import AgentConfig
from proxy_sync.process_control import CommandResult, NginxController
from proxy_sync.reconciler import CycleOutcome, Reconciler
from proxy_sync.remote_config import RemoteConfigHTTPError, RemoteConfigTransportError
from proxy_sync.scheduler import IntervalTicker

CURRENT = "server { listen 80; }"
UPDATED = "server { listen 8080; }"

_OK = CommandResult(ok=True, command="nginx -s reload", exit_code=0, output="")
_TEST_FAILED = CommandResult(
    ok=False,
    command="nginx -t",
    exit_code=1,
    output='nginx: [emerg] unexpected "}" in nginx.conf:1',
)


def _body(value) -> str:
    return json.dumps({"key": "edge", "value": value, "dataChangeLastModifiedBy": "ops"})


@pytest.fixture
def managed(tmp_path: Path) -> Path:
    path = tmp_path / "nginx.conf"
    path.write_text(CURRENT)
    return path


def _reconciler(
    managed: Path,
    *,
    body: str | None = None,
    apply_result: CommandResult = _OK,
    ticker=None,
    controller=None,
):
    config = AgentConfig(
        ip="http://apollo",
        env="DEV",
        app_id="edge",
        token="tok",
        created_by="ops",
        nginx_conf_path=str(managed),
    )
    client = MagicMock()
    client.fetch_item.return_value = body if body is not None else _body(UPDATED)
    if controller is None:
        controller = MagicMock()
        controller.apply.return_value = apply_result
    return Reconciler(config, client, controller, ticker=ticker), client, controller


def _backup_of(managed: Path) -> Path:
    return managed.with_name(managed.name + ".bak")


def test_unchanged_remote_value_does_not_touch_nginx(managed: Path, caplog):
    caplog.set_level(logging.INFO)
    reconciler, client, controller = _reconciler(managed, body=_body(CURRENT))

    result = reconciler.run_cycle()

    assert result.outcome == CycleOutcome.NO_CHANGE
    client.fetch_item.assert_called_once_with("edge")
    controller.apply.assert_not_called()
    assert managed.read_text() == CURRENT
    assert "No change detected" in caplog.text


def test_changed_value_is_written_and_applied_once(managed: Path):
    reconciler, _, controller = _reconciler(managed)

    first = reconciler.run_cycle()
    assert first.outcome == CycleOutcome.APPLIED
    assert managed.read_bytes() == UPDATED.encode("utf-8")
    assert _backup_of(managed).read_text() == CURRENT

    second = reconciler.run_cycle()
    assert second.outcome == CycleOutcome.NO_CHANGE
    assert controller.apply.call_count == 1
    assert _backup_of(managed).read_text() == UPDATED
    assert reconciler.cycle_count == 2


def test_http_500_leaves_files_at_pre_cycle_content(managed: Path, caplog):
    reconciler, client, controller = _reconciler(managed)
    client.fetch_item.side_effect = RemoteConfigHTTPError(
        "GET", "http://apollo/items/edge", 500, '{"status":500,"message":"internal"}'
    )

    result = reconciler.run_cycle()

    assert result.outcome == CycleOutcome.FETCH_FAILED
    assert result.outcome.is_failure
    assert managed.read_text() == CURRENT
    assert _backup_of(managed).read_text() == CURRENT
    controller.apply.assert_not_called()
    assert "HTTP 500" in caplog.text
    assert '"message":"internal"' in caplog.text


def test_transport_error_aborts_cycle(managed: Path):
    reconciler, client, _ = _reconciler(managed)
    client.fetch_item.side_effect = RemoteConfigTransportError("connect timeout")

    assert reconciler.run_cycle().outcome == CycleOutcome.FETCH_FAILED
    assert managed.read_text() == CURRENT


def test_failed_config_test_restores_backup(managed: Path, caplog):
    caplog.set_level(logging.INFO)
    reconciler, _, controller = _reconciler(managed, apply_result=_TEST_FAILED)

    result = reconciler.run_cycle()

    assert result.outcome == CycleOutcome.ROLLED_BACK
    controller.apply.assert_called_once()
    assert managed.read_text() == CURRENT
    assert "nginx reload failed" in caplog.text
    assert "Restored" in caplog.text


def test_failed_reload_restores_backup(managed: Path):
    failed_reload = CommandResult(
        ok=False, command="nginx -s reload", exit_code=1, output="invalid PID number"
    )
    reconciler, _, _ = _reconciler(managed, apply_result=failed_reload)

    assert reconciler.run_cycle().outcome == CycleOutcome.ROLLED_BACK
    assert managed.read_text() == CURRENT


def test_rollback_failure_is_logged_not_raised(managed: Path, caplog):
    reconciler, _, _ = _reconciler(managed, apply_result=_TEST_FAILED)

    with patch("proxy_sync.reconciler.backup.restore", side_effect=BackupError("disk full")):
        result = reconciler.run_cycle()

    assert result.outcome == CycleOutcome.ROLLBACK_FAILED
    assert "Restoring from backup failed: disk full" in caplog.text


def test_exception_from_controller_still_restores_backup(managed: Path, caplog):
    reconciler, _, controller = _reconciler(managed)
    controller.apply.side_effect = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")

    result = reconciler.run_cycle()

    assert result.outcome == CycleOutcome.ROLLED_BACK
    assert "UnicodeDecodeError" in result.detail
    assert managed.read_text() == CURRENT
    assert "nginx apply raised" in caplog.text


def test_digest_failure_aborts_before_apply(managed: Path, caplog):
    reconciler, _, controller = _reconciler(managed)

    with patch("proxy_sync.reconciler.file_digest", side_effect=OSError("stale handle")):
        result = reconciler.run_cycle()

    assert result.outcome == CycleOutcome.DIGEST_FAILED
    assert "stale handle" in result.detail
    controller.apply.assert_not_called()
    assert "Computing config digest failed" in caplog.text


def _fake_nginx(tmp_path: Path, script: str) -> str:
    path = tmp_path / "fake-nginx"
    path.write_text("#!/bin/sh\n" + script)
    path.chmod(0o755)
    return str(path)


def _reconciler_with_real_controller(managed: Path, nginx_bin: str) -> Reconciler:
    controller = NginxController(nginx_bin=nginx_bin, timeout_s=10)
    reconciler, _, _ = _reconciler(managed, controller=controller)
    return reconciler


def test_non_utf8_nginx_output_rolls_back(managed: Path, tmp_path: Path, caplog):
    nginx_bin = _fake_nginx(tmp_path, "printf '\\377\\376 bad config\\n'\nexit 1\n")
    reconciler = _reconciler_with_real_controller(managed, nginx_bin)

    result = reconciler.run_cycle()

    assert result.outcome == CycleOutcome.ROLLED_BACK
    assert managed.read_text() == CURRENT
    assert "bad config" in caplog.text


def test_passing_nginx_binary_applies(managed: Path, tmp_path: Path):
    nginx_bin = _fake_nginx(tmp_path, "echo \"nginx: $*\"\nexit 0\n")
    reconciler = _reconciler_with_real_controller(managed, nginx_bin)

    result = reconciler.run_cycle()

    assert result.outcome == CycleOutcome.APPLIED
    assert managed.read_text() == UPDATED


def test_symlinked_config_survives_rollback(tmp_path: Path):
    real = tmp_path / "conf.d" / "edge.conf"
    real.parent.mkdir()
    real.write_text(CURRENT)
    link = tmp_path / "nginx.conf"
    link.symlink_to(real)
    reconciler, _, _ = _reconciler(link, apply_result=_TEST_FAILED)

    assert reconciler.run_cycle().outcome == CycleOutcome.ROLLED_BACK
    assert link.is_symlink()
    assert real.read_text() == CURRENT


def test_missing_managed_file_skips_remote_call(tmp_path: Path):
    reconciler, client, controller = _reconciler(tmp_path / "nginx.conf")

    result = reconciler.run_cycle()

    assert result.outcome == CycleOutcome.BACKUP_FAILED
    assert "does not exist" in result.detail
    client.fetch_item.assert_not_called()
    controller.apply.assert_not_called()


def test_malformed_body_is_logged_raw(managed: Path, caplog):
    reconciler, _, controller = _reconciler(managed, body="<html>502 Bad Gateway</html>")

    result = reconciler.run_cycle()

    assert result.outcome == CycleOutcome.DECODE_FAILED
    assert "<html>502 Bad Gateway</html>" in caplog.text
    assert managed.read_text() == CURRENT
    controller.apply.assert_not_called()


def test_empty_value_does_not_overwrite_local_file(managed: Path):
    reconciler, _, controller = _reconciler(managed, body=_body(""))

    assert reconciler.run_cycle().outcome == CycleOutcome.EMPTY_VALUE
    assert managed.read_text() == CURRENT
    controller.apply.assert_not_called()


def test_write_failure_aborts_before_apply(managed: Path):
    reconciler, _, controller = _reconciler(managed)

    with patch("proxy_sync.reconciler.local_writer.save", side_effect=PermissionError("read-only")):
        result = reconciler.run_cycle()

    assert result.outcome == CycleOutcome.WRITE_FAILED
    controller.apply.assert_not_called()


def test_unexpected_error_is_contained(managed: Path, caplog):
    reconciler, client, _ = _reconciler(managed)
    client.fetch_item.side_effect = ValueError("unexpected")

    result = reconciler.run_cycle()

    assert result.outcome == CycleOutcome.ERROR
    assert "Unexpected error in reconciliation cycle" in caplog.text


class _CountingTicker:
    interval_s = 0.0

    def __init__(self, ticks: int) -> None:
        self._remaining = ticks
        self.waits = 0

    def wait(self, stop_event: threading.Event) -> bool:
        self.waits += 1
        if stop_event.is_set() or self._remaining == 0:
            return False
        self._remaining -= 1
        return True


def test_run_loops_until_ticker_stops(managed: Path):
    ticker = _CountingTicker(ticks=3)
    reconciler, client, controller = _reconciler(managed, ticker=ticker)

    reconciler.run(threading.Event())

    assert client.fetch_item.call_count == 3
    assert controller.apply.call_count == 1
    assert ticker.waits == 4


def test_run_keeps_going_after_failed_cycles(managed: Path):
    reconciler, client, _ = _reconciler(managed, ticker=_CountingTicker(ticks=3))
    client.fetch_item.side_effect = [
        RemoteConfigTransportError("down"),
        RemoteConfigTransportError("down"),
        _body(UPDATED),
    ]

    reconciler.run(threading.Event())

    assert managed.read_text() == UPDATED


def test_interval_ticker_returns_false_once_stopped():
    stop = threading.Event()
    ticker = IntervalTicker(interval_s=0.01)
    assert ticker.wait(stop) is True

    stop.set()
    assert ticker.wait(stop) is False


def test_run_exits_immediately_when_stop_is_already_set(managed: Path):
    reconciler, client, _ = _reconciler(managed, ticker=IntervalTicker(interval_s=60))
    stop = threading.Event()
    stop.set()

    reconciler.run(stop)

    client.fetch_item.assert_not_called()
