"""
Tests for the service wiring and the daemon entry points.
"""

import asyncio
import json

import pytest

from timekeeper_daemon import __main__ as daemon_main
from timekeeper_daemon.__main__ import TimekeeperDaemon
from timekeeper_daemon.config import CONFIG_ENV_VAR
from timekeeper_daemon.maintenance import SweepReport
from timekeeper_daemon.notifier import LogNotifier
from timekeeper_daemon.service import TimerService


@pytest.mark.asyncio
async def test_service_from_config_syncs_users(config, storage):
    service = TimerService.from_config(config, storage=storage)

    assert isinstance(service.notifier, LogNotifier)
    assert service.clock.tz.key == "Australia/Melbourne"
    assert service.sweep.warning_seconds == 600

    admin_ids = await storage.get_admin_ids()
    assert len(admin_ids) == 1
    assert (await storage.get_user(admin_ids[0])).username == "alice"


@pytest.mark.asyncio
async def test_periodic_sweep_survives_errors(config, service, mocker):
    daemon = TimekeeperDaemon(config, service=service)
    sweep = mocker.patch.object(
        service,
        "run_maintenance_sweep",
        side_effect=[RuntimeError("boom"), SweepReport(errors=1), asyncio.CancelledError()],
    )
    daemon.sweep_interval = 0

    with pytest.raises(asyncio.CancelledError):
        await daemon.periodic_sweep()
    assert sweep.call_count == 3


def test_main_exits_on_config_error(write_bad_config, monkeypatch):
    monkeypatch.setenv(CONFIG_ENV_VAR, write_bad_config)
    with pytest.raises(SystemExit) as exc_info:
        daemon_main.main()
    assert exc_info.value.code == 1


def test_sweep_main_prints_report(test_config, monkeypatch, capsys):
    _, config_path = test_config
    monkeypatch.setenv(CONFIG_ENV_VAR, config_path)

    daemon_main.sweep_main()

    report = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert report == {"cleaned": 0, "updated": 0, "warned": 0, "expired": 0, "errors": 0}


@pytest.fixture
def write_bad_config(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("timezone: Nowhere/Special\n")
    return str(path)
