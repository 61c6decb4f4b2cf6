"""Tests for schedule evaluation and the scheduler command."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

import atpar_sync.core.async_utils as async_utils_mod
from atpar_sync.config_schema import ScheduleConfig
from atpar_sync.sync.models import RunStatus, SyncRun
from atpar_sync.sync.repository import JsonFileRepository
from atpar_sync.sync.scheduler import (
    SCHEDULE_TRIGGER,
    due_teams,
    is_due,
    latest_slot,
    main,
    run_scheduled,
)

NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)

HOURLY = ScheduleConfig(kind="hourly", minute=15)
DAILY = ScheduleConfig(kind="daily", hour=10, minute=0)


@pytest.fixture(autouse=True)
def restore_semaphore():
    saved = async_utils_mod._semaphore
    async_utils_mod._semaphore = None
    yield
    async_utils_mod._semaphore = saved


def _scheduled_repository(tmp_path, team_config, schedules: dict):
    teams = {
        team_id: team_config.model_copy(update={"schedule": schedule})
        for team_id, schedule in schedules.items()
    }
    return JsonFileRepository(tmp_path / "state", teams)


class FakeOrchestrator:
    """Records run calls; fails for the teams named in ``failing``."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    async def run(self, team_id, trigger="manual", **kwargs):
        self.calls.append((team_id, trigger))
        if team_id in self.failing:
            raise RuntimeError("boom")
        return f"result-{team_id}"


# ---------------------------------------------------------------------------
# Slots
# ---------------------------------------------------------------------------


class TestLatestSlot:
    """Most recent slot at or before now."""

    def test_manual_has_no_slot(self):
        assert latest_slot(ScheduleConfig(), NOW) is None

    def test_hourly_same_hour(self):
        assert latest_slot(HOURLY, NOW) == NOW.replace(minute=15)

    def test_hourly_previous_hour(self):
        schedule = ScheduleConfig(kind="hourly", minute=45)
        assert latest_slot(schedule, NOW) == NOW.replace(hour=8, minute=45)

    def test_daily_previous_day(self):
        assert latest_slot(DAILY, NOW) == datetime(
            2026, 2, 28, 10, 0, tzinfo=timezone.utc
        )

    def test_slot_equal_to_now(self):
        now = NOW.replace(minute=15)
        assert latest_slot(HOURLY, now) == now


class TestIsDue:
    """A team is due when it has not run since the latest slot."""

    def test_never_run(self):
        assert is_due(HOURLY, None, NOW)

    def test_ran_before_slot(self):
        assert is_due(HOURLY, NOW.replace(minute=10), NOW)

    def test_ran_after_slot(self):
        assert not is_due(HOURLY, NOW.replace(minute=20), NOW)

    def test_manual_never_due(self):
        assert not is_due(ScheduleConfig(), None, NOW)


# ---------------------------------------------------------------------------
# due_teams / run_scheduled
# ---------------------------------------------------------------------------


class TestDueTeams:
    """Only scheduler starts count towards the last start."""

    def test_selects_due_teams(self, tmp_path, team_config):
        repository = _scheduled_repository(
            tmp_path,
            team_config,
            {"alpha": HOURLY, "beta": ScheduleConfig(), "gamma": DAILY},
        )

        assert due_teams(repository, NOW) == ["alpha", "gamma"]

    def test_recent_scheduled_start_not_due(self, tmp_path, team_config):
        repository = _scheduled_repository(tmp_path, team_config, {"alpha": HOURLY})
        repository.mark_scheduled("alpha", NOW.replace(minute=20))

        assert due_teams(repository, NOW) == []

    def test_manual_run_does_not_count(self, tmp_path, team_config):
        repository = _scheduled_repository(tmp_path, team_config, {"alpha": HOURLY})
        repository.append_run_record(
            SyncRun(
                history_id="",
                team_id="alpha",
                trigger="manual",
                started_at=NOW.replace(minute=20),
            )
        )

        assert due_teams(repository, NOW) == ["alpha"]

    def test_many_webhook_runs_do_not_hide_scheduled_start(
        self, tmp_path, team_config
    ):
        schedule = ScheduleConfig(kind="hourly", minute=0)
        repository = _scheduled_repository(
            tmp_path, team_config, {"alpha": schedule}
        )
        repository.mark_scheduled("alpha", NOW.replace(minute=1))
        for minute in range(2, 62):
            repository.append_run_record(
                SyncRun(
                    history_id="",
                    team_id="alpha",
                    trigger="webhook:notion",
                    started_at=NOW.replace(minute=1) + timedelta(seconds=minute),
                    status=RunStatus.COMPLETED,
                )
            )

        assert due_teams(repository, NOW) == []


class TestRunScheduled:
    """Due teams run concurrently; one failure does not stop the rest."""

    async def test_runs_due_teams(self, tmp_path, team_config):
        repository = _scheduled_repository(
            tmp_path, team_config, {"alpha": HOURLY, "beta": HOURLY}
        )
        orchestrator = FakeOrchestrator()

        outcome = await run_scheduled(orchestrator, repository, NOW)

        assert outcome == {"alpha": "result-alpha", "beta": "result-beta"}
        assert sorted(orchestrator.calls) == [
            ("alpha", SCHEDULE_TRIGGER),
            ("beta", SCHEDULE_TRIGGER),
        ]

    async def test_start_is_recorded_for_next_tick(self, tmp_path, team_config):
        repository = _scheduled_repository(tmp_path, team_config, {"alpha": HOURLY})
        orchestrator = FakeOrchestrator()

        await run_scheduled(orchestrator, repository, NOW)
        second = await run_scheduled(
            orchestrator, repository, NOW + timedelta(minutes=5)
        )

        assert repository.last_scheduled_at("alpha") == NOW
        assert second == {}
        assert orchestrator.calls == [("alpha", SCHEDULE_TRIGGER)]

    async def test_failure_isolated(self, tmp_path, team_config):
        repository = _scheduled_repository(
            tmp_path, team_config, {"alpha": HOURLY, "beta": HOURLY}
        )

        outcome = await run_scheduled(
            FakeOrchestrator(failing={"alpha"}), repository, NOW
        )

        assert isinstance(outcome["alpha"], RuntimeError)
        assert outcome["beta"] == "result-beta"

    async def test_nothing_due(self, tmp_path, team_config):
        repository = _scheduled_repository(
            tmp_path, team_config, {"alpha": ScheduleConfig()}
        )
        orchestrator = FakeOrchestrator()

        assert await run_scheduled(orchestrator, repository, NOW) == {}
        assert orchestrator.calls == []


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


class TestMain:
    """``atpar-sync-scheduler`` argument handling."""

    def test_init_config_exits_early(self, tmp_path, capsys):
        target = tmp_path / ".atpar" / "config.yml"
        with (
            patch(
                "atpar_sync.sync.scheduler.ensure_config", return_value=target
            ),
            patch("atpar_sync.sync.scheduler.build_service") as build,
        ):
            main(["--init-config"])

        build.assert_not_called()
        assert str(target) in capsys.readouterr().err

    def test_configuration_error_exits(self, capsys):
        with patch(
            "atpar_sync.sync.scheduler.build_service",
            side_effect=ValueError("Invalid run timeout"),
        ):
            with pytest.raises(SystemExit) as exc_info:
                main(["--once"])

        assert exc_info.value.code == 1
        assert "Invalid run timeout" in capsys.readouterr().err

    def test_state_dir_override(self):
        with (
            patch(
                "atpar_sync.sync.scheduler.build_service",
                side_effect=ValueError("stop"),
            ) as build,
            pytest.raises(SystemExit),
        ):
            main(["--once", "--state-dir", "/tmp/x", "--debug"])

        build.assert_called_once_with({"state_dir": "/tmp/x", "debug": True})
