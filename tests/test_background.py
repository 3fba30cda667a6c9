import asyncio

import pytest

from mgnrega_pulse.services.background import PeriodicTask


@pytest.mark.asyncio
async def test_run_once_calls_plain_function(mocker):
    fn = mocker.Mock(return_value=3)
    task = PeriodicTask("sweep", 60, fn)

    assert await task.run_once() == 3
    assert task.runs == 1
    fn.assert_called_once_with()


@pytest.mark.asyncio
async def test_run_once_awaits_coroutine_function(mocker):
    fn = mocker.AsyncMock(return_value={"warmed": 1})
    task = PeriodicTask("warm", 60, fn)

    assert await task.run_once() == {"warmed": 1}
    fn.assert_awaited_once()


@pytest.mark.asyncio
async def test_failures_are_logged_not_raised(mocker, caplog):
    task = PeriodicTask("warm", 60, mocker.Mock(side_effect=RuntimeError("boom")))

    assert await task.run_once() is None
    assert task.runs == 1
    assert "Periodic task warm failed" in caplog.text


@pytest.mark.asyncio
async def test_start_and_stop(mocker):
    fn = mocker.Mock()
    task = PeriodicTask("sweep", 0.001, fn)

    task.start()
    await asyncio.sleep(0.05)
    await task.stop()
    runs = task.runs
    await asyncio.sleep(0.01)

    assert runs > 0
    assert task.runs == runs
