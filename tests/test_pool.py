import asyncio

from conftest import FAKE_COMMAND
from tele_mcp.services.pool import ProcessPool
from tele_mcp.services.process import ProcessManager


def _manager() -> ProcessManager:
    return ProcessManager(grace_sec=0.5, secondary_sec=0.5)


def test_capacity_is_hard_capped() -> None:
    assert ProcessPool(_manager(), FAKE_COMMAND, 50).capacity == 10
    assert ProcessPool(_manager(), FAKE_COMMAND, -1).capacity == 0


def test_start_fills_to_capacity_and_get_hands_out_live_processes() -> None:
    async def _run():
        pool = ProcessPool(_manager(), FAKE_COMMAND, 3, interval_sec=60)
        await pool.start()
        filled = pool.idle_count
        first = pool.get()
        second = pool.get()
        remaining = pool.idle_count
        await pool.shutdown()
        for process in (first, second):
            await pool.manager.terminate(process)
        return filled, first, second, remaining

    filled, first, second, remaining = asyncio.run(_run())
    assert filled == 3
    assert first is not None and second is not None
    assert first.pid != second.pid
    assert remaining == 1


def test_empty_pool_returns_none() -> None:
    async def _run():
        pool = ProcessPool(_manager(), FAKE_COMMAND, 0)
        await pool.start()
        return pool.get(), pool.active

    process, active = asyncio.run(_run())
    assert process is None
    assert active is False


def test_concurrent_replenish_never_exceeds_capacity() -> None:
    async def _run():
        pool = ProcessPool(_manager(), FAKE_COMMAND, 2, interval_sec=60)
        await pool.start()
        pool.get()
        pool.get()
        await asyncio.gather(pool.replenish(), pool.replenish(), pool.replenish())
        count = pool.idle_count
        await pool.shutdown()
        return count

    assert asyncio.run(_run()) == 2


def test_get_discards_dead_idle_processes() -> None:
    async def _run():
        pool = ProcessPool(_manager(), FAKE_COMMAND, 2, interval_sec=60)
        await pool.start()
        doomed = pool._idle[0]
        doomed.proc.kill()
        await doomed.proc.wait()
        survivor = pool.get()
        await pool.shutdown()
        await pool.manager.terminate(survivor)
        return doomed, survivor

    doomed, survivor = asyncio.run(_run())
    assert survivor is not None
    assert survivor.pid != doomed.pid
    assert doomed.terminated


def test_maintenance_refills_after_checkout() -> None:
    async def _run():
        pool = ProcessPool(_manager(), FAKE_COMMAND, 2, interval_sec=0.1)
        await pool.start()
        taken = pool.get()
        for _ in range(50):
            await asyncio.sleep(0.1)
            if pool.idle_count == 2:
                break
        count = pool.idle_count
        await pool.shutdown()
        await pool.manager.terminate(taken)
        return count

    assert asyncio.run(_run()) == 2


def test_shutdown_terminates_idle_processes() -> None:
    async def _run():
        pool = ProcessPool(_manager(), FAKE_COMMAND, 2, interval_sec=60)
        await pool.start()
        idle = list(pool._idle)
        await pool.shutdown()
        await pool.replenish()
        return idle, pool

    idle, pool = asyncio.run(_run())
    assert pool.idle_count == 0
    assert not pool.active
    assert all(p.returncode is not None for p in idle)


def test_failed_spawns_are_logged_not_raised(caplog) -> None:
    async def _run():
        pool = ProcessPool(_manager(), "/no/such/mcp-server", 2, interval_sec=60)
        await pool.start()
        count = pool.idle_count
        await pool.shutdown()
        return count

    assert asyncio.run(_run()) == 0
    assert "Failed to spawn process" in caplog.text
