import pytest

from conftest import T0
from core.errors import LedgerUnavailable, StaleRead
from core.ledger import ProjectSnapshot
from core.registry import NULL_ADDRESS, ProjectRegistry


@pytest.mark.asyncio
async def test_list_returns_every_project(ledger):
    ids = [ledger.add_project(goal=1, raised=0, deadline=T0) for _ in range(3)]
    assert await ProjectRegistry(ledger).list_project_ids() == ids


@pytest.mark.asyncio
async def test_empty_list_is_valid(ledger):
    assert await ProjectRegistry(ledger).list_project_ids() == []


@pytest.mark.asyncio
async def test_transport_errors_become_ledger_unavailable(ledger):
    ledger.list_error = ConnectionError("refused")
    with pytest.raises(LedgerUnavailable, match="ConnectionError"):
        await ProjectRegistry(ledger).list_project_ids()


@pytest.mark.asyncio
async def test_ledger_unavailable_passes_through(ledger):
    original = LedgerUnavailable("rpc down")
    ledger.list_error = original
    with pytest.raises(LedgerUnavailable) as exc:
        await ProjectRegistry(ledger).list_project_ids()
    assert exc.value is original


@pytest.mark.asyncio
async def test_fetch_snapshot_reads_current_state(ledger):
    pid = ledger.add_project(goal=100, raised=40, deadline=T0)
    snap = await ProjectRegistry(ledger).fetch_snapshot(pid)
    assert (snap.goal, snap.amount_raised, snap.deadline, snap.is_open) == (100, 40, T0, True)


@pytest.mark.asyncio
async def test_zero_owner_is_stale_read(ledger):
    pid = ledger.add_project(goal=100, raised=0, deadline=T0, owner=NULL_ADDRESS)
    with pytest.raises(StaleRead):
        await ProjectRegistry(ledger).fetch_snapshot(pid)


@pytest.mark.asyncio
async def test_stale_read_passes_through(ledger):
    pid = ledger.add_project(goal=100, raised=0, deadline=T0)
    ledger.snapshot_errors[pid] = StaleRead("no code yet")
    with pytest.raises(StaleRead):
        await ProjectRegistry(ledger).fetch_snapshot(pid)


@pytest.mark.asyncio
async def test_unexpected_snapshot_error_is_wrapped():
    class OddLedger:
        async def get_project_snapshot(self, project_id) -> ProjectSnapshot:
            raise KeyError("isOpen")

    with pytest.raises(LedgerUnavailable, match="KeyError"):
        await ProjectRegistry(OddLedger()).fetch_snapshot("0xabc")
