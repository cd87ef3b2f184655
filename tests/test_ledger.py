import time
from unittest.mock import MagicMock

import pytest
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, TimeExhausted, Web3Exception

from conftest import ALICE
from core.errors import AlreadyClosed, LedgerRejected, LedgerUnavailable, StaleRead, Unauthorized, ValidationError
from core.ledger import LedgerClient, _revert_reason, decode_project_details, to_address


def make_client(**kwargs) -> LedgerClient:
    kwargs.setdefault("call_timeout", 0.5)
    kwargs.setdefault("receipt_timeout", 0.5)
    return LedgerClient("http://node.test", "", "", w3=MagicMock(), **kwargs)


def raising(exc):
    def _fn():
        raise exc
    return _fn


# ============================================================
# DECODING
# ============================================================

def test_decode_tuple_output():
    raw = ("Garden", "bafy", ALICE, 100, 40, 1_700_000_000, True)
    snap = decode_project_details("0xp", raw)
    assert snap.name == "Garden"
    assert snap.locator == "bafy"
    assert snap.owner == ALICE
    assert (snap.goal, snap.amount_raised, snap.deadline, snap.is_open) == (100, 40, 1_700_000_000, True)


def test_decode_mapping_output():
    raw = {"owner": ALICE, "goal": 5, "amountRaised": 0, "deadline": 9, "isOpen": False}
    snap = decode_project_details("0xp", raw)
    assert snap.is_open is False
    assert snap.name == ""


def test_to_address_checksums():
    assert to_address(ALICE.lower()) == ALICE


@pytest.mark.parametrize("value", ["", "0x12", "not-an-address", None])
def test_to_address_rejects(value):
    with pytest.raises(ValidationError):
        to_address(value)


def test_revert_reason_strips_prefix():
    err = ContractLogicError("execution reverted: Project is not open.")
    assert _revert_reason(err) == "Project is not open."


# ============================================================
# CALL CLASSIFICATION
# ============================================================

@pytest.mark.asyncio
async def test_revert_becomes_classified_rejection():
    client = make_client()
    with pytest.raises(AlreadyClosed) as exc:
        await client._run(raising(ContractLogicError("execution reverted: Project is not open.")), "closeProject")
    assert exc.value.reason == "Project is not open."


@pytest.mark.asyncio
async def test_owner_revert_is_unauthorized():
    client = make_client()
    with pytest.raises(Unauthorized):
        await client._run(
            raising(ContractLogicError("execution reverted: Only the project owner can close the project.")),
            "closeProject",
        )


@pytest.mark.asyncio
async def test_empty_output_is_stale_read():
    with pytest.raises(StaleRead):
        await make_client()._run(raising(BadFunctionCallOutput("0x")), "getProjectDetails")


@pytest.mark.parametrize("exc", [
    TimeExhausted("no receipt"),
    Web3Exception("bad node"),
    ConnectionRefusedError("refused"),
])
@pytest.mark.asyncio
async def test_transport_failures_are_unavailable(exc):
    client = make_client()
    with pytest.raises(LedgerUnavailable):
        await client._run(raising(exc), "getProjects")
    assert client.get_status()["last_error"]


@pytest.mark.asyncio
async def test_slow_call_times_out():
    client = make_client(call_timeout=0.05)
    with pytest.raises(LedgerUnavailable, match="timed out"):
        await client._run(lambda: time.sleep(0.3), "getProjects")


@pytest.mark.asyncio
async def test_unconfigured_factory_is_unavailable():
    client = make_client()
    with pytest.raises(LedgerUnavailable, match="not configured"):
        await client.list_projects()
    with pytest.raises(LedgerUnavailable, match="not configured"):
        await client.is_user_registered(ALICE)


# ============================================================
# TRANSACTIONS
# ============================================================

def _receipt(status=1):
    return {"transactionHash": b"\x11" * 32, "status": status, "blockNumber": 7, "gasUsed": 21000}


@pytest.mark.asyncio
async def test_transact_via_node_account():
    client = make_client()
    client._w3.eth.wait_for_transaction_receipt.return_value = _receipt()
    tx_fn = MagicMock()

    receipt = await client._transact(tx_fn, ALICE, "closeProject")

    assert receipt.block_number == 7
    assert receipt.tx_hash == "0x" + "11" * 32
    tx_fn.call.assert_called_once()
    assert tx_fn.transact.call_args[0][0]["from"] == ALICE
    assert client.get_status()["tx_count"] == 1


@pytest.mark.asyncio
async def test_preflight_revert_never_sends():
    client = make_client()
    tx_fn = MagicMock()
    tx_fn.call.side_effect = ContractLogicError("execution reverted: Only the project owner can release funds.")

    with pytest.raises(Unauthorized):
        await client._transact(tx_fn, ALICE, "releaseFunds")
    tx_fn.transact.assert_not_called()


@pytest.mark.asyncio
async def test_failed_receipt_is_rejected():
    client = make_client()
    client._w3.eth.wait_for_transaction_receipt.return_value = _receipt(status=0)

    with pytest.raises(LedgerRejected, match="transaction reverted"):
        await client._transact(MagicMock(), ALICE, "contribute")


@pytest.mark.asyncio
async def test_transact_rejects_bad_sender():
    with pytest.raises(ValidationError):
        await make_client()._transact(MagicMock(), "bogus", "contribute")
