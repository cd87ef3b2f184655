import pytest

from core.errors import AlreadyClosed, LedgerRejected, Unauthorized, classify_revert


@pytest.mark.parametrize("reason, kind", [
    ("Only the project owner can close the project.", Unauthorized),
    ("Only the project owner can release funds.", Unauthorized),
    ("User not registered.", Unauthorized),
    ("User already registered.", Unauthorized),
    ("Project is not open.", AlreadyClosed),
    ("Project is already closed.", AlreadyClosed),
    ("Funding goal has not been reached.", LedgerRejected),
    ("No contributions to refund.", LedgerRejected),
    ("", LedgerRejected),
])
def test_classify_revert(reason, kind):
    err = classify_revert(reason)
    assert type(err) is kind
    assert err.reason == reason
    assert str(err) == reason


def test_subtypes_are_rejections():
    assert isinstance(classify_revert("Project is not open."), LedgerRejected)
    assert isinstance(classify_revert("User not registered."), LedgerRejected)
