from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional

import pytest
from web3 import Web3

from core.errors import AlreadyClosed, LedgerRejected, LedgerUnavailable, Unauthorized
from core.ledger import ProjectSnapshot, TxReceipt

ETHER = 10 ** 18
T0 = 1_700_000_000


def make_address(n: int) -> str:
    return Web3.to_checksum_address("0x" + f"{n:040x}")


ALICE = make_address(0xA11CE)
BOB = make_address(0xB0B)
CAROL = make_address(0xCA201)


@dataclass
class FakeProject:
    address: str
    owner: str
    goal: int
    deadline: int
    raised: int = 0
    is_open: bool = True
    name: str = ""
    locator: str = ""
    contributions: dict = field(default_factory=dict)

    def snapshot(self) -> ProjectSnapshot:
        return ProjectSnapshot(
            address=self.address,
            owner=self.owner,
            goal=self.goal,
            amount_raised=self.raised,
            deadline=self.deadline,
            is_open=self.is_open,
            name=self.name,
            locator=self.locator,
        )


class FakeLedger:
    """
    In-memory stand-in for LedgerClient, applying the same rules the
    contracts enforce. Failure hooks let tests break individual calls.
    """

    def __init__(self, block_time: int = T0):
        self.block_time = block_time
        self.projects: dict[str, FakeProject] = {}
        self.users: dict[str, tuple[str, str]] = {}      # wallet → (user contract, locator)
        self.balances: dict[str, int] = {}
        self._next = 0x1000

        # failure hooks
        self.list_error: Optional[Exception] = None
        self.snapshot_errors: dict[str, Exception] = {}
        self.close_errors: dict[str, Exception] = {}
        self.snapshot_gates: dict[str, asyncio.Event] = {}

        self.close_calls: list[tuple[str, str]] = []
        self.snapshot_calls: list[str] = []

    def _new_address(self) -> str:
        self._next += 1
        return make_address(self._next)

    # ---- seeding helpers ----

    def add_project(self, goal: int, raised: int, deadline: int, is_open: bool = True,
                    owner: str = ALICE, name: str = "p") -> str:
        address = self._new_address()
        self.projects[address] = FakeProject(
            address=address, owner=owner, goal=goal, raised=raised,
            deadline=deadline, is_open=is_open, name=name,
        )
        return address

    def register(self, wallet: str, locator: str = "", balance: int = 10 * ETHER) -> None:
        self.users[wallet] = (self._new_address(), locator)
        self.balances.setdefault(wallet, balance)

    # ---- reads ----

    async def list_projects(self) -> list[str]:
        if self.list_error:
            raise self.list_error
        return list(self.projects)

    async def get_project_snapshot(self, project_id: str) -> ProjectSnapshot:
        self.snapshot_calls.append(project_id)
        gate = self.snapshot_gates.get(project_id)
        if gate is not None:
            await gate.wait()
        if project_id in self.snapshot_errors:
            raise self.snapshot_errors[project_id]
        if project_id not in self.projects:
            raise LedgerUnavailable(f"no project at {project_id}")
        return self.projects[project_id].snapshot()

    async def is_user_registered(self, address: str) -> bool:
        return address in self.users

    async def list_users(self) -> list[str]:
        return [contract for contract, _ in self.users.values()]

    async def get_user_info(self, user_contract: str) -> tuple[str, str]:
        for wallet, (contract, locator) in self.users.items():
            if contract == user_contract:
                return locator, wallet
        raise LedgerUnavailable(f"no user at {user_contract}")

    async def get_balance(self, address: str) -> int:
        return self.balances.get(address, 0)

    async def get_block_timestamp(self) -> int:
        return self.block_time

    async def project_count(self) -> int:
        return len(self.projects)

    async def user_count(self) -> int:
        return len(self.users)

    # ---- writes ----

    async def create_user(self, locator: str, sender: str) -> TxReceipt:
        if sender in self.users:
            raise Unauthorized("User already registered.")
        self.register(sender, locator)
        return TxReceipt(tx_hash="0xuser")

    async def create_project(self, name: str, locator: str, goal_wei: int, duration: int, sender: str) -> str:
        if sender not in self.users:
            raise Unauthorized("User not registered.")
        address = self.add_project(goal_wei, 0, self.block_time + duration, owner=sender, name=name)
        self.projects[address].locator = locator
        return address

    async def contribute(self, project_id: str, value_wei: int, sender: str) -> TxReceipt:
        p = self.projects[project_id]
        if not p.is_open:
            raise AlreadyClosed("Project is not open for contributions.")
        if value_wei <= 0:
            raise LedgerRejected("Contribution amount must be greater than zero.")
        p.raised += value_wei
        p.contributions[sender] = p.contributions.get(sender, 0) + value_wei
        self.balances[sender] = self.balances.get(sender, 0) - value_wei
        return TxReceipt(tx_hash="0xcontribute")

    async def release_funds(self, project_id: str, sender: str) -> TxReceipt:
        p = self.projects[project_id]
        if sender != p.owner:
            raise Unauthorized("Only the project owner can release funds.")
        if p.raised < p.goal:
            raise LedgerRejected("Funding goal has not been reached.")
        if not p.is_open:
            raise AlreadyClosed("Project is not open.")
        p.is_open = False
        self.balances[sender] = self.balances.get(sender, 0) + p.raised
        return TxReceipt(tx_hash="0xrelease")

    async def claim_refund(self, project_id: str, sender: str) -> TxReceipt:
        p = self.projects[project_id]
        if p.is_open:
            raise LedgerRejected("Project is still open.")
        if p.raised >= p.goal:
            raise LedgerRejected("Funding goal has been reached.")
        owed = p.contributions.pop(sender, 0)
        if not owed:
            raise LedgerRejected("No contributions to refund.")
        self.balances[sender] = self.balances.get(sender, 0) + owed
        return TxReceipt(tx_hash="0xrefund")

    async def close_project(self, project_id: str, authorized_as: str) -> TxReceipt:
        self.close_calls.append((project_id, authorized_as))
        if project_id in self.close_errors:
            raise self.close_errors[project_id]
        p = self.projects[project_id]
        if not p.is_open:
            raise AlreadyClosed("Project is already closed.")
        if authorized_as != p.owner:
            raise Unauthorized("Only the project owner can close the project.")
        p.is_open = False
        return TxReceipt(tx_hash="0xclose")


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()
