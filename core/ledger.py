"""
Ledger Client - Contract Call Layer

Every read and every signed state change against the crowdfunding contracts
goes through here. Request handlers and the reconciliation loop receive an
instance; nothing holds contract handles at module level.

Design:
- Sync Web3 calls wrapped in run_in_executor() and bounded by wait_for()
- Embedded minimal ABI: only the functions we call, no build artifacts needed
- Reverts surface as LedgerRejected with the contract's reason verbatim
- Transport failures and timeouts surface as LedgerUnavailable
- Signing: addresses whose key is configured are signed locally, anything
  else is sent as a node-managed account (dev chains with unlocked accounts)
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import (
    BadFunctionCallOutput,
    ContractLogicError,
    TimeExhausted,
    Web3Exception,
)
from web3.logs import DISCARD

from .errors import (
    LedgerRejected,
    LedgerUnavailable,
    StaleRead,
    ValidationError,
    classify_revert,
)

logger = logging.getLogger("crowdfund.ledger")


# ============================================================
# MINIMAL ABI: only functions we call at runtime
# ============================================================

PROJECT_FACTORY_ABI = [
    {
        "inputs": [],
        "name": "getProjects",
        "outputs": [{"name": "", "type": "address[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    # createProject(name, ipfsHash, goal wei, duration seconds)
    {
        "inputs": [
            {"name": "name", "type": "string"},
            {"name": "ipfsHash", "type": "string"},
            {"name": "goal", "type": "uint256"},
            {"name": "duration", "type": "uint256"},
        ],
        "name": "createProject",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": False, "name": "projectAddress", "type": "address"},
            {"indexed": False, "name": "owner", "type": "address"},
            {"indexed": False, "name": "name", "type": "string"},
            {"indexed": False, "name": "goal", "type": "uint256"},
            {"indexed": False, "name": "deadline", "type": "uint256"},
        ],
        "name": "ProjectCreated",
        "type": "event",
    },
]

# Field order of getProjectDetails() outputs. Decoding zips against this.
PROJECT_DETAIL_FIELDS = ("name", "ipfsHash", "owner", "goal", "amountRaised", "deadline", "isOpen")

PROJECT_ABI = [
    {
        "inputs": [],
        "name": "getProjectDetails",
        "outputs": [
            {"name": "name", "type": "string"},
            {"name": "ipfsHash", "type": "string"},
            {"name": "owner", "type": "address"},
            {"name": "goal", "type": "uint256"},
            {"name": "amountRaised", "type": "uint256"},
            {"name": "deadline", "type": "uint256"},
            {"name": "isOpen", "type": "bool"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "contribute",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "releaseFunds",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "closeProject",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "claimRefund",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

USER_FACTORY_ABI = [
    {
        "inputs": [{"name": "ipfsURL", "type": "string"}],
        "name": "createUser",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "getUsers",
        "outputs": [{"name": "", "type": "address[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "isUserRegistered",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
]

USER_ABI = [
    {
        "inputs": [],
        "name": "getUserInfo",
        "outputs": [
            {"name": "ipfsURL", "type": "string"},
            {"name": "userAddress", "type": "address"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass(frozen=True)
class ProjectSnapshot:
    """Point-in-time read of one project. Amounts in wei, deadline in Unix seconds."""
    address: str
    owner: str
    goal: int
    amount_raised: int
    deadline: int
    is_open: bool
    name: str = ""
    locator: str = ""    # metadata store reference for the description


@dataclass
class TxReceipt:
    """Outcome of a mined state-changing call."""
    tx_hash: str
    block_number: int = 0
    gas_used: int = 0


def decode_project_details(address: str, raw) -> ProjectSnapshot:
    """getProjectDetails() output (tuple or mapping) → ProjectSnapshot."""
    if isinstance(raw, dict):
        fields = raw
    else:
        fields = dict(zip(PROJECT_DETAIL_FIELDS, raw))
    return ProjectSnapshot(
        address=address,
        owner=fields["owner"],
        goal=int(fields["goal"]),
        amount_raised=int(fields["amountRaised"]),
        deadline=int(fields["deadline"]),
        is_open=bool(fields["isOpen"]),
        name=fields.get("name", ""),
        locator=fields.get("ipfsHash", ""),
    )


def to_address(value: str) -> str:
    """Checksum an address from a request; ValidationError if malformed."""
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValidationError(f"invalid address: {value!r}")
    return Web3.to_checksum_address(value)


def _revert_reason(err: ContractLogicError) -> str:
    reason = getattr(err, "message", None) or str(err)
    prefix = "execution reverted: "
    if reason.startswith(prefix):
        reason = reason[len(prefix):]
    return reason


# ============================================================
# LEDGER CLIENT
# ============================================================

class LedgerClient:
    """
    Async facade over the funding contracts.

    Usage:
        ledger = LedgerClient.from_config(cfg)
        ids = await ledger.list_projects()
        snap = await ledger.get_project_snapshot(ids[0])
        await ledger.close_project(snap.address, authorized_as=snap.owner)
    """

    def __init__(
        self,
        rpc_url: str,
        project_factory_address: str,
        user_factory_address: str,
        signer_keys: tuple = (),
        call_timeout: float = 15.0,
        receipt_timeout: float = 120.0,
        gas_limit: int = 3_000_000,
        w3: Optional[Web3] = None,
    ):
        self._w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": call_timeout}))
        self._rpc_url = rpc_url
        self._call_timeout = call_timeout
        self._receipt_timeout = receipt_timeout
        self._gas_limit = gas_limit

        self._project_factory = self._w3.eth.contract(
            address=Web3.to_checksum_address(project_factory_address),
            abi=PROJECT_FACTORY_ABI,
        ) if project_factory_address else None
        self._user_factory = self._w3.eth.contract(
            address=Web3.to_checksum_address(user_factory_address),
            abi=USER_FACTORY_ABI,
        ) if user_factory_address else None

        # lowercase address → LocalAccount
        self._signers: dict = {}
        for key in signer_keys:
            account = Account.from_key(key)
            self._signers[account.address.lower()] = account

        self._tx_count: int = 0
        self._last_error: str = ""
        self._last_error_at: float = 0.0

        logger.info(
            f"Ledger client: rpc={rpc_url} | "
            f"projects={project_factory_address[:10] or '-'}... | "
            f"users={user_factory_address[:10] or '-'}... | "
            f"local signers={len(self._signers)}"
        )

    @classmethod
    def from_config(cls, cfg) -> "LedgerClient":
        return cls(
            rpc_url=cfg.rpc_url,
            project_factory_address=cfg.project_factory_address,
            user_factory_address=cfg.user_factory_address,
            signer_keys=cfg.signer_keys,
            call_timeout=cfg.call_timeout,
            receipt_timeout=cfg.receipt_timeout,
            gas_limit=cfg.gas_limit,
        )

    # ============================================================
    # PLUMBING
    # ============================================================

    def _project(self, address: str):
        return self._w3.eth.contract(address=to_address(address), abi=PROJECT_ABI)

    def _user(self, address: str):
        return self._w3.eth.contract(address=to_address(address), abi=USER_ABI)

    def _require(self, contract, label: str):
        if contract is None:
            raise LedgerUnavailable(f"{label} address not configured")
        return contract

    def _note_error(self, err: Exception) -> None:
        self._last_error = f"{type(err).__name__}: {err}"
        self._last_error_at = time.time()

    async def _run(self, fn, label: str, timeout: Optional[float] = None):
        """
        Run a blocking web3 callable off the event loop and classify failures.

        On timeout the worker thread is abandoned, not killed; its result is
        discarded. The chain call itself may still land.
        """
        timeout = timeout or self._call_timeout

        def _guarded():
            try:
                return fn()
            except ContractLogicError as e:
                raise classify_revert(_revert_reason(e))
            except BadFunctionCallOutput as e:
                raise StaleRead(f"{label}: empty result ({e})")
            except TimeExhausted as e:
                raise LedgerUnavailable(f"{label}: receipt timeout ({e})")
            except (Web3Exception, OSError) as e:
                raise LedgerUnavailable(f"{label}: {type(e).__name__}: {e}")

        try:
            return await asyncio.wait_for(
                asyncio.get_running_loop().run_in_executor(None, _guarded),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            err = LedgerUnavailable(f"{label}: timed out after {timeout}s")
            self._note_error(err)
            raise err
        except LedgerUnavailable as e:
            self._note_error(e)
            raise

    async def _transact(self, tx_fn, sender: str, label: str, value: int = 0) -> TxReceipt:
        """
        Preflight with eth_call (to get the revert reason), then send and
        wait for the receipt. A mined-but-failed tx raises LedgerRejected.
        """
        w3 = self._w3
        sender_cs = to_address(sender)
        params = {"from": sender_cs, "gas": self._gas_limit}
        if value:
            params["value"] = value
        account = self._signers.get(sender_cs.lower())

        def _execute():
            tx_fn.call(dict(params))

            if account is not None:
                tx = tx_fn.build_transaction({
                    **params,
                    "nonce": w3.eth.get_transaction_count(sender_cs),
                    "gasPrice": w3.eth.gas_price,
                    "chainId": w3.eth.chain_id,
                })
                signed = account.sign_transaction(tx)
                tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            else:
                tx_hash = tx_fn.transact(dict(params))

            return w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)

        receipt = await self._run(
            _execute, label, timeout=self._call_timeout + self._receipt_timeout
        )

        tx_hash_hex = Web3.to_hex(receipt["transactionHash"])
        if receipt["status"] != 1:
            logger.warning(f"TX REVERTED [{label}]: {tx_hash_hex}")
            raise LedgerRejected(f"transaction reverted: {tx_hash_hex}")

        self._tx_count += 1
        logger.info(
            f"TX OK [{label}]: {tx_hash_hex[:18]}... | "
            f"block={receipt.get('blockNumber', 0)} | gas={receipt.get('gasUsed', 0)}"
        )
        return TxReceipt(
            tx_hash=tx_hash_hex,
            block_number=receipt.get("blockNumber", 0),
            gas_used=receipt.get("gasUsed", 0),
        )

    # ============================================================
    # READS
    # ============================================================

    async def list_projects(self) -> list[str]:
        factory = self._require(self._project_factory, "project factory")
        result = await self._run(factory.functions.getProjects().call, "getProjects")
        return list(result)

    async def get_project_snapshot(self, project_id: str) -> ProjectSnapshot:
        project = self._project(project_id)
        raw = await self._run(project.functions.getProjectDetails().call, f"getProjectDetails({project_id[:10]})")
        return decode_project_details(project_id, raw)

    async def is_user_registered(self, address: str) -> bool:
        factory = self._require(self._user_factory, "user factory")
        fn = factory.functions.isUserRegistered(to_address(address))
        return bool(await self._run(fn.call, "isUserRegistered"))

    async def list_users(self) -> list[str]:
        factory = self._require(self._user_factory, "user factory")
        return list(await self._run(factory.functions.getUsers().call, "getUsers"))

    async def get_user_info(self, user_contract: str) -> tuple[str, str]:
        """User contract address → (profile locator, wallet address)."""
        user = self._user(user_contract)
        locator, wallet = await self._run(user.functions.getUserInfo().call, "getUserInfo")
        return locator, wallet

    async def get_balance(self, address: str) -> int:
        checksum = to_address(address)
        return int(await self._run(lambda: self._w3.eth.get_balance(checksum), "getBalance"))

    async def get_block_timestamp(self) -> int:
        block = await self._run(lambda: self._w3.eth.get_block("latest"), "getBlock")
        return int(block["timestamp"])

    async def project_count(self) -> int:
        return len(await self.list_projects())

    async def user_count(self) -> int:
        return len(await self.list_users())

    # ============================================================
    # WRITES
    # ============================================================

    async def create_user(self, locator: str, sender: str) -> TxReceipt:
        factory = self._require(self._user_factory, "user factory")
        return await self._transact(factory.functions.createUser(locator), sender, "createUser")

    async def create_project(self, name: str, locator: str, goal_wei: int, duration: int, sender: str) -> str:
        """Deploy a project via the factory; returns the new project's address."""
        factory = self._require(self._project_factory, "project factory")
        tx_fn = factory.functions.createProject(name, locator, goal_wei, duration)
        receipt = await self._transact(tx_fn, sender, "createProject")

        def _decode():
            raw = self._w3.eth.get_transaction_receipt(receipt.tx_hash)
            return factory.events.ProjectCreated().process_receipt(raw, errors=DISCARD)

        events = await self._run(_decode, "ProjectCreated")
        if events:
            return events[0]["args"]["projectAddress"]

        # Event layout differs from ours: newest registry entry is the project.
        logger.warning(f"ProjectCreated not decodable in {receipt.tx_hash[:18]}..., using registry tail")
        projects = await self.list_projects()
        if not projects:
            raise StaleRead("createProject mined but registry is empty")
        return projects[-1]

    async def contribute(self, project_id: str, value_wei: int, sender: str) -> TxReceipt:
        tx_fn = self._project(project_id).functions.contribute()
        return await self._transact(tx_fn, sender, "contribute", value=value_wei)

    async def release_funds(self, project_id: str, sender: str) -> TxReceipt:
        return await self._transact(self._project(project_id).functions.releaseFunds(), sender, "releaseFunds")

    async def claim_refund(self, project_id: str, sender: str) -> TxReceipt:
        return await self._transact(self._project(project_id).functions.claimRefund(), sender, "claimRefund")

    async def close_project(self, project_id: str, authorized_as: str) -> TxReceipt:
        """
        closeProject() sent as `authorized_as`. A project that is already
        closed raises AlreadyClosed (the contract's revert, classified).
        """
        return await self._transact(self._project(project_id).functions.closeProject(), authorized_as, "closeProject")

    # ============================================================
    # STATUS
    # ============================================================

    def get_status(self) -> dict:
        return {
            "rpc_url": self._rpc_url,
            "project_factory": self._project_factory.address if self._project_factory else "",
            "user_factory": self._user_factory.address if self._user_factory else "",
            "local_signers": len(self._signers),
            "tx_count": self._tx_count,
            "last_error": self._last_error,
            "last_error_at": self._last_error_at,
        }
