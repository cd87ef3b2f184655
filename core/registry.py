"""
Project Registry - enumerate projects and read their snapshots

Thin, side-effect-free layer over the ledger client. It pins down the two
failure types the reconciliation loop reasons about (LedgerUnavailable,
StaleRead) so the loop never has to know about web3 exceptions.
"""

import logging

from .errors import LedgerUnavailable, StaleRead
from .ledger import ProjectSnapshot

logger = logging.getLogger("crowdfund.registry")

NULL_ADDRESS = "0x0000000000000000000000000000000000000000"


class ProjectRegistry:

    def __init__(self, ledger):
        self._ledger = ledger

    async def list_project_ids(self) -> list[str]:
        """All project addresses known to the factory. Empty list is valid."""
        try:
            ids = await self._ledger.list_projects()
        except LedgerUnavailable:
            raise
        except Exception as e:
            raise LedgerUnavailable(f"project registry read failed: {type(e).__name__}: {e}") from e
        ids = list(ids or [])
        logger.debug(f"Registry: {len(ids)} projects")
        return ids

    async def fetch_snapshot(self, project_id: str) -> ProjectSnapshot:
        """
        Current on-chain state for one project.

        A zero owner means the node answered for an address it has no code
        for yet (lagging behind the registry): StaleRead, try next tick.
        """
        try:
            snapshot = await self._ledger.get_project_snapshot(project_id)
        except (LedgerUnavailable, StaleRead):
            raise
        except Exception as e:
            raise LedgerUnavailable(f"snapshot {project_id} failed: {type(e).__name__}: {e}") from e

        if not snapshot.owner or snapshot.owner == NULL_ADDRESS:
            raise StaleRead(f"snapshot {project_id} has no owner yet")
        return snapshot
