"""
Crowdfund Gateway API Server - FastAPI Backend

Endpoints:
- POST /createUser             Register the caller's address (profile → metadata store)
- POST /createProject          Deploy a project via the factory (description → metadata store)
- GET  /projects               All projects, display units
- GET  /projects/{address}     One project
- GET  /users                  All registered users (+ balance when enabled)
- POST /contribute             Send ether to an open project
- POST /releaseFunds           Owner withdraws a funded project
- POST /claimRefund            Contributor reclaims from a failed, closed project
- GET  /userCount              Number of registered users
- GET  /projectCount           Number of projects
- GET  /metadata/{locator}     Raw description/profile bytes
- GET  /health                 Liveness + reconciler status

Pre-checks here (registered? owner? open?) only fail fast. The contract is
the authority: if a pre-check passes and the chain still reverts, the revert
reason goes back to the caller verbatim.

Errors are always {"error": "..."}: 400 bad input, 403 refused by rule or
by the ledger, 404 unknown locator, 500 anything else.
"""

import asyncio
import functools
import json
import logging
from typing import Optional, Union

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, StrictStr

from core.config import GatewayConfig
from core.errors import (
    AlreadyClosed,
    GatewayError,
    LedgerRejected,
    NotFound,
    Unauthorized,
    ValidationError,
)
from core.ledger import to_address
from core.registry import ProjectRegistry
from core.units import from_wei, snapshot_to_wire, to_wei, user_to_wire

logger = logging.getLogger("crowdfund.api")

# Upper bound on a funding period, seconds (100 years).
MAX_DURATION_SECONDS = 100 * 365 * 24 * 3600


# ============================================================
# MODELS
# ============================================================

class _FromBody(BaseModel):
    """Every write carries the acting address as `from`."""
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(..., alias="from", max_length=200)


class CreateUserRequest(_FromBody):
    name: str = Field(..., min_length=1, max_length=200)
    age: Optional[int] = Field(None, ge=0, le=200)


class CreateProjectRequest(_FromBody):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field("", max_length=20000)
    goal: Union[StrictStr, StrictInt, StrictFloat]        # ether
    duration: StrictInt = Field(..., gt=0, le=MAX_DURATION_SECONDS)


class ContributeRequest(_FromBody):
    projectAddress: str = Field(..., max_length=200)
    amount: Union[StrictStr, StrictInt, StrictFloat]      # ether


class ProjectActionRequest(_FromBody):
    projectAddress: str = Field(..., max_length=200)


# ============================================================
# ERROR ENVELOPE
# ============================================================

def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message})


def status_for(err: Exception) -> int:
    if isinstance(err, ValidationError):
        return 400
    if isinstance(err, LedgerRejected):
        return 403
    if isinstance(err, NotFound):
        return 404
    return 500


def route_errors(label: str):
    """Route boundary: every exception becomes a JSON error envelope."""
    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            try:
                return await fn(*args, **kwargs)
            except GatewayError as e:
                status = status_for(e)
                log = logger.warning if status < 500 else logger.error
                log(f"{label}: {type(e).__name__}: {e}")
                return _error(status, str(e))
            except Exception as e:
                logger.error(f"{label}: unexpected {type(e).__name__}: {e}", exc_info=True)
                return _error(500, str(e) or type(e).__name__)
        return wrapper
    return decorator


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(
    ledger,
    metadata_store,
    config: Optional[GatewayConfig] = None,
    reconciler=None,
    registry: Optional[ProjectRegistry] = None,
) -> FastAPI:
    """
    Create the FastAPI app wired to a ledger client and metadata store.

    Lifespan (starting the reconciler, closing sessions) is attached by
    main.py; tests use the bare app.
    """
    cfg = config or GatewayConfig()
    registry = registry or ProjectRegistry(ledger)
    tz = cfg.display_timezone

    app = FastAPI(
        title="Crowdfund Gateway",
        description="HTTP bridge to the on-chain crowdfunding contracts",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cfg.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError):
        parts = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
            parts.append(f"{loc}: {err.get('msg', 'invalid')}" if loc else err.get("msg", "invalid"))
        return _error(400, "; ".join(parts) or "invalid request")

    # ---- shared pre-checks ----

    async def _require_registered(address: str) -> None:
        if not await ledger.is_user_registered(address):
            raise Unauthorized("User not registered.")

    async def _describe(payload: bytes, fallback: str) -> str:
        """Upload to the metadata store when enabled, else pass text through."""
        if not cfg.metadata_upload:
            return fallback
        return await metadata_store.upload(payload)

    # ============================================================
    # USERS
    # ============================================================

    @app.post("/createUser")
    @route_errors("createUser")
    async def create_user(req: CreateUserRequest):
        sender = to_address(req.from_)
        if await ledger.is_user_registered(sender):
            raise Unauthorized("User already registered.")

        profile = {"name": req.name}
        if req.age is not None:
            profile["age"] = req.age
        locator = await _describe(json.dumps(profile).encode("utf-8"), req.name)

        await ledger.create_user(locator, sender)
        logger.info(f"User created: {sender} ({req.name})")

        body = {
            "message": "User created",
            "name": req.name,
            "address": sender,
            "ipfsURL": locator,
        }
        if cfg.balance_enrichment:
            body["balance"] = from_wei(await ledger.get_balance(sender))
        return body

    @app.get("/users")
    @route_errors("users")
    async def list_users():
        user_contracts = await ledger.list_users()

        async def _one(contract: str) -> dict:
            locator, wallet = await ledger.get_user_info(contract)
            balance = await ledger.get_balance(wallet) if cfg.balance_enrichment else None
            return user_to_wire(locator, wallet, balance)

        users = await asyncio.gather(*(_one(c) for c in user_contracts))
        return {"users": list(users)}

    @app.get("/userCount")
    @route_errors("userCount")
    async def user_count():
        return {"userCount": await ledger.user_count()}

    # ============================================================
    # PROJECTS
    # ============================================================

    @app.post("/createProject")
    @route_errors("createProject")
    async def create_project(req: CreateProjectRequest):
        sender = to_address(req.from_)
        goal_wei = to_wei(req.goal)
        if goal_wei <= 0:
            raise ValidationError("Funding goal must be greater than zero.")
        await _require_registered(sender)

        locator = await _describe(req.description.encode("utf-8"), req.description)
        project_address = await ledger.create_project(req.name, locator, goal_wei, req.duration, sender)
        logger.info(f"Project created: {project_address} by {sender} (goal {from_wei(goal_wei)} ETH)")

        return {
            "message": "Project created",
            "name": req.name,
            "from": sender,
            "goal": from_wei(goal_wei),
            "projectAddress": project_address,
            "ipfsHash": locator,
        }

    @app.get("/projects")
    @route_errors("projects")
    async def list_projects():
        ids = await registry.list_project_ids()
        snapshots = await asyncio.gather(*(registry.fetch_snapshot(pid) for pid in ids))
        return {"projects": [snapshot_to_wire(s, tz) for s in snapshots]}

    @app.get("/projects/{project_address}")
    @route_errors("project")
    async def get_project(project_address: str):
        snapshot = await registry.fetch_snapshot(to_address(project_address))
        return snapshot_to_wire(snapshot, tz)

    @app.get("/projectCount")
    @route_errors("projectCount")
    async def project_count():
        return {"projectCount": await ledger.project_count()}

    @app.post("/contribute")
    @route_errors("contribute")
    async def contribute(req: ContributeRequest):
        sender = to_address(req.from_)
        project = to_address(req.projectAddress)
        value_wei = to_wei(req.amount)
        if value_wei <= 0:
            raise ValidationError("Contribution amount must be greater than zero.")
        await _require_registered(sender)

        snapshot = await registry.fetch_snapshot(project)
        if not snapshot.is_open:
            raise AlreadyClosed("Project is not open for contributions.")
        # Chain time, not gateway time: the contract judges by block timestamp.
        if await ledger.get_block_timestamp() > snapshot.deadline:
            raise LedgerRejected("The funding period for this project has ended.")

        await ledger.contribute(project, value_wei, sender)
        logger.info(f"Contribution: {from_wei(value_wei)} ETH → {project} from {sender}")
        return {
            "message": "Contribution successful",
            "projectAddress": project,
            "from": sender,
            "amount": from_wei(value_wei),
        }

    @app.post("/releaseFunds")
    @route_errors("releaseFunds")
    async def release_funds(req: ProjectActionRequest):
        sender = to_address(req.from_)
        project = to_address(req.projectAddress)
        await _require_registered(sender)

        snapshot = await registry.fetch_snapshot(project)
        if sender.lower() != snapshot.owner.lower():
            raise Unauthorized("Only the project owner can release funds.")
        if snapshot.amount_raised < snapshot.goal:
            raise LedgerRejected("Funding goal has not been reached.")
        if not snapshot.is_open:
            raise AlreadyClosed("Funds have already been released or project is closed.")

        await ledger.release_funds(project, sender)
        logger.info(f"Funds released: {project} → {sender} ({from_wei(snapshot.amount_raised)} ETH)")
        return {
            "message": "Funds released successfully",
            "projectAddress": project,
            "from": sender,
        }

    @app.post("/claimRefund")
    @route_errors("claimRefund")
    async def claim_refund(req: ProjectActionRequest):
        sender = to_address(req.from_)
        project = to_address(req.projectAddress)
        await _require_registered(sender)

        snapshot = await registry.fetch_snapshot(project)
        if snapshot.is_open:
            raise LedgerRejected("Project is still open.")
        if snapshot.amount_raised >= snapshot.goal:
            raise LedgerRejected("Funding goal has been reached.")

        await ledger.claim_refund(project, sender)
        logger.info(f"Refund claimed: {project} → {sender}")
        return {
            "message": "Refund claimed",
            "projectAddress": project,
            "from": sender,
        }

    # ============================================================
    # METADATA + HEALTH
    # ============================================================

    @app.get("/metadata/{locator}")
    @route_errors("metadata")
    async def get_metadata(locator: str):
        content = await metadata_store.resolve(locator)
        return Response(content=content, media_type="application/octet-stream")

    @app.get("/health")
    async def health():
        ledger_status = getattr(ledger, "get_status", None)
        return {
            "status": "ok",
            "service": "crowdfund-gateway",
            "config": cfg.redacted(),
            "ledger": ledger_status() if ledger_status else None,
            "reconciler": reconciler.status() if reconciler else None,
        }

    return app
