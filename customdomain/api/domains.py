"""
REST API for team custom domain management.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from ..domains.errors import (
    DomainNotFound,
    DomainStateError,
    HostnameTaken,
    QuotaExceeded,
    ValidationError,
)
from ..domains.models import CustomDomain, DomainStatus

logger = logging.getLogger("customdomain.api.domains")

router = APIRouter(prefix="/api/teams/{team_id}/domains", tags=["domains"])


# ── Request / Response models ────────────────────────────────────────

class DomainCreateRequest(BaseModel):
    hostname: str
    method: Optional[str] = None


# ── Helpers ──────────────────────────────────────────────────────────

def _validation_status(error: ValidationError) -> int:
    if isinstance(error, (HostnameTaken, QuotaExceeded)):
        return 409
    return 400


async def _get_team_domain(request: Request, team_id: str, domain_id: str) -> CustomDomain:
    entry = await request.app.state.domain_registry.get(domain_id)
    # Other teams' domains are indistinguishable from missing ones
    if not entry or entry.team_id != team_id:
        raise HTTPException(status_code=404, detail="Domain not found")
    return entry


# ── Routes ───────────────────────────────────────────────────────────

@router.post("", status_code=201)
async def add_domain(team_id: str, body: DomainCreateRequest, request: Request):
    """Register a new custom domain for the team."""
    guard = request.app.state.policy_guard
    try:
        domain = await guard.admit(team_id, body.hostname, body.method)
    except ValidationError as e:
        raise HTTPException(
            status_code=_validation_status(e),
            detail={"code": e.code, "message": str(e)},
        )

    return {
        **domain.to_api_response(),
        "instructions": guard.instructions(domain),
    }


@router.get("")
async def list_domains(team_id: str, request: Request):
    """List all custom domains for the team."""
    settings = request.app.state.settings
    domains = await request.app.state.domain_registry.list_by_team(team_id)
    return {
        "count": len(domains),
        # Expired and failed domains do not count against the quota
        "active_count": sum(1 for d in domains if d.is_non_terminal),
        "max_domains": settings.max_domains_per_team,
        "domains": [d.to_api_response() for d in domains],
    }


@router.get("/{domain_id}")
async def get_domain(team_id: str, domain_id: str, request: Request):
    """Get details of a specific custom domain."""
    entry = await _get_team_domain(request, team_id, domain_id)
    resp = entry.to_api_response()
    if entry.status == DomainStatus.PENDING_VERIFICATION:
        resp["instructions"] = request.app.state.policy_guard.instructions(entry)
    return resp


@router.post("/{domain_id}/verify")
async def verify_domain(team_id: str, domain_id: str, request: Request):
    """Run a DNS verification check now instead of waiting for the next tick."""
    entry = await _get_team_domain(request, team_id, domain_id)

    if entry.status == DomainStatus.VERIFIED:
        return {
            "domain": entry.to_api_response(),
            "result": None,
            "message": "Domain is already verified",
        }

    scheduler = request.app.state.scheduler
    try:
        result, updated = await scheduler.verify_now(domain_id)
    except DomainNotFound:
        raise HTTPException(status_code=404, detail="Domain not found")
    except DomainStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {
        "domain": updated.to_api_response(),
        "result": result.value,
        "message": f"Verification {result.value}",
    }


@router.post("/{domain_id}/reprovision")
async def reprovision_domain(team_id: str, domain_id: str, request: Request):
    """Retry certificate provisioning after a terminal failure."""
    await _get_team_domain(request, team_id, domain_id)
    try:
        updated = await request.app.state.scheduler.reprovision(domain_id)
    except DomainStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return updated.to_api_response()


@router.get("/{domain_id}/events")
async def domain_events(team_id: str, domain_id: str, request: Request, limit: int = 50):
    """Recent state transitions for a domain."""
    await _get_team_domain(request, team_id, domain_id)
    events = request.app.state.domain_events.recent(domain_id, limit=limit)
    return {
        "count": len(events),
        "events": [e.to_dict() for e in events],
    }
