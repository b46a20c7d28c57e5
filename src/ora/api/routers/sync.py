"""Scheduled availability sweep endpoint.

``POST /api/calendar-sync`` is called by the scheduler with the shared cron
secret in ``X-Cron-Secret`` or as a bearer token.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, Request

from ora.api.deps import OraServices, get_services
from ora.calendar.sync import SweepSummary
from ora.errors import AuthRequiredError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["calendar-sync"])


def _provided_secret(request: Request) -> str:
    header_secret = request.headers.get("x-cron-secret", "").strip()
    if header_secret:
        return header_secret
    auth_header = request.headers.get("authorization", "").strip()
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer ") :].strip()
    return ""


def require_cron_secret(request: Request, services: OraServices = Depends(get_services)) -> None:
    expected = services.config.cron_secret
    provided = _provided_secret(request)
    if not expected or not hmac.compare_digest(provided.encode(), expected.encode()):
        raise AuthRequiredError("Unauthorized")


@router.post(
    "/calendar-sync",
    response_model=SweepSummary,
    dependencies=[Depends(require_cron_secret)],
)
async def calendar_sync(services: OraServices = Depends(get_services)) -> SweepSummary:
    return await services.orchestrator().run_sweep()
