"""Calendar consent endpoints.

- ``POST /api/calendar-consent-start``: authenticated by a bearer ID token,
  returns the Google authorization URL.  A ``friendUid`` in the body starts a
  friend-share consent for an accepted friendship.
- ``GET /api/calendar-consent-callback``: Google redirects here; completes
  the consent and renders the popup result page (or redirects back to the
  app when the consent was started with ``redirect``).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response

from ora.api.deps import OraServices, get_services
from ora.api.models import ConsentStartRequest, ConsentStartResponse
from ora.consent.flow import get_app_base_url, html_result, redirect_result_url
from ora.errors import AuthRequiredError, FriendshipNotFoundError, NoClientConfigError, OraError
from ora.friends.graph import FriendGraph

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["calendar-consent"])


def _bearer_token(request: Request) -> str:
    header = request.headers.get("authorization", "")
    if not header.startswith("Bearer "):
        raise AuthRequiredError("Missing bearer token.")
    token = header[len("Bearer ") :].strip()
    if not token:
        raise AuthRequiredError("Missing bearer token.")
    return token


@router.post("/calendar-consent-start", response_model=ConsentStartResponse)
async def calendar_consent_start(
    request: Request,
    body: ConsentStartRequest | None = Body(default=None),
    services: OraServices = Depends(get_services),
) -> ConsentStartResponse:
    if not services.consent_configured:
        raise NoClientConfigError("Missing OAuth server configuration.")
    if services.identity_verifier is None:
        raise AuthRequiredError("Identity verification is not configured.")

    uid = await services.identity_verifier.verify_id_token(_bearer_token(request))
    options = body or ConsentStartRequest()
    if options.friend_uid:
        if not await FriendGraph(services.store).has_accepted(uid, options.friend_uid):
            raise FriendshipNotFoundError()

    base_url = get_app_base_url(request.headers.get("host"), services.config.app_base_url)
    url = services.consent_flow().start(
        uid, base_url, friend_uid=options.friend_uid, redirect=options.redirect
    )
    logger.info("Calendar consent started for %s (friend share: %s)", uid, bool(options.friend_uid))
    return ConsentStartResponse(url=url)


@router.get("/calendar-consent-callback", response_class=HTMLResponse)
async def calendar_consent_callback(
    request: Request,
    code: str | None = Query(default=None, description="Authorization code from Google."),
    state: str | None = Query(default=None, description="Signed consent state."),
    error: str | None = Query(default=None, description="OAuth error code from Google."),
    services: OraServices = Depends(get_services),
) -> Response:
    if error:
        logger.warning("Google consent provider error: %s", error)
        return HTMLResponse(
            html_result(False, "Calendar consent was not granted."), status_code=400
        )
    if not code or not state:
        return HTMLResponse(html_result(False, "Missing OAuth parameters."), status_code=400)
    if not services.consent_configured or services.token_endpoint is None:
        return HTMLResponse(
            html_result(False, "Incomplete OAuth server configuration."), status_code=500
        )

    flow = services.consent_flow()
    redirect = False
    try:
        base_url = get_app_base_url(request.headers.get("host"), services.config.app_base_url)
        redirect = flow.verify(state).redirect
        result = await flow.complete(code, state, base_url)
    except (OraError, ValueError) as exc:
        logger.warning("Calendar consent callback failed: %s", exc)
        if redirect:
            return RedirectResponse(url=redirect_result_url(base_url, False), status_code=302)
        message = exc.message if isinstance(exc, OraError) else str(exc)
        return HTMLResponse(html_result(False, message or "Consent flow failed."), status_code=400)

    if result.redirect:
        return RedirectResponse(url=redirect_result_url(base_url, True), status_code=302)
    return HTMLResponse(html_result(True, result.message))
