"""Request/response models for the ORA HTTP API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class ConsentStartRequest(BaseModel):
    """Optional body of ``POST /api/calendar-consent-start``.

    ``friendUid`` turns the consent into a friend share; ``redirect`` asks the
    callback to redirect back to the app instead of rendering the popup page.
    """

    model_config = ConfigDict(populate_by_name=True)

    friend_uid: str | None = Field(default=None, alias="friendUid")
    redirect: bool = False


class ConsentStartResponse(BaseModel):
    url: str


class HealthResponse(BaseModel):
    status: str = "ok"
