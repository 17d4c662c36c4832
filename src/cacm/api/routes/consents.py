"""Consent endpoints — create, activate, query."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Header, Query, Request, status
from pydantic import BaseModel, Field

from cacm.api.routes.health import record_consent_created
from cacm.consent import PURPOSE_SET_VERSION, ConsentPurpose, parse_purpose, validate_subject_id
from cacm.signing.canonical import build_consent_message
from cacm.signing.signer import AttestedSigner

if TYPE_CHECKING:
    from cacm.consent import Consent
    from cacm.lifecycle import ConsentLifecycleManager

router = APIRouter()

__all__ = ["router"]

logger = logging.getLogger(__name__)


class ConsentIn(BaseModel):
    """Consent request with the wallet signature over the canonical message."""

    subject_id: str = Field(min_length=1, max_length=256)
    purpose: str = Field(min_length=1)
    signature: str = Field(min_length=1)


class ActivateIn(BaseModel):
    ledger_reference: str = Field(min_length=1)


class ConsentOut(BaseModel):
    id: str
    subject_id: str
    purpose: str
    authorizer_address: str
    signature: str
    status: str
    ledger_reference: str | None = None
    created_at: str


class MessageOut(BaseModel):
    subject_id: str
    purpose: str
    message: str


class PurposesOut(BaseModel):
    version: int
    purposes: list[str]


class VerificationOut(BaseModel):
    consent_id: str
    verified: bool


def _manager(request: Request) -> ConsentLifecycleManager:
    return request.app.state.manager  # type: ignore[no-any-return]


def _out(consent: Consent) -> ConsentOut:
    return ConsentOut(**consent.to_dict())


@router.get(
    "/consents/purposes",
    response_model=PurposesOut,
    summary="Recognised consent purposes",
    operation_id="list_purposes",
)
async def list_purposes() -> PurposesOut:
    return PurposesOut(version=PURPOSE_SET_VERSION, purposes=[p.value for p in ConsentPurpose])


@router.get(
    "/consents/message",
    response_model=MessageOut,
    summary="Canonical authorization statement to sign",
    operation_id="consent_message",
)
async def consent_message(
    subject_id: str = Query(min_length=1, max_length=256),
    purpose: str = Query(min_length=1),
) -> MessageOut:
    """Return the exact message the wallet must sign for this consent."""
    validate_subject_id(subject_id)
    parsed = parse_purpose(purpose)
    return MessageOut(
        subject_id=subject_id,
        purpose=parsed.value,
        message=build_consent_message(subject_id, parsed),
    )


@router.post(
    "/consents",
    response_model=ConsentOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create a pending consent from a signed authorization",
    operation_id="create_consent",
)
async def create_consent(
    body: ConsentIn,
    request: Request,
    x_authorizer_identity: str = Header(default=""),
) -> ConsentOut:
    """Bind the caller's wallet signature to a new pending consent.

    The authorizer identity comes from the ``X-Authorizer-Identity`` header
    set for the authenticated caller, never from the request body.
    """
    signer = AttestedSigner(identity=x_authorizer_identity, signature=body.signature)
    consent = await _manager(request).create_consent(body.subject_id, body.purpose, signer)
    record_consent_created()
    return _out(consent)


@router.get(
    "/consents",
    response_model=list[ConsentOut],
    summary="List consents, optionally filtered by subject and status",
    operation_id="list_consents",
)
async def list_consents(
    request: Request,
    subject_id: str | None = Query(default=None),
    status: str | None = Query(default=None),  # noqa: A002
) -> list[ConsentOut]:
    consents = await _manager(request).list_consents(subject_id=subject_id, status=status)
    return [_out(c) for c in consents]


@router.get(
    "/consents/{consent_id}",
    response_model=ConsentOut,
    summary="Fetch one consent",
    operation_id="get_consent",
)
async def get_consent(consent_id: str, request: Request) -> ConsentOut:
    return _out(await _manager(request).get_consent(consent_id))


@router.get(
    "/consents/{consent_id}/events",
    summary="Audit trail for one consent",
    operation_id="consent_events",
)
async def consent_events(consent_id: str, request: Request) -> list[dict[str, Any]]:
    return await _manager(request).list_events(consent_id)


@router.get(
    "/consents/{consent_id}/verification",
    response_model=VerificationOut,
    summary="Re-verify the stored signature against the canonical message",
    operation_id="verify_consent",
)
async def verify_consent(consent_id: str, request: Request) -> VerificationOut:
    verified = await _manager(request).verify_consent(consent_id)
    if not verified:
        logger.warning("Stored signature for consent %s does not verify", consent_id)
    return VerificationOut(consent_id=consent_id, verified=verified)


@router.post(
    "/consents/{consent_id}/activate",
    response_model=ConsentOut,
    summary="Activate a pending consent with its ledger reference",
    operation_id="activate_consent",
)
async def activate_consent(consent_id: str, body: ActivateIn, request: Request) -> ConsentOut:
    consent = await _manager(request).activate_consent(consent_id, body.ledger_reference)
    return _out(consent)
