"""
api/routes/v1/records.py -- Patient record view and record-sharing consent.

Routes:
  GET    /api/v1/records/{patient_id}                      -- records.read
  POST   /api/v1/records/{patient_id}/shares               -- records.share (patient self, admin)
  DELETE /api/v1/records/{patient_id}/shares/{grantee_id}  -- records.share

A share is the consent edge the policy engine's records.read refinement
checks: a doctor, nurse, or provider may read a patient's record only after
the patient (or an admin) has shared it with them.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import (
    AppointmentResponse,
    LabTestResponse,
    RecordShareResponse,
    ShareCreate,
    envelope,
)
from auth.dependencies import get_context, get_mediator
from auth.mediator import Mutation, RequestContext, RequestMediator
from auth.models import Principal, Role
from core.errors import NotFound, ValidationFailed

router = APIRouter()

_GRANTEE_ROLES = (Role.doctor, Role.nurse, Role.provider)


@router.get("/records/{patient_id}")
def get_record(
    request: Request,
    patient_id: str,
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    clinic = request.app.state.clinic_store

    def handler(_principal: Principal) -> dict:
        mediator.service.get_principal(patient_id)
        return clinic.patient_record(patient_id)

    record = mediator.mediate(ctx, "records.read", handler, target_id=patient_id)
    return envelope(
        {
            "patientId": patient_id,
            "tests": [LabTestResponse.from_test(t) for t in record["tests"]],
            "appointments": [AppointmentResponse.from_appointment(a) for a in record["appointments"]],
            "shares": [RecordShareResponse.from_share(s) for s in record["shares"]],
        }
    )


@router.post("/records/{patient_id}/shares", status_code=201)
def share_record(
    request: Request,
    patient_id: str,
    body: ShareCreate,
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    clinic = request.app.state.clinic_store

    def handler(_principal: Principal) -> Mutation:
        mediator.service.get_principal(patient_id)
        grantee = mediator.service.find_principal(body.grantee_id)
        if grantee is None or grantee.role not in _GRANTEE_ROLES:
            raise ValidationFailed("Records can only be shared with a clinician.", detail=body.grantee_id)
        created = clinic.add_share(patient_id, grantee.id)
        return Mutation(result=created, subject_id=patient_id, params={"granteeId": grantee.id, "created": created})

    created = mediator.mediate(ctx, "records.share", handler, target_id=patient_id, action="RECORDS.SHARE")
    message = "Record shared." if created else "Record was already shared."
    return envelope({"patientId": patient_id, "granteeId": body.grantee_id}, message)


@router.delete("/records/{patient_id}/shares/{grantee_id}")
def unshare_record(
    request: Request,
    patient_id: str,
    grantee_id: str,
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    clinic = request.app.state.clinic_store

    def handler(_principal: Principal) -> Mutation:
        if not clinic.remove_share(patient_id, grantee_id):
            raise NotFound("Share not found.")
        return Mutation(result=None, subject_id=patient_id, params={"granteeId": grantee_id})

    mediator.mediate(ctx, "records.share", handler, target_id=patient_id, action="RECORDS.UNSHARE")
    return envelope({"patientId": patient_id, "granteeId": grantee_id}, "Share removed.")
