"""
api/routes/v1/appointments.py -- Booking and listing appointments.

Routes:
  POST /api/v1/appointments  -- appointment.book (patient for self, admin for anyone)
  GET  /api/v1/appointments  -- appointment.list

Listing scope:
  patient    -- own appointments only (patientId for anyone else is denied self_only)
  clinician  -- own schedule by default; patientId/doctorId filters allowed
  admin      -- everything, optionally filtered
"""

from __future__ import annotations

from datetime import timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import AppointmentCreate, AppointmentResponse, envelope
from auth.dependencies import get_context, get_mediator
from auth.mediator import Mutation, RequestContext, RequestMediator
from auth.models import Principal, Role
from clinic.models import Appointment
from core.errors import ValidationFailed

router = APIRouter()

_DOCTOR_ROLES = (Role.doctor, Role.provider)


@router.post("/appointments", status_code=201)
def book_appointment(
    request: Request,
    body: AppointmentCreate,
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    clinic = request.app.state.clinic_store
    scheduled_at = body.scheduled_at
    if scheduled_at.tzinfo is None:
        scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)

    def handler(principal: Principal) -> Mutation:
        patient_id = body.patient_id or principal.id
        mediator.service.get_principal(patient_id)
        doctor = mediator.service.find_principal(body.doctor_id)
        if doctor is None or doctor.role not in _DOCTOR_ROLES:
            raise ValidationFailed("doctorId must name an existing doctor.", detail=body.doctor_id)
        appointment_id = clinic.create_appointment(
            Appointment(
                patient_id=patient_id,
                doctor_id=doctor.id,
                scheduled_at=scheduled_at.isoformat(),
                reason=body.reason,
            )
        )
        appointment = clinic.get_appointment(appointment_id)
        mediator.notifier.enqueue(
            doctor.id,
            "New Appointment",
            f"Appointment booked for {appointment.scheduled_at}",
            "reminder",
        )
        return Mutation(
            result=appointment,
            subject_id=patient_id,
            params={"appointmentId": appointment_id, "doctorId": doctor.id},
        )

    appointment = mediator.mediate(
        ctx,
        "appointment.book",
        handler,
        target_id=body.patient_id,
        action="APPOINTMENT.CREATE",
    )
    return envelope({"appointment": AppointmentResponse.from_appointment(appointment)}, "Appointment booked.")


@router.get("/appointments")
def list_appointments(
    request: Request,
    patient_id: Optional[str] = Query(default=None, alias="patientId", max_length=32),
    doctor_id: Optional[str] = Query(default=None, alias="doctorId", max_length=32),
    status: Optional[Literal["scheduled", "cancelled", "completed"]] = Query(default=None),
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    clinic = request.app.state.clinic_store

    def handler(principal: Principal):
        if principal.role is Role.patient:
            return clinic.list_appointments(patient_id=principal.id, status=status)
        if patient_id or doctor_id or principal.role is Role.admin:
            return clinic.list_appointments(patient_id=patient_id, doctor_id=doctor_id, status=status)
        return clinic.list_appointments(doctor_id=principal.id, status=status)

    appointments = mediator.mediate(ctx, "appointment.list", handler, target_id=patient_id)
    return envelope({"appointments": [AppointmentResponse.from_appointment(a) for a in appointments]})
