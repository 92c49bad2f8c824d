from fastapi import APIRouter, Body, Depends, Query, status
from typing import List, Optional
import datetime as dt

from ...api.deps import (
    booking_rate_limit, get_appointment_service, get_public_appointment_service
)
from ...models.appointment import AppointmentStatus
from ...schemas.appointment import (
    AppointmentCancel, AppointmentCreate, AppointmentFilters, AppointmentReschedule,
    AppointmentResponse, AppointmentUpdate, PatientSortOrder, SlotAvailabilityResponse,
    SweepResponse,
)
from ...services.appointment_service import AppointmentService

router = APIRouter(prefix="/appointments", tags=["Appointments"])

def list_filters(
    status: Optional[AppointmentStatus] = None,
    date_from: Optional[dt.date] = None,
    date_to: Optional[dt.date] = None,
    patient_id: Optional[int] = None,
) -> AppointmentFilters:
    return AppointmentFilters(
        status=status, date_from=date_from, date_to=date_to, patient_id=patient_id
    )

@router.post("/", response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
async def create_appointment(
    data: AppointmentCreate,
    service: AppointmentService = Depends(get_appointment_service)
):
    """Book an appointment on behalf of a patient."""
    return service.create(data.patient_id, data.date, data.start_time, data.end_time, data.title)

@router.post(
    "/request",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(booking_rate_limit)],
)
async def request_appointment(
    data: AppointmentCreate,
    service: AppointmentService = Depends(get_public_appointment_service)
):
    """Public online booking request; starts Pending until approved."""
    return service.create(
        data.patient_id, data.date, data.start_time, data.end_time, data.title,
        is_public_request=True,
    )

@router.get("/", response_model=List[AppointmentResponse])
async def list_appointments(
    filters: AppointmentFilters = Depends(list_filters),
    service: AppointmentService = Depends(get_appointment_service)
):
    """List non-cancelled appointments; missed ones are swept first."""
    return service.list_active(filters)

# Must be registered before /{appointment_id}
@router.get("/archived", response_model=List[AppointmentResponse])
async def list_archived_appointments(
    filters: AppointmentFilters = Depends(list_filters),
    service: AppointmentService = Depends(get_appointment_service)
):
    """List the most recent cancelled appointments."""
    return service.list_archived(filters)

@router.get("/slots/{date}", response_model=List[SlotAvailabilityResponse])
async def get_available_slots(
    date: dt.date,
    service: AppointmentService = Depends(get_appointment_service)
):
    """Availability per slot increment across business hours."""
    return [
        SlotAvailabilityResponse(
            start_time=slot.start,
            end_time=slot.end,
            booked=slot.booked,
            occupied=slot.occupied,
            available=slot.available,
        )
        for slot in service.available_slots(date)
    ]

@router.post("/sweep", response_model=SweepResponse)
async def sweep_missed_appointments(
    service: AppointmentService = Depends(get_appointment_service)
):
    """Cancel every active appointment whose window has elapsed."""
    swept = service.sweep()
    return SweepResponse(
        swept=len(swept),
        appointments=[AppointmentResponse.model_validate(a) for a in swept],
    )

@router.get("/patient/{patient_id}", response_model=List[AppointmentResponse])
async def list_patient_appointments(
    patient_id: int,
    sort_by: PatientSortOrder = Query(PatientSortOrder.DATE, alias="sortBy"),
    service: AppointmentService = Depends(get_appointment_service)
):
    """All appointments of one patient, cancelled ones included."""
    return service.list_for_patient(patient_id, sort_by)

@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: int,
    service: AppointmentService = Depends(get_appointment_service)
):
    return service.get(appointment_id)

@router.put("/{appointment_id}", response_model=AppointmentResponse)
async def update_appointment(
    appointment_id: int,
    patch: AppointmentUpdate,
    service: AppointmentService = Depends(get_appointment_service)
):
    """Update slot, title or status of an appointment."""
    return service.update(appointment_id, patch)

@router.put("/{appointment_id}/reschedule", response_model=AppointmentResponse)
async def reschedule_appointment(
    appointment_id: int,
    data: AppointmentReschedule,
    service: AppointmentService = Depends(get_appointment_service)
):
    """Move an appointment to a new slot; fails without changes on conflict."""
    return service.reschedule(
        appointment_id, data.date, data.start_time, data.end_time, data.title
    )

@router.delete("/{appointment_id}", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: int,
    data: Optional[AppointmentCancel] = Body(None),
    service: AppointmentService = Depends(get_appointment_service)
):
    """Cancel an appointment. Appointments are never physically deleted."""
    return service.cancel(appointment_id, data.reason if data else None)
