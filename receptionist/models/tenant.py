"""Read-only tenant (clinic) snapshot carried in every call context."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class Practitioner(BaseModel):
    id: str  # resource id understood by the scheduling capability
    name: str = ""


class TenantContext(BaseModel):
    """Clinic details the engine needs to run a call."""

    clinic_name: str
    address: str = ""
    timezone: str = "Australia/Brisbane"
    practitioners: list[Practitioner] = Field(default_factory=list)
    default_practitioner_id: Optional[str] = None
    new_patient_appointment_type: str = "new-patient"
    standard_appointment_type: str = "standard"
    intake_form_url: str = ""
    faq: dict[str, str] = Field(default_factory=dict)

    @property
    def has_map(self) -> bool:
        return bool(self.address)

    def appointment_type_for(self, is_new_patient: Optional[bool]) -> str:
        if is_new_patient:
            return self.new_patient_appointment_type
        return self.standard_appointment_type

    def practitioner_name(self, resource_id: str) -> str:
        for practitioner in self.practitioners:
            if practitioner.id == resource_id:
                return practitioner.name
        return ""

    def default_practitioner(self) -> Optional[Practitioner]:
        if self.default_practitioner_id:
            for practitioner in self.practitioners:
                if practitioner.id == self.default_practitioner_id:
                    return practitioner
            return Practitioner(id=self.default_practitioner_id)
        return self.practitioners[0] if self.practitioners else None
