"""Patient history service module."""

from claimflow.services.patient_history.service import PatientHistoryService

__all__ = ["PatientHistoryService"]
