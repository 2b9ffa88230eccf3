"""
Solace-AI CDS Service - Clinical Snapshot Reader Port.
"""
from __future__ import annotations
from abc import ABC, abstractmethod

from ..domain.entities import PatientSnapshot


class ClinicalSnapshotReader(ABC):
    """Read-only source of patient snapshots."""

    @abstractmethod
    async def get_snapshot(self, patient_id: str) -> PatientSnapshot:
        """
        Fetch the current snapshot for a patient.

        Raises SnapshotNotFoundError when the patient is unknown and
        SnapshotUnavailableError when the backing store cannot be reached.
        """
        pass
