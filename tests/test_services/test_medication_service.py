"""
Tests for Medication Service
Tests medication CRUD and how schedule edits are merged
"""

import pytest
from datetime import date

from sqlalchemy.orm import Session

from exceptions import InvalidDescriptor, MedicationNotFound
from models import Medication, MedicationStatus
from services.medication_service import build_descriptor
from tools.schedule_descriptor import FrequencyKind


class TestBuildDescriptor:
    """Tests for descriptor construction from medication fields"""

    @pytest.mark.unit
    def test_missing_optional_fields(self):
        descriptor = build_descriptor({
            "frequency": "daily",
            "times": ["8:00"],
            "start_date": date(2024, 1, 10),
            "days_of_week": None,
        })

        assert descriptor.times_of_day == ("08:00",)
        assert descriptor.days_of_week == frozenset()
        assert descriptor.end_date is None


class TestMedicationService:
    """Tests for MedicationService"""

    @pytest.mark.asyncio
    async def test_add_stores_normalized_schedule(self, medication_service, db_session: Session):
        medication, report = await medication_service.add_medication(
            name="Vitamin D",
            dosage="1000IU",
            frequency="weekly",
            times=["9:00"],
            days_of_week=[5, 1],
            start_date=date(2024, 1, 10),
            patient_id=3,
            db=db_session
        )

        assert medication.frequency == FrequencyKind.WEEKLY
        assert medication.times == ["09:00"]
        assert medication.days_of_week == [1, 5]
        assert medication.status == MedicationStatus.ACTIVE
        assert report.medication_id == medication.id

    @pytest.mark.asyncio
    async def test_invalid_schedule_stores_nothing(self, medication_service, db_session: Session):
        with pytest.raises(InvalidDescriptor):
            await medication_service.add_medication(
                name="Broken",
                dosage="1mg",
                frequency="three_times_daily",
                times=["08:00"],
                start_date=date(2024, 1, 10),
                db=db_session
            )

        assert db_session.query(Medication).count() == 0

    @pytest.mark.asyncio
    async def test_list_filters(self, medication_service, make_medication, db_session: Session):
        make_medication(patient_id=1)
        make_medication(patient_id=2, status=MedicationStatus.COMPLETED)

        assert len(await medication_service.list_medications(db=db_session)) == 2
        assert len(await medication_service.list_medications(patient_id=2, db=db_session)) == 1
        assert len(await medication_service.list_medications(active_only=True, db=db_session)) == 1

    @pytest.mark.asyncio
    async def test_switching_kind_drops_kind_specific_fields(self, medication_service, make_medication,
                                                             db_session: Session):
        medication = make_medication(frequency=FrequencyKind.WEEKLY, times=["09:00"], days_of_week=[1])

        updated, _ = await medication_service.update_medication(
            medication.id,
            {"frequency": "daily"},
            db=db_session
        )

        assert updated.frequency == FrequencyKind.DAILY
        assert updated.days_of_week == []
        assert updated.times == ["09:00"]

    @pytest.mark.asyncio
    async def test_partial_schedule_edit_keeps_other_fields(self, medication_service, test_medication,
                                                            db_session: Session):
        updated, _ = await medication_service.update_medication(
            test_medication.id,
            {"end_date": date(2024, 1, 20), "notes": "Reduce after checkup"},
            db=db_session
        )

        assert updated.frequency == FrequencyKind.TWICE_DAILY
        assert updated.times == ["08:00", "20:00"]
        assert updated.end_date == date(2024, 1, 20)
        assert updated.notes == "Reduce after checkup"

    @pytest.mark.asyncio
    async def test_update_unknown(self, medication_service, db_session: Session):
        with pytest.raises(MedicationNotFound):
            await medication_service.update_medication(404, {"dosage": "1mg"}, db=db_session)
