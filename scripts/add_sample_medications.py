"""
Add sample medications (and their reminders) for local development.
Run: python scripts/add_sample_medications.py [--patient-id N] [--reset]
"""
import sys
import os
import argparse
import asyncio
from datetime import date, timedelta

# ensure project root on path
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from database import init_db, reset_db, get_db_context
import models
from services.medication_service import medication_service

# One of each schedule kind
SAMPLE_MEDICATIONS = [
    {"name": "Amlodipine", "dosage": "5mg", "frequency": "daily", "times": ["08:00"]},
    {"name": "Metformin", "dosage": "500mg", "frequency": "twice_daily", "times": ["07:30", "19:00"],
     "instructions": "Take with meals"},
    {"name": "Methotrexate", "dosage": "7.5mg", "frequency": "weekly", "times": ["09:00"], "days_of_week": [1]},
    {"name": "Vitamin B12", "dosage": "1000mcg", "frequency": "monthly", "times": ["10:00"]},
    {"name": "Albuterol", "dosage": "2 puffs", "frequency": "as_needed"},
    {"name": "Prednisone", "dosage": "20mg", "frequency": "custom", "times": ["08:00"],
     "custom_rule": {"type": "interval", "every_days": 2}},
]


async def add_samples(patient_id: int, reset: bool = False):
    if reset:
        reset_db()
    else:
        init_db()

    with get_db_context() as db:
        for med_def in SAMPLE_MEDICATIONS:
            # skip medications already present for the patient
            existing = db.query(models.Medication).filter(
                models.Medication.patient_id == patient_id,
                models.Medication.name == med_def["name"]
            ).first()
            if existing:
                print(f"Skipping {med_def['name']} (id={existing.id})")
                continue

            medication, report = await medication_service.add_medication(
                patient_id=patient_id,
                start_date=date.today() - timedelta(days=1),
                db=db,
                **med_def
            )
            print(f"Added {medication.name} (id={medication.id}): {report.summary()}")


def main():
    parser = argparse.ArgumentParser(description="Add sample medications")
    parser.add_argument("--patient-id", type=int, default=1, help="Owner of the sample medications")
    parser.add_argument("--reset", action="store_true", help="Drop all tables first (deletes adherence history)")
    args = parser.parse_args()

    asyncio.run(add_samples(args.patient_id, reset=args.reset))


if __name__ == "__main__":
    main()
