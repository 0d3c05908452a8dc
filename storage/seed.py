"""
storage/seed.py

Initialise the MedAgenda database and, optionally, load demo records.

Demo data: two verified doctors and one unverified, a primary patient with
two family members shared between the verified doctors, and a few
appointments in different states.

Usage:
  python -m storage.seed            # create tables only
  python -m storage.seed --demo     # create tables and load demo data
"""

import argparse
import logging
from datetime import timedelta

from storage import db
from storage.config import get_settings
from scheduling import access_graph, directory, family, lifecycle
from scheduling.time_utils import local_today

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

_DEMO_DOCTORS = [
    {"nombre": "Dra. Laura Méndez", "especialidad": "Clínica médica", "consultationFee": 15000, "verified": True, "gender": "female"},
    {"nombre": "Dr. Martín Ríos", "especialidad": "Pediatría", "consultationFee": 18000, "verified": True, "gender": "male"},
    {"nombre": "Dr. Pablo Ortega", "especialidad": "Cardiología", "consultationFee": 22000, "verified": False, "gender": "male"},
]


def load_demo_data() -> dict[str, int]:
    """Insert the demo records and return how many of each were created."""
    doctors = [directory.register_doctor(d) for d in _DEMO_DOCTORS]
    clinic, pediatrics = doctors[0], doctors[1]

    patient = access_graph.create_patient(
        {
            "name": "Ana García",
            "email": "ana.garcia@example.com",
            "phone": "+54 11 5555-0101",
            "dateOfBirth": "1985-04-12",
            "gender": "female",
            "obraSocial": "OSDE",
        },
        doctor=clinic,
    )
    access_graph.assign_patient_to_doctor(patient.id, pediatrics.id)

    children = [
        family.create_family_member({
            "primaryPatientId": patient.id,
            "name": "Tomás García",
            "relationship": "hijo",
            "dateOfBirth": "2016-09-03",
            "gender": "male",
        }),
        family.create_family_member({
            "primaryPatientId": patient.id,
            "name": "Lucía García",
            "relationship": "hija",
            "dateOfBirth": "2019-01-22",
            "gender": "female",
        }),
    ]

    tomorrow = (local_today() + timedelta(days=1)).isoformat()
    next_week = (local_today() + timedelta(days=7)).isoformat()
    appointments = [
        lifecycle.request_appointment({
            "patientId": patient.id, "doctorId": clinic.id,
            "date": next_week, "time": "10:00", "reason": "Control anual", "urgency": "low",
        }),
        lifecycle.request_appointment({
            "patientId": children[0].id, "doctorId": pediatrics.id,
            "date": tomorrow, "time": "11:30", "reason": "Fiebre", "urgency": "high",
        }),
        lifecycle.create_appointment({
            "patientId": children[1].id, "doctorId": pediatrics.id,
            "date": next_week, "time": "09:00", "reason": "Vacunación", "type": "checkup",
        }),
    ]
    lifecycle.approve_appointment(appointments[1].id, notes="Traer carnet de vacunas")

    return {
        "doctors": len(doctors),
        "patients": 1,
        "family_members": len(children),
        "appointments": len(appointments),
    }


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="python -m storage.seed", description=__doc__.split("\n\n")[1])
    parser.add_argument("--demo", action="store_true", help="load demo doctors, patients and appointments")
    args = parser.parse_args(argv)

    db.init_db()
    if not args.demo:
        return

    counts = load_demo_data()
    logger.info(
        "Demo data loaded into %s: %s",
        get_settings().db_path,
        ", ".join(f"{n} {kind}" for kind, n in counts.items()),
    )


if __name__ == "__main__":
    main()
