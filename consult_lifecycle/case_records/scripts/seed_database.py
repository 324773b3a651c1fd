"""Seed the database with demo coupons and cases at different lifecycle stages."""

from datetime import datetime, timedelta

from consult_lifecycle.case_records.database import get_connection, init_database, transaction
from consult_lifecycle.case_records.database.coupon_repository import Coupon, CouponRepository
from consult_lifecycle.orchestrator import Intent, LifecycleOrchestrator
from consult_lifecycle.permissions import Actor, Role

DEMO_PATIENT = Actor(Role.PATIENT, "p-001")
DEMO_SUPERVISOR = Actor(Role.SUPERVISOR, "s-001", patient_ids=frozenset({"p-002"}))
DEMO_DOCTOR = Actor(Role.DOCTOR, "d-001")
DEMO_ADMIN = Actor(Role.ADMIN, "a-001")


def _mock_coupons() -> list[Coupon]:
    now = datetime.now()
    return [
        Coupon(
            code="FREECONSULT",
            value=10_000,
            assigned_patient_id="p-001",
            expires_at=(now + timedelta(days=90)).isoformat(),
        ),
        Coupon(
            code="SAVE10",
            value=1_000,
            assigned_patient_id="p-001",
            status="EXPIRED",
            expires_at=(now - timedelta(days=5)).isoformat(),
        ),
        Coupon(
            code="WELCOME",
            value=10_000,
            assigned_patient_id="p-002",
            expires_at=(now + timedelta(days=30)).isoformat(),
        ),
    ]


MOCK_CASES = [
    # (submitter, payload, how far to drive it)
    (DEMO_PATIENT, {"title": "Recurring migraines", "urgency_level": "HIGH",
                    "required_specialization": "Neurology"}, Intent.CONFIRM_SCHEDULE),
    (DEMO_SUPERVISOR, {"owner_patient_id": "p-002", "title": "Child rash follow-up",
                       "complexity": "SIMPLE", "dependent_id": "dep-001"}, Intent.ACCEPT),
    (DEMO_PATIENT, {"title": "Annual check-in", "urgency_level": "LOW"}, None),
]


def _drive(orchestrator: LifecycleOrchestrator, case_id: str, stop_after: Intent) -> None:
    """Walk a fresh case forward with the demo actors."""
    steps = [
        (DEMO_ADMIN, Intent.ASSIGN, {"doctor_id": DEMO_DOCTOR.id}),
        (DEMO_DOCTOR, Intent.ACCEPT, None),
        (DEMO_DOCTOR, Intent.SCHEDULE, {
            "scheduled_time": (datetime.now() + timedelta(days=3)).replace(
                hour=10, minute=0, second=0, microsecond=0
            ).isoformat(),
            "consultation_fee": 7_500,
        }),
        (DEMO_PATIENT, Intent.CONFIRM_SCHEDULE, None),
    ]
    for actor, intent, payload in steps:
        orchestrator.transition(case_id, actor, intent, payload)
        if intent == stop_after:
            return


def seed_database(orchestrator: LifecycleOrchestrator | None = None) -> list[str]:
    """Seed demo data. Returns the ids of the cases created."""
    print("Initializing database...")
    init_database()

    orchestrator = orchestrator or LifecycleOrchestrator()
    coupons = CouponRepository()

    print("Creating mock coupons...")
    with transaction() as conn:
        for coupon in _mock_coupons():
            row = conn.execute("SELECT code FROM coupons WHERE code = ?", (coupon.code,)).fetchone()
            if row:
                print(f"  Skipping {coupon.code} (already exists)")
            else:
                coupons.create(conn, coupon)
                print(f"  Created {coupon.code} for {coupon.assigned_patient_id}")

    conn = get_connection()
    existing = conn.execute("SELECT COUNT(*) FROM cases").fetchone()[0]
    conn.close()
    if existing:
        print(f"Skipping cases ({existing} already exist)")
        return []

    print("Creating mock cases...")
    case_ids = []
    for submitter, payload, stop_after in MOCK_CASES:
        result = orchestrator.submit_case(submitter, payload)
        if stop_after is not None:
            _drive(orchestrator, result.case_id, stop_after)
        case_ids.append(result.case_id)
        print(f"  Created case {result.case_id}: {payload['title']}")

    print("\nDatabase seeded successfully!")
    print(f"  - {len(_mock_coupons())} coupons")
    print(f"  - {len(case_ids)} cases")
    return case_ids


if __name__ == "__main__":
    seed_database()
