"""
Consultation Lifecycle Database Schema
Supports cases, appointments, reschedule negotiation, settlement, coupons
and the lifecycle event log.
"""

SCHEMA = """
-- =============================================================================
-- 1. CASES - Medical requests submitted by (or for) a patient
-- =============================================================================
CREATE TABLE IF NOT EXISTS cases (
    id TEXT PRIMARY KEY,
    owner_patient_id TEXT NOT NULL,
    dependent_id TEXT,

    -- Clinical triage
    title TEXT,
    description TEXT,
    urgency_level TEXT DEFAULT 'MEDIUM',
    complexity TEXT DEFAULT 'MODERATE',
    required_specialization TEXT,

    -- Lifecycle
    status TEXT NOT NULL DEFAULT 'SUBMITTED',
    assigned_doctor_id TEXT,
    rejection_reason TEXT,
    closure_reason TEXT,

    -- Optimistic concurrency: bumped on every committed change
    version INTEGER NOT NULL DEFAULT 1,

    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    status_changed_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_cases_owner ON cases(owner_patient_id);
CREATE INDEX IF NOT EXISTS idx_cases_doctor ON cases(assigned_doctor_id);
CREATE INDEX IF NOT EXISTS idx_cases_status ON cases(status);


-- =============================================================================
-- 2. APPOINTMENTS - Append-only history; reschedule supersedes, never edits time
-- =============================================================================
CREATE TABLE IF NOT EXISTS appointments (
    id TEXT PRIMARY KEY,
    case_id TEXT NOT NULL,

    -- Status: SCHEDULED, PAYMENT_PENDING, CONFIRMED, IN_PROGRESS, COMPLETED,
    --         CANCELLED, NO_SHOW, RESCHEDULED
    status TEXT NOT NULL DEFAULT 'SCHEDULED',

    scheduled_time TEXT NOT NULL,
    duration_minutes INTEGER NOT NULL DEFAULT 30,
    consultation_type TEXT NOT NULL DEFAULT 'VIDEO_CONSULTATION',

    -- Integer minor units (cents)
    consultation_fee INTEGER NOT NULL,
    currency TEXT NOT NULL DEFAULT 'USD',

    reschedule_count INTEGER NOT NULL DEFAULT 0,
    supersedes_id TEXT,

    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,

    FOREIGN KEY (case_id) REFERENCES cases(id),
    FOREIGN KEY (supersedes_id) REFERENCES appointments(id)
);

CREATE INDEX IF NOT EXISTS idx_appointments_case ON appointments(case_id);
CREATE INDEX IF NOT EXISTS idx_appointments_status ON appointments(status);


-- =============================================================================
-- 3. RESCHEDULE_REQUESTS - Negotiation artifacts
-- =============================================================================
CREATE TABLE IF NOT EXISTS reschedule_requests (
    id TEXT PRIMARY KEY,
    appointment_id TEXT NOT NULL,
    case_id TEXT NOT NULL,

    requested_by_role TEXT NOT NULL,
    requested_by_id TEXT NOT NULL,

    -- Status: PENDING, APPROVED, REJECTED
    status TEXT NOT NULL DEFAULT 'PENDING',

    -- JSON array of ISO timestamps, in the requester's order of preference
    preferred_times TEXT NOT NULL,
    reason TEXT,
    chosen_time TEXT,

    resolved_by_id TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    resolved_at TEXT,

    FOREIGN KEY (appointment_id) REFERENCES appointments(id),
    FOREIGN KEY (case_id) REFERENCES cases(id)
);

CREATE INDEX IF NOT EXISTS idx_reschedule_appointment ON reschedule_requests(appointment_id);
-- At most one PENDING request per appointment
CREATE UNIQUE INDEX IF NOT EXISTS idx_reschedule_one_pending
    ON reschedule_requests(appointment_id) WHERE status = 'PENDING';


-- =============================================================================
-- 4. PAYMENT_SETTLEMENTS - One per appointment
-- =============================================================================
CREATE TABLE IF NOT EXISTS payment_settlements (
    id TEXT PRIMARY KEY,
    appointment_id TEXT NOT NULL UNIQUE,
    case_id TEXT NOT NULL,

    -- Method: CARD, WALLET, COUPON
    method TEXT NOT NULL,
    amount INTEGER NOT NULL,
    currency TEXT NOT NULL DEFAULT 'USD',
    coupon_code TEXT,
    transaction_ref TEXT,

    settled_by_id TEXT,
    settled_at TEXT DEFAULT CURRENT_TIMESTAMP,

    FOREIGN KEY (appointment_id) REFERENCES appointments(id),
    FOREIGN KEY (case_id) REFERENCES cases(id)
);


-- =============================================================================
-- 5. COUPONS - Full-fee consultation coupons assigned to a patient
-- =============================================================================
CREATE TABLE IF NOT EXISTS coupons (
    code TEXT PRIMARY KEY,
    assigned_patient_id TEXT,
    value INTEGER NOT NULL,
    currency TEXT NOT NULL DEFAULT 'USD',

    -- Status: AVAILABLE, REDEEMED, EXPIRED, CANCELLED
    status TEXT NOT NULL DEFAULT 'AVAILABLE',
    expires_at TEXT,

    redeemed_at TEXT,
    redeemed_appointment_id TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_coupons_patient ON coupons(assigned_patient_id);


-- =============================================================================
-- 6. LIFECYCLE_EVENTS - Audit trail / outbox of emitted domain events
-- =============================================================================
CREATE TABLE IF NOT EXISTS lifecycle_events (
    id TEXT PRIMARY KEY,
    case_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    actor_role TEXT,
    actor_id TEXT,
    occurred_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (case_id) REFERENCES cases(id)
);

CREATE INDEX IF NOT EXISTS idx_events_case ON lifecycle_events(case_id);
CREATE INDEX IF NOT EXISTS idx_events_time ON lifecycle_events(occurred_at);
"""
