"""001 – Leave workflow schema: employees, request templates, requests, leave.

Revision ID: 001_leave_workflow_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000+00:00
"""

from alembic import op
import sqlalchemy as sa

# Revision identifiers
revision = "001_leave_workflow_schema"
down_revision = None
branch_labels = None
depends_on = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ENUM_TYPES: list[tuple[str, list[str]]] = [
    ("user_role", ["employee", "manager", "hr_admin", "system_admin"]),
    ("leave_kind", ["annual", "on_demand", "circumstantial", "sick"]),
    ("vacation_status", ["scheduled", "active", "completed", "cancelled"]),
    ("sick_leave_status", ["active", "completed"]),
    (
        "request_status",
        ["draft", "in_review", "approved", "rejected", "awaiting_survey"],
    ),
    ("step_status", ["pending", "in_review", "approved", "rejected", "skipped"]),
    (
        "approver_type",
        ["direct_supervisor", "department_head", "specific_user"],
    ),
    (
        "notification_type",
        ["info", "action_required", "approval", "reminder", "alert"],
    ),
]


def _create_enum(name: str, values: list[str]) -> None:
    vals = ", ".join(f"'{v}'" for v in values)
    op.execute(f"CREATE TYPE {name} AS ENUM ({vals})")


def _drop_enum(name: str) -> None:
    op.execute(f"DROP TYPE IF EXISTS {name}")


# ---------------------------------------------------------------------------
# Upgrade
# ---------------------------------------------------------------------------


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    for name, values in ENUM_TYPES:
        _create_enum(name, values)

    # ── 1. departments (head FK added after employees) ────────────────────
    op.execute("""
        CREATE TABLE departments (
            id                UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            name              VARCHAR(150) NOT NULL UNIQUE,
            head_employee_id  UUID,
            is_active         BOOLEAN DEFAULT TRUE,
            created_at        TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # ── 2. employees ──────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE employees (
            id                              UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            first_name                      VARCHAR(100) NOT NULL,
            last_name                       VARCHAR(100) NOT NULL,
            email                           VARCHAR(255) NOT NULL UNIQUE,
            role                            user_role DEFAULT 'employee',
            department_id                   UUID REFERENCES departments(id),
            supervisor_id                   UUID REFERENCES employees(id),
            employment_start_date           DATE,
            is_active                       BOOLEAN DEFAULT TRUE,
            annual_vacation_days            INTEGER DEFAULT 26,
            vacation_days_used              INTEGER DEFAULT 0,
            on_demand_vacation_days_used    INTEGER DEFAULT 0,
            circumstantial_leave_days_used  INTEGER DEFAULT 0,
            carried_over_vacation_days      INTEGER,
            carried_over_expiry_date        DATE,
            carried_over_days_used          INTEGER DEFAULT 0,
            leave_year                      INTEGER,
            version_id                      INTEGER NOT NULL DEFAULT 1,
            created_at                      TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX idx_employees_department ON employees(department_id)")
    op.execute("CREATE INDEX idx_employees_supervisor ON employees(supervisor_id)")

    op.execute("""
        ALTER TABLE departments
            ADD CONSTRAINT fk_dept_head
            FOREIGN KEY (head_employee_id) REFERENCES employees(id)
    """)

    # ── 3. request_templates ──────────────────────────────────────────────
    op.execute("""
        CREATE TABLE request_templates (
            id                 UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            name               VARCHAR(200) NOT NULL,
            description        TEXT,
            leave_kind         leave_kind,
            requires_approval  BOOLEAN DEFAULT TRUE,
            is_active          BOOLEAN DEFAULT TRUE,
            created_at         TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # ── 4. request_approval_step_templates ────────────────────────────────
    op.execute("""
        CREATE TABLE request_approval_step_templates (
            id                    UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            template_id           UUID NOT NULL
                                  REFERENCES request_templates(id) ON DELETE CASCADE,
            step_order            INTEGER NOT NULL,
            approver_type         approver_type,
            specific_approver_id  UUID REFERENCES employees(id),
            parallel_group_id     VARCHAR(50),
            requires_quiz         BOOLEAN DEFAULT FALSE,
            passing_score         INTEGER
        )
    """)
    op.execute("""
        CREATE INDEX ix_step_template_order
            ON request_approval_step_templates(template_id, step_order)
    """)

    # ── 5. quiz_questions ─────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE quiz_questions (
            id                UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            step_template_id  UUID NOT NULL
                              REFERENCES request_approval_step_templates(id) ON DELETE CASCADE,
            question          TEXT NOT NULL,
            options           JSONB NOT NULL,
            "order"           INTEGER DEFAULT 0
        )
    """)

    # ── 6. requests ───────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE requests (
            id               UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            request_number   VARCHAR(30) NOT NULL UNIQUE,
            template_id      UUID NOT NULL REFERENCES request_templates(id),
            submitted_by_id  UUID NOT NULL REFERENCES employees(id),
            form_data        JSONB NOT NULL DEFAULT '{}',
            status           request_status DEFAULT 'draft',
            submitted_at     TIMESTAMPTZ,
            completed_at     TIMESTAMPTZ,
            created_at       TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX ix_requests_submitter ON requests(submitted_by_id)")
    op.execute("CREATE INDEX ix_requests_status    ON requests(status)")

    # ── 7. request_approval_steps ─────────────────────────────────────────
    op.execute("""
        CREATE TABLE request_approval_steps (
            id                 UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            request_id         UUID NOT NULL REFERENCES requests(id) ON DELETE CASCADE,
            template_step_id   UUID REFERENCES request_approval_step_templates(id),
            step_order         INTEGER NOT NULL,
            approver_id        UUID REFERENCES employees(id),
            decided_by_id      UUID REFERENCES employees(id),
            status             step_status DEFAULT 'pending',
            parallel_group_id  VARCHAR(50),
            requires_quiz      BOOLEAN DEFAULT FALSE,
            passing_score      INTEGER,
            quiz_score         INTEGER,
            quiz_passed        BOOLEAN,
            comment            TEXT,
            started_at         TIMESTAMPTZ,
            finished_at        TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX ix_steps_request_order
            ON request_approval_steps(request_id, step_order)
    """)
    op.execute("""
        CREATE INDEX ix_steps_approver_status
            ON request_approval_steps(approver_id, status)
    """)

    # ── 8. quiz_answers ───────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE quiz_answers (
            id               UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            step_id          UUID NOT NULL
                             REFERENCES request_approval_steps(id) ON DELETE CASCADE,
            question_id      UUID NOT NULL REFERENCES quiz_questions(id),
            selected_answer  VARCHAR(200) NOT NULL,
            is_correct       BOOLEAN NOT NULL,
            answered_at      TIMESTAMPTZ NOT NULL,
            CONSTRAINT uq_quiz_answer UNIQUE (step_id, question_id)
        )
    """)

    # ── 9. request_edit_history ───────────────────────────────────────────
    op.execute("""
        CREATE TABLE request_edit_history (
            id             UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            request_id     UUID NOT NULL REFERENCES requests(id) ON DELETE CASCADE,
            edited_by_id   UUID NOT NULL REFERENCES employees(id),
            old_form_data  JSONB NOT NULL,
            new_form_data  JSONB NOT NULL,
            change_reason  TEXT,
            edited_at      TIMESTAMPTZ NOT NULL
        )
    """)

    # ── 10. approval_delegations ──────────────────────────────────────────
    op.execute("""
        CREATE TABLE approval_delegations (
            id            UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            from_user_id  UUID NOT NULL REFERENCES employees(id),
            to_user_id    UUID NOT NULL REFERENCES employees(id),
            start_date    DATE NOT NULL,
            end_date      DATE,
            is_active     BOOLEAN DEFAULT TRUE,
            reason        TEXT,
            created_at    TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX ix_delegation_from_active
            ON approval_delegations(from_user_id, is_active)
    """)

    # ── 11. vacation_schedules ────────────────────────────────────────────
    op.execute("""
        CREATE TABLE vacation_schedules (
            id                       UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            user_id                  UUID NOT NULL REFERENCES employees(id),
            substitute_user_id       UUID REFERENCES employees(id),
            start_date               DATE NOT NULL,
            end_date                 DATE NOT NULL,
            source_request_id        UUID UNIQUE REFERENCES requests(id),
            leave_kind               leave_kind DEFAULT 'annual',
            status                   vacation_status DEFAULT 'scheduled',
            carried_over_days_drawn  INTEGER DEFAULT 0,
            cancelled_at             TIMESTAMPTZ,
            cancelled_by_id          UUID REFERENCES employees(id),
            cancellation_reason      TEXT,
            version_id               INTEGER NOT NULL DEFAULT 1,
            created_at               TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_vacation_dates CHECK (end_date >= start_date)
        )
    """)
    op.execute("""
        CREATE INDEX ix_vacation_user_dates
            ON vacation_schedules(user_id, start_date, end_date)
    """)
    op.execute("CREATE INDEX ix_vacation_status ON vacation_schedules(status)")

    # ── 12. sick_leaves ───────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE sick_leaves (
            id                     UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            user_id                UUID NOT NULL REFERENCES employees(id),
            start_date             DATE NOT NULL,
            end_date               DATE NOT NULL,
            requires_zus_document  BOOLEAN DEFAULT FALSE,
            zus_document_url       VARCHAR(500),
            source_request_id      UUID UNIQUE REFERENCES requests(id),
            status                 sick_leave_status DEFAULT 'active',
            notes                  TEXT,
            created_at             TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_sick_leave_dates CHECK (end_date >= start_date)
        )
    """)

    # ── 13. notifications ─────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE notifications (
            id            UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            recipient_id  UUID NOT NULL REFERENCES employees(id) ON DELETE CASCADE,
            type          notification_type DEFAULT 'info',
            title         VARCHAR(200) NOT NULL,
            message       TEXT NOT NULL,
            action_url    VARCHAR(500),
            entity_type   VARCHAR(50),
            entity_id     UUID,
            is_read       BOOLEAN DEFAULT FALSE,
            created_at    TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX idx_notifications_recipient
            ON notifications(recipient_id, is_read, created_at DESC)
    """)

    # ── 14. audit_trail ───────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE audit_trail (
            id           UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            actor_id     UUID REFERENCES employees(id),
            action       VARCHAR(50) NOT NULL,
            entity_type  VARCHAR(50) NOT NULL,
            entity_id    UUID NOT NULL,
            old_values   JSONB,
            new_values   JSONB,
            reason       TEXT,
            created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX ix_audit_trail_actor_id   ON audit_trail(actor_id)")
    op.execute("CREATE INDEX ix_audit_trail_entity     ON audit_trail(entity_type, entity_id)")
    op.execute("CREATE INDEX ix_audit_trail_created_at ON audit_trail(created_at)")


# ---------------------------------------------------------------------------
# Downgrade
# ---------------------------------------------------------------------------


def downgrade() -> None:
    # Drop tables in reverse dependency order
    tables = [
        "audit_trail",
        "notifications",
        "sick_leaves",
        "vacation_schedules",
        "approval_delegations",
        "request_edit_history",
        "quiz_answers",
        "request_approval_steps",
        "requests",
        "quiz_questions",
        "request_approval_step_templates",
        "request_templates",
    ]
    for t in tables:
        op.execute(f"DROP TABLE IF EXISTS {t} CASCADE")

    op.execute(
        "ALTER TABLE departments DROP CONSTRAINT IF EXISTS fk_dept_head"
    )
    op.execute("DROP TABLE IF EXISTS employees CASCADE")
    op.execute("DROP TABLE IF EXISTS departments CASCADE")

    for name, _ in reversed(ENUM_TYPES):
        _drop_enum(name)
