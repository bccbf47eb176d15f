"""
Migration: Trigger resume bookkeeping, open-trigger uniqueness, notification outbox.

1. inheritance_triggers: verified_at, verified_by, dispatch_attempts,
   last_error, completed_at, cancelled_at
2. inheritance_plans: disposed_at
3. uq_open_trigger_per_plan: at most one pending trigger per plan
4. notifications: outbox of every notification attempt

Safe to re-run: every step checks before it changes anything.
"""
from sqlalchemy import create_engine, text
import os

# Use same DB URL pattern as main app
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/signoff"
)

TRIGGER_COLUMNS = [
    ("verified_at", "TIMESTAMP"),
    ("verified_by", "VARCHAR(255)"),
    ("dispatch_attempts", "INTEGER NOT NULL DEFAULT 0"),
    ("last_error", "TEXT"),
    ("completed_at", "TIMESTAMP"),
    ("cancelled_at", "TIMESTAMP"),
]


def table_exists(conn, table_name: str) -> bool:
    """Check if a table exists in the database."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_name = :table_name
        )
    """), {"table_name": table_name})
    return result.fetchone()[0]


def column_exists(conn, table_name: str, column_name: str) -> bool:
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM information_schema.columns
            WHERE table_name = :table_name AND column_name = :column_name
        )
    """), {"table_name": table_name, "column_name": column_name})
    return result.fetchone()[0]


def run_migration():
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        # =================================================================
        # STEP 1: trigger bookkeeping columns
        # =================================================================
        for column_name, column_type in TRIGGER_COLUMNS:
            if column_exists(conn, "inheritance_triggers", column_name):
                print(f"inheritance_triggers.{column_name} already exists")
                continue
            conn.execute(text(
                f"ALTER TABLE inheritance_triggers ADD COLUMN {column_name} {column_type}"
            ))
            print(f"Added inheritance_triggers.{column_name}")

        # =================================================================
        # STEP 2: plan disposal timestamp
        # =================================================================
        if column_exists(conn, "inheritance_plans", "disposed_at"):
            print("inheritance_plans.disposed_at already exists")
        else:
            conn.execute(text("ALTER TABLE inheritance_plans ADD COLUMN disposed_at TIMESTAMP"))
            print("Added inheritance_plans.disposed_at")

        # =================================================================
        # STEP 3: one open trigger per plan
        # =================================================================
        # Older runs could leave duplicate pending rows; keep the earliest
        conn.execute(text("""
            UPDATE inheritance_triggers t
            SET status = 'cancelled', cancelled_at = CURRENT_TIMESTAMP
            WHERE t.status = 'pending'
              AND EXISTS (
                  SELECT 1 FROM inheritance_triggers o
                  WHERE o.inheritance_plan_id = t.inheritance_plan_id
                    AND o.status = 'pending'
                    AND (o.triggered_at, o.id) < (t.triggered_at, t.id)
              )
        """))
        conn.execute(text("""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_open_trigger_per_plan
            ON inheritance_triggers(inheritance_plan_id)
            WHERE status = 'pending'
        """))
        print("Ensured uq_open_trigger_per_plan")

        # =================================================================
        # STEP 4: notification outbox
        # =================================================================
        if table_exists(conn, "notifications"):
            print("notifications table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE notifications (
                    id VARCHAR(36) PRIMARY KEY,
                    user_id VARCHAR(36) NOT NULL,
                    channel VARCHAR(30) NOT NULL,
                    template VARCHAR(50) NOT NULL,
                    recipient TEXT,
                    resource_type VARCHAR(50),
                    resource_id VARCHAR(36),
                    payload JSON,
                    status VARCHAR(32) NOT NULL,
                    error_message TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_notifications_user ON notifications(user_id)
            """))
            print("Created notifications table")

        conn.commit()
        print("Migration complete")


if __name__ == "__main__":
    run_migration()
