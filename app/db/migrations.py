"""
מיגרציות DB מרכזיות - מקור אמת יחיד לשינויי סכמה שלא מכוסים ע"י create_all.

create_all לא מוסיף עמודות/אינדקסים לטבלאות שכבר קיימות, ולכן כל מה שנוסף
אחרי ההתקנה הראשונה עובר כאן. כל המיגרציות idempotent (בטוח להריץ מספר פעמים)
ורצות רק על PostgreSQL.
"""
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from app.core.logging import get_logger

logger = get_logger(__name__)


async def run_migration_001(conn: AsyncConnection) -> None:
    """מיגרציה 001 - אינדקסים על webhook_events (retention + שליפה לפי משתמש/סוג)."""
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS idx_webhook_events_received_at
            ON webhook_events(received_at);
    """))
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS idx_webhook_events_user_received
            ON webhook_events(linked_user_id, received_at);
    """))
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS idx_webhook_events_type_received
            ON webhook_events(event_type, received_at);
    """))


async def run_migration_002(conn: AsyncConnection) -> None:
    """מיגרציה 002 - אינדקסים על users ו-checkout_tokens."""
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS idx_checkout_tokens_expires_at
            ON checkout_tokens(expires_at);
    """))
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS idx_users_external_contact_id
            ON users(external_contact_id);
    """))
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS idx_users_state ON users(state);
    """))


async def run_migration_003(conn: AsyncConnection) -> None:
    """מיגרציה 003 - עמודת last_resync_at (cooldown לסנכרון) ו-cancel_reason."""
    await conn.execute(text("""
        ALTER TABLE users
            ADD COLUMN IF NOT EXISTS last_resync_at TIMESTAMP,
            ADD COLUMN IF NOT EXISTS cancel_reason TEXT;
    """))


MIGRATIONS = (
    ("001", run_migration_001),
    ("002", run_migration_002),
    ("003", run_migration_003),
)


async def run_all_migrations(conn: AsyncConnection) -> None:
    """הרצת כל המיגרציות ברצף."""
    for name, migration in MIGRATIONS:
        logger.info(f"Running migration {name}...")
        await migration(conn)
