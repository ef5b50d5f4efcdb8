"""
Removes personal data from an imported database
"""

from dataclasses import dataclass

from sqlalchemy import String, cast, delete, func, literal, select, update
from sqlalchemy.engine import Engine

from stax.utils.database import list_tables, reflect_table

PLACEHOLDER_DOMAIN = "example.test"

# usermeta keys dropped from every user
SENSITIVE_META_KEYS = ("session_tokens",)


@dataclass
class SanitizeReport:
    users: int = 0
    meta_rows: int = 0


def sanitize_users(engine: Engine, table_prefix: str = "wp_", dry_run: bool = False) -> SanitizeReport:
    """
    Replaces user emails with placeholders, blanks password hashes and drops session tokens

    Args:
        engine: Local database engine
        table_prefix: WordPress table prefix
        dry_run: Count affected rows without writing

    Returns:
        SanitizeReport: Rows touched
    """
    report = SanitizeReport()
    tables = list_tables(engine, table_prefix)
    users_name = f"{table_prefix}users"
    meta_name = f"{table_prefix}usermeta"

    connect = engine.connect if dry_run else engine.begin
    with connect() as conn:
        if users_name in tables:
            users = reflect_table(engine, users_name)
            report.users = conn.execute(select(func.count()).select_from(users)).scalar() or 0
            if not dry_run:
                email = literal("user") + cast(users.c.ID, String) + literal(f"@{PLACEHOLDER_DOMAIN}")
                conn.execute(update(users).values(user_email=email, user_pass=""))

        if meta_name in tables:
            usermeta = reflect_table(engine, meta_name)
            condition = usermeta.c.meta_key.in_(SENSITIVE_META_KEYS)
            report.meta_rows = conn.execute(
                select(func.count()).select_from(usermeta).where(condition)
            ).scalar() or 0
            if not dry_run:
                conn.execute(delete(usermeta).where(condition))

    verb = "Would sanitize" if dry_run else "Sanitized"
    print(f"🧹 {verb} {report.users} users and {report.meta_rows} session rows")
    return report
