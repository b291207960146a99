"""
Cross-database compatible column types.

Use these instead of PostgreSQL-specific imports:
- GUID instead of postgresql.UUID
- JSONB instead of postgresql.JSONB

Native PostgreSQL types are used when available, with SQLite-compatible
fallbacks otherwise.
"""
import uuid

from sqlalchemy import JSON, String, TypeDecorator


class GUID(TypeDecorator):
    """
    Platform-independent UUID type.

    - PostgreSQL: Uses native UUID type
    - SQLite: Uses String(36)

    Always returns Python uuid.UUID objects.
    """
    impl = String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import UUID as PGUUID
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(value)
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(value))

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class JSONB(TypeDecorator):
    """
    Cross-platform JSON with binary storage on PostgreSQL.

    - PostgreSQL: Uses JSONB
    - SQLite: Uses JSON (text-based, JSON1 extension)
    """
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import JSONB as PGJSONB
            return dialect.type_descriptor(PGJSONB)
        return dialect.type_descriptor(JSON)
