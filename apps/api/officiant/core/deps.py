"""FastAPI dependencies for persistence and the email rule engine."""

from functools import lru_cache

from officiant.db.session import SessionLocal
from officiant.services.email_processing_service import EmailRuleEngine
from officiant.services.persistence import PersistenceService, SqlPersistenceService


@lru_cache(maxsize=1)
def get_persistence() -> PersistenceService:
    return SqlPersistenceService(SessionLocal)


@lru_cache(maxsize=1)
def get_email_engine() -> EmailRuleEngine:
    """Process-wide engine; its caches live as long as the process."""
    return EmailRuleEngine(get_persistence())
