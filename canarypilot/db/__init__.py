"""
Database Package
================

Exports key database components.
"""

from canarypilot.db.models import (
    Base,
    ReleaseRun, AuditRecord, MessageRecord, SampleRecord,
)
from canarypilot.db.connection import init_db, get_session_maker, close_db, DEFAULT_DB_PATH
