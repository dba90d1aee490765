# outreach/database.py

import logging

from outreach.db import Base, get_engine
from outreach import models  # noqa: F401  (registers tables on Base.metadata)

log = logging.getLogger(__name__)


def init_db():
    """
    Ensure the outreach cache tables exist.
    """
    Base.metadata.create_all(bind=get_engine())
    log.info("[db] ensured tables: %s", ", ".join(sorted(Base.metadata.tables)))
