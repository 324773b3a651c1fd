from .connection import get_connection, init_database, transaction
from .case_repository import CaseRepository

__all__ = ["get_connection", "init_database", "transaction", "CaseRepository"]
