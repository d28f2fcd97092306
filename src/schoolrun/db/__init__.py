from .database import init_database
from .transaction import transaction, unit_of_work

__all__ = ["init_database", "transaction", "unit_of_work"]
