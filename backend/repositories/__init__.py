from .accounts import AccountsRepository
from .books import BooksRepository
from .payments import PaymentsRepository
from . import models

__all__ = ["AccountsRepository", "BooksRepository", "PaymentsRepository", "models"]
