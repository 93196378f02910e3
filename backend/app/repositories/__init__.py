"""Repository abstractions for database interactions."""

from .contract_repository import ContractRepository
from .job_repository import JobLockRepository
from .store import Store
from .types import BatchWriteResult, DocumentWrite
from .user_repository import UserRepository, ledger_key

__all__ = [
    "BatchWriteResult",
    "ContractRepository",
    "DocumentWrite",
    "JobLockRepository",
    "Store",
    "UserRepository",
    "ledger_key",
]
