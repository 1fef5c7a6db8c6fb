from pgqueue.core.store.postgres import PostgresJobStore
from pgqueue.core.store.result_types import (
    StoreErrorCode,
    StoreOperationError,
    StoreResult,
)

__all__ = [
    'PostgresJobStore',
    'StoreErrorCode',
    'StoreOperationError',
    'StoreResult',
]
