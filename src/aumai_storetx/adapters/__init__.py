"""Resource adapters.

The MongoDB and S3 adapters live in :mod:`aumai_storetx.adapters.mongo` and
:mod:`aumai_storetx.adapters.s3` and need the ``mongodb`` / ``s3`` extras.
"""

from aumai_storetx.adapters.base import (
    DocumentAdapter,
    ObjectAdapter,
    TransactionalDocumentAdapter,
)
from aumai_storetx.adapters.memory import (
    InMemoryDocumentAdapter,
    InMemoryObjectAdapter,
    InMemoryTransactionalDocumentAdapter,
)

__all__ = [
    "DocumentAdapter",
    "ObjectAdapter",
    "TransactionalDocumentAdapter",
    "InMemoryDocumentAdapter",
    "InMemoryObjectAdapter",
    "InMemoryTransactionalDocumentAdapter",
]
