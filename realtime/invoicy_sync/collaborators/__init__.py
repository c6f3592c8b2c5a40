"""
External collaborators of the engine.

- base: protocols and value types at the boundary
- rest: PostgREST-style data client (fetch, commit, insert, delete)
- upload: document upload client
- auth: static auth provider
- memory: in-memory tables mirrored onto an in-memory change feed
"""

from .auth import StaticAuthProvider
from .base import (
    AuthProvider,
    BulkFetcher,
    Committer,
    CurrentUser,
    OrderBy,
    Uploader,
    UploadDocument,
    UploadReceipt,
)
from .memory import InMemoryDataSource
from .rest import RestDataClient
from .upload import (
    UploadClient,
    UploadSummary,
    accepted_documents,
    rename_with_short_id,
    summarize_receipts,
)

__all__ = [
    "AuthProvider",
    "BulkFetcher",
    "Committer",
    "Uploader",
    "CurrentUser",
    "OrderBy",
    "UploadDocument",
    "UploadReceipt",
    "StaticAuthProvider",
    "InMemoryDataSource",
    "RestDataClient",
    "UploadClient",
    "UploadSummary",
    "accepted_documents",
    "rename_with_short_id",
    "summarize_receipts",
]
