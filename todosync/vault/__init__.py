"""Access to the local Markdown vault."""

from todosync.vault.document_store import (
    DocumentStore,
    FileSystemDocumentStore,
    InMemoryDocumentStore,
    Subscription,
)

__all__ = [
    "DocumentStore",
    "FileSystemDocumentStore",
    "InMemoryDocumentStore",
    "Subscription",
]
