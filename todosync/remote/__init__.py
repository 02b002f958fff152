"""Remote To Do service interface, errors, and the Microsoft Graph adapter."""

from todosync.remote.errors import (
    InvalidCursorError,
    RateLimitedError,
    RemoteApiError,
    RemoteValidationError,
    TransientNetworkError,
    UnauthorizedError,
)
from todosync.remote.graph_client import GraphTodoClient
from todosync.remote.interface import DeltaPage, RemoteTodoApi

__all__ = [
    "DeltaPage",
    "GraphTodoClient",
    "InvalidCursorError",
    "RateLimitedError",
    "RemoteApiError",
    "RemoteTodoApi",
    "RemoteValidationError",
    "TransientNetworkError",
    "UnauthorizedError",
]
