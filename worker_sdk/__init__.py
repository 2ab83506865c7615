from .client import WorkerClient
from .runner import Handler, Middleware, UnknownJobTypeError, WorkerRunner
from .worker import Worker

__all__ = [
    "Handler",
    "Middleware",
    "UnknownJobTypeError",
    "Worker",
    "WorkerClient",
    "WorkerRunner",
]
