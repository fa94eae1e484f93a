"""
Run-scoped cancellation for archive and restore walks.
"""

import threading

from .errors import OperationCancelled


class CancellationToken:
    """
    Cancellation flag that can be passed wherever a cancellation_check is accepted.

    Calling the token raises OperationCancelled once cancel() has been called,
    so walks check it between file operations.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def __call__(self):
        if self._event.is_set():
            raise OperationCancelled("Operation cancelled")
