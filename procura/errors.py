"""
procura/errors.py

Domain exceptions.

Routes catch ProcuraError subclasses, flash the message and redirect.
The totals engine never raises; these belong to the order layer around it.
"""

from __future__ import annotations


class ProcuraError(Exception):
    """Base class for user-reportable failures."""


class OrderValidationError(ProcuraError):
    """Business-rule violation in an order header or its lines."""

    def __init__(self, messages: list[str] | str):
        if isinstance(messages, str):
            messages = [messages]
        self.messages = list(messages)
        super().__init__("; ".join(self.messages))


class InvalidStatusTransition(ProcuraError):
    def __init__(self, current: str | None, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move an order from {current or '-'} to {requested}.")


class OrderNotEditable(ProcuraError):
    def __init__(self, status: str | None):
        self.status = status
        super().__init__(f"Only Draft orders can be edited (current status: {status or '-'}).")


class PersistenceError(ProcuraError):
    """A database write failed and was rolled back."""


class DocumentServiceError(ProcuraError):
    """The external PDF/email functions failed or were unreachable."""
