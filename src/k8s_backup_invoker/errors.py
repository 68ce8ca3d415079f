from __future__ import annotations

from typing import Iterable


class InvokerError(RuntimeError):
    """Base class for backup invoker failures."""


class ConfigurationError(InvokerError):
    """Raised when an invoker cannot be reconciled until its spec changes."""


class UnsupportedInvokerKindError(ConfigurationError):
    """Raised when a policy kind has no invoker normalization."""


class DependencyNotReadyError(InvokerError):
    """Raised when a referenced object does not exist yet; retried after a fixed delay."""


class TargetLookupError(InvokerError):
    """Raised when target existence cannot be determined."""


class AggregateError(InvokerError):
    """Carries several failures raised during one reconciliation pass."""

    def __init__(self, errors: list[BaseException]) -> None:
        super().__init__("; ".join(str(error).strip() or error.__class__.__name__ for error in errors))
        self.errors = errors


def aggregate_errors(errors: Iterable[BaseException | None]) -> BaseException | None:
    collected = [error for error in errors if error is not None]
    if not collected:
        return None
    if len(collected) == 1:
        return collected[0]
    return AggregateError(collected)
