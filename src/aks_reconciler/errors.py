"""Error taxonomy for validation, planning, execution and refresh."""

from __future__ import annotations

from collections.abc import Sequence

from aks_reconciler.models import Diagnostic, scrub_sensitive_values


class ConvergenceError(Exception):
    """Base class for every error raised by the engine."""

    code = "ConvergenceError"

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path

    def diagnostic(self) -> Diagnostic:
        return Diagnostic(
            severity="error",
            code=self.code,
            summary=scrub_sensitive_values(self.message),
            path=self.path,
        )


class InvalidConfiguration(ConvergenceError):
    """The desired spec violates a field or cross-field constraint. Never retried."""

    code = "InvalidConfiguration"

    def __init__(self, message: str, *, path: str | None = None, errors: Sequence[Diagnostic] = ()) -> None:
        super().__init__(message, path=path)
        self.errors = list(errors)


class UnsatisfiableDependency(ConvergenceError):
    """The dependency graph between planned steps contains a cycle. Never retried."""

    code = "UnsatisfiableDependency"

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle between steps: {' -> '.join(self.cycle)}")


class RemoteOperationFailed(ConvergenceError):
    """The remote API rejected a call or an operation ended in failure."""

    code = "RemoteOperationFailed"

    def __init__(
        self,
        message: str,
        *,
        target: str | None = None,
        remote_code: str | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message, path=target)
        self.target = target
        self.remote_code = remote_code
        self.transient = transient

    def diagnostic(self) -> Diagnostic:
        diag = super().diagnostic()
        if self.remote_code:
            diag.detail = f"remote code: {self.remote_code}"
        return diag


class OperationTimedOut(ConvergenceError):
    """A pending operation did not reach a terminal status before its deadline."""

    code = "OperationTimedOut"

    def __init__(self, operation_id: str, target: str, deadline: float) -> None:
        self.operation_id = operation_id
        self.target = target
        self.deadline = deadline
        super().__init__(
            f"Operation {operation_id} on {target} did not complete before its deadline",
            path=target,
        )


class ResourceNotFound(ConvergenceError):
    """The remote identifier no longer resolves; the resource was deleted out-of-band."""

    code = "ResourceNotFound"

    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(f"Resource {resource_id} was not found")


class TransientFailure(ConvergenceError):
    """Rate limiting or a transient network failure; retried with backoff."""

    code = "TransientFailure"

    def __init__(self, message: str, *, target: str | None = None) -> None:
        super().__init__(message, path=target)
        self.target = target
