"""
Error taxonomy.

Fatal (abort the whole run): AuthError, ReadinessTimeoutError, PlanningError.
Local (contained to one plan entry): StepFailure, DependencySkipped, CleanupFailure.
"""
from __future__ import annotations

from typing import Optional, Sequence


class ContractGuardError(Exception):
    fatal = False


class AuthError(ContractGuardError):
    fatal = True

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ReadinessTimeoutError(ContractGuardError, TimeoutError):
    fatal = True

    def __init__(self, url: str, waited: float, attempts: int) -> None:
        super().__init__(f"API at {url} not ready after {waited:.1f}s ({attempts} attempts)")
        self.url = url
        self.waited = waited
        self.attempts = attempts


class PlanningError(ContractGuardError):
    fatal = True

    def __init__(self, message: str, case_ids: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.case_ids = tuple(case_ids)


class StepFailure(ContractGuardError):
    def __init__(self, step, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.step = step
        self.status = status


class DependencySkipped(ContractGuardError):
    def __init__(self, entry_id: str, dependency: str) -> None:
        super().__init__(f"dependency not met: {dependency}")
        self.entry_id = entry_id
        self.dependency = dependency


class CleanupFailure(ContractGuardError):
    def __init__(self, url: str, message: str, status: Optional[int] = None) -> None:
        super().__init__(f"cleanup of {url} failed: {message}")
        self.url = url
        self.status = status
