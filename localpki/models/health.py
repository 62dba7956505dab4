"""Health check report models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class CheckStatus(str, Enum):
    """Outcome of a single check."""

    PASSED = "passed"
    WARNING = "warning"
    FAILED = "failed"


class HealthCheck(BaseModel):
    """Result of a single check."""

    name: str
    status: CheckStatus
    message: str = ""
    fingerprint: Optional[str] = None


class HealthReport(BaseModel):
    """Aggregated check results with the pipeline exit-code contract."""

    checks: list[HealthCheck] = Field(default_factory=list)

    def add(self, name: str, status: CheckStatus, message: str = "", fingerprint: Optional[str] = None) -> HealthCheck:
        check = HealthCheck(name=name, status=status, message=message, fingerprint=fingerprint)
        self.checks.append(check)
        return check

    @property
    def failures(self) -> list[HealthCheck]:
        return [c for c in self.checks if c.status == CheckStatus.FAILED]

    @property
    def warnings(self) -> list[HealthCheck]:
        return [c for c in self.checks if c.status == CheckStatus.WARNING]

    @property
    def passed(self) -> bool:
        return not self.failures and not self.warnings

    def exit_code(self, soft_fail: bool = False) -> int:
        """
        Map the report to a process exit code.

        0 when every check passed, 1 on any failure (or any warning unless
        ``soft_fail``), 2 when only warnings are present in soft-fail mode.
        """
        if self.failures:
            return 1
        if self.warnings:
            return 2 if soft_fail else 1
        return 0
