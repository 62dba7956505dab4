"""Lifecycle orchestration models."""

import logging
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, SecretStr, field_validator

from localpki.exceptions import InvalidTransitionError
from localpki.models.certificate import Subject
from localpki.models.chain import ChainSummary
from localpki.utils.validators import normalize_fingerprint

logger = logging.getLogger("localpki")


class LifecycleState(str, Enum):
    """States of a provisioning run."""

    UNINITIALIZED = "uninitialized"
    ROOT_GENERATED = "root_generated"
    LEAF_GENERATED = "leaf_generated"
    BUNDLED = "bundled"
    ROOT_INSTALLED = "root_installed"
    LEAF_INSTALLED = "leaf_installed"
    VALIDATED = "validated"
    COMPLETE = "complete"


# Allowed successors per state. The install-only path enters at ROOT_INSTALLED
# or LEAF_INSTALLED; an already satisfied run goes straight to VALIDATED.
TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.UNINITIALIZED: frozenset(
        {
            LifecycleState.ROOT_GENERATED,
            LifecycleState.ROOT_INSTALLED,
            LifecycleState.LEAF_INSTALLED,
            LifecycleState.VALIDATED,
        }
    ),
    LifecycleState.ROOT_GENERATED: frozenset({LifecycleState.LEAF_GENERATED}),
    LifecycleState.LEAF_GENERATED: frozenset({LifecycleState.BUNDLED}),
    LifecycleState.BUNDLED: frozenset({LifecycleState.ROOT_INSTALLED}),
    LifecycleState.ROOT_INSTALLED: frozenset({LifecycleState.LEAF_INSTALLED}),
    LifecycleState.LEAF_INSTALLED: frozenset({LifecycleState.VALIDATED}),
    LifecycleState.VALIDATED: frozenset({LifecycleState.COMPLETE}),
    LifecycleState.COMPLETE: frozenset(),
}


class LifecycleTracker:
    """Tracks the state of one run and rejects transitions outside the table."""

    def __init__(self, run: str):
        self.run = run
        self.state = LifecycleState.UNINITIALIZED
        self.history: list[LifecycleState] = [self.state]

    def advance(self, new_state: LifecycleState) -> LifecycleState:
        """
        Move to ``new_state``.

        Raises:
            InvalidTransitionError: If the table does not allow the transition
        """
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Invalid transition: {self.run} cannot move from {self.state.value} to {new_state.value}",
                stage=self.state.value,
            )
        logger.debug(f"{self.run}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)
        return new_state


class SetupRequest(BaseModel):
    """Parameters for a full generate-install-validate run. Unset values fall back to configuration."""

    root_subject: Optional[Subject] = None
    leaf_subject: Optional[Subject] = None
    sans: Optional[list[str]] = None
    root_validity_days: Optional[int] = Field(None, gt=0)
    leaf_validity_days: Optional[int] = Field(None, gt=0)
    root_key_size: Optional[int] = Field(None, ge=4096)
    leaf_key_size: Optional[int] = Field(None, ge=2048)
    password: Optional[SecretStr] = None
    output_dir: Optional[Path] = None
    force: bool = False
    cleanup: Optional[bool] = None

    class Config:
        """Pydantic config."""

        json_schema_extra = {
            "example": {
                "root_subject": {"common_name": "Test Root CA"},
                "leaf_subject": {"common_name": "localhost"},
                "sans": ["localhost", "127.0.0.1"],
                "root_validity_days": 730,
                "leaf_validity_days": 365,
            }
        }


class InstallRequest(BaseModel):
    """Parameters for installing externally supplied key material."""

    bundles_dir: Path
    roots_dir: Optional[Path] = None
    password: Optional[SecretStr] = None
    fingerprint: Optional[str] = None
    selector_file: Optional[Path] = None
    cleanup: bool = False
    allow_untrusted_root: Optional[bool] = None

    @field_validator("fingerprint", mode="before")
    @classmethod
    def validate_fingerprint(cls, v):
        if v is None or not str(v).strip():
            return None
        return normalize_fingerprint(str(v))


class LifecycleResult(BaseModel):
    """Outcome of a lifecycle run."""

    states: list[LifecycleState] = Field(default_factory=list)
    fingerprint: Optional[str] = None
    root_fingerprints: list[str] = Field(default_factory=list)
    already_satisfied: bool = False
    chain: Optional[ChainSummary] = None
    warnings: list[str] = Field(default_factory=list)
    artifacts: dict[str, str] = Field(default_factory=dict)

    @property
    def state(self) -> LifecycleState:
        return self.states[-1] if self.states else LifecycleState.UNINITIALIZED
