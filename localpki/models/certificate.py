"""Certificate and identity store data models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class StoreName(str, Enum):
    """Logical certificate stores."""

    ROOT_TRUST = "root-trust"
    PERSONAL = "personal"


class StoreScope(str, Enum):
    """Store scopes, mirroring per-user and machine-wide keystores."""

    CURRENT_USER = "current-user"
    LOCAL_MACHINE = "local-machine"


class OpenMode(str, Enum):
    """Store handle access modes."""

    READ_ONLY = "read-only"
    READ_WRITE = "read-write"


class CertificateRole(str, Enum):
    """Role of a certificate in the two-level trust chain."""

    ROOT = "root"
    LEAF = "leaf"


class Subject(BaseModel):
    """Certificate subject information."""

    common_name: str = Field(..., min_length=1, max_length=64)
    organization: Optional[str] = None
    organizational_unit: Optional[str] = None
    country: Optional[str] = Field(None, min_length=2, max_length=2)
    state: Optional[str] = None
    locality: Optional[str] = None

    class Config:
        """Pydantic config."""

        json_schema_extra = {
            "example": {
                "common_name": "LocalPKI Development Root CA",
                "organization": "LocalPKI",
                "country": "DE",
            }
        }


class CertificateInfo(BaseModel):
    """Human-readable summary of a parsed certificate."""

    fingerprint: str
    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    is_ca: bool = False
    self_signed: bool = False
    sans: list[str] = Field(default_factory=list)
    key_usage: list[str] = Field(default_factory=list)
    extended_key_usage: list[str] = Field(default_factory=list)
    validity_status: str = "success"
    validity_text: str = "Valid"


class InstalledEntry(BaseModel):
    """Persisted form of a certificate inside a logical store."""

    store_name: StoreName
    store_scope: StoreScope
    fingerprint: str
    path: str
    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    has_private_key: bool = False
    installed_at: datetime = Field(default_factory=datetime.now)
    created: bool = True


@dataclass(frozen=True)
class EncryptedPrivateKeyBundle:
    """Password-protected PKCS#12 container binding a leaf, its key and the root."""

    data: bytes
    fingerprint: str
    friendly_name: str = "localpki"
