"""Application configuration models."""

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from localpki.models.certificate import StoreName, StoreScope, Subject
from localpki.utils.validators import is_placeholder_thumbprint, normalize_fingerprint


class Profile(str, Enum):
    """Deployment profiles."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


class AppSettings(BaseModel):
    """Application settings."""

    title: str = "LocalPKI"
    version: str = "1.0.0"
    debug: bool = False
    profile: Profile = Profile.DEVELOPMENT
    host: str = "localhost"
    port: int = Field(8443, gt=0, lt=65536)


class PathSettings(BaseModel):
    """Path settings."""

    output_dir: str = "./certs"
    store_root: str = "~/.localpki/stores"
    fingerprint_reference: Optional[str] = None  # defaults to <output_dir>/thumbprint.txt
    runtime_dir: str = "./runtime"

    def reference_path(self) -> Path:
        """Resolve the fingerprint reference location."""
        if self.fingerprint_reference:
            return Path(self.fingerprint_reference).expanduser()
        return Path(self.output_dir).expanduser() / "thumbprint.txt"


class StoreLocationConfig(BaseModel):
    """Where the identity store lives. Resolved once at process start."""

    root: Path
    scope: StoreScope = StoreScope.CURRENT_USER

    def store_path(self, store_name: StoreName) -> Path:
        return self.root / self.scope.value / store_name.value


class StoreSettings(BaseModel):
    """Identity store settings."""

    scope: StoreScope = StoreScope.CURRENT_USER
    cleanup_before_install: bool = True


class CertificateDefaults(BaseModel):
    """Default settings for generated certificates."""

    validity_days: int = Field(..., gt=0)
    key_size: int = Field(..., ge=2048)


class SubjectDefaults(BaseModel):
    """Default subjects and SANs used by the full setup."""

    root: Subject = Subject(common_name="LocalPKI Development Root CA", organization="LocalPKI")
    leaf: Subject = Subject(common_name="localhost", organization="LocalPKI")
    sans: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1", "::1"])


class SecuritySettings(BaseModel):
    """Security settings."""

    allow_untrusted_root: Optional[bool] = None  # None: permissive only in development
    min_password_length: int = Field(16, ge=16)
    write_password_file: bool = True
    expiry_warning_days: int = Field(30, ge=0)

    def untrusted_root_allowed(self, profile: Profile) -> bool:
        if self.allow_untrusted_root is not None:
            return self.allow_untrusted_root
        return profile == Profile.DEVELOPMENT


class LoggingSettings(BaseModel):
    """Logging settings."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: str = "./logs/localpki.log"


class TLSCertificateSettings(BaseModel):
    """Contract consumed by the TLS-serving runtime."""

    fingerprint: Optional[str] = None
    store_name: StoreName = StoreName.PERSONAL
    store_scope: StoreScope = StoreScope.CURRENT_USER

    @field_validator("fingerprint", mode="before")
    @classmethod
    def validate_fingerprint(cls, v):
        """Normalize the thumbprint; placeholders count as not configured."""
        if v is None or not str(v).strip():
            return None
        if is_placeholder_thumbprint(str(v)):
            return None
        return normalize_fingerprint(str(v))

    @field_validator("store_name")
    @classmethod
    def validate_store_name(cls, v):
        """The runtime only serves from the personal store."""
        if v != StoreName.PERSONAL:
            raise ValueError("TLS certificates must be loaded from the personal store")
        return v


class AppConfig(BaseModel):
    """Main application configuration."""

    app: AppSettings = AppSettings()
    paths: PathSettings = PathSettings()
    store: StoreSettings = StoreSettings()
    defaults: dict[str, CertificateDefaults] = Field(
        default_factory=lambda: {
            "root": CertificateDefaults(validity_days=730, key_size=4096),
            "leaf": CertificateDefaults(validity_days=365, key_size=2048),
        }
    )
    subjects: SubjectDefaults = SubjectDefaults()
    security: SecuritySettings = SecuritySettings()
    logging: LoggingSettings = LoggingSettings()
    tls: TLSCertificateSettings = TLSCertificateSettings()

    def store_location(self) -> StoreLocationConfig:
        return StoreLocationConfig(root=Path(self.paths.store_root).expanduser(), scope=self.store.scope)
