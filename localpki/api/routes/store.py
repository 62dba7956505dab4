"""Identity store and chain status API endpoints."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from localpki.api.dependencies import get_config, get_identity_store, get_lifecycle_manager
from localpki.exceptions import CertificateNotFound, InvalidInputError, PKIError, StoreUnavailable
from localpki.models.certificate import CertificateInfo, InstalledEntry, StoreName
from localpki.models.chain import ChainSummary
from localpki.models.config import AppConfig
from localpki.services.identity_store import IdentityStore
from localpki.services.lifecycle_service import CertificateLifecycleManager
from localpki.services.parser_service import CertificateParser

router = APIRouter(prefix="/api", tags=["Store"])


def _raise_http(error: PKIError):
    if isinstance(error, CertificateNotFound):
        raise HTTPException(status_code=404, detail=str(error))
    if isinstance(error, InvalidInputError):
        raise HTTPException(status_code=400, detail=str(error))
    if isinstance(error, StoreUnavailable):
        raise HTTPException(status_code=503, detail=str(error))
    raise HTTPException(status_code=500, detail=f"Internal error: {str(error)}")


@router.get("/stores/{store_name}/certificates", response_model=List[InstalledEntry])
def list_certificates(
    store_name: StoreName,
    subject: Optional[str] = Query(None, description="RFC 4514 subject, glob wildcards allowed"),
    store: IdentityStore = Depends(get_identity_store),
):
    """
    List the entries of a logical store.
    """
    try:
        with store.open(store_name) as handle:
            return [stored.entry for stored in handle.list(subject)]
    except PKIError as e:
        _raise_http(e)


@router.get("/stores/{store_name}/certificates/{fingerprint}", response_model=CertificateInfo)
def get_certificate(
    store_name: StoreName,
    fingerprint: str,
    store: IdentityStore = Depends(get_identity_store),
    config: AppConfig = Depends(get_config),
):
    """
    Get certificate details by fingerprint (spaces and colons are ignored).
    """
    try:
        with store.open(store_name) as handle:
            stored = handle.find_by_fingerprint(fingerprint)
        return CertificateParser.describe(stored.certificate, config.security.expiry_warning_days)
    except PKIError as e:
        _raise_http(e)


@router.get("/chain", response_model=ChainSummary)
def get_chain_status(
    fingerprint: Optional[str] = Query(None, description="Leaf fingerprint, defaults to the recorded reference"),
    manager: CertificateLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Validate the chain of an installed leaf.
    """
    try:
        _, result = manager.validate_installed(fingerprint)
        return manager.validator.summarize(result)
    except PKIError as e:
        _raise_http(e)
