"""TLS runtime status endpoint."""

from fastapi import APIRouter, Depends, Request

from localpki.api.dependencies import get_config
from localpki.models.config import AppConfig
from localpki.services.tls_runtime import describe_credentials

router = APIRouter(prefix="/api", tags=["TLS"])


@router.get("/tls")
def get_tls_status(request: Request, config: AppConfig = Depends(get_config)):
    """
    Show the TLS contract and the certificate the listener is serving.
    """
    credentials = getattr(request.app.state, "tls_credentials", None)
    return {
        "fingerprint": config.tls.fingerprint,
        "store_name": config.tls.store_name.value,
        "store_scope": config.tls.store_scope.value,
        "serving": describe_credentials(credentials) if credentials else None,
    }
