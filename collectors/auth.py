import logging
import os

from azure.core.exceptions import ClientAuthenticationError
from azure.identity import AzureCliCredential, ClientSecretCredential

from engine.errors import AuthenticationFailure

ARM_SCOPE = "https://management.azure.com/.default"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

log = logging.getLogger(__name__)


def build_credential(tenant_id: str | None = None):
    """Service principal when AZURE_CLIENT_ID/SECRET are set, else the Azure CLI session."""
    tenant_id = tenant_id or os.getenv("AZURE_TENANT_ID")
    client_id = os.getenv("AZURE_CLIENT_ID")
    secret = os.getenv("AZURE_CLIENT_SECRET")
    if client_id and secret and tenant_id:
        log.debug("Using service principal credential for client %s", client_id)
        return ClientSecretCredential(tenant_id, client_id, secret)
    log.debug("Using Azure CLI credential")
    return AzureCliCredential(tenant_id=tenant_id, process_timeout=30)


def verify_credential(credential) -> None:
    """Fail fast if either API rejects the credential."""
    for scope in (ARM_SCOPE, GRAPH_SCOPE):
        try:
            credential.get_token(scope)
        except ClientAuthenticationError as e:
            raise AuthenticationFailure(f"Sign-in for {scope} failed: {e}") from e
