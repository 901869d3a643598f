# collectors/azure_client.py
from __future__ import annotations
import time
import requests
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from azure.core.credentials import TokenCredential
from azure.core.exceptions import ClientAuthenticationError

from engine.errors import AuthenticationFailure, ProviderError, ScopeAccessDenied

ARM = "https://management.azure.com"
GRAPH = "https://graph.microsoft.com"

DEFAULT_TIMEOUT = 60


def raise_for_status(r: requests.Response, scope: str = "") -> None:
    """Translate an HTTP error response into the migration error taxonomy."""
    if r.ok:
        return
    detail = _error_message(r)
    if r.status_code == 401:
        raise AuthenticationFailure(f"{r.status_code} {detail}")
    if r.status_code == 403 and scope:
        raise ScopeAccessDenied(scope, f"403 {detail}")
    raise ProviderError(f"{r.status_code} {detail}", status_code=r.status_code)


def _error_message(r: requests.Response) -> str:
    try:
        err = r.json().get("error", {})
    except ValueError:
        return r.text[:200]
    if isinstance(err, dict):
        return f"{err.get('code', '')}: {err.get('message', '')}".strip(": ")
    return str(err)


class _TokenMixin:
    resource: str = ARM

    def token(self) -> str:
        now = time.time()
        if self._token and now < self._token_expires - 60:
            return self._token
        try:
            access_token = self.credential.get_token(f"{self.resource}/.default")
        except ClientAuthenticationError as e:
            raise AuthenticationFailure(str(e)) from e
        self._token = access_token.token
        self._token_expires = access_token.expires_on
        return self._token

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token()}"}

    def _request(self, method: str, url: str, *, scope: str = "", **kwargs) -> Dict[str, Any]:
        try:
            r = requests.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise ProviderError(f"{method} {url} failed: {e}") from e
        raise_for_status(r, scope)
        if not r.content:
            return {}
        return r.json()


@dataclass
class AzureClient(_TokenMixin):
    """Minimal ARM REST client.  No retries: failures surface to the caller."""
    credential: TokenCredential
    subscription_id: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT
    _token: Optional[str] = None
    _token_expires: float = 0.0

    resource = ARM

    def get(self, path: str, api_version: str, params: Optional[Dict[str, Any]] = None, *, scope: str = "") -> Dict[str, Any]:
        qp = {"api-version": api_version}
        if params:
            qp.update(params)
        return self._request("GET", f"{ARM}{path}", params=qp, scope=scope)

    def get_all(self, path: str, api_version: str, params: Optional[Dict[str, Any]] = None, *, scope: str = "") -> List[Dict[str, Any]]:
        """Follow ``nextLink`` for paged ARM list results."""
        data = self.get(path, api_version, params, scope=scope)
        items: List[Dict[str, Any]] = list(data.get("value", []))
        next_link = data.get("nextLink")
        while next_link:
            data = self._request("GET", next_link, scope=scope)
            items.extend(data.get("value", []))
            next_link = data.get("nextLink")
        return items


@dataclass
class GraphClient(_TokenMixin):
    """Lightweight client for Microsoft Graph API (/v1.0 and /beta)."""
    credential: TokenCredential
    timeout: float = DEFAULT_TIMEOUT
    _token: Optional[str] = None
    _token_expires: float = 0.0

    resource = GRAPH

    def get(self, path: str, params: Optional[Dict[str, Any]] = None, *, api: str = "v1.0") -> Dict[str, Any]:
        return self._request("GET", f"{GRAPH}/{api}{path}", params=params or {})

    def post(self, path: str, body: Dict[str, Any], *, api: str = "v1.0") -> Dict[str, Any]:
        return self._request("POST", f"{GRAPH}/{api}{path}", json=body)

    def get_all(self, path: str, params: Optional[Dict[str, Any]] = None, *, api: str = "v1.0", max_pages: int = 100) -> list:
        """Follow @odata.nextLink for paged results."""
        items: list = []
        data = self.get(path, params, api=api)
        items.extend(data.get("value", []))
        url = data.get("@odata.nextLink", "")
        page = 1
        while url and page < max_pages:
            # nextLink already contains query params
            data = self._request("GET", url)
            items.extend(data.get("value", []))
            url = data.get("@odata.nextLink", "")
            page += 1
        return items


def build_graph_client(credential: TokenCredential, timeout: float = DEFAULT_TIMEOUT) -> GraphClient:
    return GraphClient(credential=credential, timeout=timeout)
