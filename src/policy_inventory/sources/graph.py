from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import quote

import requests

from ..logging import get_logger
from ..normalize.schema import SourceKind
from ..util.errors import GraphRequestError, map_http_error
from ..util.pagination import Page, PageRequest, paginate

LOG = get_logger(__name__)

DEFAULT_GRAPH_BASE_URL = "https://graph.microsoft.com/beta"
NEXT_LINK_KEY = "@odata.nextLink"

# Collection endpoints, relative to the Graph base URL.
GRAPH_COLLECTIONS: Dict[SourceKind, str] = {
    SourceKind.GRAPH_DEVICE_CONFIGURATION: "deviceManagement/deviceConfigurations",
    SourceKind.GRAPH_CONFIGURATION_POLICY: "deviceManagement/configurationPolicies",
    SourceKind.GRAPH_COMPLIANCE_POLICY: "deviceManagement/deviceCompliancePolicies",
    SourceKind.GRAPH_GROUP_POLICY_CONFIGURATION: "deviceManagement/groupPolicyConfigurations",
    SourceKind.GRAPH_MOBILE_APP: "deviceAppManagement/mobileApps",
}


class GraphClient:
    """
    Thin Microsoft Graph JSON client over a requests.Session.
    The bearer token is obtained by the caller; no retry is attempted.
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str = DEFAULT_GRAPH_BASE_URL,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
            }
        )

    def url_for(self, path_or_url: str) -> str:
        if path_or_url.startswith(("https://", "http://")):
            return path_or_url
        return f"{self.base_url}/{path_or_url.lstrip('/')}"

    def get_json(self, path_or_url: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        url = self.url_for(path_or_url)
        try:
            resp = self._session.get(url, params=dict(params) if params else None, timeout=self._timeout)
        except Exception as e:
            mapped = map_http_error(e, "Graph request failed", url=url)
            if mapped:
                raise mapped from e
            raise
        if resp.status_code >= 400:
            raise GraphRequestError(
                f"Graph request failed with HTTP {resp.status_code}: {_error_message(resp)}",
                status_code=resp.status_code,
                url=url,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise GraphRequestError(f"Graph returned a non-JSON body for {url}", status_code=resp.status_code, url=url) from e
        if not isinstance(data, dict):
            raise GraphRequestError(f"Graph returned unexpected payload type for {url}", url=url)
        return data

    def get_page(self, path_or_url: str, params: Optional[Mapping[str, Any]] = None) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        data = self.get_json(path_or_url, params=params)
        items = data.get("value")
        if items is None:
            items = []
        if not isinstance(items, list):
            raise GraphRequestError(f"Graph page 'value' is not a list for {path_or_url}")
        return [it for it in items if isinstance(it, dict)], data.get(NEXT_LINK_KEY) or None

    def get_all(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Iterable[Dict[str, Any]]:
        """
        Yield every item of a collection by following @odata.nextLink.
        """

        def fetch(page: Optional[str]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
            if page:
                return self.get_page(page)
            return self.get_page(path, params=params)

        return paginate(fetch)

    def get_item(self, collection: str, item_id: str, *, select: Optional[str] = None) -> Dict[str, Any]:
        params = {"$select": select} if select else None
        return self.get_json(f"{collection}/{quote(item_id, safe='')}", params=params)


def _error_message(resp: Any) -> str:
    try:
        body = resp.json()
    except Exception:
        return str(getattr(resp, "text", "") or "")[:200]
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict):
        return str(err.get("message") or err.get("code") or "")
    return ""


class GraphPageSource:
    """
    PageSource over Graph collections. The continuation token is the absolute
    @odata.nextLink URL, which already carries the original query.
    """

    def __init__(self, client: GraphClient) -> None:
        self._client = client

    def get_page(self, request: PageRequest, continuation: Optional[str]) -> Page:
        if continuation:
            items, next_link = self._client.get_page(continuation)
        else:
            items, next_link = self._client.get_page(request.endpoint, params=request.params or None)
        return Page(items=items, next_token=next_link)


def graph_requests(kinds: Iterable[SourceKind], params: Optional[Mapping[str, Any]] = None) -> List[PageRequest]:
    out: List[PageRequest] = []
    for kind in kinds:
        endpoint = GRAPH_COLLECTIONS.get(kind)
        if endpoint is None:
            raise ValueError(f"Not a Graph collection: {kind.value}")
        out.append(PageRequest(source_kind=kind, endpoint=endpoint, params=dict(params or {})))
    return out
