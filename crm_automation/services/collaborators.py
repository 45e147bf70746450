"""Call contracts into the messaging, AI and CRM services, plus httpx adapters.

Node handlers depend only on the Protocols below. The Http* adapters POST
JSON to the configured service base URLs and fold transport failures into the
usual {"success": False, "error": ...} shape instead of raising.
"""

from typing import Any, Dict, Optional, Protocol

import httpx

from crm_automation.core.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# CONTRACTS
# =============================================================================

class OutboundSender(Protocol):
    async def send(self, connection_id: Optional[str], recipient: str, content: Dict[str, Any],
                   organization_id: str) -> Dict[str, Any]:
        """Returns {success, externalId?, error?}."""
        ...


class AIBackend(Protocol):
    async def execute(self, organization_id: str, task_type: str,
                      payload: Dict[str, Any]) -> Dict[str, Any]:
        """Returns {success, data}."""
        ...


class CRMGateway(Protocol):
    async def create_lead(self, organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]: ...

    async def update_lead_status(self, organization_id: str, lead_id: str, status: str) -> Dict[str, Any]: ...

    async def add_tag(self, organization_id: str, lead_id: str, tag: str) -> Dict[str, Any]: ...

    async def remove_tag(self, organization_id: str, lead_id: str, tag: str) -> Dict[str, Any]: ...

    async def create_invoice(self, organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]: ...

    async def create_quote(self, organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]: ...

    async def create_notification(self, organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]: ...

    async def count_lead_conversations(self, organization_id: str, lead_id: str,
                                       exclude_conversation_id: Optional[str] = None) -> int: ...


# =============================================================================
# HTTPX ADAPTERS
# =============================================================================

class HttpServiceClient:
    """JSON-over-HTTP access to one collaborator service."""

    def __init__(self, client: httpx.AsyncClient, base_url: str, api_key: Optional[str] = None):
        self.client = client
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None,
                       params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.request(method, url, json=payload, params=params,
                                                 headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning("Collaborator request failed", url=url, error=str(e))
            return {"success": False, "error": f"{type(e).__name__}: {e}"}

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}

        if response.status_code >= 400:
            error = body.get("error") if isinstance(body, dict) else None
            logger.warning("Collaborator returned error", url=url, status=response.status_code)
            return {"success": False, "error": error or f"HTTP {response.status_code}"}

        if isinstance(body, dict) and "success" in body:
            return body
        return {"success": True, "data": body}


class HttpOutboundSender(HttpServiceClient):
    async def send(self, connection_id: Optional[str], recipient: str, content: Dict[str, Any],
                   organization_id: str) -> Dict[str, Any]:
        return await self._request("POST", "/messages/send", {
            "connectionId": connection_id,
            "recipient": recipient,
            "content": content,
            "organizationId": organization_id,
        })


class HttpAIBackend(HttpServiceClient):
    async def execute(self, organization_id: str, task_type: str,
                      payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/ai/execute", {
            "organizationId": organization_id,
            "taskType": task_type,
            "payload": payload,
        })


class HttpCRMGateway(HttpServiceClient):
    async def create_lead(self, organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/leads", {"organizationId": organization_id, **data})

    async def update_lead_status(self, organization_id: str, lead_id: str, status: str) -> Dict[str, Any]:
        return await self._request("POST", f"/leads/{lead_id}/status",
                                   {"organizationId": organization_id, "status": status})

    async def add_tag(self, organization_id: str, lead_id: str, tag: str) -> Dict[str, Any]:
        return await self._request("POST", f"/leads/{lead_id}/tags",
                                   {"organizationId": organization_id, "tag": tag})

    async def remove_tag(self, organization_id: str, lead_id: str, tag: str) -> Dict[str, Any]:
        return await self._request("POST", f"/leads/{lead_id}/tags/remove",
                                   {"organizationId": organization_id, "tag": tag})

    async def create_invoice(self, organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/invoices", {"organizationId": organization_id, **data})

    async def create_quote(self, organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/quotes", {"organizationId": organization_id, **data})

    async def create_notification(self, organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/notifications", {"organizationId": organization_id, **data})

    async def count_lead_conversations(self, organization_id: str, lead_id: str,
                                       exclude_conversation_id: Optional[str] = None) -> int:
        params = {"organizationId": organization_id}
        if exclude_conversation_id:
            params["exclude"] = exclude_conversation_id
        result = await self._request("GET", f"/leads/{lead_id}/conversations/count", params=params)
        if not result.get("success"):
            raise RuntimeError(result.get("error") or "conversation count lookup failed")
        data = result.get("data")
        if isinstance(data, dict):
            data = data.get("count", 0)
        return int(data or 0)
