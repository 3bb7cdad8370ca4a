"""
CRM Data Layer Client
=====================

Read-only access to CRM entities (deals, contacts, objections, interactions).
The AI service never writes CRM data.

Clients:
- CRMClient: REST API of the CRM backend via requests (run in a worker thread)
- InMemoryCRMClient: dict-backed, for tests and local development

Configuration:
    CRM_API_URL: Base URL (default: http://localhost:5000/api)
    CRM_API_TOKEN: Optional bearer token forwarded to the CRM
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import requests

from ..errors import EntityNotFound, UpstreamServiceError
from ..models import ContactSnapshot, DealSnapshot, InteractionSnapshot, ObjectionSnapshot

logger = logging.getLogger(__name__)


class CRMClient:
    """
    HTTP client for the CRM REST API.

    Responses may be bare JSON or wrapped as {"success": true, "data": ...}.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:5000/api",
        api_token: Optional[str] = None,
        timeout: int = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers["Accept"] = "application/json"
        if api_token:
            self._session.headers["Authorization"] = f"Bearer {api_token}"

        self._requests_made = 0

    def _get_sync(self, path: str, params: Optional[Dict[str, Any]] = None, entity: Optional[tuple] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamServiceError("crm", str(e)) from e

        self._requests_made += 1

        if response.status_code == 404 and entity is not None:
            raise EntityNotFound(*entity)
        if response.status_code >= 400:
            raise UpstreamServiceError("crm", f"GET {path} returned {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise UpstreamServiceError("crm", f"GET {path} returned a non-JSON body") from e
        if isinstance(body, dict) and "data" in body and "success" in body:
            return body["data"]
        return body

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None, entity: Optional[tuple] = None) -> Any:
        return await asyncio.to_thread(self._get_sync, path, params, entity)

    @staticmethod
    def _items(body: Any, key: str) -> List[Dict[str, Any]]:
        if isinstance(body, list):
            return body
        if isinstance(body, dict):
            return body.get(key) or body.get("items") or []
        return []

    async def get_deal(self, deal_id: str) -> DealSnapshot:
        body = await self._get(f"/deals/{deal_id}", entity=("deal", deal_id))
        return DealSnapshot.from_dict(body.get("deal", body) if isinstance(body, dict) else body)

    async def get_contact(self, contact_id: str) -> ContactSnapshot:
        body = await self._get(f"/contacts/{contact_id}", entity=("contact", contact_id))
        return ContactSnapshot.from_dict(body.get("contact", body) if isinstance(body, dict) else body)

    async def get_objection(self, objection_id: str) -> ObjectionSnapshot:
        body = await self._get(f"/objections/{objection_id}", entity=("objection", objection_id))
        return ObjectionSnapshot.from_dict(body.get("objection", body) if isinstance(body, dict) else body)

    async def list_interactions(
        self,
        deal_id: Optional[str] = None,
        contact_id: Optional[str] = None,
    ) -> List[InteractionSnapshot]:
        params = {}
        if deal_id:
            params["dealId"] = deal_id
        if contact_id:
            params["contactId"] = contact_id
        body = await self._get("/interactions", params=params)
        return [InteractionSnapshot.from_dict(i) for i in self._items(body, "interactions")]

    async def list_objections(self, deal_id: str) -> List[ObjectionSnapshot]:
        body = await self._get("/objections", params={"dealId": deal_id})
        return [ObjectionSnapshot.from_dict(o) for o in self._items(body, "objections")]

    async def list_deals(self, contact_id: str) -> List[DealSnapshot]:
        body = await self._get("/deals", params={"contact": contact_id})
        return [DealSnapshot.from_dict(d) for d in self._items(body, "deals")]

    def get_stats(self) -> Dict[str, Any]:
        return {"base_url": self.base_url, "requests_made": self._requests_made}

    async def close(self) -> None:
        self._session.close()


class InMemoryCRMClient:
    """Dict-backed CRM client holding raw CRM JSON documents."""

    def __init__(
        self,
        deals: Optional[List[Dict[str, Any]]] = None,
        contacts: Optional[List[Dict[str, Any]]] = None,
        objections: Optional[List[Dict[str, Any]]] = None,
        interactions: Optional[List[Dict[str, Any]]] = None,
    ):
        self.deals = {str(d.get("id") or d.get("_id")): d for d in deals or []}
        self.contacts = {str(c.get("id") or c.get("_id")): c for c in contacts or []}
        self.objections = {str(o.get("id") or o.get("_id")): o for o in objections or []}
        self.interactions = {str(i.get("id") or i.get("_id")): i for i in interactions or []}

    async def get_deal(self, deal_id: str) -> DealSnapshot:
        if deal_id not in self.deals:
            raise EntityNotFound("deal", deal_id)
        return DealSnapshot.from_dict(self.deals[deal_id])

    async def get_contact(self, contact_id: str) -> ContactSnapshot:
        if contact_id not in self.contacts:
            raise EntityNotFound("contact", contact_id)
        return ContactSnapshot.from_dict(self.contacts[contact_id])

    async def get_objection(self, objection_id: str) -> ObjectionSnapshot:
        if objection_id not in self.objections:
            raise EntityNotFound("objection", objection_id)
        return ObjectionSnapshot.from_dict(self.objections[objection_id])

    async def list_interactions(
        self,
        deal_id: Optional[str] = None,
        contact_id: Optional[str] = None,
    ) -> List[InteractionSnapshot]:
        snapshots = [InteractionSnapshot.from_dict(i) for i in self.interactions.values()]
        return [
            i for i in snapshots
            if (deal_id is None or i.deal_id == deal_id) and (contact_id is None or i.contact_id == contact_id)
        ]

    async def list_objections(self, deal_id: str) -> List[ObjectionSnapshot]:
        snapshots = [ObjectionSnapshot.from_dict(o) for o in self.objections.values()]
        return [o for o in snapshots if o.deal_id == deal_id]

    async def list_deals(self, contact_id: str) -> List[DealSnapshot]:
        snapshots = [DealSnapshot.from_dict(d) for d in self.deals.values()]
        return [d for d in snapshots if d.contact_id == contact_id]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "backend": "memory",
            "deals": len(self.deals),
            "contacts": len(self.contacts),
            "objections": len(self.objections),
            "interactions": len(self.interactions),
        }

    async def close(self) -> None:
        return None
