"""
Tests for the CRM REST client (requests session mocked).

Usage:
    pytest tests/test_crm_client.py -v
"""

import asyncio
from unittest.mock import MagicMock

import pytest
import requests

from crm_ai.data.crm_client import CRMClient
from crm_ai.errors import EntityNotFound, UpstreamServiceError


def response(status_code=200, body=None):
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = body
    return mock


class TestCRMClient:

    def setup_method(self):
        self.client = CRMClient(base_url="http://crm.test/api/", api_token="secret")
        self.client._session = MagicMock()

    def test_get_deal_unwraps_envelope(self):
        self.client._session.get.return_value = response(body={
            "success": True,
            "data": {"deal": {"_id": "d1", "title": "Pilot", "value": 1000, "stage": "lead",
                              "contact": {"_id": "c1", "industry": "SaaS", "company": "Acme"}}},
        })

        deal = asyncio.run(self.client.get_deal("d1"))

        assert deal.id == "d1"
        assert deal.industry == "SaaS"
        assert deal.company == "Acme"
        assert deal.contact_id == "c1"
        self.client._session.get.assert_called_once_with("http://crm.test/api/deals/d1", params=None, timeout=10)

    def test_not_found(self):
        self.client._session.get.return_value = response(status_code=404)

        with pytest.raises(EntityNotFound) as exc_info:
            asyncio.run(self.client.get_contact("c9"))

        assert exc_info.value.details == {"entityType": "contact", "entityId": "c9"}

    def test_server_error(self):
        self.client._session.get.return_value = response(status_code=500)

        with pytest.raises(UpstreamServiceError) as exc_info:
            asyncio.run(self.client.get_deal("d1"))

        assert exc_info.value.dependency == "crm"

    def test_non_json_body(self):
        html = response()
        html.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
        self.client._session.get.return_value = html

        with pytest.raises(UpstreamServiceError) as exc_info:
            asyncio.run(self.client.get_deal("d1"))

        assert exc_info.value.dependency == "crm"

    def test_connection_error(self):
        self.client._session.get.side_effect = requests.ConnectionError("refused")

        with pytest.raises(UpstreamServiceError):
            asyncio.run(self.client.list_objections("d1"))

    def test_list_interactions(self):
        self.client._session.get.return_value = response(body={
            "interactions": [{"_id": "i1", "type": "call", "dealId": "d1", "contactId": {"_id": "c1"}}],
        })

        interactions = asyncio.run(self.client.list_interactions(deal_id="d1"))

        assert [(i.id, i.contact_id) for i in interactions] == [("i1", "c1")]
        _, kwargs = self.client._session.get.call_args
        assert kwargs["params"] == {"dealId": "d1"}
        assert self.client.get_stats()["requests_made"] == 1

    def test_authorization_header(self):
        client = CRMClient(api_token="secret")
        assert client._session.headers["Authorization"] == "Bearer secret"
