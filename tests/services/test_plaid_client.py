"""Unit tests for the async PlaidClient wrapper over a mocked PlaidApi."""
import json
from unittest.mock import MagicMock, patch

import pytest
import urllib3
from plaid import Environment
from plaid.exceptions import ApiException

from cash_snapshot.core.config import Settings
from cash_snapshot.services.plaid_client import PLAID_HOSTS, PlaidAPIError, PlaidClient, SyncPage


@pytest.fixture
def mock_plaid_api():
    """Fixture that provides a mocked PlaidApi."""
    with patch("cash_snapshot.services.plaid_client.PlaidApi") as MockCls:
        api_instance = MagicMock()
        MockCls.return_value = api_instance
        yield api_instance


def raw(payload) -> MagicMock:
    """What the SDK returns with _preload_content=False."""
    response = MagicMock()
    response.data = json.dumps(payload).encode()
    return response


def api_error(status: int, body: dict | None = None) -> ApiException:
    exc = ApiException(status=status, reason="Bad Request" if status < 500 else "Server Error")
    exc.body = json.dumps(body).encode() if body is not None else None
    return exc


def make_client(**kw) -> PlaidClient:
    return PlaidClient(client_id="cid", secret="sec", **kw)


class TestRequests:
    async def test_sync_sends_cursor_and_page_size(self, mock_plaid_api):
        mock_plaid_api.transactions_sync.return_value = raw({
            "added": [{"transaction_id": "t1"}],
            "modified": [],
            "removed": [{"transaction_id": "t0"}],
            "next_cursor": "c2",
            "has_more": True,
            "request_id": "req-1",
        })

        page = await make_client(page_size=100).sync_transactions("access-1", "c1")

        request = mock_plaid_api.transactions_sync.call_args.args[0]
        assert request.access_token == "access-1"
        assert request.cursor == "c1"
        assert request.count == 100
        kwargs = mock_plaid_api.transactions_sync.call_args.kwargs
        assert kwargs["_preload_content"] is False
        assert kwargs["_request_timeout"] == (5.0, 15.0)

        assert page.added == [{"transaction_id": "t1"}]
        assert page.removed == ["t0"]
        assert page.next_cursor == "c2"
        assert page.has_more is True
        assert page.request_id == "req-1"

    async def test_first_sync_omits_cursor(self, mock_plaid_api):
        mock_plaid_api.transactions_sync.return_value = raw({"added": [], "next_cursor": "c1", "has_more": False})

        await make_client().sync_transactions("access-1")

        request = mock_plaid_api.transactions_sync.call_args.args[0]
        assert "cursor" not in request.to_dict()

    async def test_link_token_request(self, mock_plaid_api):
        mock_plaid_api.link_token_create.return_value = raw(
            {"link_token": "link-1", "expiration": "x", "request_id": "r"}
        )

        client = make_client(webhook="https://example.test/hook")
        data = await client.create_link_token("user-1")

        assert data["link_token"] == "link-1"
        request = mock_plaid_api.link_token_create.call_args.args[0]
        assert request.user.client_user_id == "user-1"
        assert request.client_name == "Plaid Cash Snapshot"
        assert [p.value for p in request.products] == ["transactions"]
        assert [c.value for c in request.country_codes] == ["US"]
        assert request.webhook == "https://example.test/hook"
        assert "redirect_uri" not in request.to_dict()

    async def test_accounts_balances_and_item_unwrap(self, mock_plaid_api):
        mock_plaid_api.accounts_get.return_value = raw({"accounts": [{"account_id": "a1"}, "junk"]})
        mock_plaid_api.accounts_balance_get.return_value = raw(
            {"accounts": [{"account_id": "a1", "balances": {"current": 5}}]}
        )
        mock_plaid_api.item_get.return_value = raw({"item": {"item_id": "i1", "institution_id": "ins_1"}})

        client = make_client()

        assert await client.get_accounts("access-1") == [{"account_id": "a1"}]
        assert (await client.get_balances("access-1"))[0]["balances"] == {"current": 5}
        assert (await client.get_item("access-1"))["institution_id"] == "ins_1"

    async def test_sdk_is_configured_from_client_fields(self):
        with patch("cash_snapshot.services.plaid_client.PlaidApi") as MockCls:
            make_client(host=PLAID_HOSTS["production"]).api

        configuration = MockCls.call_args.args[0].configuration
        assert configuration.host == Environment.Production
        assert configuration.api_key == {"clientId": "cid", "secret": "sec"}


class TestErrors:
    async def test_plaid_error_body_is_mapped(self, mock_plaid_api):
        mock_plaid_api.transactions_sync.side_effect = api_error(400, {
            "error_type": "ITEM_ERROR",
            "error_code": "ITEM_LOGIN_REQUIRED",
            "error_message": "the login details of this item have changed",
            "request_id": "req-9",
        })

        with pytest.raises(PlaidAPIError) as exc_info:
            await make_client().sync_transactions("access-1")

        err = exc_info.value
        assert err.status_code == 400
        assert err.error_code == "ITEM_LOGIN_REQUIRED"
        assert err.request_id == "req-9"
        assert err.message == "the login details of this item have changed"
        assert err.is_client_error
        assert "ITEM_LOGIN_REQUIRED" in str(err)

    async def test_server_error_is_not_a_client_error(self, mock_plaid_api):
        mock_plaid_api.transactions_recurring_get.side_effect = api_error(500)

        with pytest.raises(PlaidAPIError) as exc_info:
            await make_client().get_recurring_transactions("access-1")

        assert exc_info.value.status_code == 500
        assert not exc_info.value.is_client_error

    async def test_transport_failure(self, mock_plaid_api):
        mock_plaid_api.transactions_sync.side_effect = urllib3.exceptions.ProtocolError("connection aborted")

        with pytest.raises(PlaidAPIError) as exc_info:
            await make_client().sync_transactions("access-1")

        assert exc_info.value.status_code is None
        assert not exc_info.value.is_client_error

    async def test_non_json_success_body(self, mock_plaid_api):
        response = MagicMock()
        response.data = b"<html>"
        mock_plaid_api.item_public_token_exchange.return_value = response

        with pytest.raises(PlaidAPIError):
            await make_client().exchange_public_token("public-1")

    async def test_invalid_request_fields_never_reach_plaid(self, mock_plaid_api):
        with pytest.raises(PlaidAPIError) as exc_info:
            await make_client().create_sandbox_public_token("ins_1", ["not-a-product"])

        assert exc_info.value.is_client_error
        mock_plaid_api.sandbox_public_token_create.assert_not_called()

    @pytest.mark.parametrize("status, expected", [(400, True), (404, True), (501, True), (500, False), (503, False)])
    def test_client_error_classification(self, status, expected):
        assert PlaidAPIError("x", status_code=status).is_client_error is expected


class TestSyncPage:
    def test_defaults_for_missing_fields(self):
        page = SyncPage.from_response({})
        assert page.added == []
        assert page.modified == []
        assert page.removed == []
        assert page.next_cursor is None
        assert page.has_more is False

    def test_removed_accepts_bare_ids(self):
        page = SyncPage.from_response({"removed": ["t1", {"transaction_id": "t2"}, {}, None]})
        assert page.removed == ["t1", "t2"]

    def test_non_dict_records_are_dropped(self):
        page = SyncPage.from_response({
            "added": [None, {"transaction_id": "t1"}, "t2", 7],
            "modified": [["t3"], {"transaction_id": "t4"}],
        })
        assert page.added == [{"transaction_id": "t1"}]
        assert page.modified == [{"transaction_id": "t4"}]

    def test_empty_cursor_is_absent(self):
        assert SyncPage.from_response({"next_cursor": ""}).next_cursor is None


class TestConfiguration:
    def test_is_configured(self):
        assert PlaidClient(client_id="a", secret="b").is_configured()
        assert not PlaidClient(client_id="", secret="b").is_configured()

    def test_is_sandbox(self):
        assert PlaidClient(client_id="a", secret="b").is_sandbox
        assert not PlaidClient(client_id="a", secret="b", host=PLAID_HOSTS["production"]).is_sandbox

    def test_host_from_env(self):
        prod = PlaidClient.from_settings(Settings(plaid_env="production"))
        assert prod.host == Environment.Production

    def test_unknown_env_falls_back_to_sandbox(self):
        client = PlaidClient.from_settings(Settings(plaid_env="development"))
        assert client.host == Environment.Sandbox
        assert client.is_sandbox

    def test_base_url_override(self):
        client = PlaidClient.from_settings(Settings(plaid_base_url="http://plaid.local"))
        assert client.host == "http://plaid.local"
