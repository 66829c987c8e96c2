"""
Async facade over the plaid-python SDK.

The client is a frozen value carrying only configuration (host, credentials,
timeouts). SDK calls are blocking, so each one runs in a worker thread via
asyncio.to_thread; the underlying PlaidApi (and its urllib3 pool) is built
lazily and is safe to share between concurrent sync or detection tasks.

Responses are read as raw JSON (`_preload_content=False`) rather than as SDK
models, so a malformed field in one record reaches the lenient parsers in
this package instead of failing model deserialization for the whole page.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any

import urllib3
from plaid import Environment
from plaid.api.plaid_api import PlaidApi
from plaid.api_client import ApiClient
from plaid.configuration import Configuration
from plaid.exceptions import ApiException, ApiTypeError, ApiValueError
from plaid.model.accounts_balance_get_request import AccountsBalanceGetRequest
from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.country_code import CountryCode
from plaid.model.institutions_get_by_id_request import InstitutionsGetByIdRequest
from plaid.model.item_get_request import ItemGetRequest
from plaid.model.item_public_token_exchange_request import ItemPublicTokenExchangeRequest
from plaid.model.link_token_create_request import LinkTokenCreateRequest
from plaid.model.link_token_create_request_user import LinkTokenCreateRequestUser
from plaid.model.products import Products
from plaid.model.sandbox_public_token_create_request import SandboxPublicTokenCreateRequest
from plaid.model.transactions_recurring_get_request import TransactionsRecurringGetRequest
from plaid.model.transactions_sync_request import TransactionsSyncRequest

from cash_snapshot.core.config import Settings, settings

logger = logging.getLogger(__name__)

# PLAID_ENV -> SDK host. Plaid's Development environment is retired.
PLAID_HOSTS: dict[str, str] = {
    "sandbox":    Environment.Sandbox,
    "production": Environment.Production,
}


class PlaidAPIError(Exception):
    """Non-2xx response from Plaid, or a transport failure (status_code is None)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_type: str | None = None,
        error_code: str | None = None,
        request_id: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_type = error_type
        self.error_code = error_code
        self.request_id = request_id

    @property
    def is_client_error(self) -> bool:
        """4xx, or 501 (product not enabled for this item)."""
        if self.status_code is None:
            return False
        return 400 <= self.status_code < 500 or self.status_code == 501

    def __str__(self) -> str:
        parts = [self.message]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.error_code:
            parts.append(f"code={self.error_code}")
        if self.request_id:
            parts.append(f"request_id={self.request_id}")
        return " ".join(parts)


@dataclass(frozen=True)
class SyncPage:
    """One page of the /transactions/sync change feed."""
    added: list[dict] = field(default_factory=list)
    modified: list[dict] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False
    request_id: str | None = None

    @classmethod
    def from_response(cls, data: dict) -> "SyncPage":
        removed: list[str] = []
        for r in _as_list(data.get("removed")):
            # Plaid sends {"transaction_id": ...}; tolerate bare ids too
            tid = r.get("transaction_id") if isinstance(r, dict) else r
            if isinstance(tid, str) and tid:
                removed.append(tid)
        next_cursor = data.get("next_cursor")
        return cls(
            added=_records(data.get("added"), "added"),
            modified=_records(data.get("modified"), "modified"),
            removed=removed,
            next_cursor=next_cursor if isinstance(next_cursor, str) and next_cursor else None,
            has_more=data.get("has_more") is True,
            request_id=data.get("request_id"),
        )


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _records(value: Any, section: str) -> list[dict]:
    records = _as_list(value)
    kept = [r for r in records if isinstance(r, dict)]
    if len(kept) != len(records):
        logger.warning("Dropped %d malformed %s record(s) from sync page", len(records) - len(kept), section)
    return kept


@dataclass(frozen=True)
class PlaidClient:
    client_id: str
    secret: str
    host: str = Environment.Sandbox
    connect_timeout: float = 5.0
    read_timeout: float = 15.0
    country_codes: tuple[str, ...] = ("US",)
    client_name: str = "Plaid Cash Snapshot"
    webhook: str | None = None
    redirect_uri: str | None = None
    page_size: int = 500

    @classmethod
    def from_settings(cls, s: Settings = settings) -> "PlaidClient":
        host = s.plaid_base_url or PLAID_HOSTS.get(s.plaid_env.lower())
        if host is None:
            logger.warning(
                "Unknown PLAID_ENV=%r, falling back to sandbox. Valid values: %s",
                s.plaid_env, ", ".join(PLAID_HOSTS),
            )
            host = Environment.Sandbox
        return cls(
            client_id=s.plaid_client_id,
            secret=s.plaid_secret,
            host=host,
            connect_timeout=s.plaid_connect_timeout,
            read_timeout=s.plaid_read_timeout,
            country_codes=tuple(s.plaid_country_codes),
            client_name=s.plaid_client_name,
            webhook=s.plaid_webhook or None,
            redirect_uri=s.plaid_redirect_uri or None,
            page_size=s.plaid_sync_page_size,
        )

    def is_configured(self) -> bool:
        return bool(self.client_id and self.secret)

    @property
    def is_sandbox(self) -> bool:
        return self.host == Environment.Sandbox

    @cached_property
    def api(self) -> PlaidApi:
        configuration = Configuration(
            host=self.host,
            api_key={"clientId": self.client_id, "secret": self.secret},
        )
        return PlaidApi(ApiClient(configuration))

    # ─── Transport ────────────────────────────────────────────────────────

    async def _call(self, operation: str, build_request) -> dict:
        """Run one PlaidApi operation off the event loop and return its JSON body."""
        try:
            request = build_request()
        except (ApiTypeError, ApiValueError) as exc:
            raise PlaidAPIError(f"Invalid Plaid {operation} request: {exc}", status_code=400) from exc

        method = getattr(self.api, operation)
        try:
            response = await asyncio.to_thread(
                method,
                request,
                _preload_content=False,
                _request_timeout=(self.connect_timeout, self.read_timeout),
            )
        except ApiException as exc:
            raise _error_from_exception(operation, exc) from exc
        except urllib3.exceptions.HTTPError as exc:
            raise PlaidAPIError(f"Plaid {operation} request failed: {exc}") from exc

        try:
            data = json.loads(response.data)
        except (TypeError, ValueError) as exc:
            raise PlaidAPIError(f"Plaid {operation} returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise PlaidAPIError(f"Plaid {operation} returned an unexpected body")
        return data

    # ─── Transactions ─────────────────────────────────────────────────────

    async def sync_transactions(self, access_token: str, cursor: str | None = None) -> SyncPage:
        def build():
            if cursor:
                return TransactionsSyncRequest(access_token=access_token, cursor=cursor, count=self.page_size)
            return TransactionsSyncRequest(access_token=access_token, count=self.page_size)

        data = await self._call("transactions_sync", build)
        return SyncPage.from_response(data)

    async def get_recurring_transactions(self, access_token: str) -> dict:
        return await self._call(
            "transactions_recurring_get",
            lambda: TransactionsRecurringGetRequest(access_token=access_token),
        )

    # ─── Link / item ──────────────────────────────────────────────────────

    async def create_link_token(self, user_id: str, client_name: str | None = None) -> dict:
        def build():
            optional: dict[str, Any] = {}
            if self.webhook:
                optional["webhook"] = self.webhook
            if self.redirect_uri:
                optional["redirect_uri"] = self.redirect_uri
            return LinkTokenCreateRequest(
                user=LinkTokenCreateRequestUser(client_user_id=user_id),
                client_name=client_name or self.client_name,
                products=[Products("transactions")],
                country_codes=[CountryCode(c) for c in self.country_codes],
                language="en",
                **optional,
            )

        return await self._call("link_token_create", build)

    async def create_sandbox_public_token(
        self, institution_id: str, initial_products: list[str]
    ) -> dict:
        return await self._call(
            "sandbox_public_token_create",
            lambda: SandboxPublicTokenCreateRequest(
                institution_id=institution_id,
                initial_products=[Products(p) for p in initial_products],
            ),
        )

    async def exchange_public_token(self, public_token: str) -> dict:
        return await self._call(
            "item_public_token_exchange",
            lambda: ItemPublicTokenExchangeRequest(public_token=public_token),
        )

    async def get_accounts(self, access_token: str) -> list[dict]:
        data = await self._call("accounts_get", lambda: AccountsGetRequest(access_token=access_token))
        return [a for a in _as_list(data.get("accounts")) if isinstance(a, dict)]

    async def get_balances(self, access_token: str) -> list[dict]:
        """Real-time balances (/accounts/balance/get), one dict per account."""
        data = await self._call(
            "accounts_balance_get", lambda: AccountsBalanceGetRequest(access_token=access_token)
        )
        return [a for a in _as_list(data.get("accounts")) if isinstance(a, dict)]

    async def get_item(self, access_token: str) -> dict:
        data = await self._call("item_get", lambda: ItemGetRequest(access_token=access_token))
        item = data.get("item")
        return item if isinstance(item, dict) else {}

    async def get_institution(self, institution_id: str) -> dict:
        data = await self._call(
            "institutions_get_by_id",
            lambda: InstitutionsGetByIdRequest(
                institution_id=institution_id,
                country_codes=[CountryCode(c) for c in self.country_codes],
            ),
        )
        institution = data.get("institution")
        return institution if isinstance(institution, dict) else {}


def _error_from_exception(operation: str, exc: ApiException) -> PlaidAPIError:
    try:
        body = json.loads(exc.body) if exc.body else {}
    except (TypeError, ValueError):
        body = {}
    if not isinstance(body, dict):
        body = {}
    # The SDK reports SSL failures as status 0
    status = exc.status or None
    return PlaidAPIError(
        body.get("error_message") or f"Plaid {operation} failed: {exc.reason or 'no response'}",
        status_code=status,
        error_type=body.get("error_type"),
        error_code=body.get("error_code"),
        request_id=body.get("request_id"),
    )
