"""
Xero Accounting API Client

Thin REST client over the Xero Accounting API with retry logic and
structured error parsing.
"""
import requests
import backoff
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_WAIT = 5


class XeroError(Exception):
    """Base class for Xero integration errors."""


class XeroNotConnectedError(XeroError):
    """No active Xero integration is stored."""


class XeroAuthError(XeroError):
    """OAuth exchange or refresh failed."""


class XeroApiError(XeroError):
    """
    Non-2xx response from the Accounting API.

    ``validation_errors`` and ``warnings`` are lists of ``{"message", "field"}``
    dicts collected from ``Elements[].ValidationErrors`` and ``Elements[].Warnings``.
    """

    def __init__(
        self,
        status_code: int,
        message: str,
        validation_errors: Optional[List[Dict[str, Any]]] = None,
        warnings: Optional[List[Dict[str, Any]]] = None,
        retry_after: Optional[int] = None,
        rate_limit_problem: Optional[str] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.validation_errors = validation_errors or []
        self.warnings = warnings or []
        self.retry_after = retry_after
        self.rate_limit_problem = rate_limit_problem
        self.body = body

    @classmethod
    def from_response(cls, response) -> "XeroApiError":
        try:
            body = response.json()
        except ValueError:
            body = response.text

        validation_errors: List[Dict[str, Any]] = []
        warnings: List[Dict[str, Any]] = []
        message = f"Xero API returned status {response.status_code}"
        if isinstance(body, dict):
            message = body.get("Message") or body.get("Detail") or body.get("Title") or message
            for element in body.get("Elements") or []:
                for error in element.get("ValidationErrors") or []:
                    validation_errors.append({"message": error.get("Message"), "field": error.get("Field")})
                for warning in element.get("Warnings") or []:
                    warnings.append({"message": warning.get("Message"), "field": warning.get("Field")})
        elif body:
            message = f"{message}: {str(body)[:200]}"

        if validation_errors:
            message = "; ".join(e["message"] for e in validation_errors if e.get("message")) or message

        retry_after = response.headers.get("Retry-After")
        try:
            retry_after = int(retry_after) if retry_after is not None else None
        except ValueError:
            retry_after = None

        error_class = cls
        if response.status_code == 429:
            error_class = XeroRateLimitError
        elif response.status_code >= 500:
            error_class = XeroServerError

        return error_class(
            status_code=response.status_code,
            message=message,
            validation_errors=validation_errors,
            warnings=warnings,
            retry_after=retry_after,
            rate_limit_problem=response.headers.get("X-Rate-Limit-Problem"),
            body=body,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status_code": self.status_code,
            "message": self.message,
            "validation_errors": self.validation_errors,
            "warnings": self.warnings,
            "retry_after": self.retry_after,
            "rate_limit_problem": self.rate_limit_problem,
        }


class XeroRateLimitError(XeroApiError):
    """HTTP 429; ``retry_after`` carries the server's requested wait."""


class XeroServerError(XeroApiError):
    """HTTP 5xx."""


def _rate_limit_wait(error: XeroRateLimitError) -> int:
    if error.retry_after is not None:
        return error.retry_after
    return DEFAULT_RATE_LIMIT_WAIT


def _modified_since_kwargs(modified_since: Optional[datetime]) -> Dict[str, Any]:
    if modified_since is None:
        return {}
    return {"headers": {"If-Modified-Since": modified_since.strftime("%Y-%m-%dT%H:%M:%S")}}


def _log_retry(details):
    logger.warning(
        f"Retrying Xero request after {details['wait']:.1f}s (attempt {details['tries']})"
    )


class XeroClient:
    """
    Client for the Xero Accounting API 2.0.

    Features:
    - Exponential backoff on 5xx, Retry-After aware waits on 429
    - One token refresh and retry on 401
    - Validation errors parsed into XeroApiError
    """

    DEFAULT_BASE_URL = "https://api.xero.com/api.xro/2.0"
    PAGE_SIZE = 100

    def __init__(
        self,
        access_token: str,
        tenant_id: str,
        token_refresher: Optional[Callable[[], Optional[str]]] = None,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
    ):
        """
        Initialize Xero client.

        Args:
            access_token: OAuth2 bearer token
            tenant_id: Xero organisation (tenant) id
            token_refresher: Callable returning a fresh access token, used once on 401
            base_url: API root (default: api.xero.com)
            session: Optional requests session (injectable for tests)
            timeout: Per-request timeout in seconds
        """
        self.tenant_id = tenant_id
        self.token_refresher = token_refresher
        self.base_url = base_url or self.DEFAULT_BASE_URL
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "xero-tenant-id": tenant_id,
        })
        self._set_token(access_token)

    def _set_token(self, access_token: str):
        self.access_token = access_token
        self.session.headers["Authorization"] = f"Bearer {access_token}"

    @backoff.on_exception(backoff.expo, XeroServerError, max_tries=4, on_backoff=_log_retry)
    @backoff.on_exception(
        backoff.runtime,
        XeroRateLimitError,
        value=_rate_limit_wait,
        jitter=None,
        max_tries=3,
        on_backoff=_log_retry,
    )
    def _call_api(
        self,
        endpoint: str,
        method: str = "GET",
        **kwargs
    ) -> Dict[str, Any]:
        """
        Call the Xero API.

        Args:
            endpoint: API endpoint (with or without leading /)
            method: HTTP method
            **kwargs: Additional arguments for requests (params, json, headers)

        Returns:
            JSON response as dictionary

        Raises:
            XeroApiError: On any non-2xx status after retries
        """
        if not endpoint.startswith('/'):
            endpoint = '/' + endpoint
        url = self.base_url + endpoint
        logger.info(f"Calling Xero API: {method} {endpoint}")

        response = self.session.request(method, url, timeout=self.timeout, **kwargs)

        if response.status_code == 401 and self.token_refresher:
            logger.warning("Xero returned 401, refreshing access token and retrying once")
            new_token = self.token_refresher()
            if new_token:
                self._set_token(new_token)
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)

        if 200 <= response.status_code < 300:
            if not response.content:
                return {}
            return response.json()

        error = XeroApiError.from_response(response)
        logger.error(f"Xero API error: {response.status_code} at {endpoint}: {error.message}")
        raise error

    def _get_one(self, endpoint: str, key: str) -> Optional[Dict[str, Any]]:
        try:
            data = self._call_api(endpoint)
        except XeroApiError as e:
            if e.status_code == 404:
                return None
            raise
        items = data.get(key) or []
        return items[0] if items else None

    # ------------------------------------------------------------------
    # Organisation / accounts
    # ------------------------------------------------------------------

    def get_organisations(self) -> List[Dict[str, Any]]:
        return self._call_api("/Organisation").get("Organisations", [])

    def get_accounts(self, where: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"where": where} if where else None
        return self._call_api("/Accounts", params=params).get("Accounts", [])

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def get_contacts(
        self,
        page: int = 1,
        where: Optional[str] = None,
        include_archived: bool = False,
        ids: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"page": page}
        if where:
            params["where"] = where
        if include_archived:
            params["includeArchived"] = "true"
        if ids:
            params["IDs"] = ",".join(ids)
        contacts = self._call_api("/Contacts", params=params).get("Contacts", [])
        logger.info(f"Retrieved {len(contacts)} contacts (page {page})")
        return contacts

    def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        return self._get_one(f"/Contacts/{contact_id}", "Contacts")

    def create_contacts(self, contacts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return self._call_api("/Contacts", method="PUT", json={"Contacts": contacts}).get("Contacts", [])

    def update_contact(self, contact_id: str, contact: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        data = self._call_api(f"/Contacts/{contact_id}", method="POST", json={"Contacts": [contact]})
        contacts = data.get("Contacts") or []
        return contacts[0] if contacts else None

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def get_invoices(
        self,
        page: int = 1,
        where: Optional[str] = None,
        ids: Optional[List[str]] = None,
        invoice_numbers: Optional[List[str]] = None,
        order: str = "UpdatedDateUTC ASC",
        modified_since: Optional[datetime] = None,
        page_size: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"page": page, "order": order}
        if page_size:
            params["pageSize"] = page_size
        if where:
            params["where"] = where
        if ids:
            params["IDs"] = ",".join(ids)
        if invoice_numbers:
            params["InvoiceNumbers"] = ",".join(invoice_numbers)
        invoices = self._call_api(
            "/Invoices", params=params, **_modified_since_kwargs(modified_since)
        ).get("Invoices", [])
        logger.info(f"Retrieved {len(invoices)} invoices (page {page})")
        return invoices

    def get_invoice(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        return self._get_one(f"/Invoices/{invoice_id}", "Invoices")

    def create_invoices(self, invoices: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return self._call_api("/Invoices", method="PUT", json={"Invoices": invoices}).get("Invoices", [])

    def update_invoice(self, invoice_id: str, invoice: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        data = self._call_api(f"/Invoices/{invoice_id}", method="POST", json={"Invoices": [invoice]})
        invoices = data.get("Invoices") or []
        return invoices[0] if invoices else None

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def get_payments(
        self,
        page: int = 1,
        where: Optional[str] = None,
        modified_since: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"page": page}
        if where:
            params["where"] = where
        payments = self._call_api(
            "/Payments", params=params, **_modified_since_kwargs(modified_since)
        ).get("Payments", [])
        logger.info(f"Retrieved {len(payments)} payments (page {page})")
        return payments

    def create_payments(self, payments: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return self._call_api("/Payments", method="PUT", json={"Payments": payments}).get("Payments", [])

    def close(self):
        """Close the HTTP session."""
        self.session.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()


def iter_pages(
    fetch: Callable[..., List[Dict[str, Any]]],
    page_size: int = XeroClient.PAGE_SIZE,
    **kwargs
) -> Iterator[Dict[str, Any]]:
    """Yield records from ``fetch(page=n, **kwargs)`` until a short page is returned."""
    page = 1
    while True:
        items = fetch(page=page, **kwargs)
        for item in items:
            yield item
        if len(items) < page_size:
            break
        page += 1
