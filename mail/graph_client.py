"""Thin wrapper around the Microsoft Graph REST API.

Every call takes the bearer token the client was built with and returns the
decoded JSON payload. HTTP failures are translated into two exception types:
TokenExpiredError for 401 and GraphApiError for everything else, including
transport errors and timeouts.
Throttling (429) and transient 5xx responses are retried a bounded number of
times, honouring Retry-After when Graph sends one.
"""
import logging
import time
from datetime import datetime
from typing import Iterable, Optional

import requests

logger = logging.getLogger(__name__)

BASE_URL = "https://graph.microsoft.com/v1.0"
REQUEST_TIMEOUT = 30
MAX_ATTEMPTS = 3
RETRY_STATUSES = (429, 500, 502, 503)
MAX_RETRY_AFTER_SECONDS = 60


class GraphClientError(Exception):
    """Base class for Graph client failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TokenExpiredError(GraphClientError):
    """Graph rejected the access token (HTTP 401)."""


class GraphApiError(GraphClientError):
    """Any other non-2xx response or transport failure."""

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


def _build_query(
    filter: Optional[str] = None,
    top: Optional[int] = None,
    skip: Optional[int] = None,
    orderby: Optional[str] = None,
    select: Optional[Iterable[str]] = None,
) -> dict:
    query = {}
    if top:
        query["$top"] = top
    if skip:
        query["$skip"] = skip
    if filter:
        query["$filter"] = filter
    if select:
        query["$select"] = ",".join(select)
    if orderby:
        query["$orderby"] = orderby
    return query


def _backoff_delay(attempt: int) -> int:
    return (2 ** attempt) + 1


def _retry_after(response: requests.Response) -> Optional[int]:
    """Seconds from a numeric Retry-After header, capped; None when absent or unparseable."""
    value = (response.headers or {}).get("Retry-After")
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    if seconds < 0:
        return None
    return min(seconds, MAX_RETRY_AFTER_SECONDS)


class GraphClient:
    """Stateless Graph client bound to one access token."""

    def __init__(self, access_token: str, timeout: int = REQUEST_TIMEOUT):
        self._access_token = access_token
        self.timeout = timeout

    # User profile

    def me(self) -> dict:
        return self._request("GET", "/me")

    # Messages

    def folder_messages(
        self,
        folder: str,
        filter: Optional[str] = None,
        top: Optional[int] = None,
        orderby: Optional[str] = None,
        select: Optional[Iterable[str]] = None,
        count: bool = False,
    ) -> dict:
        params = _build_query(filter=filter, top=top, orderby=orderby, select=select)
        headers = {}
        if count:
            params["$count"] = "true"
            # $count on message collections requires advanced query mode
            headers["ConsistencyLevel"] = "eventual"
        return self._request(
            "GET", f"/me/mailFolders/{folder}/messages", params=params, headers=headers
        )

    def count_folder_messages(self, folder: str, filter: Optional[str] = None) -> int:
        """Count-only listing: returns the number of matching messages, no records."""
        response = self.folder_messages(folder, filter=filter, top=1, count=True)
        return int(response.get("@odata.count") or 0)

    def get_next_page(self, next_link: str) -> dict:
        """Follow an @odata.nextLink exactly as Graph issued it."""
        return self._request("GET", next_link)

    def message(self, message_id: str, select: Optional[Iterable[str]] = None) -> dict:
        return self._request(
            "GET", f"/me/messages/{message_id}", params=_build_query(select=select)
        )

    def attachments(self, message_id: str) -> dict:
        return self._request("GET", f"/me/messages/{message_id}/attachments")

    def attachment(self, message_id: str, attachment_id: str) -> dict:
        return self._request(
            "GET", f"/me/messages/{message_id}/attachments/{attachment_id}"
        )

    # Webhook subscriptions

    def create_subscription(
        self,
        change_type: str,
        notification_url: str,
        resource: str,
        expiration_date_time: datetime,
        client_state: str,
    ) -> dict:
        return self._request(
            "POST",
            "/subscriptions",
            json={
                "changeType": change_type,
                "notificationUrl": notification_url,
                "resource": resource,
                "expirationDateTime": expiration_date_time.isoformat(),
                "clientState": client_state,
            },
        )

    def renew_subscription(self, subscription_id: str, new_expiration: datetime) -> dict:
        return self._request(
            "PATCH",
            f"/subscriptions/{subscription_id}",
            json={"expirationDateTime": new_expiration.isoformat()},
        )

    def delete_subscription(self, subscription_id: str) -> bool:
        self._request("DELETE", f"/subscriptions/{subscription_id}")
        return True

    def list_subscriptions(self) -> dict:
        return self._request("GET", "/subscriptions")

    # Transport

    def _request(
        self,
        method: str,
        path_or_url: str,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> dict:
        url = path_or_url if path_or_url.startswith("http") else f"{BASE_URL}{path_or_url}"
        request_headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
        }
        if json is not None:
            request_headers["Content-Type"] = "application/json"
        if headers:
            request_headers.update(headers)

        for attempt in range(MAX_ATTEMPTS):
            attempts_left = attempt < MAX_ATTEMPTS - 1
            try:
                response = requests.request(
                    method,
                    url,
                    headers=request_headers,
                    params=params or None,
                    json=json,
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                if not attempts_left:
                    raise GraphApiError(f"Graph API request failed: {e}") from e
                delay = _backoff_delay(attempt)
                logger.warning(
                    "[Microsoft] Request error %s, retrying in %ds (attempt %d/%d)",
                    e,
                    delay,
                    attempt + 1,
                    MAX_ATTEMPTS,
                )
                time.sleep(delay)
                continue

            if response.status_code in RETRY_STATUSES and attempts_left:
                delay = _retry_after(response) or _backoff_delay(attempt)
                logger.warning(
                    "[Microsoft] Request failed with %s, retrying in %ds (attempt %d/%d)",
                    response.status_code,
                    delay,
                    attempt + 1,
                    MAX_ATTEMPTS,
                )
                time.sleep(delay)
                continue

            return self._handle_response(method, url, response)

    @staticmethod
    def _handle_response(method: str, url: str, response: requests.Response) -> dict:
        status = response.status_code
        if 200 <= status < 300:
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise GraphApiError(
                    f"Graph API returned invalid JSON for {method} {url}", status_code=status
                ) from e
        if status == 401:
            raise TokenExpiredError("Access token expired or invalid", status_code=status)
        logger.warning("[Microsoft] %s %s failed with %s", method, url.split("?")[0], status)
        raise GraphApiError(
            f"Graph API error: {status} - {response.text[:500]}", status_code=status
        )
