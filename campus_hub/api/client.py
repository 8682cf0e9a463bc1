"""Async REST client for the campus API.

RESPONSE HANDLING
------------------
Every endpoint answers with a JSON envelope ``{success, message, ...}``.
The client normalizes the odd cases so callers only deal with
ApiEnvelope or ApiError:

  non-JSON body        → envelope {success: false, message: <body or
                         "HTTP error! status: N">}
  400 + success:false  → returned as-is; the caller decides what a
                         logical failure means (the store raises)
  401                  → the session is dead: clear persisted user and
                         token, emit ``logout``, raise
                         AuthenticationExpiredError
  other non-2xx        → raise ApiError(server message)
  transport failure    → raise ApiError (timeouts, refused connections)

There is no retry.  A failed mutation surfaces to whoever triggered it.

AUTH
-----
The bearer token is read from session storage on every request, never
cached on the client, so a login or logout in another context takes
effect on the next call.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from campus_hub.api.schemas import ApiEnvelope
from campus_hub.core.metrics import API_REQUEST_COUNT, API_REQUEST_DURATION
from campus_hub.services.event_bus import EventBus, Signal
from campus_hub.services.session_storage import TOKEN_KEY, USER_KEY, SessionStorage

logger = logging.getLogger(__name__)

# (filename, content, content_type)
ImageUpload = tuple[str, bytes, str]


class ApiError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthenticationExpiredError(ApiError):
    pass


class ApiClient(Protocol):
    async def get_organizations(self) -> ApiEnvelope: ...
    async def get_events(self) -> ApiEnvelope: ...
    async def get_students(self) -> ApiEnvelope: ...
    async def get_profile(self) -> ApiEnvelope: ...
    async def get_pending_approvals(self) -> ApiEnvelope: ...
    async def login(self, email: str, password: str) -> ApiEnvelope: ...
    async def follow_organization(self, org_id: int) -> ApiEnvelope: ...
    async def unfollow_organization(self, org_id: int) -> ApiEnvelope: ...
    async def join_event(self, event_id: int) -> ApiEnvelope: ...
    async def leave_event(self, event_id: int) -> ApiEnvelope: ...
    async def create_event(
        self, data: Mapping[str, Any], images: Sequence[ImageUpload] = ()
    ) -> ApiEnvelope: ...
    async def update_event(
        self, event_id: int, data: Mapping[str, Any], images: Sequence[ImageUpload] = ()
    ) -> ApiEnvelope: ...
    async def delete_event(self, event_id: int) -> ApiEnvelope: ...
    async def update_organization(
        self, org_id: int, data: Mapping[str, Any]
    ) -> ApiEnvelope: ...
    async def approve_organization(self, approval_id: int) -> ApiEnvelope: ...
    async def reject_organization(
        self,
        approval_id: int,
        rejection_reason: str,
        allow_resubmission: bool = False,
        resubmission_deadline: str | None = None,
    ) -> ApiEnvelope: ...


def _form_fields(data: Mapping[str, Any]) -> dict[str, str]:
    """Flatten a payload into multipart form fields."""
    fields: dict[str, str] = {}
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, (dict, list, tuple)):
            fields[key] = json.dumps(value)
        elif isinstance(value, bool):
            fields[key] = "true" if value else "false"
        else:
            fields[key] = str(value)
    return fields


class HttpApiClient:
    """httpx-backed ApiClient."""

    def __init__(
        self,
        base_url: str,
        storage: SessionStorage,
        bus: EventBus,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._storage = storage
        self._bus = bus
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _auth_headers(self) -> dict[str, str]:
        token = await self._storage.get(TOKEN_KEY)
        if token:
            return {"Authorization": f"Bearer {token}"}
        logger.debug("No auth token available")
        return {}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        endpoint: str | None = None,
        json_body: Any = None,
        form: Mapping[str, str] | None = None,
        files: Sequence[tuple[str, ImageUpload]] | None = None,
    ) -> ApiEnvelope:
        # Route template for metrics labels; concrete ids would explode cardinality
        endpoint = endpoint or path
        headers = await self._auth_headers()
        start = time.monotonic()

        try:
            response = await self._http.request(
                method,
                path,
                headers=headers,
                json=json_body,
                data=form,
                files=list(files) if files else None,
            )
        except httpx.HTTPError as exc:
            API_REQUEST_COUNT.labels(
                method=method, endpoint=endpoint, outcome="transport_error"
            ).inc()
            logger.warning(
                "API request failed: %s %s (%s)",
                method,
                path,
                exc.__class__.__name__,
                extra={"method": method, "path": path},
            )
            raise ApiError(f"Network error: {exc}") from exc
        finally:
            API_REQUEST_DURATION.labels(method=method, endpoint=endpoint).observe(
                time.monotonic() - start
            )

        envelope = self._parse(response)
        status_code = response.status_code
        duration_ms = round((time.monotonic() - start) * 1000, 1)

        if response.is_success:
            API_REQUEST_COUNT.labels(method=method, endpoint=endpoint, outcome="ok").inc()
            logger.debug(
                "%s %s -> %d",
                method,
                path,
                status_code,
                extra={
                    "method": method,
                    "path": path,
                    "status_code": status_code,
                    "duration_ms": duration_ms,
                },
            )
            return envelope

        API_REQUEST_COUNT.labels(
            method=method, endpoint=endpoint, outcome="http_error"
        ).inc()
        logger.warning(
            "%s %s -> %d: %s",
            method,
            path,
            status_code,
            envelope.message,
            extra={"method": method, "path": path, "status_code": status_code},
        )

        if status_code == 401:
            await self._storage.remove(TOKEN_KEY)
            await self._storage.remove(USER_KEY)
            await self._bus.emit(Signal.LOGOUT)
            raise AuthenticationExpiredError(
                envelope.message or "Authentication required", status_code
            )

        if status_code == 400 and not envelope.success and envelope.message:
            return envelope

        raise ApiError(
            envelope.message or f"HTTP error! status: {status_code}", status_code
        )

    @staticmethod
    def _parse(response: httpx.Response) -> ApiEnvelope:
        text = response.text
        try:
            return ApiEnvelope.model_validate(json.loads(text))
        except (ValueError, ValidationError):
            return ApiEnvelope(
                success=False,
                message=text or f"HTTP error! status: {response.status_code}",
            )

    # -- public reads --------------------------------------------------------

    async def get_organizations(self) -> ApiEnvelope:
        return await self._request("GET", "/organizations")

    async def get_events(self) -> ApiEnvelope:
        return await self._request("GET", "/events")

    async def get_students(self) -> ApiEnvelope:
        return await self._request("GET", "/students")

    # -- auth ----------------------------------------------------------------

    async def get_profile(self) -> ApiEnvelope:
        return await self._request("GET", "/auth/profile")

    async def login(self, email: str, password: str) -> ApiEnvelope:
        return await self._request(
            "POST", "/auth/login", json_body={"email": email, "password": password}
        )

    # -- membership ----------------------------------------------------------

    async def follow_organization(self, org_id: int) -> ApiEnvelope:
        return await self._request(
            "POST",
            f"/organizations/{org_id}/follow",
            endpoint="/organizations/{id}/follow",
        )

    async def unfollow_organization(self, org_id: int) -> ApiEnvelope:
        return await self._request(
            "POST",
            f"/organizations/{org_id}/unfollow",
            endpoint="/organizations/{id}/unfollow",
        )

    async def join_event(self, event_id: int) -> ApiEnvelope:
        return await self._request(
            "POST", f"/events/{event_id}/join", endpoint="/events/{id}/join"
        )

    async def leave_event(self, event_id: int) -> ApiEnvelope:
        return await self._request(
            "POST", f"/events/{event_id}/leave", endpoint="/events/{id}/leave"
        )

    # -- events --------------------------------------------------------------

    async def create_event(
        self, data: Mapping[str, Any], images: Sequence[ImageUpload] = ()
    ) -> ApiEnvelope:
        if images:
            return await self._request(
                "POST",
                "/events",
                form=_form_fields(data),
                files=[("images", image) for image in images],
            )
        return await self._request("POST", "/events", json_body=dict(data))

    async def update_event(
        self, event_id: int, data: Mapping[str, Any], images: Sequence[ImageUpload] = ()
    ) -> ApiEnvelope:
        if images:
            return await self._request(
                "PUT",
                f"/events/{event_id}",
                endpoint="/events/{id}",
                form=_form_fields(data),
                files=[("images", image) for image in images],
            )
        return await self._request(
            "PUT", f"/events/{event_id}", endpoint="/events/{id}", json_body=dict(data)
        )

    async def delete_event(self, event_id: int) -> ApiEnvelope:
        return await self._request(
            "DELETE", f"/events/{event_id}", endpoint="/events/{id}"
        )

    # -- organizations & approvals ------------------------------------------

    async def update_organization(
        self, org_id: int, data: Mapping[str, Any]
    ) -> ApiEnvelope:
        return await self._request(
            "PUT",
            f"/organizations/{org_id}",
            endpoint="/organizations/{id}",
            json_body=dict(data),
        )

    async def get_pending_approvals(self) -> ApiEnvelope:
        return await self._request("GET", "/admin/pending-approvals")

    async def approve_organization(self, approval_id: int) -> ApiEnvelope:
        return await self._request(
            "POST",
            f"/organizations/{approval_id}/approve",
            endpoint="/organizations/{id}/approve",
        )

    async def reject_organization(
        self,
        approval_id: int,
        rejection_reason: str,
        allow_resubmission: bool = False,
        resubmission_deadline: str | None = None,
    ) -> ApiEnvelope:
        body: dict[str, Any] = {
            "rejectionReason": rejection_reason,
            "allowResubmission": allow_resubmission,
        }
        if resubmission_deadline:
            body["resubmissionDeadline"] = resubmission_deadline
        return await self._request(
            "POST",
            f"/organizations/{approval_id}/reject",
            endpoint="/organizations/{id}/reject",
            json_body=body,
        )
