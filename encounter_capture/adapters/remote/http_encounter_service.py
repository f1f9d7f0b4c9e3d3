"""HTTP Encounter Service.

Async client for the remote encounter API, implementing RemoteEncounterPort.

Endpoints (relative to the configured base URL):
    - POST /encounters                 create, returns the new encounter
    - PUT  /encounters/{id}            update
    - PUT  /encounters/{id}/submit     submit for review

Usage (async context manager - preferred):
    async with HttpEncounterService(remote_config) as service:
        server_id = await service.create_encounter(build_payload(record))

Security Impact:
    - The bearer token is read from SecretStr only when building headers
    - Request and response bodies are never logged; only ids and status codes
    - A 401 is raised as AuthenticationError so it is never mistaken for
      plain connectivity loss

Architecture:
    - Adapter implementing RemoteEncounterPort (Hexagonal Architecture)
    - Network errors, timeouts and 5xx responses become RemoteUnavailableError
    - Server-side validation rejections on submit are returned, not raised
"""

import logging
from typing import Any, Optional

import httpx

from encounter_capture.domain.ports import (
    AuthenticationError,
    InvalidEncounterIdError,
    RemoteEncounterPort,
    RemoteServiceError,
    RemoteUnavailableError,
    SubmitResponse,
)
from encounter_capture.domain.validation import is_valid_encounter_id
from encounter_capture.infrastructure.config_manager import RemoteConfig

logger = logging.getLogger(__name__)

INVALID_ENCOUNTER_ID = "INVALID_ENCOUNTER_ID"
OFFLINE_ENCOUNTER = "OFFLINE_ENCOUNTER"


def extract_encounter_id(body: Any) -> Optional[str]:
    """Pull the encounter id out of a create/update response.

    Accepted shapes: ``{"encounter": {...}}``, ``{"data": {"encounter": {...}}}``
    or the encounter object itself. Within the encounter, ``id`` wins over
    ``encounter_id``.
    """
    if not isinstance(body, dict):
        return None

    encounter: Optional[dict] = None
    if isinstance(body.get("encounter"), dict):
        encounter = body["encounter"]
    elif isinstance(body.get("data"), dict) and isinstance(body["data"].get("encounter"), dict):
        encounter = body["data"]["encounter"]
    elif "id" in body or "encounter_id" in body:
        encounter = body

    if encounter is None:
        return None
    encounter_id = encounter.get("id") or encounter.get("encounter_id")
    return str(encounter_id) if encounter_id else None


def _error_map(errors: Any) -> dict[str, str]:
    """Normalise a server error map; list values are joined with "; "."""
    if not isinstance(errors, dict):
        return {}
    return {
        str(field): "; ".join(str(item) for item in detail) if isinstance(detail, (list, tuple)) else str(detail)
        for field, detail in errors.items()
    }


class HttpEncounterService(RemoteEncounterPort):
    """httpx-based implementation of the remote encounter contract.

    Parameters:
        remote_config: RemoteConfig (base URL, token, timeout)
        transport: Optional httpx transport, e.g. ``httpx.MockTransport`` in tests
    """

    def __init__(
        self,
        remote_config: Optional[RemoteConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = remote_config or RemoteConfig()
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    # -- Lifecycle -----------------------------------------------------------

    async def connect(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                headers=self._headers(),
                transport=self._transport,
            )
            logger.debug(f"HttpEncounterService: transport initialised for {self.config.base_url}")

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.debug("HttpEncounterService: transport closed")

    async def __aenter__(self) -> "HttpEncounterService":
        await self.connect()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.config.api_token is not None:
            headers["Authorization"] = f"Bearer {self.config.api_token.get_secret_value()}"
        return headers

    # -- Transport -----------------------------------------------------------

    async def _send(self, method: str, path: str, payload: dict) -> httpx.Response:
        await self.connect()
        try:
            response = await self._http.request(method, path, json=payload)
        except httpx.TimeoutException as e:
            logger.warning(f"{method} {path} timed out after {self.config.timeout_seconds}s")
            raise RemoteUnavailableError(f"Request timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {type(e).__name__}")
            raise RemoteUnavailableError(f"Network error: {method} {path}: {e}") from e

        if response.status_code == 401:
            logger.warning(f"{method} {path} rejected: session expired")
            raise AuthenticationError("Unauthorized", status_code=401, body=response.text)
        if response.status_code >= 500:
            logger.warning(f"{method} {path} returned {response.status_code}")
            raise RemoteUnavailableError(
                f"Server error {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    def _raise_for_client_error(self, method: str, path: str, response: httpx.Response) -> None:
        if response.status_code >= 400:
            logger.warning(f"{method} {path} returned {response.status_code}")
            raise RemoteServiceError(
                f"Remote encounter API error {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

    # -- RemoteEncounterPort -------------------------------------------------

    async def create_encounter(self, payload: dict) -> str:
        """POST /encounters and return the server-assigned id.

        Raises:
            RemoteServiceError: If the response carries no encounter id
        """
        response = await self._send("POST", "/encounters", payload)
        self._raise_for_client_error("POST", "/encounters", response)

        encounter_id = extract_encounter_id(self._json(response))
        if not encounter_id:
            raise RemoteServiceError(
                "Server did not return encounter ID",
                status_code=response.status_code,
                body=response.text,
            )
        logger.info(f"Created remote encounter {encounter_id}")
        return encounter_id

    async def update_encounter(self, encounter_id: str, payload: dict) -> str:
        if not is_valid_encounter_id(encounter_id):
            raise InvalidEncounterIdError(f"Cannot update encounter with id '{encounter_id}'")

        path = f"/encounters/{encounter_id.strip()}"
        response = await self._send("PUT", path, payload)
        self._raise_for_client_error("PUT", path, response)

        updated_id = extract_encounter_id(self._json(response)) or encounter_id
        logger.info(f"Updated remote encounter {updated_id}")
        return updated_id

    async def submit_for_review(self, encounter_id: str, payload: dict) -> SubmitResponse:
        """PUT /encounters/{id}/submit.

        Invalid ids are answered locally without a request: empty ids and
        ``new`` get INVALID_ENCOUNTER_ID, client-local ids get OFFLINE_ENCOUNTER.
        A 4xx carrying a JSON body is a server-side rejection and is returned
        as ``SubmitResponse(success=False)``.
        """
        if not is_valid_encounter_id(encounter_id):
            if isinstance(encounter_id, str) and encounter_id.strip().startswith("temp_"):
                return SubmitResponse(
                    success=False,
                    message="Cannot submit an offline encounter directly. Please sync the encounter first.",
                    code=OFFLINE_ENCOUNTER,
                )
            return SubmitResponse(
                success=False,
                message="Encounter ID is required for submission. Please save the encounter first.",
                code=INVALID_ENCOUNTER_ID,
            )

        path = f"/encounters/{encounter_id.strip()}/submit"
        response = await self._send("PUT", path, payload)
        body = self._json(response)

        if response.status_code >= 400:
            if not isinstance(body, dict):
                self._raise_for_client_error("PUT", path, response)
            errors = body.get("errors") or {}
            logger.warning(
                f"Submit for {encounter_id} rejected with {response.status_code}: "
                f"{sorted(errors) if isinstance(errors, dict) else errors}"
            )
            return SubmitResponse(
                success=False,
                message=body.get("message") or "Validation failed",
                errors=_error_map(errors),
                code=body.get("code"),
            )

        body = body if isinstance(body, dict) else {}
        success = body.get("success", True)
        logger.info(f"Submitted encounter {encounter_id} for review (success={success})")
        return SubmitResponse(
            success=bool(success),
            message=body.get("message") or "Encounter submitted for review",
            errors=_error_map(body.get("errors")),
            code=body.get("code"),
        )
