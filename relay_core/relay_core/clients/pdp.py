"""PDP (e-invoicing intermediary) clients.

Three implementations share the :class:`PdpClient` protocol:

* :class:`MockPdpClient` accepts everything; used for local runs and tests.
* :class:`HttpPdpClient` speaks a generic JSON submissions API.
* :class:`SuperPdpClient` speaks the SUPER PDP ``v1.beta`` API and
  normalizes its event vocabulary.

Statuses returned by ``get_status`` are upper-case strings.  Mapping them
onto invoice statuses is the pipeline's job, not the client's.
"""

from __future__ import annotations

import logging
import re
import uuid
from base64 import b64decode
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from relay_core.clients._http import OwnedClientMixin, build_headers, send
from relay_core.config import PdpProvider, RelaySettings
from relay_core.errors import ExternalServiceError
from relay_core.models.canonical import CanonicalInvoice

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Shared models
# ---------------------------------------------------------------------------


class PdpArtifact(BaseModel):
    """One stored artifact as handed to a PDP client.

    ``base64`` is filled only in ``base64`` artifact mode; in ``key`` mode
    the client receives the storage key and digest alone.
    """

    key: str
    sha256: str | None = None
    base64: str | None = None

    def decoded(self) -> bytes | None:
        return b64decode(self.base64) if self.base64 else None


class PdpArtifacts(BaseModel):
    pdf: PdpArtifact
    xml: PdpArtifact


class PdpSubmission(BaseModel):
    provider: str
    submission_id: str
    status: str


class PdpStatus(BaseModel):
    status: str
    raw: dict[str, Any] = Field(default_factory=dict)


class PdpClient(Protocol):
    """What the pipeline needs from an intermediary."""

    provider: str

    async def submit(
        self,
        tenant_id: str,
        invoice: CanonicalInvoice,
        artifacts: PdpArtifacts,
        *,
        api_key: str | None = None,
        correlation_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> PdpSubmission: ...

    async def get_status(
        self,
        tenant_id: str,
        submission_id: str,
        *,
        api_key: str | None = None,
        correlation_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> PdpStatus: ...


# ---------------------------------------------------------------------------
# Mock
# ---------------------------------------------------------------------------


class MockPdpClient:
    """Accepts every submission and reports it ACCEPTED on the first poll."""

    provider = PdpProvider.MOCK.value

    def __init__(self) -> None:
        self.submissions: list[PdpSubmission] = []

    async def submit(
        self,
        tenant_id: str,
        invoice: CanonicalInvoice,
        artifacts: PdpArtifacts,
        *,
        api_key: str | None = None,
        correlation_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> PdpSubmission:
        submission = PdpSubmission(provider=self.provider, submission_id=f"mock-{uuid.uuid4()}", status="SUBMITTED")
        self.submissions.append(submission)
        return submission

    async def get_status(
        self,
        tenant_id: str,
        submission_id: str,
        *,
        api_key: str | None = None,
        correlation_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> PdpStatus:
        return PdpStatus(status="ACCEPTED", raw={"source": "mock"})


# ---------------------------------------------------------------------------
# Generic HTTP
# ---------------------------------------------------------------------------


class HttpPdpClient(OwnedClientMixin):
    """Client for a JSON ``/submissions`` API.

    Parameters
    ----------
    base_url:
        API root; a trailing slash is ignored.
    api_key:
        Default bearer token when the caller does not pass a tenant key.
    provider:
        Name recorded on submissions.
    timeout:
        Per-request timeout in seconds.
    client:
        Optional pre-built ``httpx.AsyncClient``.
    """

    SERVICE = "pdp"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        provider: str = PdpProvider.HTTP.value,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.provider = provider
        self._init_client(client, timeout)

    async def submit(
        self,
        tenant_id: str,
        invoice: CanonicalInvoice,
        artifacts: PdpArtifacts,
        *,
        api_key: str | None = None,
        correlation_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> PdpSubmission:
        response = await send(
            self._client,
            self.SERVICE,
            "POST",
            f"{self._base_url}/submissions",
            json={"invoice": invoice.to_payload(), "artifacts": artifacts.model_dump(exclude_none=True)},
            headers=build_headers(
                api_key=api_key or self._api_key,
                correlation_id=correlation_id,
                idempotency_key=idempotency_key,
            ),
        )
        data = response.json()
        submission_id = data.get("submissionId") if isinstance(data, dict) else None
        if not submission_id:
            raise ExternalServiceError(self.SERVICE, "submit response has no submissionId")
        return PdpSubmission(
            provider=self.provider,
            submission_id=str(submission_id),
            status=str(data.get("status") or "SUBMITTED").upper(),
        )

    async def get_status(
        self,
        tenant_id: str,
        submission_id: str,
        *,
        api_key: str | None = None,
        correlation_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> PdpStatus:
        response = await send(
            self._client,
            self.SERVICE,
            "GET",
            f"{self._base_url}/submissions/{submission_id}",
            headers=build_headers(
                api_key=api_key or self._api_key,
                correlation_id=correlation_id,
                idempotency_key=idempotency_key,
            ),
        )
        data = response.json()
        if not isinstance(data, dict) or not data.get("status"):
            raise ExternalServiceError(self.SERVICE, f"status response for {submission_id} has no status")
        raw = data.get("raw")
        return PdpStatus(status=str(data["status"]).upper(), raw=raw if isinstance(raw, dict) else {})


# ---------------------------------------------------------------------------
# SUPER PDP
# ---------------------------------------------------------------------------

_PAID_TEXT_RE = re.compile(r"paid|payé|payee|payée|paiement|encaiss")
_ACCEPTED_TEXT_RE = re.compile(r"accept|accepté|accepte|acceptée")
_REJECTED_TEXT_RE = re.compile(r"reject|rejet|rejeté|rejetée|refus|refusé|refusée|invalid|invalide")
_INTEGER_ID_RE = re.compile(r"^[0-9]+$")


def normalize_superpdp_status(status_code: str | None, status_text: str | None) -> str:
    """Map a SUPER PDP event onto ACCEPTED, REJECTED, PAID or PROCESSING.

    Well-known codes win; otherwise the (French or English) status text is
    matched, payment first.
    """
    code = (status_code or "").lower()
    if code == "api:accepted":
        return "ACCEPTED"
    if code in ("api:rejected", "api:invalid"):
        return "REJECTED"
    if code == "fr:212":
        return "PAID"

    text = (status_text or "").lower()
    if _PAID_TEXT_RE.search(text):
        return "PAID"
    if _ACCEPTED_TEXT_RE.search(text):
        return "ACCEPTED"
    if _REJECTED_TEXT_RE.search(text):
        return "REJECTED"
    return "PROCESSING"


class SuperPdpClient(OwnedClientMixin):
    """SUPER PDP ``v1.beta`` client.

    Submission uploads the Factur-X PDF as multipart ``file_name`` when
    available, the bare CII XML otherwise, so artifacts must be passed in
    ``base64`` mode.  Status is the normalized latest invoice event.
    """

    SERVICE = "superpdp"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        provider: str = PdpProvider.SUPERPDP.value,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.provider = provider
        self._init_client(client, timeout)

    async def submit(
        self,
        tenant_id: str,
        invoice: CanonicalInvoice,
        artifacts: PdpArtifacts,
        *,
        api_key: str | None = None,
        correlation_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> PdpSubmission:
        pdf = artifacts.pdf.decoded()
        xml = artifacts.xml.decoded()
        if pdf is None and xml is None:
            raise ExternalServiceError(
                self.SERVICE,
                "submit requires PDF or XML base64 artifacts (set PDP_ARTIFACT_MODE=base64)",
            )

        url = f"{self._base_url}/v1.beta/invoices"
        request_kwargs: dict[str, Any]
        if pdf is not None:
            request_kwargs = {
                "files": {"file_name": ("facturx.pdf", pdf, "application/pdf")},
                "headers": build_headers(
                    api_key=api_key or self._api_key,
                    correlation_id=correlation_id,
                    idempotency_key=idempotency_key,
                ),
            }
        else:
            request_kwargs = {
                "content": xml,
                "headers": build_headers(
                    api_key=api_key or self._api_key,
                    correlation_id=correlation_id,
                    idempotency_key=idempotency_key,
                    extra={"Content-Type": "application/xml"},
                ),
            }

        response = await send(self._client, self.SERVICE, "POST", url, **request_kwargs)
        data = response.json()
        invoice_id = data.get("id") if isinstance(data, dict) else None
        if not invoice_id:
            raise ExternalServiceError(self.SERVICE, "submit response is missing the invoice id")

        logger.info("SUPER PDP accepted upload for tenant %s as invoice %s", tenant_id, invoice_id)
        return PdpSubmission(provider=self.provider, submission_id=str(invoice_id), status="SUBMITTED")

    async def get_status(
        self,
        tenant_id: str,
        submission_id: str,
        *,
        api_key: str | None = None,
        correlation_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> PdpStatus:
        if not _INTEGER_ID_RE.match(submission_id):
            raise ValueError(f"SUPER PDP submission id must be an integer, got {submission_id!r}")

        response = await send(
            self._client,
            self.SERVICE,
            "GET",
            f"{self._base_url}/v1.beta/invoice_events",
            params={"invoice_id": submission_id, "limit": "1000"},
            headers=build_headers(
                api_key=api_key or self._api_key,
                correlation_id=correlation_id,
                idempotency_key=idempotency_key,
                extra={"Accept": "application/json"},
            ),
        )
        payload = response.json()
        events = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(events, list) or not events:
            return PdpStatus(
                status="PROCESSING",
                raw={"provider": self.provider, "invoice_id": submission_id, "events": []},
            )

        latest = events[-1] if isinstance(events[-1], dict) else {}
        return PdpStatus(
            status=normalize_superpdp_status(latest.get("status_code"), latest.get("status_text")),
            raw={"provider": self.provider, "invoice_id": submission_id, "latest_event": latest},
        )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_pdp_client(settings: RelaySettings, *, client: httpx.AsyncClient | None = None) -> PdpClient:
    """Instantiate the client selected by ``pdp_provider``.

    Raises
    ------
    ValueError
        If an HTTP provider is selected without ``pdp_base_url``.
    """
    provider = settings.pdp_provider
    if provider is PdpProvider.MOCK:
        return MockPdpClient()

    if not settings.pdp_base_url:
        raise ValueError(f"RELAY_PDP_BASE_URL is required for the {provider.value} PDP provider")
    api_key = settings.pdp_api_key.get_secret_value() if settings.pdp_api_key else None

    if provider is PdpProvider.SUPERPDP:
        return SuperPdpClient(settings.pdp_base_url, api_key=api_key, timeout=settings.pdp_timeout, client=client)
    return HttpPdpClient(settings.pdp_base_url, api_key=api_key, timeout=settings.pdp_timeout, client=client)
