import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse

import httpx

from vcheck.core.config import get_settings
from vcheck.core.exceptions import VSphereApiError
from vcheck.models import VCenter
from vcheck.schemas import ApiCheckResult, VCenterCredentials
from vcheck.services.cancellation import CancellationSignal
from vcheck.utils.time import utcnow

settings = get_settings()
logger = logging.getLogger(__name__)

SESSION_HEADER = "vmware-api-session-id"


@dataclass
class VSphereSession:
    """An authenticated vSphere REST session and the client bound to it."""
    vcenter_url: str
    token: str
    username: str
    client: httpx.AsyncClient
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    active: bool = True


@dataclass
class ConnectionTestResult:
    success: bool
    error_message: Optional[str] = None
    response_time: float = 0.0


def _check_cancelled(cancel: Optional[CancellationSignal]) -> None:
    if cancel is not None and cancel.cancelled:
        raise asyncio.CancelledError()


class VSphereRestService:
    """Thin async client for the vSphere Automation REST API.

    Each `connect` opens its own `httpx.AsyncClient` so concurrent checks never
    share a session token. Callers own the session and must `disconnect` it.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport
        self._handlers: dict[str, Callable[[VSphereSession, str], Awaitable[ApiCheckResult]]] = {
            "host-performance": self._host_performance,
            "host-hardware": self._host_hardware,
            "host-networking": self._host_networking,
            "host-storage": self._host_storage,
            "host-security": self._host_security,
            "host-configuration": self._host_configuration,
        }

    def _build_client(self, vcenter_url: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=vcenter_url.rstrip("/"),
            verify=not settings.IGNORE_INVALID_CERTIFICATES,
            timeout=settings.REST_REQUEST_TIMEOUT_SECONDS,
            headers={"User-Agent": f"{settings.APP_NAME}/{settings.VERSION}"},
            transport=self.transport,
        )

    async def connect(
        self,
        vcenter: VCenter,
        credentials: VCenterCredentials,
        cancel: Optional[CancellationSignal] = None,
    ) -> VSphereSession:
        """Authenticates against vCenter and returns a live session.

        Raises:
            VSphereApiError: When vCenter is unreachable or rejects the credentials.
        """
        _check_cancelled(cancel)
        logger.info(f"Establishing vSphere REST API connection to: {vcenter.display_name}")
        client = self._build_client(vcenter.url)
        try:
            response = await client.post(
                "/api/session", auth=(credentials.full_username, credentials.password)
            )
        except httpx.HTTPError as e:
            await client.aclose()
            raise VSphereApiError(f"Authentication error: {e}") from e
        except asyncio.CancelledError:
            await client.aclose()
            raise

        if not response.is_success:
            await client.aclose()
            raise VSphereApiError(
                f"Authentication failed: {response.reason_phrase}. Details: {response.text}"
            )

        session = VSphereSession(
            vcenter_url=vcenter.url,
            token=response.text.strip().strip('"'),
            username=credentials.username,
            client=client,
        )
        logger.info(f"vSphere REST API session established. SessionId: {session.session_id}")
        return session

    async def disconnect(self, session: VSphereSession, cancel: Optional[CancellationSignal] = None) -> None:
        """Logs the session out and closes its client. Never raises."""
        if not session.active:
            return
        session.active = False
        logger.info(f"Disconnecting vSphere REST API session: {session.session_id}")
        try:
            await session.client.delete("/api/session", headers={SESSION_HEADER: session.token})
        except httpx.HTTPError as e:
            logger.warning(f"Error disconnecting vSphere REST API session {session.session_id}: {e}")
        finally:
            await session.client.aclose()

    async def test_connection(
        self,
        vcenter: VCenter,
        credentials: VCenterCredentials,
        cancel: Optional[CancellationSignal] = None,
    ) -> ConnectionTestResult:
        start = time.perf_counter()
        parsed = urlparse(vcenter.url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return ConnectionTestResult(
                success=False,
                error_message="Invalid vCenter URL format. URL must start with http:// or https://",
            )
        try:
            session = await self.connect(vcenter, credentials, cancel)
        except VSphereApiError as e:
            logger.warning(f"vSphere REST API connection test failed for {vcenter.display_name}: {e}")
            return ConnectionTestResult(
                success=False, error_message=str(e), response_time=time.perf_counter() - start
            )
        await self.disconnect(session)
        return ConnectionTestResult(success=True, response_time=time.perf_counter() - start)

    async def execute_check(
        self,
        session: VSphereSession,
        host_mo_id: str,
        check_type: str,
        parameters: Optional[dict[str, Any]] = None,
        cancel: Optional[CancellationSignal] = None,
    ) -> ApiCheckResult:
        """Runs one of the built-in host checks over an open session.

        Args:
            session: Session returned by `connect`.
            host_mo_id: Managed object id of the host, e.g. "host-42".
            check_type: One of the six `host-*` check types.
            parameters: Extra values from the check definition. Currently only logged.

        Returns:
            An ApiCheckResult. HTTP errors and unexpected payloads are reported
            in it, never raised.
        """
        _check_cancelled(cancel)
        if not session.active:
            return ApiCheckResult(success=False, error_message="Session is not active")

        handler = self._handlers.get((check_type or "").lower())
        if handler is None:
            return ApiCheckResult(success=False, error_message=f"Check type '{check_type}' is not supported")

        logger.info(f"Executing check {check_type} on host {host_mo_id} for session: {session.session_id}")
        logger.debug(f"Check parameters: {sorted((parameters or {}).keys())}")
        return await handler(session, host_mo_id)

    async def _get(self, session: VSphereSession, path: str) -> httpx.Response:
        return await session.client.get(path, headers={SESSION_HEADER: session.token})

    async def _host_performance(self, session: VSphereSession, host_mo_id: str) -> ApiCheckResult:
        base = f"/api/vcenter/host/{host_mo_id}"
        try:
            cpu_response = await self._get(session, f"{base}/hardware/cpu")
            cpu_response.raise_for_status()
            mem_response = await self._get(session, f"{base}/hardware/memory")
            mem_response.raise_for_status()
            cores = int(cpu_response.json()["cores"])
            memory_mib = int(mem_response.json()["size_MiB"])
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            return ApiCheckResult(success=False, error_message=f"Failed to get host performance data: {e}")
        return ApiCheckResult(
            success=True,
            data=f"CPU Cores: {cores}, Memory: {memory_mib} MiB",
            properties={"cpu_cores": cores, "memory_mib": memory_mib},
        )

    async def _host_hardware(self, session: VSphereSession, host_mo_id: str) -> ApiCheckResult:
        try:
            response = await self._get(session, f"/api/vcenter/host/{host_mo_id}/hardware")
            response.raise_for_status()
            hardware = response.json()
            vendor, model = hardware["vendor"], hardware["model"]
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            return ApiCheckResult(success=False, error_message=f"Failed to get host hardware data: {e}")
        return ApiCheckResult(
            success=True,
            data=f"Hardware vendor: {vendor}, Model: {model}",
            properties={"vendor": vendor, "model": model},
        )

    async def _content_size_check(
        self, session: VSphereSession, path: str, label: str, area: str
    ) -> ApiCheckResult:
        try:
            response = await self._get(session, path)
        except httpx.HTTPError as e:
            return ApiCheckResult(success=False, error_message=f"Failed to get host {area} data: {e}")
        if not response.is_success:
            return ApiCheckResult(
                success=False, error_message=f"Failed to get {area} data: {response.status_code}"
            )
        size = len(response.text)
        return ApiCheckResult(
            success=True,
            data=f"{label} configuration retrieved: {size} bytes",
            properties={"content_length": size},
        )

    async def _host_networking(self, session: VSphereSession, host_mo_id: str) -> ApiCheckResult:
        return await self._content_size_check(
            session, f"/api/vcenter/host/{host_mo_id}/networking", "Network", "networking"
        )

    async def _host_storage(self, session: VSphereSession, host_mo_id: str) -> ApiCheckResult:
        return await self._content_size_check(
            session, f"/api/vcenter/host/{host_mo_id}/storage", "Storage", "storage"
        )

    async def _host_security(self, session: VSphereSession, host_mo_id: str) -> ApiCheckResult:
        return await self._content_size_check(
            session, f"/api/vcenter/host/{host_mo_id}/services", "Security/Services", "security"
        )

    async def _host_configuration(self, session: VSphereSession, host_mo_id: str) -> ApiCheckResult:
        try:
            response = await self._get(session, f"/api/vcenter/host/{host_mo_id}")
            response.raise_for_status()
            host = response.json()
            name, state = host["name"], host["connection_state"]
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            return ApiCheckResult(success=False, error_message=f"Failed to get host configuration data: {e}")
        return ApiCheckResult(
            success=True,
            data=f"Host configuration: Name={name}, State={state}",
            properties={"name": name, "connection_state": state},
        )
