"""Compute unit provisioner for a Machines-style REST API.

Creates one machine per issue owner and waits for the agent inside it to
answer its health endpoint. Each machine is reachable at
``https://{app_name}-{machine_id}.{router_domain}``.

Source:
- src/dispatcher/config.py (machines_api_url, machines_app_name, router_domain)
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Dict, Optional

import httpx


logger = logging.getLogger(__name__)


class MachinesProvisioner:
    """Creates agent containers and waits for them to become ready.

    Readiness is polled on ``GET {unit_url}/api/health`` with a per-request
    timeout. The delay between polls starts at ``poll_base_delay`` and
    grows by ``poll_multiplier`` per attempt, capped at ``poll_max_delay``.

    Attributes:
        api_url: Base URL of the machines API.
        api_token: Bearer token for the machines API.
        app_name: App that hosts the agent containers.
        image: Container image to run.
        router_domain: Domain used to build container URLs.
        region: Region to place machines in.

    Example:
        >>> provisioner = MachinesProvisioner(api_token="...", app_name="agent", image="agent:latest")
        >>> unit_id = await provisioner.create_compute_unit("gitlab-alice")
        >>> ready = await provisioner.wait_until_ready(unit_id, 120)
    """

    def __init__(
        self,
        api_token: str,
        app_name: str,
        image: str,
        api_url: str = "https://api.machines.dev/v1",
        router_domain: str = "containers.internal",
        region: str = "iad",
        cpus: int = 1,
        memory_mb: int = 2048,
        internal_port: int = 3000,
        request_timeout: float = 30.0,
        health_timeout: float = 5.0,
        poll_base_delay: float = 5.0,
        poll_multiplier: float = 1.5,
        poll_max_delay: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.app_name = app_name
        self.image = image
        self.router_domain = router_domain
        self.region = region
        self.cpus = cpus
        self.memory_mb = memory_mb
        self.internal_port = internal_port
        self.request_timeout = request_timeout
        self.health_timeout = health_timeout
        self.poll_base_delay = poll_base_delay
        self.poll_multiplier = poll_multiplier
        self.poll_max_delay = poll_max_delay
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.request_timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def unit_url(self, unit_id: str) -> str:
        return f"https://{self.app_name}-{unit_id}.{self.router_domain}"

    def _machine_request(self, owner_key: str) -> Dict[str, Any]:
        return {
            "name": f"{owner_key}-{uuid.uuid4().hex[:8]}",
            "region": self.region,
            "config": {
                "image": self.image,
                "env": {"OWNER_KEY": owner_key},
                "services": [
                    {
                        "protocol": "tcp",
                        "internal_port": self.internal_port,
                        "ports": [
                            {"port": 443, "handlers": ["tls", "http"]},
                            {"port": 80, "handlers": ["http"]},
                        ],
                    }
                ],
                "mounts": [],
                "guest": {
                    "cpu_kind": "shared",
                    "cpus": self.cpus,
                    "memory_mb": self.memory_mb,
                },
            },
        }

    async def create_compute_unit(self, owner_key: str) -> Optional[str]:
        """Create a machine for ``owner_key``.

        Returns:
            The machine id, or None if the API refused or failed.
        """
        url = f"{self.api_url}/apps/{self.app_name}/machines"
        try:
            response = await self.client.post(
                url,
                json=self._machine_request(owner_key),
                headers={
                    "Authorization": f"Bearer {self.api_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as e:
            logger.error(
                "Machines API request failed",
                extra={"owner_key": owner_key, "error": str(e)},
            )
            return None

        if response.status_code >= 400:
            logger.error(
                "Machines API error",
                extra={
                    "owner_key": owner_key,
                    "status_code": response.status_code,
                    "response_body": response.text[:500],
                },
            )
            return None

        unit_id = response.json().get("id")
        logger.info(
            "Compute unit created",
            extra={"owner_key": owner_key, "unit_id": unit_id},
        )
        return unit_id

    def _poll_delay(self, attempt: int) -> float:
        """Delay before poll ``attempt`` (1-indexed)."""
        delay = self.poll_base_delay * (self.poll_multiplier ** (attempt - 1))
        return min(delay, self.poll_max_delay)

    async def wait_until_ready(self, unit_id: str, timeout_seconds: float) -> bool:
        """Poll the unit's health endpoint until it answers 200 or time runs out."""
        health_url = f"{self.unit_url(unit_id)}/api/health"
        deadline = time.monotonic() + timeout_seconds
        attempt = 0

        while True:
            attempt += 1
            try:
                response = await self.client.get(health_url, timeout=self.health_timeout)
                if response.status_code == 200:
                    logger.info(
                        "Compute unit ready",
                        extra={"unit_id": unit_id, "attempts": attempt},
                    )
                    return True
                logger.debug(
                    "Compute unit not ready",
                    extra={"unit_id": unit_id, "status_code": response.status_code},
                )
            except httpx.HTTPError as e:
                logger.debug(
                    "Compute unit health check failed",
                    extra={"unit_id": unit_id, "error": str(e)},
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self._poll_delay(attempt), remaining))

        logger.warning(
            "Compute unit did not become ready",
            extra={
                "unit_id": unit_id,
                "timeout_seconds": timeout_seconds,
                "attempts": attempt,
            },
        )
        return False
