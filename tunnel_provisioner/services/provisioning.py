"""Provisioning orchestrator - tenant serial to tunnel, DNS and Access policy.

A run is a fixed, linear sequence of steps. Each step waits for the previous
remote call to finish; the first failure aborts the run and nothing already
created on the Cloudflare side is rolled back. Runs share no state, so runs
for different tenants may proceed concurrently on one client.

Re-running for the same serial is not idempotent: it creates a second tunnel,
DNS record and Access application. Remove orphans before retrying.
"""

import asyncio
import logging
from datetime import UTC, datetime
from enum import StrEnum

from tunnel_provisioner.core.config import Settings, is_valid_serial
from tunnel_provisioner.schemas.cloudflare import (
    CATCH_ALL_SERVICE,
    AccessApplication,
    AccessPolicy,
    IngressRule,
)
from tunnel_provisioner.schemas.provisioning import ProvisioningRecord
from tunnel_provisioner.services.cloudflare_api import (
    CloudflareApiClient,
    CloudflareError,
    decode_result,
    extract_result_id,
    tunnel_cname,
)
from tunnel_provisioner.services.tunnel_agent import TunnelAgent, TunnelAgentError

logger = logging.getLogger(__name__)


class ProvisioningStep(StrEnum):
    """Steps of a provisioning run, in execution order."""

    CREATE_TUNNEL = "create_tunnel"
    FETCH_CONNECTION_TOKEN = "fetch_connection_token"
    DERIVE_TUNNEL_CNAME = "derive_tunnel_cname"
    CREATE_DNS_RECORD = "create_dns_record"
    UPDATE_INGRESS = "update_ingress"
    CREATE_ACCESS_APPLICATION = "create_access_application"
    EXTRACT_APPLICATION_ID = "extract_application_id"
    CREATE_ACCESS_POLICY = "create_access_policy"
    BIND_LOCAL_AGENT = "bind_local_agent"


class ProvisioningCancelledError(Exception):
    """Raised when cancellation is requested between two steps."""


class ProvisioningAbortedError(Exception):
    """Raised when a provisioning run stops before completing.

    ``error`` is the typed failure of the step (also chained as
    ``__cause__``): a ``CloudflareError`` subclass, ``TunnelAgentError`` or
    ``ProvisioningCancelledError``.
    """

    def __init__(self, step: ProvisioningStep, serial: str, error: Exception):
        self.step = step
        self.serial = serial
        self.error = error
        super().__init__(f"Provisioning of {serial} aborted at {step}: {error}")


def build_ingress_rules(hostname: str, service: str) -> list[IngressRule]:
    """Route ``hostname`` to ``service`` and close the list with the catch-all."""
    return [
        IngressRule(hostname=hostname, service=service),
        IngressRule(service=CATCH_ALL_SERVICE),
    ]


class ProvisioningOrchestrator:
    """Runs the provisioning workflow for one tenant at a time per call."""

    def __init__(self, client: CloudflareApiClient, agent: TunnelAgent, settings: Settings):
        self._client = client
        self._agent = agent
        self._domain = settings.domain
        self._default_service_address = settings.default_service_address
        self._placeholder_service_address = settings.placeholder_service_address
        self._default_service_token_id = settings.service_token_id

    def hostname_for(self, serial: str) -> str:
        return f"{serial}.{self._domain}"

    @staticmethod
    def _enter(step: ProvisioningStep, serial: str, cancel: asyncio.Event | None) -> None:
        """Start ``step`` unless cancellation has been requested."""
        if cancel is not None and cancel.is_set():
            raise ProvisioningCancelledError(f"Cancelled before {step}")
        logger.info(f"Starting {step}", extra={"serial": serial, "step": str(step)})

    async def provision(
        self,
        serial: str,
        service_address: str | None = None,
        service_token_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ProvisioningRecord:
        """Provision a tunnel, DNS record and Access policy for a tenant.

        Args:
            serial: Tenant serial; becomes the tunnel name and hostname label
            service_address: Origin the tunnel routes to (default from settings)
            service_token_id: Access service token admitted by the policy
                (default from settings)
            cancel: Optional event checked before every step

        Returns:
            The complete ProvisioningRecord

        Raises:
            ValueError: If the inputs are invalid (no remote call is made)
            ProvisioningAbortedError: If any step fails or cancellation is seen
        """
        if not is_valid_serial(serial):
            raise ValueError(f"Invalid serial {serial!r}: must be a valid DNS label")

        service_address = service_address or self._default_service_address
        service_token_id = service_token_id or self._default_service_token_id
        if not service_token_id:
            raise ValueError("A service token id is required for the Access policy")

        hostname = self.hostname_for(serial)
        created: list[str] = []
        tunnel_id: str | None = None

        try:
            step = ProvisioningStep.CREATE_TUNNEL
            self._enter(step, serial, cancel)
            initial_service = self._placeholder_service_address or service_address
            tunnel = await self._client.create_tunnel(
                serial, build_ingress_rules(hostname, initial_service)
            )
            tunnel_id = tunnel.id
            created.append(f"tunnel {tunnel_id}")
            logger.info(
                f"Tunnel created: {tunnel.id}",
                extra={"serial": serial, "step": str(step), "tunnel_id": tunnel.id},
            )

            step = ProvisioningStep.FETCH_CONNECTION_TOKEN
            self._enter(step, serial, cancel)
            tunnel_token = await self._client.get_tunnel_token(tunnel.id)

            step = ProvisioningStep.DERIVE_TUNNEL_CNAME
            self._enter(step, serial, cancel)
            cname = tunnel_cname(tunnel.id)

            step = ProvisioningStep.CREATE_DNS_RECORD
            self._enter(step, serial, cancel)
            dns_record = await self._client.create_dns_record(hostname, cname)
            created.append(f"DNS record {dns_record.id}")
            logger.info(
                f"DNS record created: {hostname} -> {cname}",
                extra={"serial": serial, "step": str(step), "tunnel_id": tunnel.id},
            )

            step = ProvisioningStep.UPDATE_INGRESS
            self._enter(step, serial, cancel)
            tunnel_config = await self._client.update_tunnel_ingress(
                tunnel.id, build_ingress_rules(hostname, service_address)
            )

            step = ProvisioningStep.CREATE_ACCESS_APPLICATION
            self._enter(step, serial, cancel)
            app_envelope = await self._client.create_access_application(serial, hostname)

            step = ProvisioningStep.EXTRACT_APPLICATION_ID
            self._enter(step, serial, cancel)
            application_id = extract_result_id(app_envelope)
            access_application = decode_result(
                AccessApplication, app_envelope, "Access application"
            )
            created.append(f"Access application {application_id}")

            step = ProvisioningStep.CREATE_ACCESS_POLICY
            self._enter(step, serial, cancel)
            policy_envelope = await self._client.create_access_policy(
                application_id, service_token_id
            )
            access_policy = decode_result(AccessPolicy, policy_envelope, "Access policy")

            step = ProvisioningStep.BIND_LOCAL_AGENT
            self._enter(step, serial, cancel)
            await self._agent.bind(tunnel.id, tunnel_token)

        except (CloudflareError, TunnelAgentError, ProvisioningCancelledError) as e:
            context = {"serial": serial, "step": str(step), "tunnel_id": tunnel_id}
            logger.error(f"Provisioning aborted at {step}: {e}", extra=context)
            if created:
                logger.warning(f"Remote objects left in place: {', '.join(created)}", extra=context)
            raise ProvisioningAbortedError(step, serial, e) from e

        logger.info(f"Provisioning complete: {hostname}", extra={"serial": serial})
        return ProvisioningRecord(
            serial=serial,
            hostname=hostname,
            tunnel_id=tunnel.id,
            tunnel_token=tunnel_token,
            dns_record=dns_record,
            tunnel_config=tunnel_config,
            access_application=access_application,
            access_policy=access_policy,
            created_at=datetime.now(UTC),
            is_active=True,
        )
