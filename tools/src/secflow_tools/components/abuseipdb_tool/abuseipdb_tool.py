"""
AbuseIPDB Check - abuse confidence score for an IP address.

Supports:
- API key authentication (ABUSEIPDB_API_KEY or the apiKey input)

HTTP 404 is treated as "no data for this IP" and yields a zero score.

API Reference: https://docs.abuseipdb.com/#check-endpoint
"""

from __future__ import annotations

import ipaddress
from typing import Any

import httpx
from secflow.component import ComponentDefinition, ExecutionRequest
from secflow.context import ExecutionContext
from secflow.errors import ValidationError, raise_for_status
from secflow.ports import Port, PortType, define_inputs, define_outputs, define_parameters
from secflow.retry import RetryPolicy
from secflow.runner import InlineRunnerConfig, run_component

from secflow_tools.credentials import CredentialManager

ABUSEIPDB_API_BASE = "https://api.abuseipdb.com/api/v2"

ABUSEIPDB_RETRY_POLICY = RetryPolicy(
    max_attempts=4,
    initial_interval=2.0,
    maximum_interval=120.0,
    backoff_coefficient=2.0,
    non_retryable_error_types=frozenset(
        {"AuthenticationError", "ValidationError", "ConfigurationError"}
    ),
)

# Fields copied from the API's ``data`` object
_REPORT_FIELDS = (
    "isPublic",
    "ipVersion",
    "isWhitelisted",
    "countryCode",
    "usageType",
    "isp",
    "domain",
    "hostnames",
    "totalReports",
    "numDistinctUsers",
    "lastReportedAt",
    "reports",
)


class _AbuseIPDBClient:
    """Internal client wrapping the AbuseIPDB check endpoint."""

    def __init__(self, api_key: str, http: httpx.AsyncClient):
        self._api_key = api_key
        self._http = http

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Key": self._api_key,
            "Accept": "application/json",
        }

    def _handle_response(self, response: httpx.Response) -> dict[str, Any] | None:
        if response.status_code == 404:
            return None
        raise_for_status(response, service="AbuseIPDB")
        return response.json()

    async def check(
        self, ip_address: str, max_age_in_days: int = 90, verbose: bool = False
    ) -> dict[str, Any] | None:
        params: dict[str, Any] = {
            "ipAddress": ip_address,
            "maxAgeInDays": str(max_age_in_days),
        }
        if verbose:
            params["verbose"] = "true"

        response = await self._http.get(
            f"{ABUSEIPDB_API_BASE}/check",
            headers=self._headers,
            params=params,
        )
        return self._handle_response(response)


async def _check(request: ExecutionRequest, context: ExecutionContext) -> dict[str, Any]:
    ip_address = request.inputs["ipAddress"].strip()
    try:
        ipaddress.ip_address(ip_address)
    except ValueError as e:
        raise ValidationError(
            f"Not a valid IP address: {ip_address!r}",
            field_errors={"ipAddress": ["must be an IPv4 or IPv6 address"]},
        ) from e

    api_key = CredentialManager().resolve("abuseipdb", request.inputs.get("apiKey"))
    client = _AbuseIPDBClient(api_key, context.http)
    context.logger.info(f"Checking IP: {ip_address}")

    payload = await client.check(
        ip_address,
        max_age_in_days=int(request.params["maxAgeInDays"]),
        verbose=request.params["verbose"],
    )
    if payload is None:
        context.logger.warning(f"IP not found: {ip_address}")
        return {
            "ipAddress": ip_address,
            "abuseConfidenceScore": 0,
            "full_report": {"error": "Not Found"},
        }

    info = payload.get("data") or {}
    score = info.get("abuseConfidenceScore", 0)
    context.logger.info(f"Score for {ip_address}: {score}")

    result: dict[str, Any] = {
        "ipAddress": info.get("ipAddress", ip_address),
        "abuseConfidenceScore": score,
        "full_report": payload,
    }
    for key in _REPORT_FIELDS:
        if info.get(key) is not None:
            result[key] = info[key]
    return result


async def execute(request: ExecutionRequest, context: ExecutionContext) -> dict[str, Any]:
    return await run_component(definition.runner, _check, request, context)


definition = ComponentDefinition(
    id="secflow.abuseipdb.check",
    label="AbuseIPDB Check",
    category="security",
    inputs=define_inputs(
        {
            "ipAddress": Port(PortType.text(), label="IP Address"),
            "apiKey": Port(
                PortType.secret(),
                label="API Key",
                required=False,
                description="AbuseIPDB API key. Falls back to ABUSEIPDB_API_KEY.",
            ),
        }
    ),
    parameters=define_parameters(
        {
            "maxAgeInDays": Port(
                PortType.number(),
                label="Max Age (Days)",
                default=90,
                coerce=True,
                min=1,
                max=365,
            ),
            "verbose": Port(PortType.boolean(), label="Verbose", default=False, coerce=True),
        }
    ),
    outputs=define_outputs(
        {
            "ipAddress": Port(PortType.text(), label="IP Address"),
            "abuseConfidenceScore": Port(PortType.number(), label="Abuse Confidence Score"),
            "isPublic": Port(PortType.boolean(), required=False),
            "ipVersion": Port(PortType.number(), required=False),
            "isWhitelisted": Port(PortType.boolean(), required=False),
            "countryCode": Port(PortType.text(), required=False),
            "usageType": Port(PortType.text(), required=False),
            "isp": Port(PortType.text(), required=False),
            "domain": Port(PortType.text(), required=False),
            "hostnames": Port(PortType.list_of(PortType.text()), required=False),
            "totalReports": Port(PortType.number(), required=False),
            "numDistinctUsers": Port(PortType.number(), required=False),
            "lastReportedAt": Port(PortType.text(), required=False),
            "reports": Port(PortType.list_of(PortType.json()), required=False),
            "full_report": Port(PortType.json(), label="Full Report"),
        }
    ),
    execute=execute,
    runner=InlineRunnerConfig(),
    retry_policy=ABUSEIPDB_RETRY_POLICY,
    docs="Check the abuse confidence score of an IP address using the AbuseIPDB v2 API.",
    metadata={"slug": "abuseipdb-check", "version": "1.0.0", "icon": "ShieldAlert"},
)
