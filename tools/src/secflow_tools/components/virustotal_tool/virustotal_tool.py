"""
VirusTotal Lookup - reputation of IPs, domains, file hashes and URLs.

Supports:
- API key authentication (VIRUSTOTAL_API_KEY or the apiKey input)

An indicator VirusTotal has never seen (HTTP 404) is reported as a neutral
result with zero counts rather than an error.

API Reference: https://docs.virustotal.com/reference/overview
"""

from __future__ import annotations

import base64
from typing import Any

import httpx
from secflow.component import ComponentDefinition, ExecutionRequest
from secflow.context import ExecutionContext
from secflow.errors import raise_for_status
from secflow.ports import Port, PortType, define_inputs, define_outputs, define_parameters
from secflow.retry import RetryPolicy
from secflow.runner import InlineRunnerConfig, run_component

from secflow_tools.credentials import CredentialManager

VIRUSTOTAL_API_BASE = "https://www.virustotal.com/api/v3"

INDICATOR_TYPES = ("ip", "domain", "file", "url")

_COLLECTIONS = {
    "ip": "ip_addresses",
    "domain": "domains",
    "file": "files",
    "url": "urls",
}

# Rate limits on the public API make 429s routine
VIRUSTOTAL_RETRY_POLICY = RetryPolicy(
    max_attempts=4,
    initial_interval=2.0,
    maximum_interval=120.0,
    backoff_coefficient=2.0,
    non_retryable_error_types=frozenset(
        {"AuthenticationError", "ValidationError", "ConfigurationError"}
    ),
)


class _VirusTotalClient:
    """Internal client wrapping VirusTotal v3 API calls."""

    def __init__(self, api_key: str, http: httpx.AsyncClient):
        self._api_key = api_key
        self._http = http

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "x-apikey": self._api_key,
            "Accept": "application/json",
        }

    @staticmethod
    def endpoint(indicator: str, indicator_type: str) -> str:
        """Build the object URL. URL ids are unpadded url-safe base64."""
        collection = _COLLECTIONS[indicator_type]
        if indicator_type == "url":
            identifier = base64.urlsafe_b64encode(indicator.encode()).decode().rstrip("=")
        else:
            identifier = indicator
        return f"{VIRUSTOTAL_API_BASE}/{collection}/{identifier}"

    def _handle_response(self, response: httpx.Response) -> dict[str, Any] | None:
        """Return the JSON body, ``None`` for 404, or raise a classified error."""
        if response.status_code == 404:
            return None
        raise_for_status(response, service="VirusTotal")
        return response.json()

    async def lookup(self, indicator: str, indicator_type: str) -> dict[str, Any] | None:
        response = await self._http.get(
            self.endpoint(indicator, indicator_type),
            headers=self._headers,
        )
        return self._handle_response(response)


def _summarize(report: dict[str, Any] | None) -> dict[str, Any]:
    if report is None:
        return {
            "malicious": 0,
            "suspicious": 0,
            "harmless": 0,
            "undetected": 0,
            "tags": [],
            "reputation": 0,
            "found": False,
            "full_report": {"error": "Not Found in VirusTotal"},
        }

    attrs = (report.get("data") or {}).get("attributes") or {}
    stats = attrs.get("last_analysis_stats") or {}
    return {
        "malicious": stats.get("malicious", 0),
        "suspicious": stats.get("suspicious", 0),
        "harmless": stats.get("harmless", 0),
        "undetected": stats.get("undetected", 0),
        "tags": list(attrs.get("tags") or []),
        "reputation": attrs.get("reputation", 0),
        "found": True,
        "full_report": report,
    }


async def _lookup(request: ExecutionRequest, context: ExecutionContext) -> dict[str, Any]:
    indicator = request.inputs["indicator"].strip()
    indicator_type = request.params["type"]
    api_key = CredentialManager().resolve("virustotal", request.inputs.get("apiKey"))
    client = _VirusTotalClient(api_key, context.http)

    context.logger.info(f"Checking {indicator_type}: {indicator}")
    report = await client.lookup(indicator, indicator_type)
    if report is None:
        context.logger.warning(f"Indicator not found: {indicator}")

    result = _summarize(report)
    context.emit_progress(
        f"{indicator}: {result['malicious']} malicious, {result['suspicious']} suspicious",
        data={"malicious": result["malicious"]},
    )
    return result


async def execute(request: ExecutionRequest, context: ExecutionContext) -> dict[str, Any]:
    return await run_component(definition.runner, _lookup, request, context)


definition = ComponentDefinition(
    id="secflow.virustotal.lookup",
    label="VirusTotal Lookup",
    category="security",
    inputs=define_inputs(
        {
            "indicator": Port(
                PortType.text(),
                label="Indicator",
                description="The IP, domain, file hash or URL to inspect.",
            ),
            "apiKey": Port(
                PortType.secret(),
                label="API Key",
                required=False,
                description="VirusTotal API key. Falls back to VIRUSTOTAL_API_KEY.",
            ),
        }
    ),
    parameters=define_parameters(
        {
            "type": Port(
                PortType.text(),
                label="Indicator Type",
                default="ip",
                choices=INDICATOR_TYPES,
            ),
        }
    ),
    outputs=define_outputs(
        {
            "malicious": Port(PortType.number(), label="Malicious Count"),
            "suspicious": Port(PortType.number(), label="Suspicious Count"),
            "harmless": Port(PortType.number(), label="Harmless Count"),
            "undetected": Port(PortType.number(), label="Undetected Count", required=False),
            "tags": Port(PortType.list_of(PortType.text()), label="Tags", required=False),
            "reputation": Port(PortType.number(), label="Reputation", required=False),
            "found": Port(PortType.boolean(), label="Found", required=False),
            "full_report": Port(PortType.json(), label="Full Report"),
        }
    ),
    execute=execute,
    runner=InlineRunnerConfig(),
    retry_policy=VIRUSTOTAL_RETRY_POLICY,
    docs="Check the reputation of an IP, domain, file hash or URL using the VirusTotal v3 API.",
    metadata={"slug": "virustotal-lookup", "version": "1.0.0", "icon": "Shield"},
)
