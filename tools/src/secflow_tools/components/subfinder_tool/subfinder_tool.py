"""
Subfinder - passive subdomain discovery with ProjectDiscovery subfinder.

The optional provider configuration (API keys for authenticated sources) is
written into the isolated volume and passed with ``-pc``, so it never appears
in the container's environment or argument vector.
"""

from __future__ import annotations

from typing import Any

import yaml
from secflow.component import ComponentDefinition, ExecutionRequest
from secflow.context import ExecutionContext
from secflow.errors import ValidationError
from secflow.normalize import dedupe_preserving_order, split_lines
from secflow.ports import Port, PortType, define_inputs, define_outputs
from secflow.runner import ContainerRunnerConfig, run_component

SUBFINDER_IMAGE = "projectdiscovery/subfinder:latest"
SUBFINDER_TIMEOUT_SECONDS = 1800
INPUT_DIR = "/inputs"


def _check_provider_config(content: str) -> None:
    try:
        parsed = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ValidationError(
            f"Provider config is not valid YAML: {e}",
            field_errors={"providerConfig": ["invalid YAML"]},
        ) from e
    if not isinstance(parsed, dict):
        raise ValidationError(
            "Provider config must be a YAML mapping of source name to keys",
            field_errors={"providerConfig": ["must be a mapping"]},
        )


def build_args(has_provider_config: bool) -> list[str]:
    # Plain text output: one subdomain per line
    args = ["-silent", "-dL", f"{INPUT_DIR}/domains.txt"]
    if has_provider_config:
        args += ["-pc", f"{INPUT_DIR}/provider-config.yaml"]
    return args


def _output(raw: str, domain_count: int) -> dict[str, Any]:
    subdomains = dedupe_preserving_order(split_lines(raw))
    return {
        "subdomains": subdomains,
        "rawOutput": raw,
        "domainCount": domain_count,
        "subdomainCount": len(subdomains),
    }


async def execute(request: ExecutionRequest, context: ExecutionContext) -> dict[str, Any]:
    domains = dedupe_preserving_order(d.strip() for d in request.inputs["domains"] if d.strip())
    if not domains:
        context.logger.info("No domains supplied; skipping subfinder")
        return _output("", 0)

    files: dict[str, str | bytes] = {"domains.txt": "\n".join(domains)}
    provider_config = (request.inputs.get("providerConfig") or "").strip()
    if provider_config:
        _check_provider_config(provider_config)
        files["provider-config.yaml"] = provider_config
        context.logger.info("Provider configuration supplied")

    context.emit_progress(f"Enumerating subdomains for {len(domains)} domain(s)")
    async with context.volumes.isolated(context.tenant_id, context.run_id, files) as volume:
        runner = definition.runner.with_overrides(
            command=build_args(bool(provider_config)),
            volumes=[context.volumes.mount_spec(volume, INPUT_DIR, read_only=True)],
        )
        result = await run_component(runner, None, request, context)

    output = _output(result.stdout, len(domains))
    context.logger.info(f"Discovered {output['subdomainCount']} subdomain(s)")
    return output


definition = ComponentDefinition(
    id="secflow.subfinder.run",
    label="Subfinder",
    category="security",
    inputs=define_inputs(
        {
            "domains": Port(
                PortType.list_of(PortType.text()),
                label="Target Domains",
                description="Domain names to enumerate for subdomains.",
            ),
            "providerConfig": Port(
                PortType.secret(),
                label="Provider Config",
                required=False,
                description="provider-config.yaml content enabling authenticated sources.",
            ),
        }
    ),
    outputs=define_outputs(
        {
            "subdomains": Port(PortType.list_of(PortType.text()), label="Discovered Subdomains"),
            "rawOutput": Port(PortType.text(), label="Raw Output"),
            "domainCount": Port(PortType.number(), label="Domain Count"),
            "subdomainCount": Port(PortType.number(), label="Subdomain Count"),
        }
    ),
    execute=execute,
    runner=ContainerRunnerConfig(
        image=SUBFINDER_IMAGE,
        entrypoint="subfinder",
        network="bridge",
        timeout_seconds=SUBFINDER_TIMEOUT_SECONDS,
        env={"HOME": "/root"},
    ),
    docs="Discover subdomains for one or more domains using passive sources.",
    metadata={"slug": "subfinder", "version": "1.0.0", "icon": "Network"},
)
