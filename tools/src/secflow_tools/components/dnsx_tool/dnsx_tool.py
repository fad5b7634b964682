"""
DNSX Resolver - resolve DNS records for many domains with ProjectDiscovery dnsx.

Domains and custom resolvers are written to the run's isolated volume. dnsx
normally emits one JSON object per host; when it falls back to plain text
each line becomes a record with the raw answer kept under ``answers.raw``.

Tool Reference: https://docs.projectdiscovery.io/tools/dnsx
"""

from __future__ import annotations

import re
from typing import Any

from secflow.component import ComponentDefinition, ExecutionRequest
from secflow.context import ExecutionContext
from secflow.normalize import dedupe_preserving_order, normalize_output
from secflow.ports import Port, PortType, define_inputs, define_outputs, define_parameters
from secflow.runner import ContainerRunnerConfig, run_component

DNSX_IMAGE = "projectdiscovery/dnsx:latest"
DNSX_TIMEOUT_SECONDS = 180
INPUT_DIR = "/inputs"

RECORD_TYPE_FLAGS = {
    "A": "-a",
    "AAAA": "-aaaa",
    "CNAME": "-cname",
    "MX": "-mx",
    "NS": "-ns",
    "TXT": "-txt",
    "PTR": "-ptr",
    "SRV": "-srv",
    "SOA": "-soa",
    "CAA": "-caa",
    "AXFR": "-axfr",
    "ANY": "-any",
}

RESPONSE_CODES = ("noerror", "formerr", "servfail", "nxdomain", "notimp", "refused")

# Keys dnsx uses for answer sections in -json mode
ANSWER_KEYS = ("a", "aaaa", "cname", "mx", "ns", "txt", "ptr", "srv", "soa", "caa", "any", "axfr", "all")

_BRACKETED = re.compile(r"\[([^\]]+)\]")


def build_args(params: dict[str, Any], has_resolvers: bool) -> list[str]:
    """Arguments passed to dnsx after the ``sh -c 'dnsx "$@"' --`` prefix."""
    args = ["-json", "-silent"] if params["includeResponses"] else ["-silent"]
    args += ["-l", f"{INPUT_DIR}/domains.txt"]
    if has_resolvers:
        args += ["-r", f"{INPUT_DIR}/resolvers.txt"]
    args += ["-t", str(int(params["threads"]))]
    args += ["-retry", str(int(params["retryCount"]))]
    if params.get("rateLimit"):
        args += ["-rl", str(int(params["rateLimit"]))]
    if params["includeResponses"]:
        args.append("-resp")
    if params.get("statusCodeFilter"):
        args += ["-rcode", params["statusCodeFilter"]]
    for record_type in params["recordTypes"]:
        args.append(RECORD_TYPE_FLAGS[record_type])
    # Unbuffered output so results stream as they resolve
    args.append("-stream")
    return args


def _record(payload: dict[str, Any]) -> dict[str, Any]:
    answers = {
        key: [str(entry) for entry in payload[key]]
        for key in ANSWER_KEYS
        if isinstance(payload.get(key), list) and payload[key]
    }
    record: dict[str, Any] = {"host": str(payload.get("host", "")), "answers": answers}

    ttl = payload.get("ttl")
    if isinstance(ttl, str) and ttl.strip().isdigit():
        ttl = int(ttl)
    if isinstance(ttl, int) and not isinstance(ttl, bool):
        record["ttl"] = ttl
    if isinstance(payload.get("status_code"), str):
        record["statusCode"] = payload["status_code"]
    if isinstance(payload.get("resolver"), list):
        record["resolver"] = [str(r) for r in payload["resolver"]]
    if payload.get("timestamp"):
        record["timestamp"] = payload["timestamp"]
    return record


def plain_text_records(lines: list[str]) -> list[dict[str, Any]]:
    """Fallback for ``-silent`` output: ``host [answer] [answer]`` per line."""
    records = []
    for line in lines:
        tokens = line.split()
        answers: dict[str, list[str]] = {"raw": [line]}
        resolved = [m.strip() for m in _BRACKETED.findall(line) if m.strip()]
        if resolved:
            answers["resolved"] = resolved
        records.append({"host": tokens[0] if tokens else line, "answers": answers})
    return records


def parse_results(raw: str) -> tuple[list[dict[str, Any]], list[str], bool]:
    """Records and diagnostics from dnsx output, and whether it was JSON."""
    normalized = normalize_output(raw, plain_text_records, tool="dnsx")
    errors = list(normalized.errors)
    if not normalized.structured:
        return normalized.records, errors, False

    records = []
    for payload in normalized.records:
        if "__error__" in payload:
            errors.append(str(payload["__error__"]))
            continue
        if not payload.get("host"):
            continue
        records.append(_record(payload))
    return records, errors, True


def _summary(
    records: list[dict[str, Any]],
    raw_output: str,
    domain_count: int,
    record_types: list[str],
    resolvers: list[str],
    errors: list[str],
    structured: bool = True,
) -> dict[str, Any]:
    seen_resolvers = [r for record in records for r in record.get("resolver", [])]
    if structured:
        resolved_hosts = [
            r["host"] for r in records if any(r["answers"].get(k) for k in ANSWER_KEYS)
        ]
    else:
        resolved_hosts = [r["host"] for r in records if r["answers"].get("resolved")]
    answer_types = [k.upper() for r in records for k in r["answers"] if k in ANSWER_KEYS]
    return {
        "results": records,
        "rawOutput": raw_output,
        "domainCount": domain_count,
        "recordCount": len(records),
        "recordTypes": dedupe_preserving_order(answer_types) or record_types,
        "resolvers": dedupe_preserving_order(seen_resolvers) or resolvers,
        "resolvedHosts": dedupe_preserving_order(resolved_hosts),
        "errors": errors,
    }


async def execute(request: ExecutionRequest, context: ExecutionContext) -> dict[str, Any]:
    params = request.params
    domains = dedupe_preserving_order(d.strip() for d in request.inputs["domains"] if d.strip())
    resolvers = dedupe_preserving_order(r.strip() for r in params["resolvers"] if r.strip())
    record_types = list(params["recordTypes"])

    if not domains:
        context.logger.info("No domains supplied; skipping dnsx")
        return _summary([], "", 0, record_types, resolvers, [])

    files: dict[str, str | bytes] = {"domains.txt": "\n".join(domains)}
    if resolvers:
        files["resolvers.txt"] = "\n".join(resolvers)
    args = build_args(params, has_resolvers=bool(resolvers))

    context.logger.info(f"Resolving {len(domains)} domain(s) for {', '.join(record_types)}")
    context.emit_progress(f"Resolving {len(domains)} domain(s)", data={"recordTypes": record_types})

    async with context.volumes.isolated(context.tenant_id, context.run_id, files) as volume:
        runner = definition.runner.with_overrides(
            extra_command=args,
            volumes=[context.volumes.mount_spec(volume, INPUT_DIR, read_only=True)],
        )
        result = await run_component(runner, None, request, context)

    records, errors, structured = parse_results(result.stdout)
    context.emit_progress(f"dnsx returned {len(records)} record(s)", data={"count": len(records)})
    return _summary(records, result.stdout, len(domains), record_types, resolvers, errors, structured)


definition = ComponentDefinition(
    id="secflow.dnsx.run",
    label="DNSX Resolver",
    category="security",
    inputs=define_inputs(
        {
            "domains": Port(
                PortType.list_of(PortType.text()),
                label="Domains",
                description="Domains or hostnames to resolve.",
            ),
        }
    ),
    parameters=define_parameters(
        {
            "recordTypes": Port(
                PortType.list_of(PortType.text()),
                label="Record Types",
                default=["A"],
                choices=tuple(RECORD_TYPE_FLAGS),
            ),
            "resolvers": Port(
                PortType.list_of(PortType.text()),
                label="Resolvers",
                default=[],
                description="Custom resolvers, e.g. 1.1.1.1:53.",
            ),
            "threads": Port(
                PortType.number(), label="Threads", default=100, coerce=True, min=1, max=10000
            ),
            "retryCount": Port(
                PortType.number(), label="Retry Count", default=2, coerce=True, min=1, max=10
            ),
            "rateLimit": Port(
                PortType.number(),
                label="Rate Limit",
                required=False,
                coerce=True,
                min=1,
                max=10000,
            ),
            "includeResponses": Port(
                PortType.boolean(), label="Include Responses", default=True, coerce=True
            ),
            "statusCodeFilter": Port(
                PortType.text(),
                label="Response Code Filter",
                required=False,
                choices=RESPONSE_CODES,
            ),
        }
    ),
    outputs=define_outputs(
        {
            "results": Port(PortType.list_of(PortType.json()), label="DNS Records"),
            "rawOutput": Port(PortType.text(), label="Raw Output"),
            "domainCount": Port(PortType.number(), label="Domain Count"),
            "recordCount": Port(PortType.number(), label="Record Count"),
            "recordTypes": Port(PortType.list_of(PortType.text()), label="Record Types"),
            "resolvers": Port(PortType.list_of(PortType.text()), label="Resolvers"),
            "resolvedHosts": Port(PortType.list_of(PortType.text()), label="Resolved Hosts"),
            "errors": Port(PortType.list_of(PortType.text()), label="Errors", default=[]),
        }
    ),
    execute=execute,
    runner=ContainerRunnerConfig(
        image=DNSX_IMAGE,
        entrypoint="sh",
        command=("-c", 'dnsx "$@"', "--"),
        network="bridge",
        timeout_seconds=DNSX_TIMEOUT_SECONDS,
        env={"HOME": "/root"},
    ),
    docs="Resolve DNS records for a list of domains with support for record types and custom resolvers.",
    metadata={"slug": "dnsx", "version": "1.0.0", "icon": "Globe"},
)
