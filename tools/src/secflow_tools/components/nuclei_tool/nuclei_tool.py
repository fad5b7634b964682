"""
Nuclei Scanner - template-based vulnerability scanning with ProjectDiscovery nuclei.

Everything user-controlled (targets, template ids, template paths, custom
templates) is written to the run's isolated volume and referenced by path;
only numeric settings and fixed flags appear on the command line.

Custom templates are parsed with ``yaml.safe_load`` and rejected if they
contain shell-execution constructs.

Tool Reference: https://docs.projectdiscovery.io/tools/nuclei
"""

from __future__ import annotations

import base64
import binascii
import io
import re
import zipfile
from datetime import UTC, datetime
from typing import Any

import yaml
from secflow.component import ComponentDefinition, ExecutionRequest
from secflow.context import ExecutionContext
from secflow.errors import ValidationError
from secflow.normalize import dedupe_preserving_order, parse_ndjson
from secflow.ports import Port, PortType, define_inputs, define_outputs, define_parameters
from secflow.runner import ContainerResult, ContainerRunnerConfig, run_component
from secflow.volumes import path_problems

NUCLEI_IMAGE = "ghcr.io/shipsecai/nuclei:latest"
NUCLEI_TIMEOUT_SECONDS = 600
INPUT_DIR = "/inputs"

SEVERITIES = ("info", "low", "medium", "high", "critical")

DANGEROUS_TEMPLATE_PATTERNS = (
    "exec:",
    "eval(",
    "system(",
    "shell:",
    "bash:",
    "command:",
    "`",
    "$(",
)

NO_RESULTS_MARKER = "No results found"

_TEMPLATES_RE = re.compile(r"templates loaded[^:\n]*:\s*(\d+)|(\d+)\s+templates", re.IGNORECASE)
_REQUESTS_RE = re.compile(r"(\d+)\s+requests", re.IGNORECASE)
# Go duration, e.g. "completed in 1m2.5s"
_DURATION_RE = re.compile(
    r"(?:completed in|duration:?)\s*(?:(\d+)h)?(?:(\d+)m)?(\d+(?:\.\d+)?)s\b", re.IGNORECASE
)

MAX_ARCHIVE_BYTES = 10 * 1024 * 1024
MAX_TEMPLATE_BYTES = 1024 * 1024


def validate_template(content: str) -> dict[str, Any]:
    """Parse and vet a single nuclei template.

    Raises:
        ValidationError: not a mapping, missing id/info, a blocked pattern,
            or an unknown severity
    """
    try:
        template = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ValidationError(
            f"Template YAML could not be parsed: {e}",
            field_errors={"customTemplateYaml": ["invalid YAML"]},
        ) from e

    problems: list[str] = []
    if not isinstance(template, dict):
        problems.append("template must be a YAML mapping")
    else:
        if not isinstance(template.get("id"), str) or not template["id"]:
            problems.append('missing or invalid "id" field')
        if not isinstance(template.get("info"), dict):
            problems.append('missing or invalid "info" section')
        else:
            severity = template["info"].get("severity")
            if severity is not None and str(severity).lower() not in SEVERITIES:
                problems.append(f"invalid severity {severity!r}; must be one of {', '.join(SEVERITIES)}")

    lowered = content.lower()
    for pattern in DANGEROUS_TEMPLATE_PATTERNS:
        if pattern in lowered:
            problems.append(f"template contains blocked pattern {pattern!r}")

    if problems:
        raise ValidationError(
            f"Template validation failed: {problems[0]}",
            field_errors={"customTemplateYaml": problems},
        )
    return template


def extract_template_archive(encoded: str, context: ExecutionContext) -> dict[str, bytes]:
    """Unpack a base64 zip of templates into ``templates/<name>`` volume paths.

    Entries that are not YAML, have unsafe paths, are oversized or fail
    validation are skipped with a warning.
    """
    try:
        payload = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(
            "Template archive is not valid base64",
            field_errors={"customTemplateArchive": ["invalid base64"]},
        ) from e
    if len(payload) > MAX_ARCHIVE_BYTES:
        raise ValidationError(
            f"Template archive too large: {len(payload) / (1024 * 1024):.2f}MB (max 10MB)",
            field_errors={"customTemplateArchive": ["archive exceeds 10MB"]},
        )

    files: dict[str, bytes] = {}
    try:
        archive = zipfile.ZipFile(io.BytesIO(payload))
    except zipfile.BadZipFile as e:
        raise ValidationError(
            "Template archive is not a zip file",
            field_errors={"customTemplateArchive": ["not a zip archive"]},
        ) from e

    with archive:
        for entry in archive.infolist():
            name = entry.filename
            if entry.is_dir():
                continue
            if not name.endswith((".yaml", ".yml")):
                context.logger.warning(f"Skipping non-YAML file: {name}")
                continue
            if path_problems(name):
                context.logger.warning(f"Skipping file with invalid path: {name}")
                continue
            if entry.file_size > MAX_TEMPLATE_BYTES:
                context.logger.warning(f"Skipping oversized file: {name}")
                continue
            data = archive.read(entry)
            try:
                validate_template(data.decode("utf-8", errors="replace"))
            except ValidationError as e:
                context.logger.warning(f"Skipping invalid template {name}: {e.message}")
                continue
            files[f"templates/{name}"] = data

    if not files:
        raise ValidationError(
            "No valid YAML templates found in archive",
            field_errors={"customTemplateArchive": ["no valid templates"]},
        )
    context.logger.info(f"Validated {len(files)} template(s) from archive")
    return files


def build_scan(
    request: ExecutionRequest, context: ExecutionContext
) -> tuple[list[str], dict[str, str | bytes]]:
    """Return the nuclei argument vector and the files it references."""
    inputs, params = request.inputs, request.params
    targets = dedupe_preserving_order(t.strip() for t in inputs["targets"] if t.strip())

    args = [
        "-duc",
        "-jsonl",
        "-stream",
        "-verbose",
        "-l",
        f"{INPUT_DIR}/targets.txt",
    ]
    files: dict[str, str | bytes] = {"targets.txt": "\n".join(targets)}

    if params["disableHttpx"]:
        args.append("-nh")

    args += ["-rl", str(int(params["rateLimit"]))]
    args += ["-c", str(int(params["concurrency"]))]
    args += ["-timeout", str(int(params["timeout"]))]
    args += ["-retries", str(int(params["retries"]))]

    if params["severity"]:
        args += ["-severity", ",".join(params["severity"])]
    if params["updateTemplates"]:
        args.append("-update-templates")
    if params["followRedirects"]:
        args.append("-follow-redirects")
    if not params["includeRaw"]:
        args.append("-omit-raw")

    if inputs.get("customTemplateYaml"):
        context.emit_progress("Validating YAML template...")
        validate_template(inputs["customTemplateYaml"])
        files["custom-template.yaml"] = inputs["customTemplateYaml"]
        args += ["-t", f"{INPUT_DIR}/custom-template.yaml"]

    if inputs.get("customTemplateArchive"):
        context.emit_progress("Extracting template archive...")
        files.update(extract_template_archive(inputs["customTemplateArchive"], context))
        args += ["-t", f"{INPUT_DIR}/templates/"]

    if params["templateIds"]:
        files["template-ids.txt"] = "\n".join(params["templateIds"])
        args += ["-id", f"{INPUT_DIR}/template-ids.txt"]

    if params["templatePaths"]:
        files["template-paths.txt"] = "\n".join(params["templatePaths"])
        args += ["-t", f"{INPUT_DIR}/template-paths.txt"]

    return args, files


def _finding(payload: dict[str, Any]) -> dict[str, Any] | None:
    # Stats lines carry "duration"; real findings name a template
    if payload.get("duration") or not (payload.get("template-id") or payload.get("template")):
        return None

    info = payload.get("info") if isinstance(payload.get("info"), dict) else {}
    severity = str(info.get("severity") or payload.get("severity") or "info").lower()
    if severity not in SEVERITIES:
        severity = "info"
    tags = info.get("tags") if isinstance(info.get("tags"), list) else payload.get("tags")

    finding: dict[str, Any] = {
        "templateId": payload.get("template-id") or payload.get("template") or "unknown",
        "name": info.get("name") or payload.get("name") or "Unknown",
        "severity": severity,
        "tags": [str(t) for t in tags] if isinstance(tags, list) else [],
        "matchedAt": payload.get("matched-at")
        or payload.get("matched")
        or payload.get("url")
        or payload.get("host")
        or "",
        "timestamp": payload.get("timestamp") or datetime.now(UTC).isoformat(),
    }
    optional = {
        "extractedResults": payload.get("extracted-results"),
        "request": payload.get("request"),
        "response": payload.get("response"),
        "type": payload.get("type"),
        "host": payload.get("host"),
        "ip": payload.get("ip"),
        "curlCommand": payload.get("curl-command") or payload.get("curl"),
    }
    finding.update({k: v for k, v in optional.items() if v is not None})
    return finding


def parse_findings(raw: str) -> tuple[list[dict[str, Any]], list[str]]:
    """Findings from nuclei JSONL output, plus diagnostics for unparsed lines."""
    parsed = parse_ndjson(raw)
    findings = [f for f in (_finding(p) for p in parsed.records) if f is not None]
    errors: list[str] = []
    if parsed.skipped:
        errors.append(f"Skipped {len(parsed.skipped)} non-JSON line(s) in nuclei output")
    return findings, errors


def parse_stats(stderr: str) -> dict[str, Any]:
    """Templates loaded, requests sent and scan duration (seconds) from nuclei's log.

    Missing figures are reported as 0.
    """
    stats: dict[str, Any] = {"templatesLoaded": 0, "requestsSent": 0, "duration": 0.0}
    if match := _TEMPLATES_RE.search(stderr):
        stats["templatesLoaded"] = int(match.group(1) or match.group(2))
    if match := _REQUESTS_RE.search(stderr):
        stats["requestsSent"] = int(match.group(1))
    if match := _DURATION_RE.search(stderr):
        hours, minutes, seconds = match.groups()
        stats["duration"] = int(hours or 0) * 3600 + int(minutes or 0) * 60 + float(seconds)
    return stats


def _no_results(result: ContainerResult) -> bool:
    return NO_RESULTS_MARKER in result.stderr or NO_RESULTS_MARKER in result.stdout


def _empty_output(target_count: int) -> dict[str, Any]:
    return {
        "findings": [],
        "rawOutput": "",
        "targetCount": target_count,
        "findingCount": 0,
        "errors": [],
        "stats": parse_stats(""),
    }


async def execute(request: ExecutionRequest, context: ExecutionContext) -> dict[str, Any]:
    targets = [t for t in request.inputs["targets"] if t.strip()]
    if not targets:
        context.logger.info("No targets supplied; skipping scan")
        return _empty_output(0)

    args, files = build_scan(request, context)
    context.logger.info(f"Starting scan for {len(targets)} target(s)")

    async with context.volumes.isolated(context.tenant_id, context.run_id, files) as volume:
        runner = definition.runner.with_overrides(
            command=args,
            volumes=[context.volumes.mount_spec(volume, INPUT_DIR, read_only=True)],
        )
        result = await run_component(runner, None, request, context, no_results=_no_results)

    findings, errors = parse_findings(result.stdout)
    if result.exit_code != 0:
        context.logger.info("nuclei reported no results")
    context.logger.info(f"Scan complete: {len(findings)} finding(s)")
    context.emit_progress(f"Nuclei found {len(findings)} finding(s)", data={"count": len(findings)})

    return {
        "findings": findings,
        "rawOutput": result.stdout,
        "targetCount": len(targets),
        "findingCount": len(findings),
        "errors": errors,
        "stats": parse_stats(result.stderr),
    }


definition = ComponentDefinition(
    id="secflow.nuclei.scan",
    label="Nuclei Vulnerability Scanner",
    category="security",
    inputs=define_inputs(
        {
            "targets": Port(
                PortType.list_of(PortType.text()),
                label="Targets",
                description="URLs, hosts or IPs to scan.",
            ),
            "customTemplateYaml": Port(
                PortType.text(),
                label="Custom Template (YAML)",
                required=False,
                description="Raw YAML for a single template.",
            ),
            "customTemplateArchive": Port(
                PortType.text(),
                label="Template Archive",
                required=False,
                description="Base64-encoded zip of YAML templates.",
            ),
        }
    ),
    parameters=define_parameters(
        {
            "templateIds": Port(
                PortType.list_of(PortType.text()), label="Template IDs", default=[]
            ),
            "templatePaths": Port(
                PortType.list_of(PortType.text()), label="Template Paths", default=[]
            ),
            "severity": Port(
                PortType.list_of(PortType.text()),
                label="Severity Filter",
                default=[],
                choices=SEVERITIES,
            ),
            "rateLimit": Port(
                PortType.number(), label="Rate Limit", default=150, coerce=True, min=1, max=1000
            ),
            "concurrency": Port(
                PortType.number(), label="Concurrency", default=25, coerce=True, min=1, max=100
            ),
            "timeout": Port(
                PortType.number(), label="Request Timeout", default=10, coerce=True, min=1, max=300
            ),
            "retries": Port(
                PortType.number(), label="Retries", default=1, coerce=True, min=0, max=5
            ),
            "includeRaw": Port(PortType.boolean(), label="Include Raw", default=False, coerce=True),
            "followRedirects": Port(
                PortType.boolean(), label="Follow Redirects", default=False, coerce=True
            ),
            "updateTemplates": Port(
                PortType.boolean(), label="Update Templates", default=False, coerce=True
            ),
            "disableHttpx": Port(
                PortType.boolean(), label="Disable HTTP Probing", default=True, coerce=True
            ),
        }
    ),
    outputs=define_outputs(
        {
            "findings": Port(PortType.list_of(PortType.json()), label="Findings"),
            "rawOutput": Port(PortType.text(), label="Raw Output"),
            "targetCount": Port(PortType.number(), label="Target Count"),
            "findingCount": Port(PortType.number(), label="Finding Count"),
            "errors": Port(PortType.list_of(PortType.text()), label="Errors", default=[]),
            "stats": Port(
                PortType.json(),
                label="Scan Statistics",
                description="templatesLoaded, requestsSent and duration in seconds",
                default={"templatesLoaded": 0, "requestsSent": 0, "duration": 0.0},
            ),
        }
    ),
    execute=execute,
    runner=ContainerRunnerConfig(
        image=NUCLEI_IMAGE,
        entrypoint="nuclei",
        network="bridge",
        timeout_seconds=NUCLEI_TIMEOUT_SECONDS,
        env={"HOME": "/home/nonroot"},
    ),
    docs="Run ProjectDiscovery nuclei against a list of targets with built-in or custom templates.",
    metadata={"slug": "nuclei", "version": "1.0.0", "icon": "Radar"},
)
