"""
TruffleHog - find and verify leaked credentials.

Remote sources (git, GitHub, GitLab, S3, GCS, Docker images) are scanned
directly. Filesystem scans never see the host: the caller supplies a
``filesystemContent`` map which is written into the run's isolated volume and
mounted read-only at ``/scan``.

TruffleHog exits 183 when ``--fail`` is set and secrets were found; that is a
result, not a failure.
"""

from __future__ import annotations

from typing import Any

from secflow.component import ComponentDefinition, ExecutionRequest
from secflow.context import ExecutionContext, ProgressLevel
from secflow.errors import ValidationError
from secflow.normalize import normalize_output
from secflow.ports import Port, PortType, define_inputs, define_outputs, define_parameters
from secflow.runner import ContainerRunnerConfig, run_component

TRUFFLEHOG_IMAGE = "trufflesecurity/trufflehog:latest"
TRUFFLEHOG_TIMEOUT_SECONDS = 300
SCAN_DIR = "/scan"

SCAN_TYPES = ("git", "github", "gitlab", "s3", "gcs", "filesystem", "docker")

SECRETS_FOUND_EXIT = 183


def resolve_target(inputs: dict[str, Any]) -> str:
    """Validate the scan target against the scan type and return what trufflehog scans."""
    scan_type = inputs["scanType"]
    target = (inputs.get("scanTarget") or "").strip()
    content = inputs.get("filesystemContent") or {}

    if content and scan_type != "filesystem":
        raise ValidationError(
            "filesystemContent can only be used with scanType=filesystem",
            field_errors={"filesystemContent": ["only valid for filesystem scans"]},
        )
    if scan_type == "filesystem":
        if not content:
            raise ValidationError(
                "Filesystem scans require filesystemContent",
                field_errors={"filesystemContent": ["required for filesystem scans"]},
            )
        return SCAN_DIR

    if not target:
        raise ValidationError(
            f"Scan target is required for {scan_type} scans",
            field_errors={"scanTarget": ["Field is required"]},
        )
    if target.startswith("-"):
        raise ValidationError(
            "Scan target must not start with '-'",
            field_errors={"scanTarget": ["must not look like a command-line flag"]},
        )
    return target


def build_args(scan_type: str, target: str, params: dict[str, Any]) -> list[str]:
    args = [scan_type]
    match scan_type:
        case "s3" | "gcs":
            args.append(f"--bucket={target}")
        case "docker":
            args.append(f"--image={target}")
        case _:
            args.append(target)

    args.append("--results=verified" if params["onlyVerified"] else "--results=verified,unknown")
    args.append("--json")

    if params.get("branch") and scan_type in ("git", "github"):
        args.append(f"--branch={params['branch']}")
    if params.get("sinceCommit") and scan_type == "git":
        args.append(f"--since-commit={params['sinceCommit']}")
    if params["includeIssueComments"] and scan_type == "github":
        args.append("--issue-comments")
    if params["includePRComments"] and scan_type == "github":
        args.append("--pr-comments")
    if params["failOnSecrets"]:
        args.append("--fail")
    return args


def parse_secrets(raw: str) -> dict[str, Any]:
    normalized = normalize_output(raw, tool="trufflehog")
    # Log lines share the stream with results; only detector hits are secrets
    secrets = [r for r in normalized.records if "DetectorName" in r or "DetectorType" in r]
    verified = sum(1 for s in secrets if s.get("Verified") is True)
    return {
        "secrets": secrets,
        "rawOutput": raw,
        "secretCount": len(secrets),
        "verifiedCount": verified,
        "hasVerifiedSecrets": verified > 0,
        "errors": normalized.errors,
    }


async def execute(request: ExecutionRequest, context: ExecutionContext) -> dict[str, Any]:
    inputs, params = request.inputs, request.params
    scan_type = inputs["scanType"]
    target = resolve_target(inputs)
    args = build_args(scan_type, target, params)

    context.logger.info(f"Scanning {scan_type} target")
    context.emit_progress(
        "Launching TruffleHog scan",
        data={"scanType": scan_type, "onlyVerified": params["onlyVerified"]},
    )

    if scan_type == "filesystem":
        files = dict(inputs["filesystemContent"])
        async with context.volumes.isolated(context.tenant_id, context.run_id, files) as volume:
            runner = definition.runner.with_overrides(
                command=args,
                volumes=[context.volumes.mount_spec(volume, SCAN_DIR, read_only=True)],
            )
            result = await run_component(
                runner, None, request, context, success_exit_codes=(0, SECRETS_FOUND_EXIT)
            )
    else:
        runner = definition.runner.with_overrides(command=args)
        result = await run_component(
            runner, None, request, context, success_exit_codes=(0, SECRETS_FOUND_EXIT)
        )

    output = parse_secrets(result.stdout)
    context.logger.info(
        f"Found {output['secretCount']} secret(s) ({output['verifiedCount']} verified)"
    )
    if output["hasVerifiedSecrets"]:
        context.emit_progress(
            f"Found {output['verifiedCount']} verified secret(s)",
            level=ProgressLevel.WARN,
            data={"secretCount": output["secretCount"], "verifiedCount": output["verifiedCount"]},
        )
    elif output["secretCount"]:
        context.emit_progress(f"Found {output['secretCount']} potential secret(s) (unverified)")
    else:
        context.emit_progress("No secrets detected")
    return output


definition = ComponentDefinition(
    id="secflow.trufflehog.scan",
    label="TruffleHog",
    category="security",
    inputs=define_inputs(
        {
            "scanType": Port(
                PortType.text(), label="Scan Type", default="git", choices=SCAN_TYPES
            ),
            "scanTarget": Port(
                PortType.text(),
                label="Scan Target",
                required=False,
                description="Repository URL, bucket name or image. Ignored for filesystem scans.",
            ),
            "filesystemContent": Port(
                PortType.map_of(PortType.text()),
                label="Filesystem Content",
                required=False,
                description="Relative file path to content, scanned from an isolated volume.",
            ),
        }
    ),
    parameters=define_parameters(
        {
            "onlyVerified": Port(PortType.boolean(), label="Only Verified", default=True, coerce=True),
            "branch": Port(PortType.text(), label="Branch", required=False),
            "sinceCommit": Port(PortType.text(), label="Since Commit", required=False),
            "includeIssueComments": Port(
                PortType.boolean(), label="Include Issue Comments", default=False, coerce=True
            ),
            "includePRComments": Port(
                PortType.boolean(), label="Include PR Comments", default=False, coerce=True
            ),
            "failOnSecrets": Port(
                PortType.boolean(), label="Exit 183 On Secrets", default=False, coerce=True
            ),
        }
    ),
    outputs=define_outputs(
        {
            "secrets": Port(PortType.list_of(PortType.json()), label="Detected Secrets"),
            "rawOutput": Port(PortType.text(), label="Raw Output"),
            "secretCount": Port(PortType.number(), label="Secret Count"),
            "verifiedCount": Port(PortType.number(), label="Verified Count"),
            "hasVerifiedSecrets": Port(PortType.boolean(), label="Has Verified Secrets"),
            "errors": Port(PortType.list_of(PortType.text()), label="Errors", default=[]),
        }
    ),
    execute=execute,
    runner=ContainerRunnerConfig(
        image=TRUFFLEHOG_IMAGE,
        entrypoint="trufflehog",
        network="bridge",
        timeout_seconds=TRUFFLEHOG_TIMEOUT_SECONDS,
        env={"HOME": "/tmp"},
    ),
    docs="Scan git history, cloud storage, images or supplied files for leaked credentials.",
    metadata={"slug": "trufflehog", "version": "1.0.0", "icon": "Key"},
)
