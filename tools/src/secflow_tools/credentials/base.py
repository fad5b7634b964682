"""
Credential lookup for components that call authenticated APIs.

A credential has a logical name ("virustotal"), an environment variable and
the component ids that need it. Specs live in category modules
(threat_intel.py, ...) and are merged in ``credentials/__init__.py``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values
from secflow.errors import ConfigurationError


@dataclass
class CredentialSpec:
    """Where a credential comes from and who needs it."""

    env_var: str
    """Environment variable holding the secret (e.g. 'VIRUSTOTAL_API_KEY')"""

    components: list[str] = field(default_factory=list)
    """Ids of the components that read this credential"""

    required: bool = True
    """False when the components degrade gracefully without it"""

    help_url: str = ""
    """Page where an operator can create the key"""

    description: str = ""

    api_key_instructions: str = ""

    health_check_endpoint: str = ""
    """Cheap authenticated endpoint for checking that a key works"""


class CredentialError(ConfigurationError):
    """A credential a component depends on is not configured."""


class CredentialManager:
    """
    Resolves credentials from test overrides, the environment and ``.env``.

    Lookups are not cached: a key added to ``.env`` is seen by the next
    invocation without restarting the worker.

    Usage:
        creds = CredentialManager()
        api_key = creds.resolve("virustotal", request.inputs.get("apiKey"))

        creds = CredentialManager.for_testing({"virustotal": "test-key"})
    """

    def __init__(
        self,
        specs: dict[str, CredentialSpec] | None = None,
        _overrides: dict[str, str] | None = None,
        dotenv_path: Path | None = None,
    ):
        if specs is None:
            # Imported here; the package __init__ imports this module
            from . import CREDENTIAL_SPECS

            specs = CREDENTIAL_SPECS
        self._specs = specs
        self._overrides = dict(_overrides or {})
        self._dotenv_path = dotenv_path
        self._by_component = {
            component_id: name
            for name, spec in self._specs.items()
            for component_id in spec.components
        }

    @classmethod
    def for_testing(
        cls,
        overrides: dict[str, str],
        specs: dict[str, CredentialSpec] | None = None,
        dotenv_path: Path | None = None,
    ) -> CredentialManager:
        """Manager whose ``overrides`` win over every other source.

        Pass a ``dotenv_path`` that does not exist to ignore the developer's
        own ``.env``.
        """
        return cls(specs=specs, _overrides=overrides, dotenv_path=dotenv_path)

    def _spec(self, name: str) -> CredentialSpec:
        spec = self._specs.get(name)
        if spec is None:
            raise KeyError(f"Unknown credential '{name}'. Available: {sorted(self._specs)}")
        return spec

    def _from_dotenv(self, env_var: str) -> str | None:
        path = self._dotenv_path or Path.cwd() / ".env"
        if not path.exists():
            return None
        # dotenv_values leaves os.environ untouched
        return dotenv_values(path).get(env_var)

    def get(self, name: str) -> str | None:
        """Credential value, or None when unset.

        Order: test overrides, then the process environment, then ``.env``.

        Raises:
            KeyError: ``name`` is not a known credential
        """
        spec = self._spec(name)
        if name in self._overrides:
            return self._overrides[name]
        return os.environ.get(spec.env_var) or self._from_dotenv(spec.env_var)

    def get_spec(self, name: str) -> CredentialSpec:
        return self._spec(name)

    def is_available(self, name: str) -> bool:
        return bool(self.get(name))

    def require(self, name: str) -> str:
        """Like ``get`` but a missing value raises CredentialError naming the variable."""
        value = self.get(name)
        if value:
            return value
        spec = self._spec(name)
        hint = f" (get one at {spec.help_url})" if spec.help_url else ""
        raise CredentialError(
            f"Missing credential '{name}'. Set {spec.env_var}{hint}",
            config_key=spec.env_var,
        )

    def resolve(self, name: str, explicit: str | None = None, *, input_port: str = "apiKey") -> str:
        """
        Key for one invocation: ``explicit`` when the caller connected one,
        otherwise the configured credential.

        Raises:
            ConfigurationError: neither is available. ``config_key`` names
                ``input_port`` so the caller can point at the missing input.
        """
        if explicit:
            return explicit
        try:
            return self.require(name)
        except CredentialError as e:
            raise ConfigurationError(
                f"{e.message}, or connect the {input_port} input",
                config_key=input_port,
                details={"env_var": self._spec(name).env_var},
            ) from e

    def get_missing_for_components(
        self, component_ids: list[str]
    ) -> list[tuple[str, CredentialSpec]]:
        """Required credentials the given components would fail without."""
        names = dict.fromkeys(
            self._by_component[c] for c in component_ids if c in self._by_component
        )
        return [
            (name, self._specs[name])
            for name in names
            if self._specs[name].required and not self.is_available(name)
        ]

    def validate_for_components(self, component_ids: list[str]) -> None:
        """
        Fail fast, before any component runs, if a credential is missing.

        Raises:
            CredentialError: listing every missing variable
        """
        missing = self.get_missing_for_components(component_ids)
        if not missing:
            return
        lines = ["Missing credentials for the requested components:", ""]
        for _name, spec in missing:
            affected = ", ".join(c for c in component_ids if c in spec.components)
            lines.append(f"  {spec.env_var} (needed by {affected})")
            if spec.description:
                lines.append(f"    {spec.description}")
            if spec.help_url:
                lines.append(f"    Get a key at {spec.help_url}")
        raise CredentialError(
            "\n".join(lines),
            config_key=missing[0][1].env_var,
            details={"missing": [spec.env_var for _, spec in missing]},
        )
