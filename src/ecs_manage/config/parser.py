"""YAML manifest parser for ecs-manage."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from .models import RolloutSettings, ServiceSpec


DEFAULT_MANIFEST = "ecs-manage.yaml"


class ConfigValidationError(Exception):
    """Exception raised when manifest validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)


class Config:
    """Manifest describing the services ecs-manage reconciles."""

    def __init__(self, config_path: str = DEFAULT_MANIFEST):
        """Initialize configuration manager.

        Args:
            config_path: Path to the ecs-manage.yaml manifest
        """
        self.config_path = Path(config_path)
        self.data: Dict = {}
        self.settings: RolloutSettings = RolloutSettings()
        self.services: List[ServiceSpec] = []

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Build a validated configuration from already parsed data."""
        config = cls()
        config.data = data or {}
        config._validate_and_parse()
        return config

    def load(self) -> "Config":
        """Load and validate the manifest from YAML.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If the manifest is invalid
            FileNotFoundError: If the manifest doesn't exist
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Manifest not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        self._validate_and_parse()
        return self

    def _validate_and_parse(self) -> None:
        if not isinstance(self.data, dict):
            raise ConfigValidationError("Manifest must be a mapping")

        errors: List[Dict] = []

        settings_data = self.data.get("settings") or {}
        try:
            self.settings = RolloutSettings(**settings_data)
        except ValidationError as e:
            errors.extend(self._collect(e, ["settings"]))
        except TypeError:
            errors.append({"loc": ["settings"], "msg": "settings must be a mapping"})

        services_data = self.data.get("services")
        if services_data is None:
            errors.append({"loc": ["services"], "msg": "Required field 'services' is missing"})
        elif not isinstance(services_data, list) or len(services_data) == 0:
            errors.append({"loc": ["services"], "msg": "At least one service must be defined"})
        else:
            self.services = []
            for idx, service_data in enumerate(services_data):
                if not isinstance(service_data, dict):
                    errors.append({"loc": ["services", idx], "msg": "Service must be a mapping"})
                    continue
                try:
                    self.services.append(ServiceSpec(**self._apply_defaults(service_data)))
                except ValidationError as e:
                    errors.extend(self._collect(e, ["services", idx]))

        names = [spec.service_key for spec in self.services]
        for key in sorted({n for n in names if names.count(n) > 1}):
            errors.append({"loc": ["services"], "msg": f"Service '{key}' is defined more than once"})

        if errors:
            raise ConfigValidationError(
                f"Manifest validation failed with {len(errors)} error(s)",
                errors,
            )

    def _apply_defaults(self, service_data: Dict[str, Any]) -> Dict[str, Any]:
        """Fill the cluster and task family when a service omits them."""
        data = dict(service_data)

        if "cluster" not in data and self.settings.cluster:
            data["cluster"] = self.settings.cluster

        task_definition = data.get("task_definition")
        if isinstance(task_definition, dict) and "family" not in task_definition:
            data["task_definition"] = {**task_definition, "family": data.get("name")}

        return data

    @staticmethod
    def _collect(error: ValidationError, prefix: List[Any]) -> List[Dict]:
        return [
            {"loc": prefix + list(item["loc"]), "msg": item["msg"]}
            for item in error.errors()
        ]

    def get_service(self, name: str) -> ServiceSpec:
        """Get a service by name or ``cluster/name``.

        Raises:
            KeyError: If the service is not defined
        """
        for spec in self.services:
            if name in (spec.name, spec.service_key):
                return spec
        raise KeyError(f"Service '{name}' not found in {self.config_path}")

    def select(self, names: Optional[List[str]] = None) -> List[ServiceSpec]:
        """Services to reconcile, all of them when no names are given."""
        if not names:
            return list(self.services)
        return [self.get_service(name) for name in names]
