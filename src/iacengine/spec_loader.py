"""Configuration file loading with validation.

A configuration is one YAML file, or a directory whose ``*.yaml`` and
``*.yml`` files are merged in sorted order:

    resources:
      - type: local_file
        name: greeting
        attributes:
          filename: out/greeting.txt
          content: hello
        lifecycle:
          createBeforeDestroy: true
      - type: null_resource
        name: notify
        attributes:
          triggers:
            file_id: {$ref: local_file.greeting.id}
    outputs:
      greeting_path: {$ref: local_file.greeting.filename}

A Kubernetes-style wrapper (``apiVersion`` / ``kind`` / ``spec``) is also
accepted; the ``spec`` section then holds the document.

SECURITY: file sizes are checked before reading and YAML is parsed with
``safe_load`` only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import MAX_CONFIG_FILE_SIZE_BYTES
from .models import AttributeValue, Lifecycle, ResourceSpec, to_value, to_values

logger = logging.getLogger(__name__)

CONFIG_FILE_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


class ResourceDocument(BaseModel):
    """A resource as written in a configuration file."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    type: str
    name: str
    provider: str = "builtin"
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)


class ConfigurationDocument(BaseModel):
    """Top-level structure of a configuration file."""

    model_config = ConfigDict(extra="forbid")

    resources: list[ResourceDocument] = Field(default_factory=list)
    outputs: dict[str, Any] = Field(default_factory=dict)


@dataclass
class Configuration:
    """Declared resources and outputs, ready for planning."""

    specs: list[ResourceSpec] = field(default_factory=list)
    outputs: dict[str, AttributeValue] = field(default_factory=dict)
    sources: list[Path] = field(default_factory=list)

    @property
    def addresses(self) -> list[str]:
        return [spec.address for spec in self.specs]


def _format_validation_error(path: Path, error: ValidationError) -> str:
    """Format Pydantic validation errors for readability."""
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {loc}: {item['msg']}")
    return f"Validation failed for {path}:\n" + "\n".join(errors)


def _read_document(path: Path) -> ConfigurationDocument:
    # SECURITY: Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat configuration file {path}: {e}") from e

    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Configuration file exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read configuration file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        return ConfigurationDocument()
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Configuration file must contain a YAML mapping: {path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        raw_data = raw_data.get("spec") or {}
        if not isinstance(raw_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")

    try:
        return ConfigurationDocument.model_validate(raw_data)
    except ValidationError as e:
        raise SpecLoadError(_format_validation_error(path, e)) from e


def _to_spec(path: Path, index: int, resource: ResourceDocument) -> ResourceSpec:
    try:
        return ResourceSpec(
            type=resource.type,
            name=resource.name,
            provider_id=resource.provider,
            attributes=to_values(resource.attributes),
            depends_on=tuple(resource.depends_on),
            lifecycle=resource.lifecycle,
        )
    except ValidationError as e:
        raise SpecLoadError(_format_validation_error(path, e)) from e
    except (TypeError, ValueError) as e:
        raise SpecLoadError(f"Invalid resource at {path}: resources.{index}: {e}") from e


def config_files(path: Path) -> list[Path]:
    """Configuration files making up path (a file or a directory)."""
    if path.is_dir():
        return sorted(p for p in path.iterdir() if p.is_file() and p.suffix in CONFIG_FILE_SUFFIXES)
    if not path.exists():
        raise SpecLoadError(f"Configuration not found: {path}")
    return [path]


def load_configuration(path: Path) -> Configuration:
    """Load and validate a configuration file or directory.

    Args:
        path: A YAML file, or a directory of YAML files.

    Returns:
        Validated configuration.

    Raises:
        SpecLoadError: If any file cannot be loaded or fails validation, or
            two files declare the same resource or output.
    """
    files = config_files(path)
    if not files:
        raise SpecLoadError(f"No configuration files (*.yaml, *.yml) found in {path}")

    configuration = Configuration(sources=files)
    declared_in: dict[str, Path] = {}
    output_in: dict[str, Path] = {}

    for file in files:
        document = _read_document(file)
        for index, resource in enumerate(document.resources):
            spec = _to_spec(file, index, resource)
            if spec.address in declared_in:
                raise SpecLoadError(
                    f"Resource {spec.address} declared in both {declared_in[spec.address]} and {file}"
                )
            declared_in[spec.address] = file
            configuration.specs.append(spec)

        for name, value in document.outputs.items():
            if name in output_in:
                raise SpecLoadError(f"Output '{name}' declared in both {output_in[name]} and {file}")
            output_in[name] = file
            try:
                configuration.outputs[name] = to_value(value)
            except (TypeError, ValueError) as e:
                raise SpecLoadError(f"Invalid output '{name}' in {file}: {e}") from e

    logger.info(
        "Loaded configuration",
        extra={
            "path": str(path),
            "files": len(files),
            "resources": len(configuration.specs),
            "outputs": len(configuration.outputs),
        },
    )
    return configuration
