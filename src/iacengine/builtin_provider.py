"""Bundled reference provider (provider id ``builtin``).

Resource types:

null_resource
    Does nothing. ``triggers`` (a map) forces replacement when it changes;
    ``id`` is computed at creation.

local_file
    A file on the local filesystem. ``filename`` and ``content`` force
    replacement, ``file_permission`` (octal string, default ``0644``) is
    updated in place and keeps its recorded value when unset, ``id`` is the
    SHA-1 of the content. Refresh detects a deleted file (gone) and edited
    content (drift).
"""

from __future__ import annotations

import hashlib
import logging
import os
import secrets
from pathlib import Path

from .models import (
    ActionKind,
    AttributeMode,
    AttributeSchema,
    AttributeValue,
    ChangeAction,
    ResourceSchema,
    ResourceSpec,
    StateEntity,
    StringValue,
    to_python,
)
from .provider import ProviderError

logger = logging.getLogger(__name__)

BUILTIN_PROVIDER_ID = "builtin"
DEFAULT_FILE_PERMISSION = "0644"

_COMPUTED_ID = AttributeSchema(computed=True)
_FORCE_NEW = AttributeSchema(mode=AttributeMode.FORCE_NEW)

SCHEMAS: dict[str, ResourceSchema] = {
    "null_resource": ResourceSchema(
        type="null_resource",
        attributes={"triggers": _FORCE_NEW, "id": _COMPUTED_ID},
    ),
    "local_file": ResourceSchema(
        type="local_file",
        attributes={
            "filename": _FORCE_NEW,
            "content": _FORCE_NEW,
            "file_permission": AttributeSchema(computed=True),
            "id": _COMPUTED_ID,
        },
    ),
}


def _content_id(content: str) -> str:
    return hashlib.sha1(content.encode("utf-8")).hexdigest()


def _string(attributes: dict[str, AttributeValue], name: str, address: str, default: str | None = None) -> str:
    value = attributes.get(name)
    if value is None:
        if default is None:
            raise ProviderError(f"{address}: attribute '{name}' is required", address)
        return default
    if not isinstance(value, StringValue):
        raise ProviderError(f"{address}: attribute '{name}' must be a string", address)
    return value.value


def _permission(value: str, address: str) -> int:
    try:
        mode = int(value, 8)
    except ValueError as e:
        raise ProviderError(f"{address}: file_permission must be an octal string: {value}", address) from e
    if not 0 <= mode <= 0o777:
        raise ProviderError(f"{address}: file_permission out of range: {value}", address)
    return mode


class BuiltinProvider:
    """Provider for ``null_resource`` and ``local_file``."""

    def schema(self, resource_type: str) -> ResourceSchema:
        schema = SCHEMAS.get(resource_type)
        if schema is None:
            raise ProviderError(f"Unsupported resource type '{resource_type}'")
        return schema

    def read_resource(self, entity: StateEntity) -> StateEntity | None:
        if entity.type != "local_file":
            return entity
        path = Path(_string(entity.attributes, "filename", entity.address))
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("File no longer exists", extra={"address": entity.address, "path": str(path)})
            return None
        except OSError as e:
            raise ProviderError(f"{entity.address}: cannot read {path}: {e}", entity.address) from e

        attributes = dict(entity.attributes)
        attributes["content"] = StringValue(value=content)
        attributes["id"] = StringValue(value=_content_id(content))
        return entity.model_copy(update={"attributes": attributes})

    def apply_operation(
        self,
        action: ChangeAction,
        spec: ResourceSpec | None,
        resolved_attributes: dict[str, AttributeValue],
        prior: StateEntity | None,
    ) -> StateEntity | None:
        resource_type = spec.type if spec else prior.type if prior else None
        if resource_type not in SCHEMAS:
            raise ProviderError(f"Unsupported resource type '{resource_type}'")

        if action.kind == ActionKind.DELETE:
            if prior is not None and resource_type == "local_file":
                self._delete_file(prior)
            return None

        assert spec is not None
        if resource_type == "null_resource":
            return self._apply_null(action, spec, resolved_attributes, prior)
        return self._apply_file(action, spec, resolved_attributes)

    def _apply_null(
        self,
        action: ChangeAction,
        spec: ResourceSpec,
        attributes: dict[str, AttributeValue],
        prior: StateEntity | None,
    ) -> StateEntity:
        recorded = dict(attributes)
        if action.kind == ActionKind.UPDATE and prior is not None and "id" in prior.attributes:
            recorded["id"] = prior.attributes["id"]
        else:
            recorded["id"] = StringValue(value=str(secrets.randbelow(10**18)))
        return StateEntity(address=spec.address, provider_id=spec.provider_id, attributes=recorded)

    def _apply_file(
        self,
        action: ChangeAction,
        spec: ResourceSpec,
        attributes: dict[str, AttributeValue],
    ) -> StateEntity:
        address = spec.address
        path = Path(_string(attributes, "filename", address))
        content = _string(attributes, "content", address)
        permission = _string(attributes, "file_permission", address, default=DEFAULT_FILE_PERMISSION)
        mode = _permission(permission, address)

        try:
            if action.kind == ActionKind.CREATE:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(content, encoding="utf-8")
            os.chmod(path, mode)
        except OSError as e:
            raise ProviderError(f"{address}: cannot write {path}: {e}", address) from e

        logger.info(
            "Wrote local file",
            extra={"address": address, "path": str(path), "action": action.kind.value},
        )
        recorded = dict(attributes)
        recorded["content"] = StringValue(value=content)
        recorded["file_permission"] = StringValue(value=permission)
        recorded["id"] = StringValue(value=_content_id(content))
        return StateEntity(address=address, provider_id=spec.provider_id, attributes=recorded)

    def _delete_file(self, prior: StateEntity) -> None:
        path = Path(str(to_python(prior.attributes["filename"])))
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise ProviderError(f"{prior.address}: cannot delete {path}: {e}", prior.address) from e
        logger.info("Deleted local file", extra={"address": prior.address, "path": str(path)})
