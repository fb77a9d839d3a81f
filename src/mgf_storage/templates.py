from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable
from urllib.parse import unquote, urlparse

from jsonschema import Draft202012Validator
from pydantic import ValidationError
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from .models import (
    FolderNode,
    FolderTemplate,
    LoadedTemplate,
    MalformedTemplate,
    ProvisioningTokens,
    SchemaNotFound,
    SchemaValidationFailed,
    TemplateNotFound,
    TokenExpansionError,
)

logger = logging.getLogger(__name__)

TOKEN_PROJECT_CODE = "{PROJECT_CODE}"
TOKEN_PROJECT_NAME = "{PROJECT_NAME}"
TOKEN_CLIENT_NAME = "{CLIENT_NAME}"
TOKEN_EDITOR_INITIALS = "{EDITOR_INITIALS}"
EDITOR_INITIALS_FALLBACK = "_EDITOR_INITIALS_HERE"

NAMING_RULES_SCHEMA_FILE = "mgf.namingRules.schema.json"


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class FolderTemplateLoader:
    """Reads a template file, validates it against its JSON schema and parses it."""

    def load(self, template_path: str | Path, schema_path: str | Path | None = None) -> LoadedTemplate:
        if template_path is None or not str(template_path).strip():
            raise TemplateNotFound("Template path is required")
        path = Path(template_path).expanduser().resolve()
        if not path.is_file():
            raise TemplateNotFound(f"Template file not found: {path}")

        template_bytes = path.read_bytes()
        document = _parse_document(template_bytes, path)

        resolved_schema = (
            Path(schema_path).expanduser().resolve()
            if schema_path is not None
            else _resolve_declared_schema(document, path)
        )
        if not resolved_schema.is_file():
            raise SchemaNotFound(f"Template schema not found: {resolved_schema}")
        naming_rules_path = resolved_schema.parent / NAMING_RULES_SCHEMA_FILE
        if not naming_rules_path.is_file():
            raise SchemaNotFound(f"Naming rules schema not found: {naming_rules_path}")

        _validate(document, path, resolved_schema, naming_rules_path)

        try:
            template = FolderTemplate.model_validate(document)
        except ValidationError as exc:
            raise MalformedTemplate(f"Template {path} could not be parsed: {exc}") from exc
        if template.root is None:
            raise MalformedTemplate(f"Template {path} is missing its root node")

        logger.debug("Loaded template %s from %s (schema %s)", template.template_key, path, resolved_schema)
        return LoadedTemplate(
            template=template,
            template_bytes=template_bytes,
            template_path=path,
            schema_path=resolved_schema,
        )


def _parse_document(raw: bytes, path: Path) -> dict[str, Any]:
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise MalformedTemplate(f"Template {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise MalformedTemplate(f"Template {path} is empty")
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedTemplate(f"Template {path} is not valid JSON: {exc}") from exc
    if not isinstance(document, dict) or not document:
        raise MalformedTemplate(f"Template {path} must be a non-empty JSON object")
    if not document.get("root"):
        raise MalformedTemplate(f"Template {path} is missing its root node")
    return document


def _resolve_declared_schema(document: dict[str, Any], template_path: Path) -> Path:
    declared = document.get("$schema")
    if not isinstance(declared, str) or not declared.strip():
        raise MalformedTemplate(f"Template {template_path} does not declare a $schema")
    declared = declared.strip()
    parsed = urlparse(declared)
    scheme = parsed.scheme.lower()
    if scheme in {"http", "https"}:
        raise MalformedTemplate(f"Remote $schema references are not supported: {declared}")
    if scheme == "file":
        return Path(unquote(parsed.path)).resolve()
    candidate = Path(declared)
    if candidate.is_absolute():
        return candidate.resolve()
    return (template_path.parent / candidate).resolve()


def _load_schema(path: Path) -> dict[str, Any]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SchemaNotFound(f"Schema {path} is not valid JSON: {exc}") from exc


def _validate(document: dict[str, Any], template_path: Path, schema_path: Path, naming_rules_path: Path) -> None:
    schema = _load_schema(schema_path)
    naming_rules = _load_schema(naming_rules_path)
    naming_resource = Resource.from_contents(naming_rules, default_specification=DRAFT202012)
    registry = Registry().with_resources(
        [
            (naming_resource.id() or naming_rules_path.as_uri(), naming_resource),
            (naming_rules_path.as_uri(), naming_resource),
            (NAMING_RULES_SCHEMA_FILE, naming_resource),
        ]
    )
    validator = Draft202012Validator(schema, registry=registry)
    errors = sorted(validator.iter_errors(document), key=lambda error: [str(part) for part in error.absolute_path])
    if errors:
        details = "; ".join(
            f"{'/'.join(str(part) for part in error.absolute_path) or '<root>'}: {error.message}"
            for error in errors
        )
        raise SchemaValidationFailed(f"Schema validation failed for {template_path}: {details}")


# ---------------------------------------------------------------------------
# Token expansion
# ---------------------------------------------------------------------------


def contains_editor_token(name: str) -> bool:
    return TOKEN_EDITOR_INITIALS in name


def _expand_scalars(value: str, tokens: ProvisioningTokens) -> str:
    for token, replacement in (
        (TOKEN_PROJECT_CODE, tokens.project_code),
        (TOKEN_PROJECT_NAME, tokens.project_name),
        (TOKEN_CLIENT_NAME, tokens.client_name),
    ):
        if token not in value:
            continue
        if replacement is None or not replacement.strip():
            raise TokenExpansionError(f"Missing value for token {token}")
        value = value.replace(token, replacement.strip())
    return value


def expand_root_name(name: str, tokens: ProvisioningTokens) -> str:
    """Expand the root folder name. The root is a single folder, so it accepts at most one editor."""
    expanded = _expand_scalars(name, tokens)
    if not contains_editor_token(expanded):
        return expanded
    editors = tokens.editor_initials
    if len(editors) > 1:
        raise TokenExpansionError(
            f"Root name {name!r} uses {TOKEN_EDITOR_INITIALS} but {len(editors)} editors were provided"
        )
    value = editors[0] if editors else EDITOR_INITIALS_FALLBACK
    return expanded.replace(TOKEN_EDITOR_INITIALS, value)


def expand_node_names(name: str, tokens: ProvisioningTokens, optional: bool) -> list[str]:
    """Expand a non-root node name; an editor placeholder fans out to one name per editor."""
    expanded = _expand_scalars(name, tokens)
    if not contains_editor_token(expanded):
        return [expanded]
    if not tokens.editor_initials:
        if optional:
            return []
        return [expanded.replace(TOKEN_EDITOR_INITIALS, EDITOR_INITIALS_FALLBACK)]
    return [expanded.replace(TOKEN_EDITOR_INITIALS, editor) for editor in tokens.editor_initials]


def mark_editor_nodes_optional(template: FolderTemplate) -> FolderTemplate:
    """Copy of ``template`` where every non-root node named with the editor placeholder is optional."""
    if template.root is None:
        return template

    def _mark(node: FolderNode) -> FolderNode:
        update: dict[str, Any] = {"children": tuple(_mark(child) for child in node.children)}
        if contains_editor_token(node.name):
            update["optional"] = True
        return node.model_copy(update=update)

    root = template.root.model_copy(update={"children": tuple(_mark(child) for child in template.root.children)})
    return template.model_copy(update={"root": root})


# ---------------------------------------------------------------------------
# Content templates
# ---------------------------------------------------------------------------


def _readme_start_here(tokens: ProvisioningTokens) -> str:
    lines = [
        "# Project Starter",
        "",
        f"Project Code: {tokens.project_code or ''}",
        f"Project Name: {tokens.project_name or ''}",
    ]
    if tokens.client_name and tokens.client_name.strip():
        lines.append(f"Client: {tokens.client_name}")
    if tokens.editor_initials:
        lines.append(f"Editors: {', '.join(tokens.editor_initials)}")
    lines.extend(
        [
            "",
            "This folder structure was created by the mgf-storage provisioner.",
            "Place additional notes for the team here.",
        ]
    )
    return "\n".join(lines) + "\n"


CONTENT_TEMPLATES: dict[str, Callable[[ProvisioningTokens], str]] = {
    "readme-start-here": _readme_start_here,
}


def render_content_template(key: str, tokens: ProvisioningTokens) -> str | None:
    """Render a named content template; ``None`` when the key is unknown."""
    renderer = CONTENT_TEMPLATES.get(key.strip().lower())
    if renderer is None:
        return None
    return renderer(tokens)
