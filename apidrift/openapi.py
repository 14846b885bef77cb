"""
OpenAPI specification handling for the API drift monitor.

This module parses, validates and normalizes uploaded OpenAPI/Swagger
documents, and extracts the operations, servers and schemas the
reconciliation engine works with. Swagger 2.0 input is converted to
OpenAPI 3.0 on the way in.
"""

import copy
import json
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import jsonschema
import yaml

from apidrift.enums import SpecExtension
from apidrift.exceptions import InvalidPathError, UnprocessableContractError
from apidrift.logger import get_logger
from apidrift.paths import validate_path
from apidrift.swagger import convert_swagger_to_openapi

# Get logger
logger = get_logger("openapi")

HTTP_METHODS = ["get", "post", "put", "delete", "patch", "head", "options", "trace"]

DEFAULT_PORTS = {"http": 80, "https": 443}

# OpenAPI 3.x envelope schema (structure only, operations are checked lazily)
OPENAPI_3_SCHEMA = {
    "type": "object",
    "required": ["openapi", "info", "paths"],
    "properties": {
        "openapi": {"type": "string", "pattern": "^3\\.[01]\\.\\d+$"},
        "info": {
            "type": "object",
            "required": ["title", "version"],
            "properties": {
                "title": {"type": "string"},
                "version": {"type": "string"}
            }
        },
        "servers": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["url"],
                "properties": {
                    "url": {"type": "string"},
                    "variables": {"type": "object"}
                }
            }
        },
        "paths": {
            "type": "object",
            "propertyNames": {"pattern": "^/"},
            "additionalProperties": {"type": "object"}
        },
        "components": {"type": "object"}
    }
}

# Swagger 2.0 envelope schema
SWAGGER_2_SCHEMA = {
    "type": "object",
    "required": ["swagger", "info", "paths"],
    "properties": {
        "swagger": {"type": "string", "enum": ["2.0"]},
        "info": {
            "type": "object",
            "required": ["title", "version"],
            "properties": {
                "title": {"type": "string"},
                "version": {"type": "string"}
            }
        },
        "host": {"type": "string"},
        "basePath": {"type": "string"},
        "schemes": {
            "type": "array",
            "items": {"type": "string", "enum": ["http", "https", "ws", "wss"]}
        },
        "paths": {
            "type": "object",
            "propertyNames": {"pattern": "^/"},
            "additionalProperties": {"type": "object"}
        },
        "definitions": {"type": "object"}
    }
}

_SERVER_VARIABLE_RE = re.compile(r"\{([^{}]+)\}")


@dataclass
class SpecDocument:
    """A parsed, validated and normalized spec upload."""
    spec_object: Dict[str, Any]
    spec_text: str
    extension: SpecExtension
    source_version: str


def get_extension(file_name: str, extension: Optional[str] = None) -> SpecExtension:
    """
    Work out whether a spec upload is JSON or YAML.

    Args:
        file_name: Uploaded file name
        extension: Explicit extension, which wins over the file name

    Returns:
        SpecExtension

    Raises:
        UnprocessableContractError: If the format is not JSON or YAML
    """
    value = extension or os.path.splitext(file_name)[1]
    value = value.lower().lstrip(".")
    if value == "yml":
        value = "yaml"
    try:
        return SpecExtension(value)
    except ValueError:
        raise UnprocessableContractError(
            f"Unsupported spec file format '{value}'. Only JSON and YAML are supported.",
            {"file_name": file_name}
        )


def parse_spec_text(spec_text: str, extension: SpecExtension) -> Dict[str, Any]:
    """Parse raw spec text; parse failures are unprocessable contracts."""
    try:
        if extension == SpecExtension.YAML:
            spec = yaml.safe_load(spec_text)
        else:
            spec = json.loads(spec_text)
    except (yaml.YAMLError, ValueError) as e:
        raise UnprocessableContractError(
            f"Unable to parse spec file as {extension.value}: {str(e)}"
        )
    if not isinstance(spec, dict):
        raise UnprocessableContractError("Spec file must contain a JSON/YAML object.")
    return spec


def get_spec_version(spec: Dict[str, Any]) -> str:
    """
    Return the declared version of a spec document.

    Raises:
        UnprocessableContractError: If no OpenAPI/Swagger version is declared
    """
    version = spec.get("openapi") or spec.get("swagger")
    if not version:
        raise UnprocessableContractError(
            "Invalid OpenAPI Spec: No 'swagger' or 'openapi' field found."
        )
    return str(version)


def is_openapi_31(spec: Dict[str, Any]) -> bool:
    return str(spec.get("openapi", "")).startswith("3.1")


def validate_openapi_spec(spec: Dict[str, Any]) -> None:
    """
    Validate an OpenAPI/Swagger document against the envelope schema.

    Args:
        spec: The parsed specification dictionary

    Raises:
        UnprocessableContractError: Listing every structural error found
    """
    version = get_spec_version(spec)
    if version == "2.0":
        schema = SWAGGER_2_SCHEMA
    elif version.startswith("3."):
        schema = OPENAPI_3_SCHEMA
    else:
        raise UnprocessableContractError(
            f"Unsupported OpenAPI/Swagger version {version}. "
            "Only OpenAPI 3.0.x, 3.1.x and Swagger 2.0 are supported."
        )

    validator = jsonschema.Draft7Validator(schema)
    errors = sorted(validator.iter_errors(spec), key=lambda e: list(e.absolute_path))
    if errors:
        messages = [
            f"{'/'.join(str(p) for p in e.absolute_path) or '<root>'}: {e.message}"
            for e in errors
        ]
        logger.error(f"OpenAPI specification validation failed: {'; '.join(messages)}")
        raise UnprocessableContractError("Invalid OpenAPI Spec", {"errors": messages})


def serialize_spec(spec: Dict[str, Any], extension: SpecExtension) -> str:
    if extension == SpecExtension.YAML:
        return yaml.safe_dump(spec, sort_keys=False)
    return json.dumps(spec, indent=2)


def load_spec_document(spec_text: str, file_name: str,
                       extension: Optional[str] = None) -> SpecDocument:
    """
    Parse, validate and normalize an uploaded spec.

    Swagger 2.0 documents are converted to OpenAPI 3.0 and re-serialized in
    the upload's own format.

    Args:
        spec_text: Raw document text
        file_name: Uploaded file name, used to detect the format
        extension: Explicit format override

    Returns:
        SpecDocument

    Raises:
        UnprocessableContractError: If the document cannot be accepted
    """
    spec_extension = get_extension(file_name, extension)
    spec = parse_spec_text(spec_text, spec_extension)
    version = get_spec_version(spec)
    if "swagger" in spec and not isinstance(spec["swagger"], str):
        # Unquoted YAML `swagger: 2.0` parses as a float
        spec["swagger"] = version
    validate_openapi_spec(spec)

    if version == "2.0":
        spec = convert_swagger_to_openapi(spec)
        spec_text = serialize_spec(spec, spec_extension)
        logger.info(f"Converted Swagger 2.0 spec {file_name} to OpenAPI {spec['openapi']}")

    return SpecDocument(
        spec_object=spec,
        spec_text=spec_text,
        extension=spec_extension,
        source_version=version
    )


def load_openapi_spec(spec_path: str) -> SpecDocument:
    """
    Load and normalize an OpenAPI/Swagger specification file.

    Raises:
        FileNotFoundError: If the specification file does not exist
        UnprocessableContractError: If the document cannot be accepted
    """
    if not os.path.exists(spec_path):
        logger.error(f"OpenAPI specification file not found: {spec_path}")
        raise FileNotFoundError(f"OpenAPI specification file not found: {spec_path}")

    with open(spec_path, "r") as f:
        spec_text = f.read()
    return load_spec_document(spec_text, os.path.basename(spec_path))


# ----------------------------------------------------------------------------
# References
# ----------------------------------------------------------------------------

def resolve_ref(root: Dict[str, Any], ref: str) -> Any:
    """
    Resolve an internal JSON pointer such as ``#/components/schemas/User``.

    Raises:
        UnprocessableContractError: For external or dangling references
    """
    if not ref.startswith("#/"):
        raise UnprocessableContractError(f"Only internal references are supported: {ref}")

    node: Any = root
    for part in ref[2:].split("/"):
        part = part.replace("~1", "/").replace("~0", "~")
        if isinstance(node, dict) and part in node:
            node = node[part]
        elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
            node = node[int(part)]
        else:
            raise UnprocessableContractError(f"Unresolvable reference: {ref}")
    return node


def dereference(spec: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return a copy of the spec with every internal ``$ref`` inlined.

    A reference that points back into its own expansion becomes an empty
    (accept anything) schema. Expansions that did not cut a cycle are
    shared between every use of the same reference.
    """
    expanded: Dict[str, Any] = {}
    cuts: List[str] = []

    def _expand(ref: str, active: Tuple[str, ...]) -> Any:
        if ref in expanded:
            return expanded[ref]
        cuts_before = len(cuts)
        target = _walk(resolve_ref(spec, ref), active + (ref,))
        if len(cuts) == cuts_before:
            expanded[ref] = target
        return target

    def _walk(node: Any, active: Tuple[str, ...]) -> Any:
        if isinstance(node, dict):
            ref = node.get("$ref")
            if isinstance(ref, str):
                if ref in active:
                    cuts.append(ref)
                    return {}
                target = _expand(ref, active)
                siblings = {k: _walk(v, active) for k, v in node.items() if k != "$ref"}
                if siblings and isinstance(target, dict):
                    merged = dict(target)
                    merged.update(siblings)
                    return merged
                return target
            return {key: _walk(value, active) for key, value in node.items()}
        if isinstance(node, list):
            return [_walk(item, active) for item in node]
        return node

    return _walk(copy.deepcopy(spec), ())


# ----------------------------------------------------------------------------
# Servers and operations
# ----------------------------------------------------------------------------

def _expand_server_url(server: Dict[str, Any]) -> str:
    variables = server.get("variables") or {}

    def _substitute(match):
        variable = variables.get(match.group(1), {})
        return str(variable.get("default", match.group(0)))

    return _SERVER_VARIABLE_RE.sub(_substitute, server.get("url", ""))


def extract_endpoints(spec: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Extract every operation declared in an OpenAPI 3 document.

    Args:
        spec: Normalized OpenAPI 3 document

    Returns:
        List of {"path", "method", "operation", "servers"} dicts, where
        ``servers`` are the expanded server URLs that apply to the operation
        (operation level, then path level, then document level)
    """
    endpoints = []
    root_servers = spec.get("servers") or []

    for path, path_item in (spec.get("paths") or {}).items():
        if not isinstance(path_item, dict):
            continue
        if "$ref" in path_item:
            path_item = resolve_ref(spec, path_item["$ref"])

        for method in HTTP_METHODS:
            operation = path_item.get(method)
            if not isinstance(operation, dict):
                continue
            servers = operation.get("servers") or path_item.get("servers") or root_servers
            endpoints.append({
                "path": path,
                "method": method.upper(),
                "operation": operation,
                "servers": [_expand_server_url(s) for s in servers if isinstance(s, dict)]
            })

    logger.debug(f"Extracted {len(endpoints)} operations from OpenAPI specification")
    return endpoints


def get_hosts(server_urls: List[str]) -> List[str]:
    """Return the distinct hosts (with port, if any) of absolute server URLs."""
    hosts = []
    for url in server_urls:
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.hostname:
            continue
        host = parsed.netloc.rsplit("@", 1)[-1]
        try:
            port = parsed.port
        except ValueError:
            logger.warning(f"Ignoring server URL with an invalid port: {url}")
            continue
        # Traffic hosts never carry the scheme's default port
        if port is not None and DEFAULT_PORTS.get(parsed.scheme.lower()) == port:
            host = host.rsplit(":", 1)[0]
        if host not in hosts:
            hosts.append(host)
    return hosts


def get_path_item(spec: Dict[str, Any], path: str) -> Optional[Dict[str, Any]]:
    """
    Look up the path item for a canonical endpoint path.

    Spec keys are compared in canonical form, so ``/items/{id}/`` is found
    for the endpoint ``/items/{id}``.
    """
    paths = spec.get("paths") or {}
    path_item = paths.get(path)
    if path_item is None:
        for raw_path, candidate in paths.items():
            try:
                if validate_path(raw_path) == path:
                    path_item = candidate
                    break
            except InvalidPathError:
                continue
    if isinstance(path_item, dict) and "$ref" in path_item:
        path_item = resolve_ref(spec, path_item["$ref"])
    return path_item if isinstance(path_item, dict) else None


def get_operation(spec: Dict[str, Any], path: str, method: str) -> Optional[Dict[str, Any]]:
    path_item = get_path_item(spec, path)
    if path_item is None:
        return None
    operation = path_item.get(method.lower())
    return operation if isinstance(operation, dict) else None


def get_operation_parameters(spec: Dict[str, Any], path: str, method: str) -> List[Dict[str, Any]]:
    """
    Get the effective parameters of an operation.

    Path-level parameters are inherited unless the operation redeclares the
    same (name, in) pair.
    """
    path_item = get_path_item(spec, path) or {}
    operation = get_operation(spec, path, method) or {}

    operation_params = [p for p in operation.get("parameters", []) if isinstance(p, dict)]
    overridden = {(p.get("name"), p.get("in")) for p in operation_params}
    inherited = [
        p for p in path_item.get("parameters", [])
        if isinstance(p, dict) and (p.get("name"), p.get("in")) not in overridden
    ]
    return inherited + operation_params


def _pick_media_schema(content: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if not isinstance(content, dict) or not content:
        return None
    for media_type, media in content.items():
        if "json" in media_type.lower() and isinstance(media, dict) and "schema" in media:
            return media["schema"]
    for media in content.values():
        if isinstance(media, dict) and "schema" in media:
            return media["schema"]
    return None


def get_request_body_schema(operation: Dict[str, Any]) -> Tuple[Optional[Dict[str, Any]], bool]:
    """
    Extract the request body schema of an operation.

    Returns:
        (schema, required); schema is None when no body is declared
    """
    request_body = operation.get("requestBody") or {}
    return _pick_media_schema(request_body.get("content")), bool(request_body.get("required", False))


def get_response(operation: Dict[str, Any], status: int) -> Optional[Dict[str, Any]]:
    """
    Find the response declared for a status code.

    The exact code is preferred, then its range (``2XX``), then ``default``.
    """
    responses = {str(key): value for key, value in (operation.get("responses") or {}).items()}
    for key in (str(status), f"{str(status)[0]}XX", f"{str(status)[0]}xx", "default"):
        if key in responses and isinstance(responses[key], dict):
            return responses[key]
    return None


def get_response_body_schema(response: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return _pick_media_schema(response.get("content"))
