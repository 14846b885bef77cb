"""
Swagger 2.0 to OpenAPI 3.0 conversion.

Uploaded Swagger documents are converted before they are stored so that the
reconciliation engine only ever reads OpenAPI 3 structures.
"""

import copy
from typing import Any, Dict, List, Optional

from apidrift.logger import get_logger

# Get logger
logger = get_logger("swagger")

REF_PREFIXES = {
    "#/definitions/": "#/components/schemas/",
    "#/parameters/": "#/components/parameters/",
    "#/responses/": "#/components/responses/"
}

COLLECTION_FORMAT_STYLES = {
    "csv": {"style": "form", "explode": False},
    "ssv": {"style": "spaceDelimited"},
    "pipes": {"style": "pipeDelimited"},
    "multi": {"style": "form", "explode": True}
}

SCHEMA_KEYWORDS = [
    "format", "enum", "default", "minimum", "maximum", "exclusiveMinimum",
    "exclusiveMaximum", "minLength", "maxLength", "pattern", "minItems",
    "maxItems", "uniqueItems", "multipleOf"
]

HTTP_METHODS = ["get", "put", "post", "delete", "options", "head", "patch"]


def rewrite_refs(node: Any) -> Any:
    """Return a copy of ``node`` with Swagger 2.0 ``$ref`` targets moved under components."""
    if isinstance(node, dict):
        result = {}
        for key, value in node.items():
            if key == "$ref" and isinstance(value, str):
                for old, new in REF_PREFIXES.items():
                    if value.startswith(old):
                        value = new + value[len(old):]
                        break
                result[key] = value
            elif key == "x-nullable":
                result["nullable"] = value
            else:
                result[key] = rewrite_refs(value)
        return result
    if isinstance(node, list):
        return [rewrite_refs(item) for item in node]
    return node


def primitive_schema(source: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build an OpenAPI 3 schema from a Swagger non-body parameter or header.

    Args:
        source: Swagger parameter, header or items object

    Returns:
        Schema object
    """
    param_type = source.get("type", "string")
    if param_type == "file":
        schema = {"type": "string", "format": "binary"}
    else:
        schema = {"type": param_type}

    if param_type == "array":
        schema["items"] = primitive_schema(source.get("items", {}))
    for keyword in SCHEMA_KEYWORDS:
        if keyword in source:
            schema[keyword] = source[keyword]
    return schema


def convert_parameter(param: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Convert one non-body parameter. Body and formData parameters return None."""
    if "$ref" in param:
        return {"$ref": param["$ref"]}
    if param.get("in") in ("body", "formData"):
        return None

    converted = {
        "name": param.get("name", ""),
        "in": param.get("in", ""),
        "required": bool(param.get("required", param.get("in") == "path"))
    }
    for key in ("description", "deprecated"):
        if key in param:
            converted[key] = param[key]
    if "allowEmptyValue" in param and param.get("in") == "query":
        converted["allowEmptyValue"] = param["allowEmptyValue"]
    converted.update(COLLECTION_FORMAT_STYLES.get(param.get("collectionFormat"), {}))
    converted["schema"] = param["schema"] if "schema" in param else primitive_schema(param)
    return converted


def merge_parameters(path_params: List[Dict[str, Any]],
                     operation_params: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Combine path-item and operation parameters; operation entries win on (name, in)."""
    overridden = {(p.get("name"), p.get("in")) for p in operation_params if "name" in p}
    inherited = [p for p in path_params if (p.get("name"), p.get("in")) not in overridden]
    return inherited + operation_params


def build_request_body(params: List[Dict[str, Any]],
                       consumes: List[str]) -> Optional[Dict[str, Any]]:
    """
    Build an OpenAPI 3 requestBody from Swagger body or formData parameters.

    Args:
        params: Operation parameters, path-level ones included
        consumes: Media types the operation consumes

    Returns:
        requestBody object, or None when the operation takes no body
    """
    body = next((p for p in params if p.get("in") == "body"), None)
    if body is not None:
        media_types = consumes or ["application/json"]
        request_body = {
            "required": bool(body.get("required", False)),
            "content": {media: {"schema": body.get("schema", {})} for media in media_types}
        }
        if "description" in body:
            request_body["description"] = body["description"]
        return request_body

    form_params = [p for p in params if p.get("in") == "formData"]
    if not form_params:
        return None

    schema = {
        "type": "object",
        "properties": {p["name"]: primitive_schema(p) for p in form_params}
    }
    required = [p["name"] for p in form_params if p.get("required")]
    if required:
        schema["required"] = required

    if any(p.get("type") == "file" for p in form_params):
        media_type = "multipart/form-data"
    else:
        media_type = "application/x-www-form-urlencoded"
    return {"required": bool(required), "content": {media_type: {"schema": schema}}}


def convert_response(response: Dict[str, Any], produces: List[str]) -> Dict[str, Any]:
    if "$ref" in response:
        return {"$ref": response["$ref"]}

    converted = {"description": response.get("description", "")}
    if "schema" in response:
        media_types = produces or ["application/json"]
        converted["content"] = {media: {"schema": response["schema"]} for media in media_types}
    if "headers" in response:
        converted["headers"] = {
            name: {"schema": primitive_schema(header), **(
                {"description": header["description"]} if "description" in header else {}
            )}
            for name, header in response["headers"].items()
        }
    return converted


def convert_security_definitions(definitions: Dict[str, Any]) -> Dict[str, Any]:
    flow_names = {
        "implicit": "implicit",
        "password": "password",
        "application": "clientCredentials",
        "accessCode": "authorizationCode"
    }
    schemes = {}
    for name, definition in definitions.items():
        kind = definition.get("type")
        if kind == "basic":
            scheme = {"type": "http", "scheme": "basic"}
        elif kind == "apiKey":
            scheme = {"type": "apiKey", "name": definition.get("name", ""), "in": definition.get("in", "")}
        elif kind == "oauth2":
            flow = {"scopes": definition.get("scopes", {})}
            for url_key in ("authorizationUrl", "tokenUrl"):
                if url_key in definition:
                    flow[url_key] = definition[url_key]
            flow_name = flow_names.get(definition.get("flow"), "implicit")
            scheme = {"type": "oauth2", "flows": {flow_name: flow}}
        else:
            logger.warning(f"Skipping unsupported security definition type '{kind}' for {name}")
            continue
        if "description" in definition:
            scheme["description"] = definition["description"]
        schemes[name] = scheme
    return schemes


def convert_swagger_to_openapi(swagger_spec: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert a Swagger 2.0 document to OpenAPI 3.0.

    Args:
        swagger_spec: Parsed Swagger 2.0 document

    Returns:
        Equivalent OpenAPI 3.0.3 document
    """
    swagger = rewrite_refs(copy.deepcopy(swagger_spec))
    openapi = {
        "openapi": "3.0.3",
        "info": swagger.get("info", {"title": "", "version": ""}),
        "paths": {}
    }

    host = swagger.get("host")
    if host:
        base_path = swagger.get("basePath", "")
        openapi["servers"] = [
            {"url": f"{scheme}://{host}{base_path}"}
            for scheme in swagger.get("schemes", ["https"])
        ]

    global_consumes = swagger.get("consumes", [])
    global_produces = swagger.get("produces", [])

    for path, path_item in swagger.get("paths", {}).items():
        path_params = path_item.get("parameters", [])
        new_item = {}
        converted_path_params = [c for c in map(convert_parameter, path_params) if c]
        if converted_path_params:
            new_item["parameters"] = converted_path_params

        for method in HTTP_METHODS:
            operation = path_item.get(method)
            if not isinstance(operation, dict):
                continue

            new_operation = {
                key: operation[key]
                for key in ("tags", "summary", "description", "operationId", "deprecated", "security")
                if key in operation
            }
            params = merge_parameters(path_params, operation.get("parameters", []))
            converted = [c for c in map(convert_parameter, operation.get("parameters", [])) if c]
            if converted:
                new_operation["parameters"] = converted

            request_body = build_request_body(params, operation.get("consumes", global_consumes))
            if request_body:
                new_operation["requestBody"] = request_body

            produces = operation.get("produces", global_produces)
            new_operation["responses"] = {
                str(status): convert_response(response, produces)
                for status, response in operation.get("responses", {}).items()
            }
            new_item[method] = new_operation

        openapi["paths"][path] = new_item

    components = {}
    if "definitions" in swagger:
        components["schemas"] = swagger["definitions"]
    if "parameters" in swagger:
        components["parameters"] = {
            name: convert_parameter(param) for name, param in swagger["parameters"].items()
            if param.get("in") not in ("body", "formData")
        }
    if "responses" in swagger:
        components["responses"] = {
            name: convert_response(response, global_produces)
            for name, response in swagger["responses"].items()
        }
    if "securityDefinitions" in swagger:
        components["securitySchemes"] = convert_security_definitions(swagger["securityDefinitions"])
    if components:
        openapi["components"] = components

    for key in ("security", "tags", "externalDocs"):
        if key in swagger:
            openapi[key] = swagger[key]

    logger.debug(f"Converted Swagger 2.0 document with {len(openapi['paths'])} paths")
    return openapi
