#!/usr/bin/env python3
"""
API Drift Monitor - command line entry point.

Manages spec documents, feeds traces through ingestion and analysis, and
exposes the endpoint editing and path generalization operations.
"""

import argparse
import json
import os
import sys
import urllib.parse
from typing import Any, Dict

import requests

from apidrift.block_fields import set_block_fields
from apidrift.config import get_setting, load_config
from apidrift.database import EndpointLocks, create_db_engine, get_session_factory, init_db, transaction
from apidrift.endpoints import EndpointService
from apidrift.exceptions import ApiDriftError, BadRequestError, ConfigError
from apidrift.ingest import LogRequestService, TraceQueue
from apidrift.analyzer import TraceAnalyzer
from apidrift.logger import get_logger, setup_logger
from apidrift.openapi import get_extension, parse_spec_text, serialize_spec
from apidrift.specs import SpecService
from apidrift.swagger import convert_swagger_to_openapi
from apidrift.utils import (
    console, load_json_file, print_descriptors, print_error, print_resolutions,
    print_specs, print_suggestions
)


class MonitorApp:
    """Wires the services together from one configuration."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.engine = create_db_engine(
            get_setting(config, "database.url"),
            echo=get_setting(config, "database.echo", False)
        )
        init_db(self.engine)
        self.session_factory = get_session_factory(self.engine)
        self.locks = EndpointLocks()
        self.logger = get_logger("monitor")

    @property
    def specs(self) -> SpecService:
        return SpecService(self.session_factory, self.locks)

    @property
    def endpoints(self) -> EndpointService:
        return EndpointService(self.session_factory, self.locks, self.config)

    def queue(self) -> TraceQueue:
        return TraceQueue.from_config(self.config)


def fetch_remote_spec(url: str, timeout: int = 30) -> str:
    parsed_url = urllib.parse.urlparse(url)
    if not all([parsed_url.scheme, parsed_url.netloc]):
        raise BadRequestError(f"Invalid URL format: {url}")
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise BadRequestError(f"Failed to fetch spec from {url}: {str(e)}")
    return response.text


def cmd_init_db(app: MonitorApp, args) -> None:
    console.print(f"[green]Database ready:[/green] {app.engine.url.render_as_string(hide_password=True)}")


def cmd_upload_spec(app: MonitorApp, args) -> None:
    if args.url:
        spec_text = fetch_remote_spec(args.url)
        name = args.name or os.path.basename(urllib.parse.urlparse(args.url).path) or "spec.json"
    else:
        if not args.file:
            raise BadRequestError("Provide a spec file or --url.")
        if not os.path.exists(args.file):
            raise BadRequestError(f"Spec file not found: {args.file}")
        with open(args.file, "r") as f:
            spec_text = f.read()
        name = args.name or os.path.basename(args.file)

    if args.replace:
        result = app.specs.update_spec(spec_text, name, args.format)
    else:
        result = app.specs.upload_spec(spec_text, name, args.format)

    console.print(f"[green]Uploaded spec[/green] {result.spec.name}")
    print_resolutions(result.results, title=f"Endpoints declared by {result.spec.name}")
    console.print(
        f"{len(result.created)} created, {len(result.updated)} updated, "
        f"{result.summary.deleted_endpoints} merged"
    )


def cmd_delete_spec(app: MonitorApp, args) -> None:
    app.specs.delete_spec(args.name)
    console.print(f"[green]Deleted spec[/green] {args.name}")


def cmd_list_specs(app: MonitorApp, args) -> None:
    print_specs(app.specs.list_specs(auto_generated=args.auto_generated))


def cmd_suggest_paths(app: MonitorApp, args) -> None:
    service = app.endpoints
    endpoint = service.get_endpoint(args.endpoint)
    print_suggestions(endpoint, service.suggest_path_templates(args.endpoint))


def cmd_update_paths(app: MonitorApp, args) -> None:
    results = app.endpoints.update_paths(args.endpoint, args.paths)
    print_resolutions(results, title="Updated Endpoints")


def cmd_block_fields(app: MonitorApp, args) -> None:
    with transaction(app.session_factory) as session:
        entry = set_block_fields(session, args.host, args.method, args.path, args.fields)
        console.print(
            f"[green]Blocking[/green] {', '.join(entry.disabled_paths) or 'no fields'} "
            f"for {entry.method} {entry.host}{entry.path}"
        )


def cmd_log_trace(app: MonitorApp, args) -> None:
    try:
        payload = load_json_file(args.file)
    except (OSError, ValueError) as e:
        raise BadRequestError(f"Unable to read traces from {args.file}: {str(e)}")
    service = LogRequestService(
        app.queue(),
        app.session_factory,
        max_queue_length=get_setting(app.config, "ingestion.max_queue_length", 1000)
    )
    traces = payload if isinstance(payload, list) else [payload]
    queued = service.log_request_batch({"source": os.path.basename(args.file)}, traces)
    console.print(f"Queued {queued} of {len(traces)} traces")


def cmd_process_queue(app: MonitorApp, args) -> None:
    analyzer = TraceAnalyzer(app.session_factory, app.locks)
    processed = analyzer.run(app.queue(), max_items=args.max_items, timeout=args.timeout)
    console.print(f"Analyzed {processed} traces")


def cmd_diff(app: MonitorApp, args) -> None:
    print_descriptors(app.endpoints.diff_stored_trace(args.trace))


def cmd_convert(args) -> None:
    if not os.path.exists(args.swagger):
        raise BadRequestError(f"Swagger file not found: {args.swagger}")
    with open(args.swagger, "r") as f:
        swagger_spec = parse_spec_text(f.read(), get_extension(args.swagger))

    openapi_spec = convert_swagger_to_openapi(swagger_spec)
    with open(args.output, "w") as f:
        f.write(serialize_spec(openapi_spec, get_extension(args.output)))
    console.print(f"[green]Converted[/green] {args.swagger} -> {args.output}")


COMMANDS = {
    "init-db": cmd_init_db,
    "upload-spec": cmd_upload_spec,
    "delete-spec": cmd_delete_spec,
    "list-specs": cmd_list_specs,
    "suggest-paths": cmd_suggest_paths,
    "update-paths": cmd_update_paths,
    "block-fields": cmd_block_fields,
    "log-trace": cmd_log_trace,
    "process-queue": cmd_process_queue,
    "diff": cmd_diff,
}


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", "-c", help="Path to configuration file (YAML/JSON)")
    common.add_argument("--log-level", "-l", choices=["DEBUG", "INFO", "WARN", "ERROR", "FATAL"],
                        help="Logging level")

    parser = argparse.ArgumentParser(description="API Drift Monitor")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", parents=[common], help="Create the database tables")

    upload = subparsers.add_parser("upload-spec", parents=[common], help="Upload an OpenAPI/Swagger spec")
    upload.add_argument("file", nargs="?", help="Spec file (JSON or YAML)")
    upload.add_argument("--name", "-n", help="Spec name (default: file name)")
    upload.add_argument("--url", "-u", help="Fetch the spec from a URL instead of a file")
    upload.add_argument("--format", choices=["json", "yaml"], help="Override format detection")
    upload.add_argument("--replace", action="store_true", help="Replace an existing spec of the same name")

    delete = subparsers.add_parser("delete-spec", parents=[common], help="Delete a spec")
    delete.add_argument("name", help="Spec name")

    list_specs = subparsers.add_parser("list-specs", parents=[common], help="List uploaded specs")
    list_specs.add_argument("--auto-generated", action="store_true", help="List auto generated specs")

    suggest = subparsers.add_parser("suggest-paths", parents=[common], help="Suggest path templates from traffic")
    suggest.add_argument("endpoint", help="Endpoint UUID")

    update = subparsers.add_parser("update-paths", parents=[common], help="Replace an endpoint's path")
    update.add_argument("endpoint", help="Endpoint UUID")
    update.add_argument("paths", nargs="+", help="New path templates")

    block = subparsers.add_parser("block-fields", parents=[common], help="Redact fields of a path template")
    block.add_argument("host", help="Host")
    block.add_argument("method", help="HTTP method")
    block.add_argument("path", help="Path template")
    block.add_argument("fields", nargs="*", help="Field paths, e.g. req.body.password")

    log_trace = subparsers.add_parser("log-trace", parents=[common], help="Queue traces from a JSON file")
    log_trace.add_argument("file", help="JSON file holding a trace or a list of traces")

    process = subparsers.add_parser("process-queue", parents=[common], help="Analyze queued traces")
    process.add_argument("--max-items", type=int, help="Stop after this many traces")
    process.add_argument("--timeout", type=int, default=1, help="Seconds to wait for a trace")

    diff = subparsers.add_parser("diff", parents=[common], help="Diff a stored trace against its spec")
    diff.add_argument("trace", help="Trace UUID")

    convert = subparsers.add_parser("convert", parents=[common], help="Convert Swagger 2.0 to OpenAPI 3")
    convert.add_argument("--swagger", "-s", required=True, help="Swagger 2.0 file")
    convert.add_argument("--output", "-o", required=True, help="Output file (.json/.yaml)")

    return parser


def main(argv=None) -> int:
    """Main entry point for the monitor."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print_error(e.message)
        return 1

    log_config = dict(config.get("logging", {}))
    if args.log_level:
        log_config["level"] = args.log_level
    setup_logger(log_config)
    logger = get_logger("main")

    try:
        if args.command == "convert":
            cmd_convert(args)
        else:
            COMMANDS[args.command](MonitorApp(config), args)
    except ApiDriftError as e:
        logger.error(f"{args.command} failed: {e.message}")
        print_error(e.message)
        if e.details:
            console.print(json.dumps(e.details, indent=2, default=str))
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
