"""
Spec document management.

Uploading a spec declares endpoints: every (path, method, host) operation of
the document is resolved against the recorded endpoints and merged in one
transaction. A conflict with another user-declared spec aborts the whole
upload with nothing written.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session, sessionmaker

from apidrift.alerts import delete_spec_diff_alerts
from apidrift.database import EndpointLocks, transaction
from apidrift.exceptions import (
    ApiDriftError, ConflictError, InternalFailure, InvalidPathError, NotFoundError,
    UnprocessableContractError
)
from apidrift.logger import get_logger
from apidrift.merge import MergeExecutor, MergeSummary
from apidrift.models import ApiEndpoint, OpenApiSpec, utcnow
from apidrift.openapi import SpecDocument, extract_endpoints, get_hosts, load_spec_document
from apidrift.paths import validate_path
from apidrift.resolver import BatchResolver, ResolutionResult, SpecContext

# Get logger
logger = get_logger("specs")


@dataclass
class SpecUploadResult:
    spec: OpenApiSpec
    results: List[ResolutionResult] = field(default_factory=list)
    summary: MergeSummary = field(default_factory=MergeSummary)

    @property
    def created(self) -> List[ApiEndpoint]:
        return [r.created for r in self.results if r.created is not None]

    @property
    def updated(self) -> List[ApiEndpoint]:
        return [r.updated for r in self.results if r.updated is not None]


def collect_candidates(document: SpecDocument) -> Tuple[List[Tuple[str, str, str]], List[str]]:
    """
    List the (path, method, host) triples a spec declares.

    Raises:
        UnprocessableContractError: If an operation has no absolute server URL
            or declares a malformed path
    """
    candidates = []
    all_hosts: List[str] = []
    for operation in extract_endpoints(document.spec_object):
        hosts = get_hosts(operation["servers"])
        if not hosts:
            raise UnprocessableContractError(
                "No servers found in spec file.",
                {"path": operation["path"], "method": operation["method"]}
            )
        try:
            path = validate_path(operation["path"])
        except InvalidPathError as e:
            raise UnprocessableContractError(f"Invalid path in spec file: {e.message}", e.details)
        for host in hosts:
            candidates.append((path, operation["method"], host))
            if host not in all_hosts:
                all_hosts.append(host)
    return candidates, all_hosts


class SpecService:
    """Uploads, replaces, deletes and lists spec documents."""

    def __init__(self, session_factory: sessionmaker, locks: Optional[EndpointLocks] = None):
        self.session_factory = session_factory
        self.locks = locks or EndpointLocks()
        self.merge_executor = MergeExecutor()

    def get_spec(self, name: str) -> OpenApiSpec:
        with transaction(self.session_factory) as session:
            spec = session.get(OpenApiSpec, name)
            if spec is None:
                raise NotFoundError(f"No spec file with name {name}.", {"name": name})
            return spec

    def list_specs(self, auto_generated: bool = False) -> List[OpenApiSpec]:
        with transaction(self.session_factory) as session:
            return (
                session.query(OpenApiSpec)
                .filter(OpenApiSpec.is_auto_generated == auto_generated)
                .order_by(OpenApiSpec.updated_at.desc(), OpenApiSpec.name)
                .all()
            )

    def upload_spec(self, spec_text: str, file_name: str, extension: Optional[str] = None,
                    is_auto_generated: bool = False) -> SpecUploadResult:
        """
        Upload a spec document and declare its endpoints.

        Uploading under the name of an existing spec replaces it.

        Args:
            spec_text: Raw JSON or YAML document
            file_name: Spec name; its extension selects the parser
            extension: Explicit "json"/"yaml" override
            is_auto_generated: Mark the spec as generated from traffic

        Returns:
            SpecUploadResult

        Raises:
            UnprocessableContractError: If the document is rejected
            ConflictError: If another user-declared spec owns a declared path
            InternalFailure: If persisting the upload fails
        """
        return self._upload(spec_text, file_name, extension, is_auto_generated, require_existing=False)

    def update_spec(self, spec_text: str, file_name: str,
                    extension: Optional[str] = None) -> SpecUploadResult:
        """Replace an existing spec; raises NotFoundError if there is none."""
        return self._upload(spec_text, file_name, extension, False, require_existing=True)

    def delete_spec(self, name: str) -> None:
        """
        Delete a user-declared spec and unlink its endpoints.

        Raises:
            NotFoundError: If there is no such spec
            ConflictError: If the spec is auto-generated
        """
        try:
            with transaction(self.session_factory) as session:
                spec = session.get(OpenApiSpec, name)
                if spec is None:
                    raise NotFoundError(f"No spec file with name {name}.", {"name": name})
                if spec.is_auto_generated:
                    raise ConflictError("Can't delete auto generated spec.", {"name": name})
                self._remove_spec(session, spec)
        except ApiDriftError:
            raise
        except Exception as e:
            logger.error(f"Failed to delete spec {name}: {str(e)}")
            raise InternalFailure(f"Failed to delete spec {name}.") from e
        logger.info(f"Deleted spec {name}")

    def _remove_spec(self, session: Session, spec: OpenApiSpec) -> None:
        delete_spec_diff_alerts(session, spec.name)
        unlinked = (
            session.query(ApiEndpoint)
            .filter(ApiEndpoint.openapi_spec_name == spec.name)
            .update({ApiEndpoint.openapi_spec_name: None}, synchronize_session="fetch")
        )
        session.delete(spec)
        session.flush()
        logger.debug(f"Unlinked {unlinked} endpoints from spec {spec.name}")

    def _upload(self, spec_text: str, file_name: str, extension: Optional[str],
                is_auto_generated: bool, require_existing: bool) -> SpecUploadResult:
        document = load_spec_document(spec_text, file_name, extension)
        candidates, hosts = collect_candidates(document)
        keys = {(host, method) for _, method, host in candidates}

        try:
            with self.locks.transaction(self.session_factory, keys) as session:
                spec = session.get(OpenApiSpec, file_name)
                if spec is None and require_existing:
                    raise NotFoundError(f"No spec file with name {file_name}.", {"name": file_name})
                if spec is not None:
                    if spec.is_auto_generated and not is_auto_generated:
                        raise ConflictError(
                            f"Spec {file_name} is auto generated and can't be replaced by a user spec.",
                            {"name": file_name}
                        )
                    created_at = spec.created_at
                    self._remove_spec(session, spec)
                else:
                    created_at = utcnow()

                now = utcnow()
                spec = OpenApiSpec(
                    name=file_name,
                    spec=document.spec_text,
                    spec_object=document.spec_object,
                    extension=document.extension.value,
                    is_auto_generated=is_auto_generated,
                    hosts=hosts,
                    created_at=created_at,
                    updated_at=now,
                    spec_updated_at=now
                )
                session.add(spec)
                session.flush()

                resolver = BatchResolver(session, SpecContext(file_name, is_auto_generated))
                results = []
                for path, method, host in candidates:
                    result = resolver.resolve(path, method, host)
                    if result.conflict is not None:
                        raise result.conflict
                    results.append(result)

                summary = self.merge_executor.apply(session, resolver.plan())
        except ApiDriftError:
            raise
        except Exception as e:
            logger.error(f"Failed to upload spec {file_name}: {str(e)}")
            raise InternalFailure(f"Failed to upload spec {file_name}.") from e

        logger.info(
            f"Uploaded spec {file_name}: {len(candidates)} operations, "
            f"{summary.created} endpoints created, {summary.deleted_endpoints} merged"
        )
        return SpecUploadResult(spec=spec, results=results, summary=summary)
