"""
Endpoint operations exposed to the transport layer.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from apidrift.config import DEFAULT_CONFIG, get_setting
from apidrift.database import EndpointLocks, transaction
from apidrift.exceptions import ApiDriftError, InternalFailure, InvalidPathError, NotFoundError
from apidrift.generalizer import suggest_path_templates
from apidrift.logger import get_logger
from apidrift.merge import MergeExecutor
from apidrift.models import ApiEndpoint, ApiTrace
from apidrift.paths import validate_path
from apidrift.reconcile import AlertDescriptor, SpecReconciler, diff_trace_against_spec
from apidrift.resolver import BatchResolver, ResolutionResult, SpecContext

# Get logger
logger = get_logger("endpoints")


class EndpointService:
    """Resolve, edit, generalize and diff endpoints."""

    def __init__(self, session_factory: sessionmaker, locks: Optional[EndpointLocks] = None,
                 config: Optional[Dict[str, Any]] = None,
                 reconciler: Optional[SpecReconciler] = None):
        self.session_factory = session_factory
        self.locks = locks or EndpointLocks()
        self.config = config or DEFAULT_CONFIG
        self.reconciler = reconciler or SpecReconciler()
        self.merge_executor = MergeExecutor()

    def get_endpoint(self, endpoint_uuid: str) -> ApiEndpoint:
        with transaction(self.session_factory) as session:
            endpoint = session.get(ApiEndpoint, endpoint_uuid)
            if endpoint is None:
                raise NotFoundError(f"Endpoint {endpoint_uuid} not found.", {"uuid": endpoint_uuid})
            return endpoint

    def list_endpoints(self, host: Optional[str] = None) -> List[ApiEndpoint]:
        with transaction(self.session_factory) as session:
            query = session.query(ApiEndpoint)
            if host:
                query = query.filter(ApiEndpoint.host == host)
            return query.order_by(ApiEndpoint.host, ApiEndpoint.path, ApiEndpoint.method).all()

    def resolve_and_merge(self, path: str, method: str, host: str,
                          spec_context: Optional[SpecContext] = None) -> ResolutionResult:
        """
        Resolve one path definition and apply the resulting merge.

        Args:
            path: Path template
            method: HTTP method
            host: Host the path is served on
            spec_context: Spec declaring the path, if any

        Returns:
            ResolutionResult; on conflict ``conflict`` is set and nothing is written

        Raises:
            InvalidPathError: If the path is malformed
            InternalFailure: If the merge fails
        """
        path = validate_path(path)
        method = method.upper()
        try:
            with self.locks.transaction(self.session_factory, [(host, method)]) as session:
                resolver = BatchResolver(session, spec_context)
                result = resolver.resolve(path, method, host)
                if result.conflict is None:
                    self.merge_executor.apply(session, resolver.plan())
        except ApiDriftError:
            raise
        except Exception as e:
            logger.error(f"Failed to resolve {method} {host}{path}: {str(e)}")
            raise InternalFailure(f"Failed to resolve {method} {path}.") from e
        return result

    def update_paths(self, endpoint_uuid: str, paths: Any) -> List[ResolutionResult]:
        """
        Replace an endpoint's path with one or more edited templates.

        Every new path must have the same number of segments as the endpoint.
        Recorded endpoints that overlap a new path are merged into it.

        Args:
            endpoint_uuid: Endpoint being edited
            paths: List of new path templates

        Returns:
            One ResolutionResult per distinct path

        Raises:
            InvalidPathError: For a missing list, a malformed path, a wrong
                segment count or a path that already exists
            NotFoundError: If the endpoint does not exist
            ConflictError: If a merge would take over a user spec's endpoint
        """
        if not isinstance(paths, list) or not paths:
            raise InvalidPathError("Must provide a non-empty list of paths.")

        endpoint = self.get_endpoint(endpoint_uuid)
        key = (endpoint.host, endpoint.method)
        try:
            with self.locks.transaction(self.session_factory, [key]) as session:
                endpoint = session.get(ApiEndpoint, endpoint_uuid)
                if endpoint is None:
                    raise NotFoundError(f"Endpoint {endpoint_uuid} not found.", {"uuid": endpoint_uuid})

                unique_paths = list(dict.fromkeys(
                    validate_path(p, endpoint.num_segments) for p in paths
                ))
                for path in unique_paths:
                    exists = (
                        session.query(ApiEndpoint.uuid)
                        .filter_by(host=endpoint.host, method=endpoint.method, path=path)
                        .first()
                    )
                    if exists is not None:
                        raise InvalidPathError(
                            f"Path {path} already exists for {endpoint.method} on {endpoint.host}.",
                            {"path": path}
                        )

                resolver = BatchResolver(session)
                results = []
                for path in unique_paths:
                    result = resolver.resolve(path, endpoint.method, endpoint.host, endpoint.num_segments)
                    if result.conflict is not None:
                        raise result.conflict
                    results.append(result)
                summary = self.merge_executor.apply(session, resolver.plan())
        except ApiDriftError:
            raise
        except Exception as e:
            logger.error(f"Failed to update paths of endpoint {endpoint_uuid}: {str(e)}")
            raise InternalFailure("Failed to update endpoint paths.") from e

        logger.info(
            f"Updated paths of {endpoint.method} {endpoint.path}: {', '.join(unique_paths)} "
            f"({summary.deleted_endpoints} endpoints merged)"
        )
        return results

    def suggest_path_templates(self, endpoint_uuid: str) -> List[Dict[str, Any]]:
        with transaction(self.session_factory) as session:
            return suggest_path_templates(
                session,
                endpoint_uuid,
                trace_limit=get_setting(self.config, "generalizer.trace_limit", 10000),
                threshold=get_setting(self.config, "generalizer.threshold", 0.1),
                max_suggestions=get_setting(self.config, "generalizer.max_suggestions", 100)
            )

    def diff_trace_against_spec(self, trace: ApiTrace, endpoint: ApiEndpoint) -> List[AlertDescriptor]:
        """Compute drift descriptors for a trace; never raises."""
        with transaction(self.session_factory) as session:
            return diff_trace_against_spec(session, trace, endpoint, self.reconciler)

    def diff_stored_trace(self, trace_uuid: str) -> List[AlertDescriptor]:
        """Re-run reconciliation for a stored trace against its endpoint's spec."""
        with transaction(self.session_factory) as session:
            trace = session.get(ApiTrace, trace_uuid)
            if trace is None:
                raise NotFoundError(f"Trace {trace_uuid} not found.", {"uuid": trace_uuid})
            endpoint = session.get(ApiEndpoint, trace.api_endpoint_uuid) if trace.api_endpoint_uuid else None
            if endpoint is None:
                raise NotFoundError(f"Trace {trace_uuid} is not attributed to an endpoint.", {"uuid": trace_uuid})
            return diff_trace_against_spec(session, trace, endpoint, self.reconciler)
