"""
Endpoint identity resolution.

A path definition (from a spec upload, a manual path edit or unattributed
traffic) is resolved against the endpoints already recorded for its host and
method. The outcome is one of:

* an exact match, which is updated in place,
* a new endpoint, which supersedes the overlapping pre-existing endpoints,
* a conflict, when the path is or overlaps an endpoint owned by another
  user-declared spec.

Resolution is batch scoped: every candidate of a spec upload is resolved by
the same :class:`BatchResolver`, so later candidates see the outcome of
earlier ones. Nothing is written until the resulting :class:`MergePlan` is
handed to the merge executor.

Candidates of a batch that overlap each other are ranked: fewer parameter
segments wins, on equal counts the endpoint that existed before the batch
wins, and between two new endpoints the lexicographically smaller path wins.
The survivors are recomputed from the whole candidate set after each
resolution, so the final plan does not depend on candidate order.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from apidrift.enums import max_risk
from apidrift.exceptions import ConflictError
from apidrift.logger import get_logger
from apidrift.models import ApiEndpoint, OpenApiSpec
from apidrift.paths import PathPattern, compile_pattern, patterns_overlap, validate_path

# Get logger
logger = get_logger("resolver")


@dataclass(frozen=True)
class SpecContext:
    """The spec document a batch of candidate paths is declared by."""
    name: str
    is_auto_generated: bool = False


@dataclass
class ResolutionResult:
    """Outcome of resolving one candidate path."""
    path: str
    method: str
    host: str
    created: Optional[ApiEndpoint] = None
    updated: Optional[ApiEndpoint] = None
    conflict: Optional[ConflictError] = None
    supersedes: List[ApiEndpoint] = field(default_factory=list)
    superseded_by: Optional[ApiEndpoint] = None

    @property
    def endpoint(self) -> Optional[ApiEndpoint]:
        return self.created or self.updated

    def to_dict(self) -> Dict:
        return {
            "path": self.path,
            "method": self.method,
            "host": self.host,
            "created": self.created.uuid if self.created else None,
            "updated": self.updated.uuid if self.updated else None,
            "conflict": self.conflict.message if self.conflict else None,
            "supersedes": [e.uuid for e in self.supersedes],
            "superseded_by": self.superseded_by.uuid if self.superseded_by else None
        }


@dataclass
class MergeEntry:
    survivor: ApiEndpoint
    superseded: List[ApiEndpoint]
    is_new: bool = False


@dataclass
class MergePlan:
    """Surviving endpoints mapped to the persisted endpoints they subsume."""
    entries: List[MergeEntry] = field(default_factory=list)

    @property
    def superseded_count(self) -> int:
        return sum(len(entry.superseded) for entry in self.entries)


class _Scope:
    """Resolution state of one (host, method) within a batch."""

    def __init__(self, host: str, method: str, persisted: List[ApiEndpoint]):
        self.key = (host, method)
        self.endpoints: Dict[str, ApiEndpoint] = {e.uuid: e for e in persisted}
        self.pre_existing = set(self.endpoints)
        # Endpoints resolved as candidates in this batch, in order.
        self.candidates: List[str] = []
        # Surviving candidates, best ranked first.
        self.live: List[ApiEndpoint] = []
        # Superseded endpoint uuid -> uuid of the survivor that absorbs it.
        self.owner: Dict[str, str] = {}
        self._patterns: Dict[str, PathPattern] = {}

    def pattern(self, endpoint: ApiEndpoint) -> PathPattern:
        if endpoint.uuid not in self._patterns:
            self._patterns[endpoint.uuid] = compile_pattern(endpoint.path)
        return self._patterns[endpoint.uuid]

    def overlaps(self, a: ApiEndpoint, b: ApiEndpoint) -> bool:
        return patterns_overlap(self.pattern(a), self.pattern(b))

    def find_exact(self, path: str) -> Optional[ApiEndpoint]:
        for endpoint in self.endpoints.values():
            if endpoint.path == path:
                return endpoint
        return None

    def untouched(self) -> List[ApiEndpoint]:
        """Pre-existing endpoints that were not themselves batch candidates."""
        return [
            self.endpoints[u] for u in sorted(self.pre_existing)
            if u not in self.candidates
        ]

    def absorbed_by(self, survivor_uuid: str) -> List[ApiEndpoint]:
        absorbed = [self.endpoints[u] for u, o in self.owner.items() if o == survivor_uuid]
        return sorted(absorbed, key=lambda e: (e.path, e.uuid))

    def rank(self, endpoint: ApiEndpoint) -> Tuple[int, int, str]:
        canonical = 0 if endpoint.uuid in self.pre_existing else 1
        return (endpoint.number_params, canonical, endpoint.path)

    def add_candidate(self, endpoint: ApiEndpoint) -> None:
        self.endpoints[endpoint.uuid] = endpoint
        if endpoint.uuid not in self.candidates:
            self.candidates.append(endpoint.uuid)
        self.settle()

    def settle(self) -> None:
        """
        Recompute survivors and ownership from the full candidate set.

        Candidates are visited best ranked first and survive unless they
        overlap a survivor already chosen, so the outcome does not depend on
        the order candidates were resolved in.
        """
        live: List[ApiEndpoint] = []
        owner: Dict[str, str] = {}
        for candidate in sorted((self.endpoints[u] for u in self.candidates), key=self.rank):
            holder = next((s for s in live if self.overlaps(candidate, s)), None)
            if holder is None:
                live.append(candidate)
            else:
                owner[candidate.uuid] = holder.uuid
        for existing in self.untouched():
            holder = next((s for s in live if self.overlaps(existing, s)), None)
            if holder is not None:
                owner[existing.uuid] = holder.uuid
        self.live = live
        self.owner = owner


class BatchResolver:
    """
    Resolves candidate paths against recorded endpoints within one transaction.

    The caller must hold the (host, method) locks for every candidate it
    resolves. Endpoints of a scope are loaded with ``SELECT ... FOR UPDATE``
    the first time the scope is touched.
    """

    def __init__(self, session: Session, spec_context: Optional[SpecContext] = None):
        self.session = session
        self.spec_context = spec_context
        self._scopes: Dict[Tuple[str, str], _Scope] = {}
        self._specs: Dict[str, Optional[OpenApiSpec]] = {}
        self._results: List[Tuple[_Scope, ApiEndpoint, ResolutionResult]] = []

    def _scope(self, host: str, method: str) -> _Scope:
        key = (host, method)
        if key not in self._scopes:
            persisted = (
                self.session.query(ApiEndpoint)
                .filter(ApiEndpoint.host == host, ApiEndpoint.method == method)
                .order_by(ApiEndpoint.path)
                .with_for_update()
                .all()
            )
            self._scopes[key] = _Scope(host, method, persisted)
        return self._scopes[key]

    def _spec(self, name: str) -> Optional[OpenApiSpec]:
        if name not in self._specs:
            self._specs[name] = self.session.get(OpenApiSpec, name)
        return self._specs[name]

    def _ownership_conflict(self, endpoint: ApiEndpoint) -> Optional[ConflictError]:
        """Return a conflict when a user-declared spec other than ours owns the endpoint."""
        owner_name = endpoint.openapi_spec_name
        if not owner_name:
            return None
        if self.spec_context is not None and owner_name == self.spec_context.name:
            return None
        owner_spec = self._spec(owner_name)
        if owner_spec is None or owner_spec.is_auto_generated:
            return None
        return ConflictError(
            f"Path {endpoint.path} for method {endpoint.method} on host {endpoint.host} "
            f"is already defined in another user defined spec file: {owner_name}",
            {
                "path": endpoint.path,
                "method": endpoint.method,
                "host": endpoint.host,
                "spec": owner_name
            }
        )

    def _refresh_results(self) -> None:
        for scope, candidate, result in self._results:
            holder = scope.owner.get(candidate.uuid)
            result.superseded_by = scope.endpoints[holder] if holder else None
            result.supersedes = [
                e for e in scope.absorbed_by(candidate.uuid) if e.uuid in scope.pre_existing
            ]

    def resolve(self, path: str, method: str, host: str,
                num_tokens: Optional[int] = None) -> ResolutionResult:
        """
        Resolve one candidate path.

        Conflicts are returned in the result and leave the batch untouched.
        The ``supersedes``/``superseded_by`` fields of every result returned
        by this resolver are kept current as later candidates arrive.

        Args:
            path: Candidate path template
            method: HTTP method
            host: Host the path is served on
            num_tokens: Required segment count, if any

        Returns:
            ResolutionResult describing what the candidate became

        Raises:
            InvalidPathError: If the path is malformed
        """
        path = validate_path(path, num_tokens)
        method = method.upper()
        scope = self._scope(host, method)
        spec_name = self.spec_context.name if self.spec_context else None

        exact = scope.find_exact(path)
        if exact is not None:
            candidate = exact
        else:
            candidate = ApiEndpoint.from_path(path, method, host, openapi_spec_name=spec_name)

        pattern = scope.pattern(candidate)
        contested = [] if exact is None else [exact]
        contested += [
            e for e in scope.untouched()
            if e.uuid != candidate.uuid and patterns_overlap(scope.pattern(e), pattern)
        ]
        for endpoint in contested:
            conflict = self._ownership_conflict(endpoint)
            if conflict is not None:
                logger.warning(conflict.message)
                return ResolutionResult(path=path, method=method, host=host, conflict=conflict)

        if exact is not None and spec_name:
            candidate.openapi_spec_name = spec_name
        scope.add_candidate(candidate)

        result = ResolutionResult(path=path, method=method, host=host)
        if exact is None:
            result.created = candidate
        else:
            result.updated = candidate
        self._results.append((scope, candidate, result))
        self._refresh_results()

        if result.superseded_by is not None:
            logger.debug(f"{method} {path} on {host} is superseded by {result.superseded_by.path}")
        elif result.supersedes:
            logger.debug(
                f"{method} {path} on {host} supersedes "
                f"{', '.join(e.path for e in result.supersedes)}"
            )
        return result

    def plan(self) -> MergePlan:
        """
        Build the merge plan for everything resolved so far.

        Survivors take the highest risk score and the widest activity window
        of the endpoints they absorb.
        """
        plan = MergePlan()
        for key in sorted(self._scopes):
            scope = self._scopes[key]
            for survivor in scope.live:
                absorbed = scope.absorbed_by(survivor.uuid)
                _absorb_attributes(survivor, absorbed)
                plan.entries.append(MergeEntry(
                    survivor=survivor,
                    superseded=[e for e in absorbed if e.uuid in scope.pre_existing],
                    is_new=survivor.uuid not in scope.pre_existing
                ))
        return plan


def _earliest(*values: Optional[datetime]) -> Optional[datetime]:
    present = [v for v in values if v is not None]
    return min(present) if present else None


def _latest(*values: Optional[datetime]) -> Optional[datetime]:
    present = [v for v in values if v is not None]
    return max(present) if present else None


def _absorb_attributes(survivor: ApiEndpoint, absorbed: List[ApiEndpoint]) -> None:
    if not absorbed:
        return
    risk = max_risk(survivor.risk_score, *[e.risk_score for e in absorbed])
    first = _earliest(survivor.first_detected, *[e.first_detected for e in absorbed])
    last = _latest(survivor.last_active, *[e.last_active for e in absorbed])
    if risk != survivor.risk_score:
        survivor.risk_score = risk
    if first != survivor.first_detected:
        survivor.first_detected = first
    if last != survivor.last_active:
        survivor.last_active = last
