"""Per-route access pipeline: resolve principal, gate roles, verify ownership.

The three stages always run in that order and each one must succeed
before the next starts. Routes get the pipeline as a FastAPI dependency
and read verified records from the returned ``RequestContext``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

from fastapi import Header, Request

from hivelog.logging import get_logger
from hivelog.service.auth import Principal, PrincipalResolver, RoleGate
from hivelog.service.errors import AuthenticationRequiredError
from hivelog.service.ownership import (
    OwnershipChain,
    OwnershipVerifier,
    ResourceKind,
)

logger = get_logger(__name__)


@dataclass
class RequestContext:
    principal: Optional[Principal] = None
    token: Optional[str] = None
    resources: Dict[ResourceKind, Any] = field(default_factory=dict)

    def require_principal(self) -> Principal:
        if self.principal is None:
            raise AuthenticationRequiredError()
        return self.principal

    def resource(self, kind: ResourceKind) -> Any:
        return self.resources[kind]


@dataclass(frozen=True)
class OwnershipRequirement:
    """Verify ``chain`` using the named path parameters (leaf first)."""

    chain: OwnershipChain
    params: Tuple[str, ...]

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind(self.chain.kind)


class PipelineServices(Protocol):
    resolver: PrincipalResolver
    ownership: OwnershipVerifier


def _runtime_services() -> PipelineServices:
    from hivelog.service.runtime import get_runtime

    return get_runtime()


class AccessPipeline:
    def __init__(
        self,
        *,
        roles: Optional[Iterable[str]] = None,
        ownership: Sequence[OwnershipRequirement] = (),
        services: Optional[Callable[[], PipelineServices]] = None,
    ) -> None:
        self.role_gate = RoleGate(roles) if roles is not None else None
        self.ownership = tuple(ownership)
        self._services = services or _runtime_services
        self.stages = (
            self.resolve_principal,
            self.check_roles,
            self.verify_ownership,
        )

    async def resolve_principal(
        self,
        context: RequestContext,
        services: PipelineServices,
        authorization: Optional[str],
        path_params: Mapping[str, str],
    ) -> None:
        context.principal, context.token = await services.resolver.resolve(authorization)

    async def check_roles(
        self,
        context: RequestContext,
        services: PipelineServices,
        authorization: Optional[str],
        path_params: Mapping[str, str],
    ) -> None:
        if self.role_gate is not None:
            self.role_gate.check(context.principal)
        else:
            context.require_principal()

    async def verify_ownership(
        self,
        context: RequestContext,
        services: PipelineServices,
        authorization: Optional[str],
        path_params: Mapping[str, str],
    ) -> None:
        principal = context.require_principal()
        for requirement in self.ownership:
            ids = tuple(path_params.get(name, "") for name in requirement.params)
            context.resources[requirement.kind] = await services.ownership.require(
                requirement.chain, ids, principal.id
            )

    async def run(
        self,
        authorization: Optional[str],
        path_params: Optional[Mapping[str, str]] = None,
        *,
        services: Optional[PipelineServices] = None,
    ) -> RequestContext:
        services = services or self._services()
        params = path_params or {}
        context = RequestContext()
        for stage in self.stages:
            await stage(context, services, authorization, params)
        return context

    def dependency(self):
        """FastAPI dependency running the pipeline for the current request."""

        async def guard(
            request: Request, authorization: Optional[str] = Header(None)
        ) -> RequestContext:
            context = await self.run(authorization, request.path_params)
            request.state.context = context
            return context

        return guard

    def __repr__(self) -> str:
        chains = [req.chain.kind for req in self.ownership]
        return f"AccessPipeline(roles={self.role_gate!r}, ownership={chains!r})"
