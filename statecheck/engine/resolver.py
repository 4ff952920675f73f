"""Dependency resolution for one state node."""

import asyncio
from collections.abc import Mapping

from statecheck.common.logging import logger
from statecheck.engine.context import Context
from statecheck.engine.errors import DependencyResolutionError
from statecheck.engine.executor import maybe_await
from statecheck.engine.graph import Resolver


async def _resolve(resolver: Resolver, context: Context):
    return await maybe_await(resolver(context))


async def resolve_dependencies(state: str, dependencies: Mapping[str, Resolver], context: Context) -> Context:
    """Run every resolver against `context` and return the extended context.

    Resolvers may be plain functions or coroutines. They run concurrently and
    only see `context`, never each other's results. All of them are awaited
    even when one fails so the error carries every failed name; the first
    failure in declared order is the reported one.
    """

    if not dependencies:
        return context

    names = list(dependencies)
    outcomes = await asyncio.gather(
        *(_resolve(dependencies[name], context) for name in names),
        return_exceptions=True,
    )

    resolved = {}
    errors = {}
    for name, outcome in zip(names, outcomes):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            errors[name] = outcome
        else:
            resolved[name] = outcome

    if errors:
        first = next(iter(errors))
        logger.warning(
            "dependency_failed state=%s name=%s failed=%s error=%s",
            state,
            first,
            sorted(errors),
            errors[first],
        )
        raise DependencyResolutionError(state, first, errors[first], errors)

    logger.debug("dependencies_resolved state=%s names=%s", state, names)
    return context.extend(resolved)
