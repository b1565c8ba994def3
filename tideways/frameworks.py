"""Framework hook table.

Maps a framework identifier to the function that carries the transaction
(usually the controller dispatch) and the function that handles uncaught
exceptions. Unknown identifiers are treated as a transaction function name.

The names are handed to the engine as ``transaction_function`` and
``exception_function`` in the ``enable()`` options. Only external engines
hook them; ``CProfileExtension`` measures the whole call graph and ignores
both.
"""

from typing import NamedTuple


class FrameworkHooks(NamedTuple):
    transaction_function: str | None
    exception_function: str | None = None


_CLI = FrameworkHooks("click.core.Command.invoke", None)

FRAMEWORKS: dict[str, FrameworkHooks] = {
    "django": FrameworkHooks(
        "django.urls.resolvers.URLResolver.resolve",
        "django.core.handlers.exception.response_for_exception",
    ),
    "flask": FrameworkHooks(
        "flask.app.Flask.dispatch_request",
        "flask.app.Flask.handle_exception",
    ),
    "pyramid": FrameworkHooks(
        "pyramid.router.Router.invoke_request",
        "pyramid.tweens.excview_tween",
    ),
    "bottle": FrameworkHooks("bottle.Bottle._handle"),
    "falcon": FrameworkHooks(
        "falcon.app.App.__call__",
        "falcon.app.App._handle_exception",
    ),
    "starlette": FrameworkHooks(
        "starlette.routing.Route.handle",
        "starlette.middleware.errors.ServerErrorMiddleware.error_response",
    ),
    "fastapi": FrameworkHooks(
        "fastapi.routing.run_endpoint_function",
        "starlette.middleware.errors.ServerErrorMiddleware.error_response",
    ),
    "celery": FrameworkHooks(
        "celery.app.trace.build_tracer",
        "celery.app.trace.TraceInfo.handle_failure",
    ),
}

CLI_FRAMEWORKS: dict[str, FrameworkHooks] = {
    "django": FrameworkHooks(
        "django.core.management.ManagementUtility.fetch_command",
        "django.core.management.base.BaseCommand.run_from_argv",
    ),
    "flask": _CLI,
    "fastapi": _CLI,
}


def resolve_framework(framework: str, cli: bool = False) -> FrameworkHooks:
    """Look up hooks for ``framework``, preferring the CLI variant when ``cli``."""
    if cli and framework in CLI_FRAMEWORKS:
        return CLI_FRAMEWORKS[framework]
    return FRAMEWORKS.get(framework, FrameworkHooks(framework))
