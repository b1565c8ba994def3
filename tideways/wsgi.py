"""WSGI integration.

``TidewaysMiddleware`` runs one trace per request, each with its own
``Profiler`` bound to the request's context.

Example:
    from tideways.wsgi import TidewaysMiddleware

    application = TidewaysMiddleware(application, service="shop")
"""

import logging
from typing import Any, Callable, Iterable, Iterator

from tideways.context import reset_current_profiler, set_current_profiler
from tideways.profiler import Profiler

logger = logging.getLogger(__name__)


def _status_code(status: str) -> int:
    try:
        return int(status.split(" ", 1)[0])
    except (ValueError, AttributeError):
        return 0


class TidewaysMiddleware:
    """Trace every request handled by a WSGI application.

    Exceptions raised by the application are recorded and re-raised. Responses
    with a status of 500 or above are recorded as errors.
    """

    def __init__(self, app: Callable, **options: Any):
        """
        Args:
            app: The wrapped WSGI application.
            **options: ``Profiler`` arguments used for every request.
        """
        self.app = app
        self.options = options

    def __call__(self, environ: dict[str, Any], start_response: Callable) -> Iterable[bytes]:
        profiler = Profiler(register_shutdown=False, **self.options)
        token = set_current_profiler(profiler)
        status_holder: dict[str, int] = {}

        def traced_start_response(status: str, headers: list, exc_info: Any = None) -> Callable:
            status_holder["code"] = _status_code(status)
            return start_response(status, headers, exc_info)

        try:
            profiler.start(environ)
            profiler.use_request_as_transaction_name(environ)

            try:
                result = self.app(environ, traced_start_response)
            except Exception as e:
                profiler.log_exception(e)
                profiler.stop()
                raise
        finally:
            reset_current_profiler(token)

        return _TracedResponse(result, profiler, status_holder)


class _TracedResponse:
    """Response iterable that stops the trace once the server closes it."""

    def __init__(self, result: Iterable[bytes], profiler: Profiler, status_holder: dict[str, int]):
        self._result = result
        self._profiler = profiler
        self._status_holder = status_holder

    def __iter__(self) -> Iterator[bytes]:
        # Streaming bodies run here, after __call__ returned
        iterator = iter(self._result)
        while True:
            token = set_current_profiler(self._profiler)
            try:
                chunk = next(iterator)
            except StopIteration:
                return
            except Exception as e:
                self._profiler.log_exception(e)
                raise
            finally:
                reset_current_profiler(token)
            yield chunk

    def close(self) -> None:
        try:
            if hasattr(self._result, "close"):
                self._result.close()
        finally:
            code = self._status_holder.get("code", 0)
            if code >= 500:
                self._profiler.log_fatal(f"Request set error HTTP response code to '{code}'.", "", 0)
            self._profiler.stop()
