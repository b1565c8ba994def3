"""Per-trace collection mode decision.

A trace is collected in one of the ``Mode`` combinations. Authenticated
trigger requests always win over random sampling: they let an operator force a
full trace for one request, for example to reproduce a reported issue.

Trigger parameters are query-string encoded and carry ``hash``, ``time``,
``user`` and ``method``. The hash is an HMAC-SHA256 over
``method=<m>&time=<t>&user=<u>`` keyed with the hex MD5 digest of the API key.
"""

import hashlib
import hmac
import logging
import random
import time
from dataclasses import dataclass
from http.cookies import CookieError, SimpleCookie
from typing import Callable, Mapping
from urllib.parse import parse_qs, unquote, urlencode

from tideways.constants import (
    TRIGGER_FIELDS,
    TRIGGER_HEADER,
    TRIGGER_QUERY_PARAM,
    TRIGGER_SESSION,
    TRIGGER_TTL,
    Mode,
)
from tideways.env import TIDEWAYS_DISABLE_SESSIONS
from tideways.utils import parse_bool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    """Outcome of ``decide_mode``."""

    mode: Mode
    keep: bool = False
    user: str | None = None


def _parse_query(value: str) -> dict[str, str]:
    return {k: v[-1] for k, v in parse_qs(value, keep_blank_values=True).items()}


def _session_cookie(environ: Mapping[str, str]) -> str | None:
    raw = environ.get("HTTP_COOKIE")
    if not raw:
        return None
    cookie = SimpleCookie()
    try:
        cookie.load(raw)
    except CookieError:
        logger.debug("Ignoring unparsable cookie header.")
        return None
    morsel = cookie.get(TRIGGER_SESSION)
    return unquote(morsel.value) if morsel is not None else None


def _query_trigger(environ: Mapping[str, str]) -> dict[str, str] | None:
    query = environ.get("QUERY_STRING")
    if not query:
        return None
    prefix = TRIGGER_QUERY_PARAM + "["
    found = {
        key[len(prefix):-1]: value
        for key, value in _parse_query(query).items()
        if key.startswith(prefix) and key.endswith("]")
    }
    return found or None


def parse_trigger_vars(environ: Mapping[str, str]) -> dict[str, str]:
    """Read trigger parameters from the first source present in ``environ``.

    Sources by priority: ``X-Tideways-Profiler`` header, ``TIDEWAYS_SESSION``
    variable, ``TIDEWAYS_SESSION`` cookie, ``_tideways[...]`` query
    parameters. Lower-priority sources are not consulted once one is present.
    """
    header = environ.get(TRIGGER_HEADER)
    if isinstance(header, str):
        found = _parse_query(header)
    elif isinstance(environ.get(TRIGGER_SESSION), str):
        found = _parse_query(environ[TRIGGER_SESSION])
    elif (cookie := _session_cookie(environ)) is not None:
        found = _parse_query(cookie)
    else:
        found = _query_trigger(environ) or {}

    if parse_bool(environ.get(TIDEWAYS_DISABLE_SESSIONS), False):
        return {}

    return found


def contains_developer_trace_request(environ: Mapping[str, str]) -> bool:
    """Check if any trigger source is present, without validating it."""
    return (
        isinstance(environ.get(TRIGGER_HEADER), str)
        or isinstance(environ.get(TRIGGER_SESSION), str)
        or _session_cookie(environ) is not None
        or _query_trigger(environ) is not None
    )


def generate_trigger_hash(api_key: str, method: str, time: str | int, user: str) -> str:
    """Compute the trigger hash for the given parameters."""
    message = f"method={method}&time={time}&user={user}"
    key = hashlib.md5(api_key.encode("utf-8")).hexdigest()
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def build_trigger_query(
    api_key: str,
    user: str = "",
    method: str = "",
    ttl: int = TRIGGER_TTL,
    now: Callable[[], float] = time.time,
) -> str:
    """Build a query-string encoded trigger valid for ``ttl`` seconds."""
    expires = int(now()) + ttl
    return urlencode({
        "time": expires,
        "user": user,
        "method": method,
        "hash": generate_trigger_hash(api_key, method, expires, user),
    })


def validate_trigger(
    vars: Mapping[str, str],
    api_key: str,
    now: Callable[[], float] = time.time,
) -> bool:
    """Return True if ``vars`` hold a complete, unexpired, authentic trigger."""
    if not all(field in vars for field in TRIGGER_FIELDS):
        return False

    try:
        expires = int(vars["time"])
    except (TypeError, ValueError):
        return False

    if expires <= now():
        return False

    expected = generate_trigger_hash(api_key, vars["method"], vars["time"], vars["user"])
    return hmac.compare_digest(expected, str(vars["hash"]))


def decide_mode(
    api_key: str,
    sample_rate: int,
    collect: Mode,
    monitor: Mode,
    triggered: Mode = Mode.FULL,
    environ: Mapping[str, str] | None = None,
    has_extension: bool = True,
    rand: Callable[[int, int], int] = random.randint,
    now: Callable[[], float] = time.time,
) -> Decision:
    """Pick the collection mode for a new trace.

    Args:
        api_key: Application API key, used to authenticate triggers.
        sample_rate: Percentage (0-100) of traces that get ``collect``.
        collect: Mode for sampled traces.
        monitor: Mode for the rest. Reduced to ``BASIC`` at most.
        triggered: Mode for authenticated trigger requests.
        environ: Request variables (WSGI environ or ``os.environ``).
        has_extension: Whether a profiling engine is available. Without one
            every started trace is reduced to ``BASIC``.
        rand: Random integer source, ``randint(a, b)`` signature.
        now: Unix time source for trigger expiry.

    Returns:
        The ``Decision`` for this trace.
    """
    decision = _decide(api_key, sample_rate, collect, monitor, triggered, environ or {}, rand, now)

    if not has_extension and decision.mode != Mode.NONE:
        # without an engine only the wall time of the root span is measured
        decision = Decision(Mode.BASIC, decision.keep, decision.user)
        logger.debug("No profiling engine available, reduced mode to BASIC.")

    return decision


def _decide(api_key, sample_rate, collect, monitor, triggered, environ, rand, now) -> Decision:
    vars = parse_trigger_vars(environ)

    if all(field in vars for field in TRIGGER_FIELDS):
        logger.debug("Found explicit trigger trace parameters in request.")

        if validate_trigger(vars, api_key, now):
            logger.info("Successful trigger trace request with valid hash.")
            return Decision(Mode(triggered), keep=True, user=vars["user"])

        logger.debug("Invalid trigger trace request cannot be authenticated.")

    logger.debug(f"Profiling decision with sample-rate: {sample_rate}")

    if rand(1, 100) <= sample_rate:
        return Decision(Mode(collect))
    return Decision(Mode(monitor) & Mode.BASIC)
