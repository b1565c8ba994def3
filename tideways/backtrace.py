"""Convert tracebacks into the collector's backtrace string format.

Frames are numbered from the innermost one, one per line::

    #0 /srv/app/views.py(42): checkout()
    #1 /srv/app/handlers.py(17): dispatch()
"""

import traceback
from types import TracebackType
from typing import Any, Iterable, Mapping


def _frame_line(
    index: int,
    file: str,
    line: Any,
    function: str,
    cls: str | None = None,
    args: Iterable[Any] = (),
) -> str:
    prefix = f"{cls}->" if cls else ""
    arg_types = ", ".join(type(arg).__name__ for arg in args)
    return f"#{index} {file}({line}): {prefix}{function}({arg_types})\n"


def convert_to_string(backtrace: TracebackType | Iterable[Any] | None) -> str:
    """Render a traceback, a stack summary or a list of frame mappings.

    Traceback objects and ``traceback.FrameSummary`` sequences are ordered
    outermost first and get reversed. Mappings (``file``, ``line``,
    ``function``, optional ``class`` and ``args``) are taken in the order
    given; entries without a ``function`` are skipped. Arguments are rendered
    by type name only, never by value.
    """
    if backtrace is None:
        return ""

    if isinstance(backtrace, TracebackType):
        backtrace = traceback.extract_tb(backtrace)

    frames = list(backtrace)
    if frames and isinstance(frames[0], traceback.FrameSummary):
        frames.reverse()

    out = []
    for index, frame in enumerate(frames):
        if isinstance(frame, traceback.FrameSummary):
            out.append(_frame_line(index, frame.filename, frame.lineno, frame.name))
        elif isinstance(frame, Mapping):
            if "function" not in frame:
                continue
            out.append(_frame_line(
                index,
                frame.get("file", ""),
                frame.get("line", ""),
                frame["function"],
                frame.get("class"),
                frame.get("args") or (),
            ))

    return "".join(out)


def exception_source(exc: BaseException) -> str:
    """``file:line`` of the frame that raised ``exc``."""
    tb = exc.__traceback__
    if tb is None:
        return ":"
    frames = traceback.extract_tb(tb)
    last = frames[-1]
    return f"{last.filename}:{last.lineno}"
