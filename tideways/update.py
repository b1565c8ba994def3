"""Functions to update the current span or trace with additional data.

These functions allow enrichment of spans with data that only becomes
available during execution, e.g. row counts or cache hits.
"""

import logging
from typing import Any

from tideways.context import get_current_profiler, get_current_span

logger = logging.getLogger(__name__)


def update_current_span(*, name: str | None = None, **annotations: Any) -> None:
    """Annotate the innermost span opened by ``@observe``.

    Args:
        name: Replace the span title.
        **annotations: Scalar annotations, other values are dropped.

    Example:
        @observe(category="sql")
        def load_orders(customer_id):
            rows = db.fetch_all(QUERY, customer_id)
            tideways.update_current_span(rows=len(rows))
            return rows
    """
    span = get_current_span()

    if span is None:
        logger.debug("update_current_span: No active span found.")
        return

    if name is not None:
        annotations["title"] = name

    span.annotate(annotations)


def update_current_trace(
    *,
    user_id: str | None = None,
    session_id: str | None = None,
    transaction_name: str | None = None,
    **annotations: Any,
) -> None:
    """Update the current trace with additional information.

    Annotations land on the root span and are only kept for collected
    traces.

    Args:
        user_id: ID of the user who initiated the trace.
        session_id: Session identifier for grouping related traces.
        transaction_name: Replace the transaction name.
        **annotations: Additional scalar annotations.

    Example:
        def handle_request(request):
            tideways.update_current_trace(
                user_id=request.user_id,
                transaction_name="checkout",
            )
            return process(request)
    """
    profiler = get_current_profiler()

    if profiler is None or not profiler.is_started():
        logger.debug("update_current_trace: No running trace found.")
        return

    if transaction_name is not None:
        profiler.set_transaction_name(transaction_name)

    if user_id is not None:
        annotations["user_id"] = user_id
    if session_id is not None:
        annotations["session_id"] = session_id

    for key, value in annotations.items():
        profiler.set_custom_variable(key, value)
