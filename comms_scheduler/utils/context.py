"""
Correlation id propagation.

An HTTP request or a scheduler tick sets the id once; every log record emitted
while it runs (including inside job handlers) carries it.
"""
import contextvars
import uuid

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    return correlation_id_var.get("")


def new_correlation_id(prefix: str = "") -> str:
    """Generate an id, bind it to the current context and return it."""
    cid = f"{prefix}{uuid.uuid4()}"
    correlation_id_var.set(cid)
    return cid
