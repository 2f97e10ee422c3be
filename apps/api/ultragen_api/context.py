"""Request context management for observability.

Context variables for request tracking across async boundaries.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Customer reference - short hash of the customer email on a billing event
customer_ref_var: ContextVar[str] = ContextVar("customer_ref", default="")
