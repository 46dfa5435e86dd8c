# avr/services/idempotency.py
import uuid

IDEMPOTENCY_HEADER = "Idempotency-Key"


def new_idempotency_key() -> str:
    """Fresh UUID4 in canonical 8-4-4-4-12 form (36 chars).

    One key per logical attempt; never reuse a key for a different request.
    """
    return str(uuid.uuid4())
