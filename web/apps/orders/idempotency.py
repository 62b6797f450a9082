"""Idempotency keys for order submission.

A client that may retry ``POST /orders`` sends an ``Idempotency-Key``
header. The first request with a key claims it and, once finished, stores
its response; a retry with the same payload gets that response back instead
of placing a second order. Reusing a key with a different payload is a
conflict, and so is a retry that arrives while the first request is still
running.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .domain import OrderError
from .models import IdempotencyKey


class IdempotencyConflict(OrderError):
    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409
    step = "idempotency"
    message = "This idempotency key was already used for a different request."


class IdempotencyInProgress(OrderError):
    code = "IDEMPOTENCY_IN_PROGRESS"
    status_code = 409
    step = "idempotency"
    message = "A request with this idempotency key is still being processed."


def request_hash(payload: dict) -> str:
    """SHA-256 of the payload serialized with sorted keys and compact separators."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def claim(key: str, payload: dict):
    """Claim ``key`` for this request, or find the stored outcome of an earlier one.

    The insert runs under a savepoint so a duplicate key only rolls back that
    insert; the existing row is then read with ``SELECT ... FOR UPDATE``.

    Returns:
        tuple[IdempotencyKey, bool]: The record and whether it holds a
        finished response to replay.

    Raises:
        IdempotencyConflict: Same key, different payload.
        IdempotencyInProgress: Same key and payload, first request not done.
    """
    digest = request_hash(payload)
    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=key, request_hash=digest)
            return rec, False
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
    if rec.request_hash != digest:
        raise IdempotencyConflict()
    if not rec.response_status:
        raise IdempotencyInProgress()
    return rec, True


def complete(rec: IdempotencyKey, status_code: int, body: dict, order_id=None) -> None:
    """Store the final response so retries can replay it."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order"])


def release(rec: IdempotencyKey) -> None:
    """Drop the claim after a server error so the client can retry."""
    IdempotencyKey.objects.filter(pk=rec.pk, response_status=0).delete()
