"""Gateway status adapter.

The PayWay check-transaction endpoint reports a paid transaction in several
shapes depending on API version. This module is the one place that decides
what counts as paid. Recognized shapes are tried in a fixed priority order:

1. ``status`` is the numeric sentinel ``0``
2. ``status`` is an object whose ``code`` is ``"00"``
3. ``data.payment_status_code`` is ``0``
4. ``data.payment_status`` is one of the success synonyms

The first match wins. A shape that is present but reports something else
counts as an explicit decline. A call that errors, or a body with none of the
shapes, is indeterminate.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

from reconciler.core.config import settings
from reconciler.services.payway_client import (
    PayWayClient,
    PayWayClientError,
    get_payway_client,
)
from reconciler.utils.dates import fixed_offset, parse_gateway_datetime

logger = logging.getLogger(__name__)

SUCCESS_STATUS_CODE = 0
SUCCESS_STATUS_OBJECT_CODE = "00"
SUCCESS_PAYMENT_STATUSES = frozenset({"success", "completed", "approved", "paid"})


class GatewayOutcome(str, enum.Enum):
    """Classification of a gateway check."""

    SUCCESS = "success"
    FAILURE = "failure"
    INDETERMINATE = "indeterminate"


class ShapeResult(str, enum.Enum):
    """What a single shape matcher saw."""

    MATCH = "match"  # Shape present and says paid
    MISMATCH = "mismatch"  # Shape present and says something else
    ABSENT = "absent"  # Shape not in this payload


@dataclass(frozen=True)
class StatusShape:
    """A named, priority-ordered success pattern."""

    name: str
    check: Callable[[dict[str, Any]], ShapeResult]


@dataclass
class GatewayVerdict:
    """Result of classifying one gateway response."""

    tran_id: str
    outcome: GatewayOutcome
    matched_shape: Optional[str] = None
    attempted_shapes: list[str] = field(default_factory=list)
    payload: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    payment_status: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    payment_currency: Optional[str] = None
    transaction_date: Optional[datetime] = None

    @property
    def is_success(self) -> bool:
        return self.outcome is GatewayOutcome.SUCCESS

    @property
    def is_failure(self) -> bool:
        return self.outcome is GatewayOutcome.FAILURE

    @property
    def is_indeterminate(self) -> bool:
        return self.outcome is GatewayOutcome.INDETERMINATE


def _data(payload: dict[str, Any]) -> dict[str, Any]:
    data = payload.get("data")
    return data if isinstance(data, dict) else {}


def _numeric_status(payload: dict[str, Any]) -> ShapeResult:
    status = payload.get("status")
    # bool is an int subclass; True/False are not status codes
    if isinstance(status, bool) or not isinstance(status, (int, float)):
        return ShapeResult.ABSENT
    return ShapeResult.MATCH if status == SUCCESS_STATUS_CODE else ShapeResult.MISMATCH


def _status_object(payload: dict[str, Any]) -> ShapeResult:
    status = payload.get("status")
    if not isinstance(status, dict) or "code" not in status:
        return ShapeResult.ABSENT
    return (
        ShapeResult.MATCH
        if str(status["code"]) == SUCCESS_STATUS_OBJECT_CODE
        else ShapeResult.MISMATCH
    )


def _payment_status_code(payload: dict[str, Any]) -> ShapeResult:
    code = _data(payload).get("payment_status_code")
    if code is None or isinstance(code, bool):
        return ShapeResult.ABSENT
    try:
        return ShapeResult.MATCH if int(code) == SUCCESS_STATUS_CODE else ShapeResult.MISMATCH
    except (TypeError, ValueError):
        return ShapeResult.MISMATCH


def _payment_status_text(payload: dict[str, Any]) -> ShapeResult:
    text = _data(payload).get("payment_status")
    if not isinstance(text, str) or not text.strip():
        return ShapeResult.ABSENT
    return (
        ShapeResult.MATCH
        if text.strip().lower() in SUCCESS_PAYMENT_STATUSES
        else ShapeResult.MISMATCH
    )


# Priority order matters: first MATCH wins
STATUS_SHAPES: tuple[StatusShape, ...] = (
    StatusShape("status_code", _numeric_status),
    StatusShape("status_object", _status_object),
    StatusShape("payment_status_code", _payment_status_code),
    StatusShape("payment_status", _payment_status_text),
)


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def classify_payload(tran_id: str, payload: Any) -> GatewayVerdict:
    """Classify a decoded check-transaction response.

    Args:
        tran_id: Transaction the payload belongs to
        payload: Decoded JSON body (or stored metadata)

    Returns:
        GatewayVerdict with outcome, matched shape and payment echo fields
    """
    if not isinstance(payload, dict):
        return GatewayVerdict(
            tran_id=tran_id,
            outcome=GatewayOutcome.INDETERMINATE,
            error="Malformed gateway response",
        )

    data = _data(payload)
    verdict = GatewayVerdict(
        tran_id=tran_id,
        outcome=GatewayOutcome.INDETERMINATE,
        payload=payload,
        payment_status=data.get("payment_status") if isinstance(data.get("payment_status"), str) else None,
        payment_amount=_decimal(data.get("payment_amount")),
        payment_currency=data.get("payment_currency") or None,
        transaction_date=parse_gateway_datetime(
            data.get("transaction_date"), fixed_offset(settings.PAYWAY_UTC_OFFSET_HOURS)
        ),
    )

    declined_by: Optional[str] = None
    for shape in STATUS_SHAPES:
        verdict.attempted_shapes.append(shape.name)
        result = shape.check(payload)
        if result is ShapeResult.MATCH:
            verdict.outcome = GatewayOutcome.SUCCESS
            verdict.matched_shape = shape.name
            return verdict
        if result is ShapeResult.MISMATCH and declined_by is None:
            declined_by = shape.name

    if declined_by is not None:
        verdict.outcome = GatewayOutcome.FAILURE
        verdict.matched_shape = declined_by
    else:
        verdict.error = "No recognized status shape in gateway response"
    return verdict


class GatewayStatusAdapter:
    """Normalizes gateway check-transaction responses into a verdict."""

    def __init__(self, client: Optional[PayWayClient] = None):
        """Initialize the adapter.

        Args:
            client: Gateway client (defaults to one built from settings)
        """
        self.client = client or get_payway_client()

    async def check(self, tran_id: str) -> GatewayVerdict:
        """Call the gateway and classify its answer.

        Never raises for gateway problems: transport and decoding errors come
        back as an indeterminate verdict so callers can apply their own policy.
        """
        try:
            payload = await self.client.check_transaction(tran_id)
        except PayWayClientError as e:
            logger.warning(
                f"Gateway check for {tran_id} indeterminate: {e} "
                f"(attempted shapes: none, call failed)"
            )
            return GatewayVerdict(
                tran_id=tran_id,
                outcome=GatewayOutcome.INDETERMINATE,
                error=str(e),
            )

        verdict = classify_payload(tran_id, payload)

        if verdict.is_success:
            logger.info(f"Gateway confirmed {tran_id} via shape '{verdict.matched_shape}'")
        elif verdict.is_failure:
            logger.warning(
                f"Gateway declined {tran_id} via shape '{verdict.matched_shape}' "
                f"(attempted: {', '.join(verdict.attempted_shapes)})"
            )
        else:
            logger.warning(
                f"Gateway check for {tran_id} indeterminate: {verdict.error} "
                f"(attempted: {', '.join(verdict.attempted_shapes)})"
            )
        return verdict


def get_gateway_status_adapter() -> GatewayStatusAdapter:
    """Factory function to create GatewayStatusAdapter."""
    return GatewayStatusAdapter()
