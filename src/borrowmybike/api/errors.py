"""Translation of domain exceptions into HTTP responses."""

from __future__ import annotations

from typing import Any, Callable

from fastapi import HTTPException

from borrowmybike.domain.errors import (
    AlreadyDone,
    BookingNotFoundError,
    BookingValidationError,
    ExternalGatewayError,
    ForbiddenError,
    InsufficientCreditError,
    LedgerIntegrityError,
    PaymentNotFoundError,
    PreconditionError,
    SettlementIncompleteError,
    SlotUnavailableError,
    UnclassifiableBookingError,
)
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

logger = get_logger(__name__)


def call_domain(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a domain operation and map its exceptions to HTTPException.

    ``AlreadyDone`` is not an error: its carried result is returned as the
    200 response body.
    """
    try:
        return fn(*args, **kwargs)
    except AlreadyDone as exc:
        return exc.result
    except (BookingValidationError, InsufficientCreditError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except PreconditionError as exc:
        if exc.window is not None:
            raise HTTPException(status_code=400, detail={"error": str(exc), "window": exc.window})
        raise HTTPException(status_code=400, detail=str(exc))
    except ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    except BookingNotFoundError:
        raise HTTPException(status_code=404, detail="Booking not found")
    except PaymentNotFoundError:
        raise HTTPException(status_code=404, detail="Payment not found")
    except (SlotUnavailableError, UnclassifiableBookingError) as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ExternalGatewayError as exc:
        # No credit fallback was possible; the booking stays unsettled for an operator
        logger.error(
            "payment gateway error",
            extra={"extra_fields": safe_log_context(error=str(exc), ambiguous=exc.ambiguous)},
        )
        raise HTTPException(status_code=500, detail=f"payment gateway error: {exc}")
    except SettlementIncompleteError as exc:
        # Already logged with its steps by the settlement executor
        raise HTTPException(status_code=500, detail=exc.to_payload())
    except LedgerIntegrityError as exc:
        logger.error(
            "ledger integrity error",
            extra={"extra_fields": safe_log_context(error=str(exc))},
        )
        raise HTTPException(status_code=500, detail="ledger integrity error")
