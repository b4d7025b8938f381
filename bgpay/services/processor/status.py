"""Processor payment-status vocabulary mapped onto internal statuses."""

from bgpay.common.errors import UnknownExternalStatus
from bgpay.common.state_machine import CONFIRMED, EXPIRED, FAILED, PENDING

# Total over the processor's documented IPN statuses.
STATUS_MAPPING: dict[str, str] = {
    "waiting": PENDING,
    "confirming": PENDING,
    "partially_paid": PENDING,
    "confirmed": CONFIRMED,
    "sending": CONFIRMED,
    "finished": CONFIRMED,
    "expired": EXPIRED,
    "failed": FAILED,
    "refunded": FAILED,
}


def map_external_status(external_status) -> str:
    """Return the internal status or raise `UnknownExternalStatus`; never guesses."""

    if not isinstance(external_status, str):
        raise UnknownExternalStatus(external_status)
    try:
        return STATUS_MAPPING[external_status.strip().lower()]
    except KeyError:
        raise UnknownExternalStatus(external_status) from None
