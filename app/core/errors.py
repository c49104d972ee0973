"""Failure taxonomy for payment-event reconciliation.

The class of an error decides how the webhook is answered:

* ``SignatureInvalid`` - the payload is untrusted. HTTP 400, nothing persisted.
* ``MalformedEvent`` - trusted but unusable (e.g. no tenant id). Soft failure:
  acknowledged with HTTP 200 so the provider stops retrying, and audited.
* ``TransientDependencyFailure`` - store or provider API unreachable. Hard
  failure: HTTP 500, the event stays ``failed`` and redelivery retries it.
* ``UnknownPaymentReference`` - refund for a charge not recorded yet. Logged,
  does not abort the event.
"""


class ReconciliationError(Exception):
    """Base class for errors raised while reconciling provider events."""

    code = "reconciliation_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SignatureInvalid(ReconciliationError):
    code = "signature_invalid"


class MalformedEvent(ReconciliationError):
    code = "malformed_event"


class TransientDependencyFailure(ReconciliationError):
    code = "transient_dependency_failure"


class UnknownPaymentReference(ReconciliationError):
    code = "unknown_payment_reference"

    def __init__(self, payment_ref: str):
        super().__init__(f"No ledger entry for payment reference {payment_ref}")
        self.payment_ref = payment_ref
