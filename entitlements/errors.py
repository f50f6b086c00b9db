class EntitlementError(Exception):
    """Base class for domain errors surfaced to callers as typed failures."""

    code = "ENTITLEMENT_ERROR"
    status_code = 400

    def __init__(self, message=None, **context):
        self.message = message or self.__doc__.strip().splitlines()[0]
        self.context = context
        super().__init__(self.message)

    def to_dict(self):
        body = {"error": self.code, "message": self.message}
        if self.context:
            body["details"] = self.context
        return body


class InvalidTransition(EntitlementError):
    """The requested entitlement change is not valid for the account's state."""

    code = "INVALID_TRANSITION"
    status_code = 400


class NoActiveSubscription(InvalidTransition):
    """The account has no active subscription to extend."""

    code = "NO_ACTIVE_SUBSCRIPTION"


class AccountNotFound(EntitlementError):
    """No such account."""

    code = "NO_SUCH_USER"
    status_code = 404


class InvalidOrRedeemedToken(EntitlementError):
    """Invalid or already redeemed gift token."""

    code = "INVALID_TOKEN"
    status_code = 400


class TokenExpired(EntitlementError):
    """This gift token has expired."""

    code = "GIFT_EXPIRED"
    status_code = 410


class StaleWrite(EntitlementError):
    """The account changed concurrently; retry with fresh state."""

    code = "STALE_WRITE"
    status_code = 409


class ExternalProviderError(EntitlementError):
    """The billing provider call failed."""

    code = "BILLING_PROVIDER_ERROR"
    status_code = 502


class InvalidWebhookSignature(EntitlementError):
    """Webhook signature verification failed."""

    code = "INVALID_WEBHOOK_SIGNATURE"
    status_code = 400


class SweepAlreadyRunning(EntitlementError):
    """Another worker holds the sweep lock."""

    code = "SWEEP_ALREADY_RUNNING"
    status_code = 409
