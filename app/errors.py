class CheckoutError(Exception):
    """Base class for checkout and settlement failures surfaced to callers."""


class CheckoutValidationError(CheckoutError):
    """Malformed input, empty cart or missing identity. Nothing was written."""


class NotFoundError(CheckoutError):
    pass


class DuplicateSubmissionError(CheckoutError):
    """A COD order for the same cart is already being processed."""


class SettlementConflictError(CheckoutError):
    """The session is in a state that forbids the requested transition."""


class OrderCreationError(CheckoutError):
    """The commerce platform rejected or failed the order. The session is marked failed."""


class CommercePlatformError(Exception):
    pass


class NotifierError(Exception):
    pass
