"""Typed failures raised by the order codec, relay fetcher, DM parser and driver."""


class MostroError(Exception):
    """Base class for every error raised by this package."""


# ---------------------------------------------------------------------------
# Tag decoding
# ---------------------------------------------------------------------------


class DecodeError(MostroError, ValueError):
    """A tag set could not be decoded into a domain object."""

    def __init__(self, field: str, message: str | None = None) -> None:
        self.field = field
        super().__init__(message or f"Cannot decode tag '{field}'")


class MissingFieldError(DecodeError):
    def __init__(self, field: str) -> None:
        super().__init__(field, f"Missing required tag '{field}'")


class InvalidNumberError(DecodeError):
    def __init__(self, field: str, value: str = "") -> None:
        self.value = value
        super().__init__(field, f"Tag '{field}' is not an integer: {value!r}")


class InvalidEnumError(DecodeError):
    def __init__(self, field: str, value: str = "") -> None:
        self.value = value
        super().__init__(field, f"Tag '{field}' has unknown value {value!r}")


class InvalidRangeError(DecodeError):
    def __init__(self, field: str, low: int, high: int) -> None:
        super().__init__(field, f"Tag '{field}' range is inverted: {low} > {high}")


# ---------------------------------------------------------------------------
# Relay fetch
# ---------------------------------------------------------------------------


class FetchError(MostroError, ConnectionError):
    """Relay-wide failure while fetching or publishing events."""


class AllRelaysUnreachable(FetchError):
    def __init__(self, failures: dict[str, BaseException]) -> None:
        self.failures = failures
        detail = "; ".join(f"{url}: {exc}" for url, exc in failures.items())
        super().__init__(f"No relay could be reached ({detail})")


# ---------------------------------------------------------------------------
# Direct-message parsing
# ---------------------------------------------------------------------------


class ParseError(MostroError):
    """A single direct-message event could not be turned into a message."""

    def __init__(self, event_id: str, message: str) -> None:
        self.event_id = event_id
        super().__init__(message)


class NotAddressedToMe(ParseError):
    def __init__(self, event_id: str) -> None:
        super().__init__(event_id, f"Event {event_id} is not addressed to this key")


class DecryptionFailed(ParseError):
    def __init__(self, event_id: str, reason: str = "") -> None:
        super().__init__(event_id, f"Could not decrypt event {event_id}: {reason}")


class MalformedContent(ParseError):
    def __init__(self, event_id: str, reason: str = "") -> None:
        super().__init__(event_id, f"Could not parse message in event {event_id}: {reason}")


# ---------------------------------------------------------------------------
# Response waiting
# ---------------------------------------------------------------------------


class WaitError(MostroError):
    """The correlated response to a published request was not obtained."""


class ResponseTimeout(WaitError):
    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"No response within {timeout:g}s")


class TransportError(WaitError):
    pass


# ---------------------------------------------------------------------------
# Order actions
# ---------------------------------------------------------------------------


class DriverError(MostroError):
    """An order action failed; the cause is chained when there is one."""


class NoResponse(DriverError):
    pass


class RelayFailure(DriverError):
    pass


class RequestRejected(DriverError):
    def __init__(self, reason: str | None, description: str) -> None:
        self.reason = reason
        super().__init__(description)


class UnexpectedResponse(DriverError):
    pass
