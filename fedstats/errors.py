"""Error taxonomy shared by the engine, the HTTP layer and the client.

Every failure carries a machine-readable ``kind`` and a human-readable
message. ``status_code`` is what the HTTP layer answers with.
"""


class AnalyticsError(Exception):
    kind = "InternalError"
    status_code = 500

    def __init__(self, message: str = ""):
        self.message = message or self.kind
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ValidationError(AnalyticsError):
    kind = "ValidationError"
    status_code = 422


class UnknownGroup(AnalyticsError):
    kind = "UnknownGroup"
    status_code = 422


class InvalidFilter(AnalyticsError):
    kind = "InvalidFilter"
    status_code = 422


class InsufficientSites(AnalyticsError):
    kind = "InsufficientSites"
    status_code = 503


class InsufficientSampleSize(AnalyticsError):
    kind = "InsufficientSampleSize"
    status_code = 422


class DegenerateTable(AnalyticsError):
    kind = "DegenerateTable"
    status_code = 422


class ZeroVariance(AnalyticsError):
    kind = "ZeroVariance"
    status_code = 422


class CorruptAggregate(AnalyticsError):
    kind = "CorruptAggregate"
    status_code = 502


class Cancelled(AnalyticsError):
    kind = "Cancelled"
    status_code = 409


class Timeout(AnalyticsError):
    kind = "Timeout"
    status_code = 504


class EmptyResponse(AnalyticsError):
    kind = "EmptyResponse"
    status_code = 502


class TransportError(AnalyticsError):
    kind = "TransportError"
    status_code = 502


class UnknownFederation(AnalyticsError):
    kind = "UnknownFederation"
    status_code = 404


class QueryNotFound(AnalyticsError):
    kind = "QueryNotFound"
    status_code = 404


_BY_KIND: dict[str, type[AnalyticsError]] = {
    cls.kind: cls
    for cls in (
        AnalyticsError,
        ValidationError,
        UnknownGroup,
        InvalidFilter,
        InsufficientSites,
        InsufficientSampleSize,
        DegenerateTable,
        ZeroVariance,
        CorruptAggregate,
        Cancelled,
        Timeout,
        EmptyResponse,
        TransportError,
        UnknownFederation,
        QueryNotFound,
    )
}


def error_from_kind(kind: str, message: str = "") -> AnalyticsError:
    """Rebuild an error from its wire form; unknown kinds map to the base class."""
    cls = _BY_KIND.get(kind, AnalyticsError)
    return cls(message)


_BY_STATUS: dict[int, type[AnalyticsError]] = {
    404: QueryNotFound,
    408: Timeout,
    409: Cancelled,
    422: ValidationError,
    503: InsufficientSites,
    504: Timeout,
}


def error_from_status(status_code: int, message: str = "") -> AnalyticsError:
    """Best-effort kind for an error response that carried no ``kind`` field."""
    cls = _BY_STATUS.get(status_code)
    if cls is None:
        return TransportError(message or f"HTTP {status_code}")
    return cls(message or f"HTTP {status_code}")
