from typing import Optional


class RoomError(Exception):
    """Base for errors that are reported back to the offending connection."""

    def __init__(self, content: str):
        super().__init__(content)
        self.content = content


class PolicyViolation(RoomError):
    pass


class IntegrityError(RoomError):
    pass


class ProtocolError(RoomError):
    pass


class AdmissionError(Exception):
    """Raised before the upgrade completes; maps to a plain HTTP response."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


class StorageUnavailable(Exception):
    def __init__(self, detail: str, cause: Optional[BaseException] = None):
        super().__init__(detail)
        self.cause = cause
