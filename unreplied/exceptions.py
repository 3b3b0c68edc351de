from __future__ import annotations


class UnrepliedException(Exception):
    pass


class InvalidInputError(UnrepliedException):
    pass


class NotFoundError(UnrepliedException):
    pass


class UpstreamUnavailableError(UnrepliedException):
    pass


class RateLimitError(UpstreamUnavailableError):
    pass


class MisconfigurationError(UnrepliedException):
    pass


class APISchemaError(UnrepliedException):
    pass


_STATUS_MAP: dict[type[BaseException], int] = {
    InvalidInputError: 400,
    NotFoundError: 404,
}

_DEFAULT_STATUS = 500

_EXIT_CODE_MAP: dict[type[BaseException], int] = {
    InvalidInputError: 2,
    MisconfigurationError: 2,
    UpstreamUnavailableError: 3,
}

_DEFAULT_EXIT_CODE = 1
_KEYBOARD_INTERRUPT_EXIT_CODE = 5


def map_exception_to_status(exc: BaseException) -> int:
    for exc_type, status in _STATUS_MAP.items():
        if isinstance(exc, exc_type):
            return status
    return _DEFAULT_STATUS


def map_exception_to_exit_code(exc: BaseException) -> int:
    if isinstance(exc, KeyboardInterrupt):
        return _KEYBOARD_INTERRUPT_EXIT_CODE
    for exc_type, code in _EXIT_CODE_MAP.items():
        if isinstance(exc, exc_type):
            return code
    return _DEFAULT_EXIT_CODE
