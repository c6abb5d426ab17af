"""Failure taxonomy and classification for catalog fetches."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Classification of fetch failures for retry and display decisions."""

    TIMEOUT = "timeout"
    NETWORK = "network"
    OFFLINE = "offline"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


RETRYABLE_CATEGORIES: frozenset[ErrorCategory] = frozenset(
    {
        ErrorCategory.TIMEOUT,
        ErrorCategory.NETWORK,
        ErrorCategory.VALIDATION,
        ErrorCategory.UNKNOWN,
    }
)

FALLBACK_MESSAGE = "An unexpected error occurred. Please try again."

CATEGORY_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.TIMEOUT: "Request timed out. Please check your connection and try again.",
    ErrorCategory.NETWORK: "Network error. Please check your connection and try again.",
    ErrorCategory.OFFLINE: "No internet connection. Only downloaded content is available.",
    ErrorCategory.VALIDATION: "Invalid content data received. Please try again.",
}

# Checked in order; the first matching category wins.
_KEYWORDS: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.TIMEOUT, ("timeout", "timed out")),
    (ErrorCategory.NETWORK, ("network", "connection", "fetch")),
    (ErrorCategory.OFFLINE, ("offline", "internet")),
    (ErrorCategory.VALIDATION, ("invalid", "validation")),
)


class CatalogError(Exception):
    """Base error raised by catalog delegates and engine components.

    Subclasses pin a category so the classifier does not have to guess it
    from the message text.
    """

    category: ErrorCategory | None = None

    def __init__(self, message: str = "", *, category: ErrorCategory | None = None):
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category


class CatalogTimeoutError(CatalogError):
    category = ErrorCategory.TIMEOUT


class CatalogNetworkError(CatalogError):
    category = ErrorCategory.NETWORK


class CatalogOfflineError(CatalogError):
    category = ErrorCategory.OFFLINE


class CatalogValidationError(CatalogError):
    category = ErrorCategory.VALIDATION


@dataclass(frozen=True, slots=True)
class ClassifiedError:
    """A typed, user-presentable view of a failure."""

    category: ErrorCategory
    retryable: bool
    message: str
    details: Any = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "retryable": self.retryable,
            "message": self.message,
            "details": _describe(self.details),
        }


def classify(failure: Any) -> ClassifiedError:
    """Map any raised or rejected value to a :class:`ClassifiedError`.

    Accepts exceptions as well as strings, mappings and ``None``. The original
    value is always preserved in ``details``.
    """

    raw_message = _extract_message(failure)
    category = _explicit_category(failure) or _category_from_text(
        raw_message, _type_names(failure)
    )

    if category in CATEGORY_MESSAGES:
        message = CATEGORY_MESSAGES[category]
    elif raw_message and isinstance(failure, BaseException):
        message = f"Failed to fetch content: {raw_message}"
    else:
        message = FALLBACK_MESSAGE

    return ClassifiedError(
        category=category,
        retryable=category in RETRYABLE_CATEGORIES,
        message=message,
        details=failure,
    )


def is_retryable(failure: Any) -> bool:
    return classify(failure).retryable


def _explicit_category(failure: Any) -> ErrorCategory | None:
    category = getattr(failure, "category", None)
    if isinstance(category, ErrorCategory):
        return category
    if isinstance(failure, dict):
        value = failure.get("category")
        try:
            return ErrorCategory(value) if value is not None else None
        except ValueError:
            return None
    return None


def _category_from_text(message: str, type_names: str) -> ErrorCategory:
    haystacks = (message.casefold(), type_names)
    for haystack in haystacks:
        if not haystack:
            continue
        for category, keywords in _KEYWORDS:
            if any(keyword in haystack for keyword in keywords):
                return category
    return ErrorCategory.UNKNOWN


def _type_names(failure: Any) -> str:
    if not isinstance(failure, BaseException):
        return ""
    # ``ConnectError`` is found through its ``NetworkError`` base.
    return " ".join(_split_camel(cls.__name__) for cls in type(failure).__mro__)


def _split_camel(name: str) -> str:
    spaced = "".join(f" {char}" if char.isupper() else char for char in name)
    return spaced.strip().casefold()


def _extract_message(failure: Any) -> str:
    if failure is None:
        return ""
    if isinstance(failure, str):
        return failure.strip()
    if isinstance(failure, BaseException):
        message = getattr(failure, "message", None)
        if isinstance(message, str) and message.strip():
            return message.strip()
        return str(failure).strip()
    if isinstance(failure, dict):
        message = failure.get("message")
        if isinstance(message, str):
            return message.strip()
    return ""


def _describe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    return repr(value)
