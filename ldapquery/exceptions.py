"""
Exceptions raised by ldapquery.

Lookup failures (:py:class:`ModelNotFound`, :py:class:`MultipleObjectsFound`)
carry the filter and search root they were raised for.  Failures coming back
from the directory server are wrapped in :py:class:`DirectoryOperationError`,
which classifies the python-ldap exception into an :py:class:`ErrorKind` so
that callers can match on the kind of failure instead of parsing server text.
"""

import enum
from contextlib import contextmanager
from typing import Any

from ldapquery import ldap


class ModelNotFound(LookupError):
    """
    Raised when a lookup expecting a result found nothing.

    Args:
        message: the error message

    Keyword Args:
        query: the LDAP filter that was executed
        basedn: the search root the filter was executed against

    """

    def __init__(
        self,
        message: str | None = None,
        query: str | None = None,
        basedn: str | None = None,
    ) -> None:
        self.query = query
        self.basedn = basedn
        if message is None:
            message = f"No LDAP query results for filter: [{query}] in: [{basedn}]"
        super().__init__(message)

    @classmethod
    def for_query(cls, query: str, basedn: str | None) -> "ModelNotFound":
        return cls(query=query, basedn=basedn)


class MultipleObjectsFound(LookupError):
    """
    Raised when a lookup expecting at most one result found more than one.

    Args:
        message: the error message

    Keyword Args:
        query: the LDAP filter that was executed
        basedn: the search root the filter was executed against

    """

    def __init__(
        self,
        message: str | None = None,
        query: str | None = None,
        basedn: str | None = None,
    ) -> None:
        self.query = query
        self.basedn = basedn
        if message is None:
            message = (
                f"Multiple LDAP query results for filter: [{query}] in: [{basedn}]"
            )
        super().__init__(message)

    @classmethod
    def for_query(cls, query: str, basedn: str | None) -> "MultipleObjectsFound":
        return cls(query=query, basedn=basedn)


class InvalidUsage(ValueError):
    """
    Raised when the caller asks for something the model does not declare, for
    example comparing a non-date attribute against a date.
    """


class ErrorKind(enum.Enum):
    """
    Structured classification of directory server failures.
    """

    ALREADY_EXISTS = "already_exists"
    UNWILLING_TO_PERFORM = "unwilling_to_perform"
    NO_SUCH_ATTRIBUTE = "no_such_attribute"
    NO_SUCH_OBJECT = "no_such_object"
    INSUFFICIENT_ACCESS = "insufficient_access"
    CONSTRAINT_VIOLATION = "constraint_violation"
    SIZE_LIMIT_EXCEEDED = "size_limit_exceeded"
    UNKNOWN = "unknown"


#: python-ldap exception class name -> :py:class:`ErrorKind`.  ``TYPE_OR_VALUE_EXISTS``
#: is what a server answers when we add a value an attribute already holds;
#: ``ALREADY_EXISTS`` is the entry-level version of the same thing.
ERROR_KINDS: dict[str, ErrorKind] = {
    "ALREADY_EXISTS": ErrorKind.ALREADY_EXISTS,
    "TYPE_OR_VALUE_EXISTS": ErrorKind.ALREADY_EXISTS,
    "UNWILLING_TO_PERFORM": ErrorKind.UNWILLING_TO_PERFORM,
    "NO_SUCH_ATTRIBUTE": ErrorKind.NO_SUCH_ATTRIBUTE,
    "NO_SUCH_OBJECT": ErrorKind.NO_SUCH_OBJECT,
    "INSUFFICIENT_ACCESS": ErrorKind.INSUFFICIENT_ACCESS,
    "CONSTRAINT_VIOLATION": ErrorKind.CONSTRAINT_VIOLATION,
    "SIZELIMIT_EXCEEDED": ErrorKind.SIZE_LIMIT_EXCEEDED,
}


def classify(exc: Exception) -> ErrorKind:
    """
    Map a python-ldap exception to an :py:class:`ErrorKind`.

    Args:
        exc: the exception raised by python-ldap

    Returns:
        The matching kind, or ``ErrorKind.UNKNOWN``.

    """
    for klass in type(exc).__mro__:
        if klass.__name__ in ERROR_KINDS:
            return ERROR_KINDS[klass.__name__]
    return ErrorKind.UNKNOWN


class DirectoryOperationError(Exception):
    """
    A search or modify failed at the directory server.

    The message is the server's own description (plus any ``info`` text) so
    that nothing the server said is lost; the original python-ldap exception
    is kept both as :py:attr:`original` and as ``__cause__``.

    Args:
        message: the error message

    Keyword Args:
        kind: the classified kind of failure
        description: the server's ``desc`` text
        info: the server's ``info`` text
        operation: what we were doing, e.g. ``"modify"`` or ``"search"``
        original: the python-ldap exception

    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        description: str = "",
        info: str = "",
        operation: str | None = None,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.description = description
        self.info = info
        self.operation = operation
        self.original = original

    @classmethod
    def from_ldap_error(
        cls, exc: Exception, operation: str | None = None
    ) -> "DirectoryOperationError":
        """
        Build a :py:class:`DirectoryOperationError` from a python-ldap exception.

        Args:
            exc: the python-ldap exception

        Keyword Args:
            operation: what we were doing when ``exc`` was raised

        Returns:
            The wrapped error.

        """
        details: dict[str, Any] = {}
        if exc.args and isinstance(exc.args[0], dict):
            details = exc.args[0]
        description = str(details.get("desc", "")) or type(exc).__name__
        info = details.get("info", "")
        if isinstance(info, bytes):
            info = info.decode("utf-8", errors="replace")
        message = f"{description}: {info}" if info else description
        return cls(
            message,
            kind=classify(exc),
            description=description,
            info=str(info),
            operation=operation,
            original=exc,
        )

    def matches(self, kinds: set[ErrorKind], messages: list[str]) -> bool:
        """
        Test whether this error is one of ``kinds`` or its text contains one
        of ``messages`` (case-insensitive).
        """
        if self.kind in kinds:
            return True
        text = str(self).lower()
        return any(m and m in text for m in messages)


@contextmanager
def directory_errors(operation: str):
    """
    Re-raise any ``ldap.LDAPError`` raised inside the block as a
    :py:class:`DirectoryOperationError`.

    Args:
        operation: name of the operation, used in the error and in logging

    Raises:
        DirectoryOperationError: the server returned an error

    """
    try:
        yield
    except ldap.LDAPError as exc:
        raise DirectoryOperationError.from_ldap_error(exc, operation=operation) from exc
