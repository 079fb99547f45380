"""
Library-wide settings for ldapquery.

Every setting is read from Django settings with an ``LDAPQUERY_`` prefix and
falls back to the default listed here.

``LDAPQUERY_DEFAULT_PAGE_SIZE``
    Page size used by relations when fetching related entries.  Default: 1000.

``LDAPQUERY_ATTACH_BYPASS_MESSAGES``
    Substrings of server error text that mean an attach is already satisfied.
    Default: ``["already exists"]``.

``LDAPQUERY_DETACH_BYPASS_MESSAGES``
    Substrings of server error text that mean a detach is already satisfied.
    Default: ``["server is unwilling to perform"]``.

``LDAPQUERY_CACHE_ALIAS``
    The Django cache alias used by :py:meth:`ldapquery.query.QueryBuilder.cache`.
    Default: ``"default"``.

``LDAPQUERY_DIRECTORY_CACHE_TTL``
    Seconds a detected directory type is remembered.  Default: 3600.
"""

from typing import Any

from django.conf import settings

DEFAULTS: dict[str, Any] = {
    "DEFAULT_PAGE_SIZE": 1000,
    "ATTACH_BYPASS_MESSAGES": ["already exists"],
    "DETACH_BYPASS_MESSAGES": ["server is unwilling to perform"],
    "CACHE_ALIAS": "default",
    "DIRECTORY_CACHE_TTL": 3600,
}


def get_setting(name: str, default: Any = None) -> Any:
    """
    Get configuration value from Django settings with fallback.

    Args:
        name: Name of the setting (without the ``LDAPQUERY_`` prefix)

    Keyword Args:
        default: Value to use when neither Django settings nor :py:data:`DEFAULTS`
            define the setting

    Returns:
        The configured value.

    """
    return getattr(settings, f"LDAPQUERY_{name}", DEFAULTS.get(name, default))


def get_default_page_size() -> int:
    return int(get_setting("DEFAULT_PAGE_SIZE"))


def get_bypass_messages(operation: str) -> list[str]:
    """
    Get the benign error substrings for ``operation``, lowercased.

    Args:
        operation: either ``"attach"`` or ``"detach"``

    Returns:
        A list of lowercase substrings.

    """
    messages = get_setting(f"{operation.upper()}_BYPASS_MESSAGES", [])
    if isinstance(messages, str):
        messages = [messages]
    return [m.lower() for m in messages]
