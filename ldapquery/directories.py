"""
Directory server families and detection of which one we are talking to.

Directory servers differ in which attribute holds an entry's GUID, how that
GUID is encoded, and whether they implement Active Directory's ambiguous name
resolution (``anr``) matching rule.  Each family is described by a
:py:class:`Directory` subclass; :py:class:`DirectoryDetector` works out the
family from the server's Root DSE when a model does not say.
"""

import logging
import threading
import time
from typing import Any, ClassVar

from django.core.exceptions import ImproperlyConfigured

from ldapquery import ldap

from .conf import get_setting

logger = logging.getLogger(__name__)


class Directory:
    """
    A generic LDAPv3 directory.

    Subclasses override the class attributes below; nothing here talks to a
    server.
    """

    #: The name used in ``Meta.directory`` and ``settings.LDAP_SERVERS[...]["directory"]``
    name: ClassVar[str] = "generic"
    #: The attribute holding the directory-assigned unique identifier of an entry
    guid_key: ClassVar[str] = "entryuuid"
    #: Whether the server implements the ``anr`` matching rule
    supports_anr: ClassVar[bool] = False
    #: Whether :py:attr:`guid_key` holds 16 raw bytes rather than a string
    binary_guid: ClassVar[bool] = False
    #: Attributes searched in place of ``anr`` when the server lacks it
    anr_attributes: ClassVar[tuple[str, ...]] = (
        "cn",
        "sn",
        "uid",
        "name",
        "mail",
        "givenname",
        "displayname",
    )


class ActiveDirectory(Directory):
    name = "active_directory"
    guid_key = "objectguid"
    supports_anr = True
    binary_guid = True
    anr_attributes = (
        "displayname",
        "givenname",
        "sn",
        "name",
        "samaccountname",
        "proxyaddresses",
        "legacyexchangedn",
        "physicaldeliveryofficename",
    )


class OpenLDAP(Directory):
    name = "openldap"
    guid_key = "entryuuid"


class DirectoryServer389(Directory):
    """
    389 Directory Server and its relatives (Red Hat, Oracle, ForgeRock).
    """

    name = "389"
    guid_key = "nsuniqueid"


class FreeIPA(DirectoryServer389):
    name = "freeipa"
    guid_key = "ipauniqueid"


#: Directory name -> :py:class:`Directory` subclass
DIRECTORIES: dict[str, type[Directory]] = {
    klass.name: klass
    for klass in (Directory, ActiveDirectory, OpenLDAP, DirectoryServer389, FreeIPA)
}


def get_directory(name: str | type[Directory]) -> type[Directory]:
    """
    Look up a directory family by name.

    Args:
        name: a key of :py:data:`DIRECTORIES`, or a :py:class:`Directory` subclass

    Raises:
        ImproperlyConfigured: ``name`` is not a known directory family

    Returns:
        The :py:class:`Directory` subclass.

    """
    if isinstance(name, type) and issubclass(name, Directory):
        return name
    try:
        return DIRECTORIES[str(name).lower()]
    except KeyError as e:
        msg = (
            f'Unknown directory type "{name}"; expected one of '
            f"{', '.join(sorted(DIRECTORIES))}"
        )
        raise ImproperlyConfigured(msg) from e


class DirectoryDetector:
    """
    Detects the directory family of a server from its Root DSE and caches the
    answer per server key.
    """

    #: Class-level cache: server key -> {"directory": ..., "cached_at": ...}
    _cache: ClassVar[dict[str, dict[str, Any]]] = {}
    #: Thread lock for cache access
    _lock = threading.Lock()

    #: Root DSE attributes we need to tell the families apart
    ROOT_DSE_ATTRIBUTES: ClassVar[list[str]] = [
        "vendorName",
        "vendorVersion",
        "forestFunctionality",
        "objectClass",
    ]

    @classmethod
    def _is_cache_valid(cls, cached: dict[str, Any]) -> bool:
        ttl = int(get_setting("DIRECTORY_CACHE_TTL"))
        return (time.time() - cached["cached_at"]) < ttl

    @classmethod
    def detect_flavor(cls, root_dse_attrs: dict[str, Any]) -> str:
        """
        Detect the directory family with priority ordering.

        Priority:

        1. Active Directory (``forestFunctionality`` is definitive)
        2. FreeIPA (the Root DSE carries IPA's own objectclass)
        3. 389 Directory Server and relatives, by vendor name
        4. OpenLDAP, by vendor name
        5. generic

        Args:
            root_dse_attrs: raw Root DSE attributes

        Returns:
            A key of :py:data:`DIRECTORIES`.

        """
        attrs = {k.lower(): v for k, v in root_dse_attrs.items()}
        if "forestfunctionality" in attrs:
            return ActiveDirectory.name
        objectclasses = {
            v.decode("utf-8", errors="ignore").lower()
            for v in attrs.get("objectclass", [])
        }
        if "ipaconfigobject" in objectclasses:
            return FreeIPA.name
        vendor_names = attrs.get("vendorname", [])
        if not vendor_names:
            return Directory.name
        vendor_name = vendor_names[0].decode("utf-8", errors="ignore")
        if any(
            vendor in vendor_name
            for vendor in ("Fedora Project", "Red Hat", "Oracle", "ForgeRock", "389")
        ):
            return DirectoryServer389.name
        if "OpenLDAP" in vendor_name:
            return OpenLDAP.name
        return Directory.name

    @classmethod
    def detect(cls, connection: Any, key: str) -> type[Directory]:
        """
        Detect the directory family of the server behind ``connection``,
        querying the Root DSE at most once per ``key`` per TTL.

        Args:
            connection: a bound python-ldap connection
            key: identifies the server in the cache

        Raises:
            ldap.SERVER_DOWN: the server could not be reached
            ldap.CONNECT_ERROR: the server could not be reached

        Returns:
            The :py:class:`Directory` subclass.

        """
        with cls._lock:
            cached = cls._cache.get(key)
            if cached and cls._is_cache_valid(cached):
                return cached["directory"]
            try:
                result = connection.search_s(
                    "", ldap.SCOPE_BASE, "(objectClass=*)", cls.ROOT_DSE_ATTRIBUTES
                )
            except ldap.LDAPError as e:
                if isinstance(e, (ldap.SERVER_DOWN, ldap.CONNECT_ERROR)):
                    raise
                logger.warning(
                    "ldapquery.directory.detect.failed key=%s error=%s", key, e
                )
                return Directory
            directory: type[Directory] = Directory
            if result:
                directory = DIRECTORIES[cls.detect_flavor(result[0][1])]
            logger.debug(
                "ldapquery.directory.detect key=%s directory=%s", key, directory.name
            )
            cls._cache[key] = {"directory": directory, "cached_at": time.time()}
            return directory

    @classmethod
    def cached(cls, key: str) -> type[Directory] | None:
        """
        Return the directory family cached for ``key``, or ``None`` if there
        is none or it has expired.
        """
        with cls._lock:
            cached = cls._cache.get(key)
            if cached and cls._is_cache_valid(cached):
                return cached["directory"]
        return None

    @classmethod
    def clear_cache(cls, key: str | None = None) -> None:
        """
        Clear cache for specific key or all keys.

        Args:
            key: server key to clear, or None to clear all

        """
        with cls._lock:
            if key is None:
                cls._cache.clear()
            else:
                cls._cache.pop(key, None)
