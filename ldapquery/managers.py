# mypy: disable-error-code="attr-defined"
"""
The manager: connections and raw directory operations for a model.

Each model class gets an :py:class:`LdapManager` as ``Model.objects``.  The
manager owns the per-thread LDAP connections, runs searches (sized or paged)
and attribute modifications, and hands out
:py:class:`~ldapquery.builder.ModelQueryBuilder` instances for the model.
Every python-ldap error raised by a search or modify is re-raised as a
:py:class:`~ldapquery.exceptions.DirectoryOperationError`.
"""

import logging
import threading
from collections.abc import Callable, Iterator
from functools import wraps
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from ldap.controls import SimplePagedResultsControl

from ldapquery import ldap

from .directories import Directory, DirectoryDetector, get_directory
from .exceptions import directory_errors
from .typing import LDAPData, ModifyModList

if TYPE_CHECKING:
    from .builder import ModelQueryBuilder
    from .collection import Collection
    from .models import Model


logger = logging.getLogger("django-ldapquery")


def atomic(key: str = "read") -> Callable:
    """
    Decorator to wrap methods that need to talk to an LDAP server.

    Args:
        key: Either "read" or "write". Determines which LDAP server to use.

    Returns:
        A decorator that manages LDAP connection context for the wrapped method.

    """

    def real_decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, *args, **kwargs) -> Callable:
            if self.has_connection():
                # Ensure we're not currently in a wrapped function
                return func(self, *args, **kwargs)
            self.connect(key)
            try:
                retval = func(self, *args, **kwargs)
            finally:
                # We do this in a finally: branch so that the ldap
                # connection gets cleaned up no matter what happens in
                # `func()`.
                self.disconnect()
            return retval

        return wrapper

    return real_decorator


class LdapManager:
    """
    Manager class for direct interactions with LDAP servers.

    This class is thread-safe -- it will use a different LDAP connection for
    each thread, because LDAP connections are not thread-safe.
    """

    def __init__(self) -> None:
        self.logger = logger
        # These get set during contribute_to_class()
        # self.config is the part of settings.LDAP_SERVERS that we need for our Model
        self.config: dict[str, Any] | None = None
        self.model: type[Model] | None = None
        self.server_key: str | None = None
        self.basedn: str | None = None
        self.ldap_options: list[str] = []
        # keys in this dictionary get manipulated by .connect() and .disconnect()
        self._ldap_objects: dict[threading.Thread, ldap.ldapobject.LDAPObject] = {}  # type: ignore[name-defined]

    def contribute_to_class(self, cls, accessor_name) -> None:
        """
        Set up the manager for a model class, configuring attributes from model meta.

        Args:
            cls: The model class.
            accessor_name: The attribute name to assign the manager to.

        Raises:
            ImproperlyConfigured: ``settings.LDAP_SERVERS`` is missing, has no
                entry for the model's server, or no base DN can be found

        """
        self.server_key = cls._meta.ldap_server
        self.basedn = cls._meta.basedn
        self.ldap_options = cls._meta.ldap_options
        try:
            self.config = settings.LDAP_SERVERS[cls._meta.ldap_server]
        except AttributeError as e:
            msg = "settings.LDAP_SERVERS does not exist!"
            raise ImproperlyConfigured(msg) from e
        except KeyError as e:
            msg = (
                f"{cls.__name__}: settings.LDAP_SERVERS has no key "
                f"'{cls._meta.ldap_server}'"
            )
            raise ImproperlyConfigured(msg) from e

        if not self.basedn:
            try:
                self.basedn = self.config["basedn"]  # type: ignore[index]
            except KeyError as e:
                msg = (
                    f"{cls.__name__}: no Meta.basedn and settings.LDAP_SERVERS"
                    f"['{cls._meta.ldap_server}'] has no 'basedn' key"
                )
                raise ImproperlyConfigured(msg) from e
        self.model = cls
        cls._meta.base_manager = self
        setattr(cls, accessor_name, self)

    # ------------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------------

    def disconnect(self) -> None:
        """
        Disconnect the current thread's LDAP connection.
        """
        self.connection.unbind_s()
        self.remove_connection()

    def has_connection(self) -> bool:
        return threading.current_thread() in self._ldap_objects

    def set_connection(self, obj: ldap.ldapobject.LDAPObject) -> None:  # type: ignore[name-defined]
        self._ldap_objects[threading.current_thread()] = obj

    def remove_connection(self) -> None:
        del self._ldap_objects[threading.current_thread()]

    def _check_file(self, path: str, label: str) -> None:
        file = Path(path)
        if not file.exists():
            msg = f"{label} file does not exist: {path}"
            raise OSError(msg)
        if not file.is_file():
            msg = f"{label} file is not a file: {path}"
            raise OSError(msg)

    def _connect(
        self, key: str, dn: str | None = None, password: str | None = None
    ) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        Create and return a new LDAP connection object.

        Args:
            key: Configuration key for the LDAP server, "read" or "write".
            dn: Optional bind DN.
            password: Optional password.

        Raises:
            ValueError: If the ``tls_verify`` value in the configuration is invalid.
            OSError: If a configured certificate or key file does not exist
                or is not a file.

        Returns:
            A connected LDAPObject.

        """
        config = cast("dict[str, Any]", self.config)[key]
        if not dn:
            dn = config["user"]
            password = config["password"]
        ldap_object: ldap.ldapobject.LDAPObject = ldap.initialize(config["url"])  # type: ignore[name-defined]
        ldap_object.set_option(
            ldap.OPT_REFERRALS, 1 if config.get("follow_referrals", False) else 0
        )
        ldap_object.set_option(
            ldap.OPT_NETWORK_TIMEOUT, float(config.get("timeout", 15.0))
        )
        sizelimit = config.get("sizelimit", None)
        if sizelimit:
            ldap_object.set_option(ldap.OPT_SIZELIMIT, int(sizelimit))
        tls_verify = config.get("tls_verify", "never")
        if tls_verify == "never":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)
        elif tls_verify == "always":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)
        else:
            msg = f"Invalid tls_verify value: {tls_verify}"
            raise ValueError(msg)
        for setting, option, label in (
            ("tls_ca_certfile", ldap.OPT_X_TLS_CACERTFILE, "CA Certificate"),
            ("tls_certfile", ldap.OPT_X_TLS_CERTFILE, "TLS Certificate"),
            ("tls_keyfile", ldap.OPT_X_TLS_KEYFILE, "TLS Key"),
        ):
            if path := config.get(setting, None):
                self._check_file(path, label)
                ldap_object.set_option(option, path)
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)
        if config.get("use_starttls", True):
            ldap_object.start_tls_s()
        ldap_object.simple_bind_s(dn, password)
        return ldap_object

    def connect(
        self, key: str, dn: str | None = None, password: str | None = None
    ) -> None:
        """
        Set the per-thread LDAP connection object. Used by the @atomic decorator.
        """
        self._ldap_objects[threading.current_thread()] = self._connect(
            key, dn=dn, password=password
        )

    def new_connection(
        self, key: str = "read", dn: str | None = None, password: str | None = None
    ) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        return self._connect(key, dn=dn, password=password)

    @property
    def connection(self) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        Get the current thread's LDAP connection object.
        """
        return self._ldap_objects[threading.current_thread()]

    # ------------------------------------------------------------------------
    # Directory family
    # ------------------------------------------------------------------------

    @property
    def directory(self) -> type[Directory]:
        """
        The directory family of the model's server: ``Meta.directory`` if set,
        then ``settings.LDAP_SERVERS[...]["directory"]``, then whatever the
        server's Root DSE says.
        """
        model = cast("type[Model]", self.model)
        if model._meta.directory:
            return get_directory(model._meta.directory)
        if self.config and self.config.get("directory"):
            return get_directory(self.config["directory"])
        # No connection is needed while a detection result is cached
        directory = DirectoryDetector.cached(self._directory_cache_key)
        if directory is not None:
            return directory
        return self._detect_directory()

    @property
    def _directory_cache_key(self) -> str:
        return f"{self.server_key}:{self.config['read']['url']}"  # type: ignore[index]

    @atomic(key="read")
    def _detect_directory(self) -> type[Directory]:
        return DirectoryDetector.detect(self.connection, self._directory_cache_key)

    # ------------------------------------------------------------------------
    # Searches
    # ------------------------------------------------------------------------

    def _get_pctrls(self, serverctrls):
        """
        Lookup an LDAP paged control object from the returned controls.
        """
        return [
            c
            for c in serverctrls
            if c.controlType == SimplePagedResultsControl.controlType
        ]

    def _basedn(self, basedn: str | None) -> str:
        if basedn is None:
            basedn = self.basedn
        if basedn is None:
            msg = (
                "basedn is required either as a parameter or in the model's Meta class"
            )
            raise ValueError(msg)
        return basedn

    def iter_pages(
        self,
        searchfilter: str,
        attributes: list[str] | None = None,
        page_size: int = 1000,
        basedn: str | None = None,
        scope: int = ldap.SCOPE_SUBTREE,
        critical: bool = False,  # noqa: FBT001, FBT002
    ) -> Iterator[list[LDAPData]]:
        """
        Perform a paged search, yielding one page of results at a time.  Pages
        are requested strictly one after the other.

        Args:
            searchfilter: The LDAP search filter string.

        Keyword Args:
            attributes: List of attributes to retrieve.
            page_size: Number of results per page.
            basedn: The base DN to search from.
            scope: LDAP search scope.
            critical: Mark the paging control critical.

        Raises:
            DirectoryOperationError: the server returned an error

        Yields:
            Lists of ``(dn, attrs)`` tuples.

        """
        basedn = self._basedn(basedn)
        # Reuse the connection if we are already inside an @atomic method
        owns_connection = not self.has_connection()
        if owns_connection:
            self.connect("read")
        try:
            # Initialize the LDAP controls for paging. Note that we pass ''
            # for the cookie because on first iteration, it starts out empty.
            paging = SimplePagedResultsControl(critical, size=page_size, cookie="")
            page = 0
            while True:
                page += 1
                with directory_errors("search"):
                    msgid = self.connection.search_ext(
                        basedn,
                        scope,
                        searchfilter,
                        attributes,
                        serverctrls=[paging],
                    )
                    _, rdata, _, serverctrls = self.connection.result3(msgid)
                # AD returns references at the end of each page that we want
                # to ignore
                results = [(dn, attrs) for dn, attrs in rdata if isinstance(attrs, dict)]
                self.logger.debug(
                    "ldapquery.manager.paged-search.page basedn=%s page=%d size=%d",
                    basedn,
                    page,
                    len(results),
                )
                yield results
                paged_controls = self._get_pctrls(serverctrls)
                if not paged_controls or not paged_controls[0].cookie:
                    # Either a base search or there are no more pages
                    break
                paging.cookie = paged_controls[0].cookie
        finally:
            if owns_connection:
                self.disconnect()

    def paged_search(
        self,
        searchfilter: str,
        attributes: list[str] | None = None,
        page_size: int = 1000,
        basedn: str | None = None,
        scope: int = ldap.SCOPE_SUBTREE,
        critical: bool = False,  # noqa: FBT001, FBT002
    ) -> list[LDAPData]:
        """
        As :py:meth:`iter_pages`, but return every page's results as one list.
        """
        results: list[LDAPData] = []
        for page in self.iter_pages(
            searchfilter,
            attributes,
            page_size=page_size,
            basedn=basedn,
            scope=scope,
            critical=critical,
        ):
            results.extend(page)
        return results

    @atomic(key="read")
    def _sized_search(
        self,
        basedn: str,
        searchfilter: str,
        attributes: list[str] | None,
        sizelimit: int,
        scope: int,
    ) -> list[LDAPData]:
        msgid = self.connection.search_ext(
            basedn, scope, searchfilter, attributes, sizelimit=sizelimit
        )
        results: list[LDAPData] = []
        try:
            while True:
                rtype, rdata, _, _ = self.connection.result3(msgid, all=0)
                results.extend(
                    (dn, attrs) for dn, attrs in rdata if isinstance(attrs, dict)
                )
                if rtype == ldap.RES_SEARCH_RESULT:
                    break
        except ldap.SIZELIMIT_EXCEEDED:
            self.logger.debug(
                "ldapquery.manager.search.sizelimit basedn=%s sizelimit=%d",
                basedn,
                sizelimit,
            )
        return results

    @atomic(key="read")
    def search(
        self,
        searchfilter: str,
        attributes: list[str] | None = None,
        sizelimit: int = 0,
        basedn: str | None = None,
        scope: int = ldap.SCOPE_SUBTREE,
    ) -> list[LDAPData]:
        """
        Search the LDAP server for objects matching the given filter.

        Args:
            searchfilter: The LDAP search filter string.
            attributes: List of attributes to retrieve.
            sizelimit: Maximum number of results to return; 0 for no limit.
            basedn: The base DN to search from.
            scope: LDAP search scope.

        Raises:
            ValueError: If no basedn is provided or configured.
            DirectoryOperationError: the server returned an error

        Returns:
            List of LDAPData tuples (dn, attrs).

        """
        basedn = self._basedn(basedn)
        with directory_errors("search"):
            if sizelimit:
                return self._sized_search(
                    basedn, searchfilter, attributes, sizelimit, scope
                )
            if "paged_search" in self.ldap_options:
                return self.paged_search(
                    searchfilter, attributes, basedn=basedn, scope=scope
                )
            # We have to filter out and references that AD puts in
            data = self.connection.search_s(
                basedn, scope, filterstr=searchfilter, attrlist=attributes
            )
        return [obj for obj in data if isinstance(obj[1], dict)]

    # ------------------------------------------------------------------------
    # Attribute modification
    # ------------------------------------------------------------------------

    @atomic(key="write")
    def modify_attributes(self, dn: str, modlist: ModifyModList) -> None:
        """
        Apply ``modlist`` to the entry at ``dn``.

        Raises:
            DirectoryOperationError: the server refused the change

        """
        self.logger.debug(
            "ldapquery.manager.modify dn=%s changes=%s",
            dn,
            [(op, attr) for op, attr, _ in modlist],
        )
        with directory_errors("modify"):
            self.connection.modify_s(dn, modlist)

    @staticmethod
    def _to_bytes(values: Any) -> list[bytes]:
        if not isinstance(values, (list, tuple, set)):
            values = [values]
        return [v if isinstance(v, bytes) else str(v).encode("utf-8") for v in values]

    def add_attribute_values(self, dn: str, attribute: str, values: Any) -> None:
        """
        Add ``values`` to ``attribute`` on the entry at ``dn`` (``MOD_ADD``).

        Raises:
            DirectoryOperationError: with kind ``already_exists`` if the
                attribute already holds one of the values

        """
        self.modify_attributes(dn, [(ldap.MOD_ADD, attribute, self._to_bytes(values))])

    def delete_attribute_values(
        self, dn: str, attribute: str, values: Any = None
    ) -> None:
        """
        Remove ``values`` from ``attribute`` on the entry at ``dn``
        (``MOD_DELETE``).  With ``values=None`` the whole attribute is removed.

        Raises:
            DirectoryOperationError: the server refused the change

        """
        mod_values = None if values is None else self._to_bytes(values)
        self.modify_attributes(dn, [(ldap.MOD_DELETE, attribute, mod_values)])

    # ------------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------------

    def query(self) -> "ModelQueryBuilder":
        """
        Return a new query builder for our model, with the model's global
        scopes registered.
        """
        return cast("type[Model]", self.model).query()

    def all(self) -> "Collection":
        return self.query().get()

    def find(self, dn: str | list[str], columns: list[str] | None = None):
        return self.query().find(dn, columns)

    def find_by(self, attribute: str, value: Any, columns: list[str] | None = None):
        return self.query().find_by(attribute, value, columns)

    def find_by_guid(self, guid: str, columns: list[str] | None = None):
        return self.query().find_by_guid(guid, columns)

    def find_by_anr(self, value: str | list[str], columns: list[str] | None = None):
        return self.query().find_by_anr(value, columns)

    def get_by_dn(self, dn: str) -> "Model":
        """
        Get an object by its DN.

        Raises:
            Model.DoesNotExist: no entry exists at ``dn``

        """
        return self.query().find_or_fail(dn)
