"""
The base query builder.

:py:class:`QueryBuilder` composes an LDAP filter, a projection, a search root
and a search scope, and executes them through an
:py:class:`~ldapquery.managers.LdapManager`.  It knows nothing about models:
results come back as python-ldap ``(dn, attrs)`` tuples.  The model-aware
layer on top of it is :py:class:`ldapquery.builder.ModelQueryBuilder`.
"""

import copy
import datetime
import hashlib
import logging
import re
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

from django.core.cache import caches
from ldap.filter import escape_filter_chars
from ldap_filter import Filter

from ldapquery import ldap

from .conf import get_setting
from .exceptions import DirectoryOperationError, ErrorKind, InvalidUsage
from .typing import LDAPData

if TYPE_CHECKING:
    from .managers import LdapManager

logger = logging.getLogger("django-ldapquery")

#: Search type -> python-ldap search scope
SEARCH_SCOPES: dict[str, int] = {
    "search": ldap.SCOPE_SUBTREE,
    "listing": ldap.SCOPE_ONELEVEL,
    "read": ldap.SCOPE_BASE,
}

#: Operators understood by :py:meth:`QueryBuilder.where`
OPERATORS: tuple[str, ...] = (
    "=",
    "!=",
    "~=",
    ">=",
    "<=",
    "*",
    "!*",
    "starts_with",
    "not_starts_with",
    "ends_with",
    "not_ends_with",
    "contains",
    "not_contains",
)

#: Operators :py:meth:`QueryBuilder.where_raw` accepts
RAW_OPERATORS: tuple[str, ...] = ("=", "!=", "~=", ">=", "<=")

_UNESCAPE_RE = re.compile(r"\\([0-9a-fA-F]{2})")


class _NotGiven:
    pass


NOT_GIVEN = _NotGiven()


def normalize_columns(columns: str | Iterable[str] | None) -> list[str]:
    """
    Turn a column argument into a list of attribute names with duplicates
    removed.  Attribute names are compared case-insensitively; the first
    spelling wins.
    """
    if columns is None:
        return []
    if isinstance(columns, str):
        columns = [columns]
    seen: set[str] = set()
    result: list[str] = []
    for column in columns:
        if column.lower() in seen:
            continue
        seen.add(column.lower())
        result.append(column)
    return result


class QueryBuilder:
    """
    Build and execute LDAP searches.

    Every filter method returns the builder so calls can be chained.  All
    ``where*`` clauses are ANDed together; use :py:meth:`or_filter` to build a
    disjunction.

    Args:
        manager: the manager we execute searches through

    Keyword Args:
        dn: the search root; defaults to the manager's base DN

    """

    def __init__(self, manager: "LdapManager", dn: str | None = None) -> None:
        self.manager = manager
        #: The search root.  ``None`` means the manager's base DN.
        self.dn = dn
        #: One of ``"search"`` (subtree), ``"listing"`` (one level), ``"read"`` (base)
        self.type: str = "search"
        #: Attributes to request.  Empty means all user attributes.
        self.selects: list[str] = []
        #: The filters that get ANDed together into the final search filter
        self.filters: list[Any] = []
        #: Maximum number of results; 0 means no limit
        self.limit_value: int = 0
        self.caching: bool = False
        self.cache_until: int | datetime.datetime | None = None
        self.flush_cache: bool = False

    def __deepcopy__(self, memo: dict[int, Any]) -> "QueryBuilder":
        # Everything is copied except the manager, which owns the connections.
        memo[id(self.manager)] = self.manager
        cls = self.__class__
        new = cls.__new__(cls)
        memo[id(self)] = new
        for key, value in self.__dict__.items():
            setattr(new, key, copy.deepcopy(value, memo))
        return new

    def clone(self) -> "QueryBuilder":
        """
        Return an independent copy of this builder.  The copy shares only the
        manager with the original.
        """
        return copy.deepcopy(self)

    def new_instance(self, dn: str | None = None) -> "QueryBuilder":
        return self.__class__(self.manager, dn=dn if dn is not None else self.dn)

    # ------------------------------------------------------------------------
    # Projection, search root and scope
    # ------------------------------------------------------------------------

    def select(self, columns: str | Iterable[str]) -> "QueryBuilder":
        self.selects = normalize_columns(columns)
        return self

    def add_select(self, columns: str | Iterable[str]) -> "QueryBuilder":
        self.selects = normalize_columns([*self.selects, *normalize_columns(columns)])
        return self

    def get_selects(self) -> list[str]:
        return list(self.selects) if self.selects else ["*"]

    def set_dn(self, dn: str | None) -> "QueryBuilder":
        self.dn = dn
        return self

    def get_dn(self) -> str | None:
        return self.dn if self.dn is not None else self.get_base_dn()

    def get_base_dn(self) -> str | None:
        return self.manager.basedn

    def read(self, flag: bool = True) -> "QueryBuilder":  # noqa: FBT001, FBT002
        """
        Make this a base-scope search of :py:meth:`get_dn` only.
        """
        self.type = "read" if flag else "search"
        return self

    def listing(self, flag: bool = True) -> "QueryBuilder":  # noqa: FBT001, FBT002
        """
        Make this a one-level search of the immediate children of :py:meth:`get_dn`.
        """
        self.type = "listing" if flag else "search"
        return self

    def get_type(self) -> str:
        return self.type

    def limit(self, limit: int = 0) -> "QueryBuilder":
        self.limit_value = max(int(limit), 0)
        return self

    def get_connection(self) -> "LdapManager":
        return self.manager

    # ------------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------------

    @staticmethod
    def _stringify(value: Any) -> str:
        if isinstance(value, bool):
            return "TRUE" if value else "FALSE"
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    def _build_filter(
        self, attribute: str, operator: str, value: Any, raw: bool = False
    ):
        attr = Filter.attribute(attribute)
        if operator == "*":
            return attr.present()
        if operator == "!*":
            return Filter.NOT(attr.present())
        value = self._stringify(value)
        if raw:
            if operator not in RAW_OPERATORS:
                msg = f'Operator "{operator}" is not supported for raw clauses'
                raise InvalidUsage(msg)
            if operator == "!=":
                return Filter.NOT(Filter(attribute, "=", value))
            return Filter(attribute, operator, value)
        negate = operator.startswith("not_") or operator == "!="
        builders = {
            "=": attr.equal_to,
            "!=": attr.equal_to,
            "~=": attr.approx,
            ">=": attr.gte,
            "<=": attr.lte,
            "starts_with": attr.starts_with,
            "ends_with": attr.ends_with,
            "contains": attr.contains,
        }
        key = operator[4:] if operator.startswith("not_") else operator
        try:
            clause = builders[key](value)
        except KeyError as e:
            msg = f'Unknown operator "{operator}"; expected one of {", ".join(OPERATORS)}'
            raise InvalidUsage(msg) from e
        return Filter.NOT(clause) if negate else clause

    def _add_where(
        self,
        attribute: str | dict[str, Any],
        operator: Any,
        value: Any,
        raw: bool = False,
    ) -> "QueryBuilder":
        if isinstance(attribute, dict):
            for key, val in attribute.items():
                self._add_where(key, "=", val, raw=raw)
            return self
        if value is NOT_GIVEN:
            if operator in ("*", "!*"):
                value = None
            else:
                operator, value = "=", operator
        self.filters.append(self._build_filter(attribute, operator, value, raw=raw))
        return self

    def where(
        self,
        attribute: str | dict[str, Any],
        operator: Any = NOT_GIVEN,
        value: Any = NOT_GIVEN,
    ) -> "QueryBuilder":
        """
        Add an escaped clause.

        ``where("cn", "bob")`` and ``where("cn", "=", "bob")`` are the same;
        ``where({"cn": "bob", "sn": "smith"})`` adds one equality per key.

        Args:
            attribute: the attribute name, or a dict of attribute -> value
            operator: one of :py:data:`OPERATORS`, or the value for an equality

        Keyword Args:
            value: the value to compare against

        Raises:
            InvalidUsage: ``operator`` is not one of :py:data:`OPERATORS`

        """
        return self._add_where(attribute, operator, value)

    def where_raw(
        self,
        attribute: str | dict[str, Any],
        operator: Any = NOT_GIVEN,
        value: Any = NOT_GIVEN,
    ) -> "QueryBuilder":
        """
        As :py:meth:`where`, but the value is put into the filter as-is.  Use
        this for values that are already escaped, such as the output of
        :py:meth:`escape` or :py:attr:`ldapquery.guid.Guid.encoded_hex`.
        """
        return self._add_where(attribute, operator, value, raw=True)

    def where_equals(self, attribute: str, value: Any) -> "QueryBuilder":
        return self.where(attribute, "=", value)

    def where_not_equals(self, attribute: str, value: Any) -> "QueryBuilder":
        return self.where(attribute, "!=", value)

    def where_has(self, attribute: str) -> "QueryBuilder":
        return self.where(attribute, "*")

    def where_not_has(self, attribute: str) -> "QueryBuilder":
        return self.where(attribute, "!*")

    def where_starts_with(self, attribute: str, value: Any) -> "QueryBuilder":
        return self.where(attribute, "starts_with", value)

    def where_ends_with(self, attribute: str, value: Any) -> "QueryBuilder":
        return self.where(attribute, "ends_with", value)

    def where_contains(self, attribute: str, value: Any) -> "QueryBuilder":
        return self.where(attribute, "contains", value)

    def where_in(self, attribute: str, values: Iterable[Any]) -> "QueryBuilder":
        """
        Match entries whose ``attribute`` equals any of ``values``.
        """

        def add_values(query: "QueryBuilder") -> None:
            for value in values:
                query.where_equals(attribute, value)

        return self.or_filter(add_values)

    def raw_filter(self, *filters: str) -> "QueryBuilder":
        """
        Add already-built filter strings, e.g. ``"(memberOf=cn=staff,ou=groups,dc=example,dc=com)"``.
        """
        for text in filters:
            if not text.startswith("("):
                text = f"({text})"  # noqa: PLW2901
            self.filters.append(Filter.parse(text))
        return self

    def _nested(self, callback: Callable[["QueryBuilder"], Any]) -> list[Any]:
        query = self.new_instance()
        callback(query)
        return query.filters

    def or_filter(self, callback: Callable[["QueryBuilder"], Any]) -> "QueryBuilder":
        """
        Call ``callback`` with a fresh builder and OR together the clauses it adds.
        """
        filters = self._nested(callback)
        if filters:
            self.filters.append(Filter.OR(filters))
        return self

    def and_filter(self, callback: Callable[["QueryBuilder"], Any]) -> "QueryBuilder":
        filters = self._nested(callback)
        if filters:
            self.filters.append(Filter.AND(filters))
        return self

    def not_filter(self, callback: Callable[["QueryBuilder"], Any]) -> "QueryBuilder":
        filters = self._nested(callback)
        if filters:
            inner = filters[0] if len(filters) == 1 else Filter.AND(filters)
            self.filters.append(Filter.NOT(inner))
        return self

    def clear_filters(self) -> "QueryBuilder":
        self.filters = []
        return self

    def get_query(self) -> str:
        """
        Return the search filter as a string.
        """
        if not self.filters:
            return "(objectclass=*)"
        if len(self.filters) == 1:
            return self.filters[0].to_string()
        return Filter.AND(self.filters).to_string()

    def get_unescaped_query(self) -> str:
        """
        Return the search filter with ``\\xx`` escapes turned back into
        characters, for logging and error messages.
        """
        return _UNESCAPE_RE.sub(lambda m: chr(int(m.group(1), 16)), self.get_query())

    def escape(self, value: Any) -> str:
        """
        Escape ``value`` for literal use in a filter.  Bytes are escaped in
        full, one ``\\xx`` per byte.
        """
        if isinstance(value, bytes):
            return "".join(f"\\{byte:02x}" for byte in value)
        return escape_filter_chars(self._stringify(value))

    # ------------------------------------------------------------------------
    # Caching
    # ------------------------------------------------------------------------

    def cache(
        self, until: int | datetime.datetime | None = None, flush: bool = False  # noqa: FBT001, FBT002
    ) -> "QueryBuilder":
        """
        Cache the results of this query in Django's cache.

        Keyword Args:
            until: seconds to keep the results, or when to expire them; ``None``
                uses the cache's default timeout
            flush: discard any cached results for this query first

        """
        self.caching = True
        self.cache_until = until
        self.flush_cache = flush
        return self

    def get_cache(self):
        """
        Return the Django cache backend results are cached in, or ``None``
        if caching is not enabled for this query.
        """
        if not self.caching:
            return None
        return caches[get_setting("CACHE_ALIAS")]

    def _cache_key(self, method: str, attributes: list[str]) -> str:
        parts = [
            str(getattr(self.manager, "server_key", "")),
            method,
            self.type,
            self.get_dn() or "",
            self.get_query(),
            ",".join(attributes),
            str(self.limit_value),
        ]
        digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
        return f"ldapquery:{digest}"

    def _cache_timeout(self) -> int | None:
        if isinstance(self.cache_until, datetime.datetime):
            now = datetime.datetime.now(tz=self.cache_until.tzinfo)
            return max(int((self.cache_until - now).total_seconds()), 0)
        return self.cache_until

    def _remember(
        self, method: str, attributes: list[str], func: Callable[[], list[LDAPData]]
    ) -> list[LDAPData]:
        cache = self.get_cache()
        if cache is None:
            return func()
        key = self._cache_key(method, attributes)
        if self.flush_cache:
            cache.delete(key)
        results = cache.get(key)
        if results is None:
            results = func()
            timeout = self._cache_timeout()
            if timeout is None:
                cache.set(key, results)
            else:
                cache.set(key, results, timeout)
        else:
            logger.debug("ldapquery.query.cache.hit key=%s", key)
        return results

    # ------------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------------

    def _attributes_for(self, columns: str | Iterable[str] | None) -> list[str]:
        # An explicit select() wins over columns passed to get()
        if self.selects or not columns:
            return self.get_selects()
        return normalize_columns(columns)

    def _search(self, attributes: list[str]) -> list[LDAPData]:
        query = self.get_query()
        basedn = self.get_dn()
        logger.debug(
            "ldapquery.query.search basedn=%s type=%s filter=%s",
            basedn,
            self.type,
            query,
        )
        try:
            results = self.manager.search(
                query,
                attributes,
                sizelimit=self.limit_value,
                basedn=basedn,
                scope=SEARCH_SCOPES[self.type],
            )
        except DirectoryOperationError as e:
            if self.type == "read" and e.kind is ErrorKind.NO_SUCH_OBJECT:
                return []
            raise
        if self.limit_value:
            results = results[: self.limit_value]
        return results

    def get(self, columns: str | Iterable[str] | None = None) -> list[LDAPData]:
        """
        Execute the search and return the raw results.

        Keyword Args:
            columns: attributes to request if nothing has been selected

        Raises:
            DirectoryOperationError: the server returned an error

        Returns:
            A list of ``(dn, attrs)`` tuples in server order.

        """
        attributes = self._attributes_for(columns)
        return self._remember("get", attributes, lambda: self._search(attributes))

    def first(self, columns: str | Iterable[str] | None = None) -> LDAPData | None:
        results = self.limit(1).get(columns)
        return results[0] if results else None

    def paginate(
        self,
        page_size: int = 1000,
        is_critical: bool = False,  # noqa: FBT001, FBT002
    ) -> list[LDAPData]:
        """
        Execute the search with the simple paged results control, fetching
        every page in turn, and return all the results.

        Keyword Args:
            page_size: the number of entries to ask for per page
            is_critical: mark the paging control critical, so servers that
                don't support it refuse the search rather than ignoring paging

        Raises:
            DirectoryOperationError: the server returned an error

        Returns:
            A list of ``(dn, attrs)`` tuples in server order.

        """
        attributes = self.get_selects()

        def run() -> list[LDAPData]:
            return self.manager.paged_search(
                self.get_query(),
                attributes,
                page_size=page_size,
                basedn=self.get_dn(),
                scope=SEARCH_SCOPES[self.type],
                critical=is_critical,
            )

        return self._remember(f"paginate:{page_size}", attributes, run)

    def chunk(
        self,
        page_size: int,
        callback: Callable[[list[LDAPData]], Any],
        is_critical: bool = False,  # noqa: FBT001, FBT002
    ) -> bool:
        """
        Execute the search page by page, calling ``callback`` with each page
        as it arrives.  Returning ``False`` from ``callback`` stops paging.

        Returns:
            ``False`` if ``callback`` stopped the search, ``True`` otherwise.

        """
        for page in self.manager.iter_pages(
            self.get_query(),
            self.get_selects(),
            page_size=page_size,
            basedn=self.get_dn(),
            scope=SEARCH_SCOPES[self.type],
            critical=is_critical,
        ):
            if callback(page) is False:
                return False
        return True

    def exists(self) -> bool:
        return bool(self.clone().limit(1).get())

    def exists_or(self, callback: Callable[[], Any]) -> Any:
        """
        Return ``True`` if the query matches anything, otherwise the result
        of ``callback()``.
        """
        return True if self.exists() else callback()

    def doesnt_exist(self) -> bool:
        return not self.exists()

    def __str__(self) -> str:
        return self.get_query()
