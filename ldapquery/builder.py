"""
The model query builder.

:py:class:`ModelQueryBuilder` wraps a :py:class:`~ldapquery.query.QueryBuilder`
for one model class.  It applies the model's global scopes (once each) before
any search runs, hydrates results into model instances, and provides the
single-result lookups (``first``, ``sole``, ``find``, ``find_by`` ...)
including GUID and ambiguous name resolution lookups.

Methods it does not define itself are resolved in this order:

1. a named query scope the model declared (see
   :py:func:`ldapquery.scopes.query_scope`), called with this builder;
2. a read-only method on :py:data:`PASSTHRU`, answered by the scoped base
   builder from :py:meth:`ModelQueryBuilder.to_base`;
3. any other method of the base builder, after which this builder is
   returned so calls keep chaining.
"""

import copy
import datetime
import functools
import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

from .collection import Collection
from .exceptions import InvalidUsage, ModelNotFound
from .fields import BooleanField, IntegerField
from .guid import Guid
from .query import NOT_GIVEN, QueryBuilder, normalize_columns
from .scopes import Scope, scope_identifier

if TYPE_CHECKING:
    from .models import Model

logger = logging.getLogger("django-ldapquery")

#: Base builder methods that are terminal reads rather than query-building
#: steps; calling one of these returns the base builder's answer.
PASSTHRU: frozenset[str] = frozenset(
    {
        "get_dn",
        "get_type",
        "get_cache",
        "get_base_dn",
        "get_selects",
        "get_connection",
        "get_unescaped_query",
        "escape",
        "exists",
        "exists_or",
        "doesnt_exist",
    }
)


class ModelQueryBuilder:
    """
    Build and run queries for one model class.

    Args:
        model: the model class results are hydrated into
        query: the base builder to compose the search on

    """

    def __init__(self, model: type["Model"], query: QueryBuilder) -> None:
        self.model = model
        self.query = query
        #: identifier -> scope, in registration order
        self.scopes: dict[str, Any] = {}
        #: identifiers removed with :py:meth:`without_global_scope`
        self.removed_scopes: list[str] = []
        #: identifiers already applied to :py:attr:`query`
        self.applied_scopes: set[str] = set()
        self.query.select(self.model.default_columns())

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        query_scopes = self.model._meta.query_scopes
        if name in query_scopes:
            return functools.partial(self.call_scope, query_scopes[name])
        if name.lower() in PASSTHRU:
            return getattr(self.to_base(), name)
        attr = getattr(self.query, name)
        if not callable(attr):
            return attr

        @functools.wraps(attr)
        def forward(*args, **kwargs):
            result = attr(*args, **kwargs)
            return self if result is self.query else result

        return forward

    def call_scope(self, scope: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Call a named query scope with this builder as its first argument.
        """
        result = scope(self, *args, **kwargs)
        return self if result is None else result

    def clone(self) -> "ModelQueryBuilder":
        """
        Return an independent copy of this builder.

        The base builder is deep-copied.  The scope bookkeeping is copied too,
        because the copied base builder already carries the filters of any
        scope applied so far.
        """
        builder = copy.copy(self)
        builder.query = self.query.clone()
        builder.scopes = dict(self.scopes)
        builder.removed_scopes = list(self.removed_scopes)
        builder.applied_scopes = set(self.applied_scopes)
        return builder

    def new_instance(self, dn: str | None = None) -> "ModelQueryBuilder":
        """
        Return a fresh builder for the same model with the same scopes, but
        none of our filters.
        """
        builder = self.__class__(self.model, self.query.new_instance(dn))
        builder.scopes = dict(self.scopes)
        builder.removed_scopes = list(self.removed_scopes)
        return builder

    def get_model(self) -> type["Model"]:
        return self.model

    def set_model(self, model: type["Model"]) -> "ModelQueryBuilder":
        self.model = model
        return self

    def get_query(self) -> QueryBuilder:
        return self.query

    def to_base(self) -> QueryBuilder:
        """
        Apply the global scopes and return the base builder.  This is the only
        sanctioned way to get at the base builder for execution.
        """
        return self.apply_scopes().get_query()

    # ------------------------------------------------------------------------
    # Global scopes
    # ------------------------------------------------------------------------

    def with_global_scope(
        self, identifier: str, scope: Scope | Callable[..., Any]
    ) -> "ModelQueryBuilder":
        self.scopes[identifier] = scope
        return self

    def without_global_scope(
        self, scope: Scope | type[Scope] | str | Callable[..., Any]
    ) -> "ModelQueryBuilder":
        identifier = scope_identifier(scope)
        self.scopes.pop(identifier, None)
        self.removed_scopes.append(identifier)
        return self

    def without_global_scopes(
        self, scopes: Iterable[Scope | type[Scope] | str] | None = None
    ) -> "ModelQueryBuilder":
        """
        Remove the given scopes, or every registered scope if ``scopes`` is ``None``.
        """
        if scopes is None:
            scopes = list(self.scopes)
        for scope in scopes:
            self.without_global_scope(scope)
        return self

    def get_removed_scopes(self) -> list[str]:
        return list(self.removed_scopes)

    def get_applied_scopes(self) -> set[str]:
        return set(self.applied_scopes)

    def apply_scopes(self) -> "ModelQueryBuilder":
        """
        Apply every registered scope that has not been applied yet, in
        registration order.  Calling this again is a no-op for scopes
        already applied.
        """
        for identifier, scope in list(self.scopes.items()):
            if identifier in self.applied_scopes:
                continue
            if isinstance(scope, Scope):
                scope.apply(self, self.model)
            else:
                scope(self)
            self.applied_scopes.add(identifier)
        return self

    # ------------------------------------------------------------------------
    # Query building overrides
    # ------------------------------------------------------------------------

    def select(self, columns: str | Iterable[str]) -> "ModelQueryBuilder":
        """
        Select the attributes to fetch.  The model's GUID attribute is always
        added so that results can be identified.
        """
        self.query.select([*normalize_columns(columns), self.model.get_guid_key()])
        return self

    def add_select(self, columns: str | Iterable[str]) -> "ModelQueryBuilder":
        self.query.add_select([*normalize_columns(columns), self.model.get_guid_key()])
        return self

    def prepare_where_value(self, attribute: str, value: Any) -> Any:
        """
        Convert date values into the directory's representation for
        ``attribute``, and booleans and integers into the form the model's
        field for ``attribute`` writes.  Anything else is returned unchanged.

        Raises:
            InvalidUsage: ``value`` is a date but ``attribute`` is not a date
                attribute of the model

        """
        if isinstance(value, (datetime.date, datetime.datetime)):
            if not self.model.is_date_attribute(attribute):
                msg = (
                    f'Cannot convert field "{attribute}" on model '
                    f"{self.model.__name__}: it is not a date attribute"
                )
                raise InvalidUsage(msg)
            return self.model.from_datetime(attribute, value)
        if isinstance(value, (bool, int)):
            field = self.model._meta.get_field_by_attribute(attribute)
            if isinstance(field, (BooleanField, IntegerField)):
                return field.to_filter_value(value)
        return value

    def where(
        self,
        attribute: str | dict[str, Any],
        operator: Any = NOT_GIVEN,
        value: Any = NOT_GIVEN,
    ) -> "ModelQueryBuilder":
        if isinstance(attribute, dict):
            for key, val in attribute.items():
                self.where(key, "=", val)
            return self
        if value is NOT_GIVEN and operator not in ("*", "!*"):
            operator, value = "=", operator
        if value is not NOT_GIVEN:
            value = self.prepare_where_value(attribute, value)
        self.query.where(attribute, operator, value)
        return self

    def where_equals(self, attribute: str, value: Any) -> "ModelQueryBuilder":
        return self.where(attribute, "=", value)

    def where_not_equals(self, attribute: str, value: Any) -> "ModelQueryBuilder":
        return self.where(attribute, "!=", value)

    # ------------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------------

    def _hydrate(self, results) -> Collection:
        return self.model.hydrate(results)

    def get_models(self, columns: Iterable[str] | None = None) -> Collection:
        if columns:
            self.select(columns)
        return self._hydrate(self.to_base().get())

    def get(self, columns: Iterable[str] | None = None) -> Collection:
        """
        Apply the global scopes, run the search and return the results.

        Keyword Args:
            columns: attributes to fetch; the GUID attribute is always added

        Raises:
            DirectoryOperationError: the server returned an error

        Returns:
            A :py:class:`~ldapquery.collection.Collection` of model instances.

        """
        return self.get_models(columns)

    def paginate(
        self,
        page_size: int = 1000,
        is_critical: bool = False,  # noqa: FBT001, FBT002
    ) -> Collection:
        """
        As :py:meth:`get`, but fetch the results with a paged search.
        """
        return self._hydrate(self.to_base().paginate(page_size, is_critical))

    def chunk(
        self, page_size: int, callback: Callable[[Collection], Any]
    ) -> bool:
        """
        Run a paged search, calling ``callback`` with each page of model
        instances.  Returning ``False`` from ``callback`` stops paging.
        """
        return self.to_base().chunk(
            page_size, lambda page: callback(self._hydrate(page))
        )

    def _not_found(self) -> ModelNotFound:
        return self.model.DoesNotExist.for_query(
            self.query.get_unescaped_query(), self.query.get_dn()
        )

    def first(self, columns: Iterable[str] | None = None) -> "Model | None":
        return self.limit(1).get(columns).first()

    def first_or_fail(self, columns: Iterable[str] | None = None) -> "Model":
        """
        As :py:meth:`first`, but raise if nothing matched.

        Raises:
            ModelNotFound: nothing matched (as the model's ``DoesNotExist``)

        """
        model = self.first(columns)
        if model is None:
            raise self._not_found()
        return model

    def sole(self, columns: Iterable[str] | None = None) -> "Model":
        """
        Return the only matching entry.

        Raises:
            ModelNotFound: nothing matched (as the model's ``DoesNotExist``)
            MultipleObjectsFound: more than one entry matched (as the model's
                ``MultipleObjectsReturned``)

        """
        results = self.limit(2).get(columns)
        if results.is_empty():
            raise self._not_found()
        if len(results) > 1:
            raise self.model.MultipleObjectsReturned.for_query(
                self.query.get_unescaped_query(), self.query.get_dn()
            )
        return results[0]

    def find(
        self, dn: str | Iterable[str], columns: Iterable[str] | None = None
    ) -> "Model | Collection | None":
        """
        Find an entry by DN, or several entries by a list of DNs.

        Args:
            dn: a DN, or a list of DNs

        Keyword Args:
            columns: attributes to fetch

        Returns:
            The model, or ``None`` if there is no entry at ``dn``; for a list
            of DNs, a :py:class:`~ldapquery.collection.Collection` of the
            entries that exist, in the order given.

        """
        if not isinstance(dn, str):
            return self.find_many(dn, columns)
        return self.set_dn(dn).read().first(columns)

    def find_or_fail(self, dn: str, columns: Iterable[str] | None = None) -> "Model":
        """
        Raises:
            ModelNotFound: there is no entry at ``dn``

        """
        model = self.find(dn, columns)
        if model is None:
            raise self._not_found()
        return model  # type: ignore[return-value]

    def find_many(
        self, dns: Iterable[str], columns: Iterable[str] | None = None
    ) -> Collection:
        """
        Find the entries at ``dns``, silently leaving out any that don't exist.
        """
        models = []
        for dn in dns:
            model = self.clone().find(dn, columns)
            if model is not None:
                models.append(model)
        return Collection(models)

    def find_by(
        self, attribute: str, value: Any, columns: Iterable[str] | None = None
    ) -> "Model | None":
        return self.where_equals(attribute, value).first(columns)

    def find_by_or_fail(
        self, attribute: str, value: Any, columns: Iterable[str] | None = None
    ) -> "Model":
        """
        Raises:
            ModelNotFound: no entry has ``attribute`` equal to ``value``

        """
        return self.where_equals(attribute, value).first_or_fail(columns)

    def find_many_by(
        self,
        attribute: str,
        values: Iterable[Any],
        columns: Iterable[str] | None = None,
    ) -> Collection:
        """
        Find every entry whose ``attribute`` equals any of ``values``.  An
        empty ``values`` returns an empty collection without searching.
        """
        values = list(values)
        if not values:
            return self.model.new_collection()
        if columns:
            self.select(columns)

        def add_values(query: QueryBuilder) -> None:
            for value in values:
                query.where_equals(attribute, self.prepare_where_value(attribute, value))

        self.query.or_filter(add_values)
        return self.get()

    def prepare_anr_equivalent_query(self, value: str) -> "ModelQueryBuilder":
        """
        Add a disjunction matching ``value`` against each of the model's
        ANR-equivalent attributes, for servers without the ``anr`` matching rule.
        """
        return self.prepare_anr_equivalent_query_many([value])

    def prepare_anr_equivalent_query_many(
        self, values: Iterable[str]
    ) -> "ModelQueryBuilder":
        values = list(values)
        attributes = self.model.get_anr_attributes()

        def add_clauses(query: QueryBuilder) -> None:
            for attribute in attributes:
                for value in values:
                    query.where_equals(attribute, value)

        self.query.or_filter(add_clauses)
        return self

    def find_by_anr(
        self, value: str | Iterable[str], columns: Iterable[str] | None = None
    ) -> "Model | Collection | None":
        """
        Find an entry by ambiguous name resolution: ``anr`` on servers that
        support it, otherwise equality on any ANR-equivalent attribute.  A list
        of values is passed to :py:meth:`find_many_by_anr`.
        """
        if not isinstance(value, str):
            return self.find_many_by_anr(value, columns)
        if self.model.get_directory().supports_anr:
            return self.find_by("anr", value, columns)
        return self.prepare_anr_equivalent_query(value).first(columns)

    def find_by_anr_or_fail(
        self, value: str, columns: Iterable[str] | None = None
    ) -> "Model":
        """
        Raises:
            ModelNotFound: nothing matched ``value``

        """
        model = self.find_by_anr(value, columns)
        if model is None:
            raise self._not_found()
        return model  # type: ignore[return-value]

    def find_many_by_anr(
        self, values: Iterable[str], columns: Iterable[str] | None = None
    ) -> Collection:
        values = list(values)
        if self.model.get_directory().supports_anr:
            return self.find_many_by("anr", values, columns)
        if not values:
            return self.model.new_collection()
        if columns:
            self.select(columns)
        return self.prepare_anr_equivalent_query_many(values).get()

    def find_by_guid(
        self, guid: str | Guid, columns: Iterable[str] | None = None
    ) -> "Model | None":
        """
        Find an entry by its GUID, returning ``None`` if there is none.
        """
        try:
            return self.find_by_guid_or_fail(guid, columns)
        except ModelNotFound:
            return None

    def find_by_guid_or_fail(
        self, guid: str | Guid, columns: Iterable[str] | None = None
    ) -> "Model":
        """
        Find an entry by its GUID.  For directories that store GUIDs as raw
        bytes the GUID string is converted to its escaped binary form first.

        Raises:
            ModelNotFound: no entry has that GUID
            InvalidUsage: the directory stores binary GUIDs and ``guid`` is
                not a valid GUID

        """
        key = self.model.get_guid_key()
        if self.model.get_directory().binary_guid:
            self.query.where_raw(key, "=", Guid(guid).encoded_hex)
        else:
            self.query.where_equals(key, str(guid))
        return self.first_or_fail(columns)
