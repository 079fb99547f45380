"""
One-to-many relations between models.

A relation links a parent entry to the entries whose *relation key*
attribute holds the parent's *foreign value* (its DN by default).  There is no
join record: attaching a model writes the foreign value onto the relation key
of that model, and detaching removes it again.  Declare one on a model with
:py:func:`has_many`::

    class Group(Model):
        ...
        members = has_many("User", "memberOf")

    group = Group.objects.get_by_dn("cn=staff,ou=groups,dc=example,dc=com")
    group.members.get()
    group.members.attach(user)
"""

import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any, cast

from .collection import Collection
from .conf import get_bypass_messages, get_default_page_size
from .exceptions import DirectoryOperationError, ErrorKind, InvalidUsage
from .scopes import ObjectClassScope
from .typing import LDAPData

if TYPE_CHECKING:
    from .builder import ModelQueryBuilder
    from .models import Model

logger = logging.getLogger("django-ldapquery")

#: Error kinds that mean an attach is already in place
ATTACH_BYPASS_KINDS: set[ErrorKind] = {ErrorKind.ALREADY_EXISTS}
#: Error kinds that mean a detach is already in place
DETACH_BYPASS_KINDS: set[ErrorKind] = {
    ErrorKind.UNWILLING_TO_PERFORM,
    ErrorKind.NO_SUCH_ATTRIBUTE,
}


class Relation:
    """
    The part of a relation that does not depend on its cardinality.

    Args:
        query: a query builder for the (first) related model
        parent: the model that owns the relation
        related: the related model class, or a list of them
        relation_key: the attribute on the related entries that holds the
            parent's foreign value

    Keyword Args:
        foreign_key: the parent attribute the foreign value is taken from;
            ``"dn"`` means the parent's DN
        relation_name: the attribute name the relation is declared under on
            the parent, used when following the relation recursively

    """

    def __init__(
        self,
        query: "ModelQueryBuilder",
        parent: "Model",
        related: "type[Model] | Iterable[type[Model]]",
        relation_key: str,
        foreign_key: str = "dn",
        relation_name: str | None = None,
    ) -> None:
        self.query = query
        self.parent = parent
        if isinstance(related, type):
            related = [related]
        self.related: list[type[Model]] = list(related)
        self.relation_key = relation_key
        self.foreign_key = foreign_key
        self.relation_name = relation_name
        #: Names of other relations on the parent whose results get merged in
        self.with_relations: list[str] = []
        #: Follow this relation through each result as well
        self.is_recursive: bool = False
        #: Set while :py:meth:`once_without_merging` is running
        self.merging: bool = True

    def get_parent(self) -> "Model":
        return self.parent

    def get_related(self) -> "type[Model]":
        """
        Return the primary related model class.
        """
        return self.related[0]

    def get_query(self) -> "ModelQueryBuilder":
        return self.query

    def get_relation_key(self) -> str:
        return self.relation_key

    def get_foreign_key(self) -> str:
        return self.foreign_key

    def get_foreign_value_from_model(self, model: "Model") -> str | None:
        """
        Return the value of ``model`` that the relation key of a related entry
        must hold: its DN, or the first value of :py:attr:`foreign_key`.
        """
        if self.foreign_key.lower() == "dn":
            return model.dn
        return model.get_first_attribute(self.foreign_key)

    def get_required_foreign_value_from_model(self, model: "Model") -> str:
        """
        Like :py:meth:`get_foreign_value_from_model`, but a model without a
        foreign value cannot take part in the relation.

        Raises:
            InvalidUsage: ``model`` has no value for :py:attr:`foreign_key`

        """
        value = self.get_foreign_value_from_model(model)
        if value is None:
            msg = (
                f'{model.__class__.__name__}("{model.dn}") has no value for '
                f'foreign key "{self.foreign_key}"'
            )
            raise InvalidUsage(msg)
        return value

    def get_escaped_foreign_value_from_model(self, model: "Model") -> str:
        return self.query.get_query().escape(
            self.get_required_foreign_value_from_model(model)
        )

    def with_(self, *relations: str) -> "Relation":
        """
        Merge the results of the parent's relations named ``relations`` into
        this relation's results.
        """
        self.with_relations.extend(relations)
        return self

    def recursive(self, enable: bool = True) -> "Relation":  # noqa: FBT001, FBT002
        """
        Follow this relation through each of its results, merging everything
        found.  Entries already seen are not followed again.
        """
        self.is_recursive = enable
        return self

    def once_without_merging(self, callback: Callable[[], Any]) -> Any:
        """
        Run ``callback`` with :py:meth:`with_` and :py:meth:`recursive`
        merging turned off, so that it sees only the entries directly linked
        to the parent.
        """
        merging = self.merging
        self.merging = False
        try:
            return callback()
        finally:
            self.merging = merging

    def determine_model_from_entry(self, entry: LDAPData) -> "type[Model]":
        """
        Pick the related class for a raw search result by its objectclasses.
        Entries matching none of our classes are hydrated as the first one.
        """
        if len(self.related) == 1:
            return self.related[0]
        attrs = entry[1]
        objectclasses: set[str] = set()
        for name, values in attrs.items():
            if name.lower() == "objectclass":
                objectclasses = {
                    (v.decode("utf-8") if isinstance(v, bytes) else v).lower()
                    for v in values
                }
        for model in self.related:
            wanted = model._meta.objectclass
            if not wanted:
                continue
            if isinstance(wanted, str):
                wanted = [wanted]
            if {w.lower() for w in wanted} <= objectclasses:
                return model
        return self.related[0]

    def transform_results(self, entries: list[LDAPData]) -> Collection:
        """
        Hydrate raw search results into related models.
        """
        return Collection(
            self.determine_model_from_entry(entry).from_entry(entry) for entry in entries
        )

    def get_relation_results(self) -> Collection:
        raise NotImplementedError

    def get_results(self) -> Collection:
        results = self.get_relation_results()
        if not self.merging:
            return results
        if self.with_relations:
            results = results.merge(self.get_merging_relation_results())
        if self.is_recursive:
            results = results.merge(self.get_recursive_results(results))
        return results

    def get_merging_relation_results(self) -> Collection:
        results = Collection()
        for name in self.with_relations:
            relation = getattr(self.parent, name)
            if isinstance(relation, Relation):
                results = results.merge(relation.recursive(self.is_recursive).get())
        return results

    def get_recursive_results(self, models: Collection) -> Collection:
        """
        Follow :py:attr:`relation_name` through each of ``models`` until no
        new entries turn up.
        """
        if not self.relation_name:
            return Collection()
        seen = {dn.lower() for dn in models.dns()}
        seen.add((self.parent.dn or "").lower())
        pending = list(models)
        found: list[Model] = []
        while pending:
            model = pending.pop(0)
            relation = getattr(model, self.relation_name, None)
            if not isinstance(relation, Relation):
                continue
            for child in relation.get_relation_results():
                key = (child.dn or "").lower()
                if key in seen:
                    continue
                seen.add(key)
                found.append(child)
                pending.append(child)
        return Collection(found)

    def get(self, columns: Iterable[str] | None = None) -> Collection:
        """
        Return the related models.

        Keyword Args:
            columns: attributes to fetch; the GUID attribute and the relation
                key are always added, and so is ``objectclass`` when results
                may be of more than one class

        """
        if columns:
            columns = list(columns)
            if len(self.related) > 1 and "objectclass" not in [c.lower() for c in columns]:
                columns.append("objectclass")
            self.query.select(columns)
        return self.get_results()

    def first(self, columns: Iterable[str] | None = None) -> "Model | None":
        return self.get(columns).first()

    def exists(self, models: "Model | str | Iterable[Model | str] | None" = None) -> bool:
        """
        With no argument, return whether anything is related.  Otherwise
        return whether every one of ``models`` (models or DNs) is related.
        """
        results = self.get()
        if models is None:
            return results.is_not_empty()
        if isinstance(models, str) or not isinstance(models, Iterable):
            models = [models]
        models = list(models)
        return bool(models) and all(results.contains(model) for model in models)

    def count(self) -> int:
        return len(self.get())


class HasMany(Relation):
    """
    A relation where the related entries hold the parent's foreign value in
    their relation key.  Results are always fetched with a paged search.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        #: The model written to by attach/detach instead of the related model
        self.using_model: Model | None = None
        #: The attribute of :py:attr:`using_model` that gets written
        self.using_key: str | None = None
        #: The page size for the paged search
        self.page_size: int = get_default_page_size()

    def using(self, model: "Model", key: str) -> "HasMany":
        """
        Write attach/detach changes onto ``key`` of ``model`` instead of onto
        the relation key of the related model.  This is how relations whose
        link lives on the parent (like a group's ``member`` attribute) are
        updated.
        """
        self.using_model = model
        self.using_key = key
        return self

    def set_page_size(self, page_size: int) -> "HasMany":
        self.page_size = page_size
        return self

    def get_relation_query(self) -> "ModelQueryBuilder":
        """
        Return a query for the related entries.

        The relation key (or the ``using`` key) is added to the selected
        attributes, unless it is already there or everything is selected, so
        that attach/detach can work from the results.
        """
        key = cast("str", self.using_key) if self.using_model is not None else self.relation_key
        selects = [column.lower() for column in self.query.get_query().get_selects()]
        if "*" not in selects and key.lower() not in selects:
            self.query.add_select(key)
        foreign = self.get_escaped_foreign_value_from_model(self.parent)
        return self.query.clone().where_raw(self.relation_key, "=", foreign)

    def get_relation_results(self) -> Collection:
        return self.transform_results(
            self.get_relation_query().to_base().paginate(self.page_size)
        )

    def paginate(self, page_size: int = 1000) -> Collection:
        """
        Return the related models, fetching them ``page_size`` at a time.  The
        relation's own page size is left as it was.
        """
        old_page_size = self.page_size
        try:
            return self.set_page_size(page_size).get()
        finally:
            self.page_size = old_page_size

    def _link_target(self, model: "Model") -> tuple["Model", str, str]:
        if self.using_model is not None:
            return (
                self.using_model,
                cast("str", self.using_key),
                self.get_required_foreign_value_from_model(model),
            )
        return (
            model,
            self.relation_key,
            self.get_required_foreign_value_from_model(self.parent),
        )

    def _attempt_failable_operation(
        self,
        operation: Callable[[], Any],
        kinds: set[ErrorKind],
        messages: list[str],
        model: "Model",
        name: str,
    ) -> "Model":
        """
        Run ``operation``.  A :py:class:`~ldapquery.exceptions.DirectoryOperationError`
        of one of ``kinds``, or whose message contains one of ``messages``,
        means the change is already in place: it is logged and ``model`` is
        returned as if the operation succeeded.  Anything else is re-raised.
        """
        try:
            operation()
        except DirectoryOperationError as e:
            if not e.matches(kinds, messages):
                raise
            logger.info(
                "ldapquery.relation.%s.bypassed dn=%s parent=%s kind=%s message=%s",
                name,
                model.dn,
                self.parent.dn,
                e.kind.value,
                str(e),
            )
        return model

    def attach(self, model: "Model") -> "Model":
        """
        Link ``model`` to the parent.  Attaching a model that is already
        linked succeeds.

        Raises:
            DirectoryOperationError: the server refused the change for any
                other reason

        Returns:
            ``model``

        """
        target, attribute, foreign = self._link_target(model)
        return self._attempt_failable_operation(
            lambda: target.create_attribute(attribute, foreign),
            ATTACH_BYPASS_KINDS,
            get_bypass_messages("attach"),
            model,
            "attach",
        )

    def attach_many(self, models: Iterable["Model"]) -> list["Model"]:
        models = list(models)
        for model in models:
            self.attach(model)
        return models

    def detach(self, model: "Model") -> "Model":
        """
        Unlink ``model`` from the parent.  Detaching a model that is not
        linked succeeds.

        Raises:
            DirectoryOperationError: the server refused the change for any
                other reason

        Returns:
            ``model``

        """
        target, attribute, foreign = self._link_target(model)
        return self._attempt_failable_operation(
            lambda: target.delete_attribute({attribute: foreign}),
            DETACH_BYPASS_KINDS,
            get_bypass_messages("detach"),
            model,
            "detach",
        )

    def detach_all(self) -> Collection:
        """
        Detach every model currently linked to the parent.  Merged relations
        are not touched.

        Returns:
            The models that were detached.

        """

        def detach_current() -> Collection:
            models = self.get()
            for model in models:
                self.detach(model)
            return models

        return self.once_without_merging(detach_current)


class has_many:  # noqa: N801
    """
    Declare a :py:class:`HasMany` relation on a model class.

    Accessed on an instance, this returns a new :py:class:`HasMany` bound to
    that instance, built on a fresh query of the related model.

    Args:
        related: the related model class, its class name, or a list of either
        relation_key: the attribute on the related entries that holds the
            parent's foreign value

    Keyword Args:
        foreign_key: the parent attribute the foreign value is taken from

    """

    def __init__(
        self,
        related: "type[Model] | str | list[type[Model] | str]",
        relation_key: str,
        foreign_key: str = "dn",
    ) -> None:
        self.related = related
        self.relation_key = relation_key
        self.foreign_key = foreign_key
        self.name: str | None = None
        self.model: type[Model] | None = None

    def contribute_to_class(self, cls, name: str) -> None:
        self.name = name
        self.model = cls
        cls._meta.add_relation(name, self)
        setattr(cls, name, self)

    def resolve_related(self) -> "list[type[Model]]":
        from .models import get_model  # noqa: PLC0415

        related = self.related if isinstance(self.related, list) else [self.related]
        return [get_model(model) if isinstance(model, str) else model for model in related]

    def __get__(self, instance, owner=None):
        if instance is None:
            return self
        related = self.resolve_related()
        query = related[0].query()
        if len(related) > 1:
            # Results may be of any of the related classes
            query.without_global_scope(ObjectClassScope).select(["*"])
        return HasMany(
            query,
            instance,
            related,
            self.relation_key,
            foreign_key=self.foreign_key,
            relation_name=self.name,
        )
