"""
Reusable query modifiers.

A *global scope* is applied to every query a model runs, once, before the
query executes.  It is either a :py:class:`Scope` instance or a plain
callable taking the builder.  A *query scope* is a named fragment a
model declares with :py:func:`query_scope`, and which callers invoke by name
on the model's query builder::

    class User(Model):
        ...

        @query_scope
        def active(builder, since=None):
            return builder.where_not_equals("nsAccountLock", "TRUE")

    User.objects.query().active().get()
"""

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .builder import ModelQueryBuilder
    from .models import Model


class Scope:
    """
    Base class for global scopes.

    Subclasses implement :py:meth:`apply`, which modifies the builder in place.
    """

    def apply(self, builder: "ModelQueryBuilder", model: type["Model"]) -> None:
        raise NotImplementedError

    @classmethod
    def identifier(cls) -> str:
        """
        The name a scope of this class is registered under when no explicit
        identifier is given.
        """
        return f"{cls.__module__}.{cls.__qualname__}"

    def __call__(self, builder: "ModelQueryBuilder", model: type["Model"]) -> None:
        self.apply(builder, model)


class ObjectClassScope(Scope):
    """
    Limit results to entries carrying every one of the given objectclasses.

    This is registered automatically for models that set ``Meta.objectclass``.

    Args:
        objectclasses: the objectclasses to require
    """

    def __init__(self, *objectclasses: str) -> None:
        self.objectclasses = [o for o in objectclasses if o]

    def apply(self, builder: "ModelQueryBuilder", model: type["Model"]) -> None:  # noqa: ARG002
        for objectclass in self.objectclasses:
            builder.where_equals("objectclass", objectclass)


def scope_identifier(scope: "Scope | type[Scope] | str | Callable") -> str:
    """
    Work out the identifier a scope is (or would be) registered under.

    Args:
        scope: an identifier, a :py:class:`Scope` class or instance, or a callable

    Returns:
        The identifier.

    """
    if isinstance(scope, str):
        return scope
    if isinstance(scope, type) and issubclass(scope, Scope):
        return scope.identifier()
    if isinstance(scope, Scope):
        return scope.identifier()
    return f"{scope.__module__}.{getattr(scope, '__qualname__', repr(scope))}"


class QueryScope:
    """
    A named query fragment declared on a model.  Use :py:func:`query_scope`
    rather than building one of these yourself.

    Args:
        func: called as ``func(builder, *args, **kwargs)``
    """

    def __init__(self, func: Callable[..., Any]) -> None:
        self.func = func
        self.__doc__ = func.__doc__

    def contribute_to_class(self, cls, name: str) -> None:
        cls._meta.add_query_scope(name, self.func)
        setattr(cls, name, staticmethod(self.func))


def query_scope(func: Callable[..., Any]) -> QueryScope:
    """
    Declare a model method as a named query scope.

    The method is registered with the model when the class is created and is
    reachable as ``Model.objects.query().<name>(...)``.  It receives the
    :py:class:`~ldapquery.builder.ModelQueryBuilder` as its first argument.
    """
    return QueryScope(func)
