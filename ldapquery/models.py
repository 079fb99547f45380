"""
LDAP model base classes and metaclass.

This module provides the base :py:class:`Model` class and the
:py:class:`LdapModelBase` metaclass.  A model describes one kind of directory
entry: where the entries live, which objectclasses they carry and which
attributes map to which fields.  Instances are built by hydrating raw search
results, and keep the raw attribute mapping alongside the field values.
"""

import datetime
import inspect
from typing import Any, cast

from django.db.models.signals import class_prepared

from .builder import ModelQueryBuilder
from .collection import Collection
from .directories import Directory
from .exceptions import InvalidUsage, ModelNotFound, MultipleObjectsFound
from .guid import Guid
from .managers import LdapManager
from .options import Options
from .query import QueryBuilder, normalize_columns
from .typing import LDAPData

#: Every model class, by class name and by ``module.ClassName``.  This is how
#: :py:func:`~ldapquery.relations.has_many` resolves related models given by name.
_registry: dict[str, type["Model"]] = {}


def get_model(name: str) -> type["Model"]:
    """
    Look up a model class by its class name or ``module.ClassName``.

    Raises:
        LookupError: no model by that name has been defined

    """
    try:
        return _registry[name]
    except KeyError as e:
        msg = f'No LDAP model named "{name}" has been defined'
        raise LookupError(msg) from e


class LdapModelBase(type):
    """
    Metaclass for LDAP models.

    This parses ``class Meta`` into an :py:class:`~ldapquery.options.Options`
    instance, registers fields, query scopes and relations with it, adds the
    manager as ``objects`` and gives the class its own ``DoesNotExist`` and
    ``MultipleObjectsReturned`` exceptions.
    """

    def __new__(cls, name, bases, attrs, **kwargs):
        super_new = super().__new__
        parents = [b for b in bases if isinstance(b, LdapModelBase)]
        if not parents:
            return super_new(cls, name, bases, attrs)

        # Create the class.
        module = attrs.pop("__module__")
        new_attrs = {"__module__": module}
        classcell = attrs.pop("__classcell__", None)
        if classcell is not None:
            new_attrs["__classcell__"] = classcell
        new_class = super_new(cls, name, bases, new_attrs, **kwargs)
        attr_meta = attrs.pop("Meta", None)
        meta = attr_meta or getattr(new_class, "Meta", None)

        new_class.add_to_class("_meta", Options(meta))
        new_class.add_to_class(
            "DoesNotExist",
            type("DoesNotExist", (ModelNotFound,), {"__module__": module}),
        )
        new_class.add_to_class(
            "MultipleObjectsReturned",
            type("MultipleObjectsReturned", (MultipleObjectsFound,), {"__module__": module}),
        )

        # Add all attributes to the class.  This is where the fields, query
        # scopes and relations get registered
        for obj_name, obj in attrs.items():
            new_class.add_to_class(obj_name, obj)

        new_class._meta.concrete_model = new_class  # type: ignore[attr-defined]
        new_class._prepare()

        _registry[name] = new_class
        _registry[f"{module}.{name}"] = new_class
        return new_class

    def add_to_class(cls, name: str, value: Any) -> None:
        # We should call the contribute_to_class method only if it's bound
        if not inspect.isclass(value) and hasattr(value, "contribute_to_class"):
            value.contribute_to_class(cls, name)
        else:
            setattr(cls, name, value)

    def _prepare(cls) -> None:
        """
        Create some methods once self._meta has been populated.

        Importantly, this is where the Manager class gets added.
        """
        opts = cls._meta  # type: ignore[attr-defined]
        opts._prepare(cls)

        if cls.__doc__ is None:
            cls.__doc__ = "{}({})".format(
                cls.__name__,
                ", ".join(cast("str", f.name) for f in opts.fields),
            )

        if any(f.name == "objects" for f in opts.fields):
            msg = (
                f"Model {cls.__name__} must specify a custom Manager, because it has a "
                "field named 'objects'."
            )
            raise ValueError(msg)
        manager = opts.manager_class()
        cls.add_to_class("objects", manager)
        class_prepared.send(sender=cls)


class Model(metaclass=LdapModelBase):
    """
    Base class for LDAP models.

    Subclasses declare fields as class attributes and configure the server and
    search base in ``class Meta``::

        class User(Model):
            uid = CharField()
            cn = CharField()
            mail = CharListField()

            class Meta:
                ldap_server = "default"
                basedn = "ou=people,dc=example,dc=com"
                objectclass = "inetOrgPerson"

    """

    class DoesNotExist(ModelNotFound):
        """Raised when a model instance is not found in LDAP."""

    class MultipleObjectsReturned(MultipleObjectsFound):
        """
        Raised when a query returns more than one object when only one was
        expected.
        """

    #: The model's metadata and configuration options.
    _meta: Options | None = None
    #: The default manager for this model.
    objects: LdapManager | None = None

    def __init__(self, **kwargs) -> None:
        """
        Keyword Args:
            _dn: the DN of the entry
            **kwargs: field values; fields not given get their default

        Raises:
            TypeError: a keyword argument names no field

        """
        opts = cast("Options", self._meta)
        self._dn: str | None = kwargs.pop("_dn", None)
        #: The raw attribute mapping, as the server returned it
        self._raw: dict[str, list[bytes]] = {}
        for field in opts.fields:
            name = cast("str", field.name)
            if name in kwargs:
                setattr(self, name, kwargs.pop(name))
            else:
                setattr(self, name, field.get_default())
        for kwarg in kwargs:
            msg = f"'{kwarg}' is an invalid keyword argument for this function"
            raise TypeError(msg)

    # ------------------------------------------------------------------------
    # Hydration
    # ------------------------------------------------------------------------

    @classmethod
    def from_entry(cls, entry: LDAPData) -> "Model":
        """
        Build an instance from one python-ldap search result.

        Args:
            entry: a ``(dn, attrs)`` tuple

        Returns:
            The model instance.

        """
        dn, attrs = entry
        instance = cls(_dn=dn)
        instance._raw = {name: list(values) for name, values in attrs.items()}
        for field in cast("Options", cls._meta).fields:
            values = instance._lookup(field.ldap_attribute)
            setattr(instance, cast("str", field.name), field.from_db_value(values or []))
        return instance

    @classmethod
    def hydrate(cls, entries: list[LDAPData]) -> Collection:
        """
        Build a :py:class:`~ldapquery.collection.Collection` of instances from
        python-ldap search results, keeping their order.
        """
        return cls.new_collection(cls.from_entry(entry) for entry in entries)

    @classmethod
    def new_collection(cls, models=()) -> Collection:
        return Collection(models)

    # ------------------------------------------------------------------------
    # Querying
    # ------------------------------------------------------------------------

    @classmethod
    def query(cls) -> ModelQueryBuilder:
        """
        Return a new query builder for this model with the model's global
        scopes registered.
        """
        builder = ModelQueryBuilder(cls, QueryBuilder(cast("LdapManager", cls.objects)))
        for identifier, scope in cast("Options", cls._meta).global_scopes.items():  # type: ignore[union-attr]
            builder.with_global_scope(identifier, scope)
        return builder

    @classmethod
    def get_directory(cls) -> type[Directory]:
        return cast("LdapManager", cls.objects).directory

    @classmethod
    def get_guid_key(cls) -> str:
        """
        The attribute holding the directory-assigned unique identifier of our
        entries: ``Meta.guid_key`` if set, otherwise the directory's.
        """
        return cast("Options", cls._meta).guid_key or cls.get_directory().guid_key

    @classmethod
    def get_anr_attributes(cls) -> list[str]:
        anr_attributes = cast("Options", cls._meta).anr_attributes
        if anr_attributes is None:
            anr_attributes = cls.get_directory().anr_attributes
        return list(anr_attributes)

    @classmethod
    def default_columns(cls) -> list[str]:
        """
        The attributes a query for this model fetches when the caller doesn't
        say: every field attribute, ``objectclass`` and the GUID attribute.
        Models with no fields fetch all user attributes.
        """
        attributes = cast("Options", cls._meta).attributes or ["*"]
        return normalize_columns([*attributes, "objectclass", cls.get_guid_key()])

    @classmethod
    def is_date_attribute(cls, attribute: str) -> bool:
        return attribute.lower() in cast("Options", cls._meta).dates

    @classmethod
    def from_datetime(cls, attribute: str, value: datetime.date) -> str:
        """
        Convert ``value`` into the directory's representation for the date
        attribute ``attribute``.

        Raises:
            InvalidUsage: ``attribute`` is not a date attribute of this model

        """
        try:
            field = cast("Options", cls._meta).dates[attribute.lower()]
        except KeyError as e:
            msg = f'"{attribute}" is not a date attribute of {cls.__name__}'
            raise InvalidUsage(msg) from e
        return field.to_filter_value(value)

    # ------------------------------------------------------------------------
    # Raw attributes
    # ------------------------------------------------------------------------

    def _key_for(self, attribute: str) -> str | None:
        for name in self._raw:
            if name.lower() == attribute.lower():
                return name
        return None

    def _lookup(self, attribute: str) -> list[bytes] | None:
        key = self._key_for(attribute)
        return None if key is None else self._raw[key]

    @property
    def attributes(self) -> dict[str, list[bytes]]:
        return self._raw

    def get_attribute(self, attribute: str) -> list[str] | None:
        """
        Return the values of ``attribute`` decoded to strings, or ``None`` if
        the entry does not have it.  Attribute names are case-insensitive.
        """
        values = self._lookup(attribute)
        if values is None:
            return None
        return [v.decode("utf-8") if isinstance(v, bytes) else v for v in values]

    def get_first_attribute(self, attribute: str) -> str | None:
        values = self.get_attribute(attribute)
        return values[0] if values else None

    def get_guid(self) -> str | None:
        """
        Return the entry's GUID as a string.  Binary GUIDs are converted to
        their canonical string form.
        """
        values = self._lookup(self.get_guid_key())
        if not values:
            return None
        value = values[0]
        if self.get_directory().binary_guid and isinstance(value, bytes):
            return str(Guid(value))
        return value.decode("utf-8") if isinstance(value, bytes) else value

    def _sync_field(self, attribute: str) -> None:
        field = cast("Options", self._meta).get_field_by_attribute(attribute)
        if field is not None:
            values = self._lookup(attribute) or []
            setattr(self, cast("str", field.name), field.from_db_value(values))

    def create_attribute(self, attribute: str, value: Any) -> bool:
        """
        Add ``value`` (or a list of values) to ``attribute`` on the entry in
        the directory, then update this instance to match.

        Raises:
            DirectoryOperationError: the server refused the change

        """
        manager = cast("LdapManager", self.objects)
        manager.add_attribute_values(cast("str", self.dn), attribute, value)
        added = manager._to_bytes(value)
        key = self._key_for(attribute)
        if key is None:
            self._raw[attribute] = added
        else:
            self._raw[key] = [*self._raw[key], *added]
        self._sync_field(attribute)
        return True

    def delete_attribute(self, attributes: str | list[str] | dict[str, Any]) -> bool:
        """
        Remove attributes or attribute values from the entry in the directory,
        then update this instance to match.

        Args:
            attributes: an attribute name or list of names to remove entirely,
                or a dict of attribute name -> value(s) to remove

        Raises:
            DirectoryOperationError: the server refused the change

        """
        if isinstance(attributes, str):
            attributes = [attributes]
        if not isinstance(attributes, dict):
            attributes = dict.fromkeys(attributes)
        manager = cast("LdapManager", self.objects)
        for attribute, value in attributes.items():
            manager.delete_attribute_values(cast("str", self.dn), attribute, value)
            key = self._key_for(attribute)
            if key is None:
                continue
            if value is None:
                del self._raw[key]
            else:
                removed = {v.lower() for v in manager._to_bytes(value)}
                self._raw[key] = [v for v in self._raw[key] if v.lower() not in removed]
            self._sync_field(attribute)
        return True

    # ------------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------------

    @property
    def dn(self) -> str | None:
        return self._dn

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self}>"

    def __str__(self) -> str:
        return f"{self.__class__.__name__} object ({self.dn})"

    def __eq__(self, other: object) -> bool:
        """
        Two instances are equal if they are of the same model and have the
        same DN (compared case-insensitively).  Instances without a DN are
        only equal to themselves.
        """
        if not isinstance(other, Model):
            return False
        if (
            cast("Options", self._meta).concrete_model
            != cast("Options", other._meta).concrete_model
        ):
            return False
        if self.dn is None:
            return self is other
        return self.dn.lower() == (other.dn or "").lower()

    def __hash__(self) -> int:
        return hash(self.dn.lower() if self.dn else id(self))
