"""
Model options and metadata.

This module provides the Options class for managing LDAP model metadata,
including field mappings, LDAP server configuration, the model's directory
family, and its global and named query scopes.
"""

from bisect import bisect
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, cast

from django.core.exceptions import FieldDoesNotExist
from django.utils.functional import cached_property

from .directories import get_directory
from .managers import LdapManager
from .scopes import ObjectClassScope, Scope, scope_identifier

if TYPE_CHECKING:
    from .fields import Field
    from .models import Model

#: The attributes a ``class Meta`` may set.
DEFAULT_NAMES = (
    "ldap_server",
    "ldap_options",
    "manager_class",
    "basedn",
    "objectclass",
    "directory",
    "guid_key",
    "anr_attributes",
    "global_scopes",
)

#: Methods named with this prefix are registered as named query scopes.
SCOPE_METHOD_PREFIX = "scope_"


class Options:
    """
    Options class for LDAP model metadata and configuration.

    This gets instantiated by parsing the ``Meta`` class for the model, and is
    available as ``model._meta`` on the model class.

    Args:
        meta: The Meta class from the model definition.

    """

    def __init__(self, meta) -> None:
        #: The key into ``settings.LDAP_SERVERS`` setting that this model uses.
        self.ldap_server: str = "default"
        #: A list of options for the LDAP server.  The only current option is
        #: ``paged_search`` which will make every search a paged search.
        self.ldap_options: list[str] = []
        #: The default manager class to use for this model.
        self.manager_class: type[LdapManager] = LdapManager
        #: The base DN for this model.
        self.basedn: str | None = None
        #: The objectclass for this model.  An
        #: :py:class:`~ldapquery.scopes.ObjectClassScope` for it is added to the
        #: model's global scopes.  May be a single name or a list of names.
        self.objectclass: str | list[str] | None = None
        #: The directory family (a key of
        #: :py:data:`~ldapquery.directories.DIRECTORIES`).  If not set, it comes
        #: from ``settings.LDAP_SERVERS[ldap_server]["directory"]``, and failing
        #: that from the server's Root DSE.
        self.directory: str | None = None
        #: Override the directory family's GUID attribute.
        self.guid_key: str | None = None
        #: Override the directory family's ANR-equivalent attributes.
        self.anr_attributes: list[str] | None = None
        #: Global scopes applied to every query: a list of
        #: :py:class:`~ldapquery.scopes.Scope` instances, or a dict of
        #: identifier -> scope or callable.
        self.global_scopes: list[Scope] | dict[str, Any] = []

        #: This is set up by the :py:class:`~ldapquery.models.LdapModelBase``
        #: metaclass.  It is not intended to be set by the user.
        self.model_name: str | None = None
        #: This is set up by the :py:class:`~ldapquery.models.LdapModelBase``
        #: metaclass.  It is not intended to be set by the user.
        self.object_name: str | None = None
        self.meta = meta
        #: This is set up by the :py:class:`~ldapquery.models.LdapModelBase``
        #: metaclass.  It is not intended to be set by the user.
        self.concrete_model: type[Model] | None = None
        #: This is set up by the :py:class:`~ldapquery.models.LdapModelBase``
        #: metaclass.  It is not intended to be set by the user.
        self.base_manager: LdapManager | None = None
        #: This is set up by the :py:class:`~ldapquery.models.LdapModelBase``
        #: metaclass.  It is not intended to be set by the user.
        self.local_fields: list[Field] = []
        #: Named query scopes: name -> callable taking the builder first.
        self.query_scopes: dict[str, Callable[..., Any]] = {}
        #: Relation descriptors declared on the model: name -> descriptor.
        self.relations: dict[str, Any] = {}

    def contribute_to_class(self, cls: type["Model"], name: str) -> None:  # noqa: ARG002
        """
        Used by the :py:class:`~ldapquery.models.LdapModelBase`` metaclass to
        add this :py:class:`Options` instance to a model class.

        Args:
            cls: The model class to contribute to.
            name: The name of the options attribute.

        Raises:
            TypeError: ``class Meta`` has attributes we don't understand

        """
        cls._meta = self
        self.model = cls
        self.object_name = cls.__name__
        self.model_name = self.object_name.lower()

        if self.meta:
            meta_attrs = {
                k: v for k, v in self.meta.__dict__.items() if not k.startswith("_")
            }
            for attr_name in DEFAULT_NAMES:
                if attr_name in meta_attrs:
                    setattr(self, attr_name, meta_attrs.pop(attr_name))
                elif hasattr(self.meta, attr_name):
                    setattr(self, attr_name, getattr(self.meta, attr_name))

            # Any leftover attributes must be invalid.
            if meta_attrs != {}:
                msg = "'class Meta' got invalid attribute(s): {}".format(
                    ",".join(meta_attrs)
                )
                raise TypeError(msg)
        del self.meta

    def _prepare(self, model: type["Model"]) -> None:
        """
        Used by the :py:class:`~ldapquery.models.LdapModelBase`` metaclass to
        prepare the model after all fields have been added: validate the
        directory family, register ``scope_*`` methods as named query scopes and
        normalize the global scopes.

        Args:
            model: The model class to prepare.

        Raises:
            ImproperlyConfigured: ``Meta.directory`` names an unknown family

        """
        if self.directory is not None:
            get_directory(self.directory)
        for name, value in list(vars(model).items()):
            if name.startswith(SCOPE_METHOD_PREFIX) and len(name) > len(
                SCOPE_METHOD_PREFIX
            ):
                if isinstance(value, classmethod):
                    func = value.__get__(None, model)
                elif isinstance(value, staticmethod):
                    func = value.__func__
                else:
                    func = value
                if callable(func):
                    self.add_query_scope(name[len(SCOPE_METHOD_PREFIX) :], func)
        scopes: dict[str, Any] = {}
        if self.objectclass:
            objectclasses = (
                [self.objectclass]
                if isinstance(self.objectclass, str)
                else list(self.objectclass)
            )
            scopes[ObjectClassScope.identifier()] = ObjectClassScope(*objectclasses)
        if isinstance(self.global_scopes, dict):
            scopes.update(self.global_scopes)
        else:
            for scope in self.global_scopes:
                scopes[scope_identifier(scope)] = scope
        self.global_scopes = scopes

    def add_field(self, field: "Field") -> None:
        """
        Used by the :py:class:`~ldapquery.models.LdapModelBase`` metaclass to
        add a field to the model.

        Args:
            field: The field to add.

        """
        self.local_fields.insert(bisect(self.local_fields, field), field)

    def add_query_scope(self, name: str, func: Callable[..., Any]) -> None:
        self.query_scopes[name] = func

    def add_relation(self, name: str, descriptor: Any) -> None:
        self.relations[name] = descriptor

    def __repr__(self) -> str:
        return f"<Options for {self.object_name}>"

    @property
    def fields(self) -> list["Field"]:
        return self.local_fields

    @cached_property
    def fields_map(self) -> dict[str, "Field"]:
        """
        Get a mapping of field names to field instances.

        Returns:
            A dictionary mapping field names to field instances.

        """
        return {cast("str", field.name): field for field in self.fields}

    @cached_property
    def attribute_to_field_map(self) -> dict[str, "Field"]:
        """
        Get a mapping of lowercased LDAP attribute names to field instances.
        LDAP attribute names are case-insensitive, so this is what we use
        whenever we are given an attribute name by the server or a caller.

        Returns:
            A dictionary mapping lowercase LDAP attribute names to fields.

        """
        return {field.ldap_attribute.lower(): field for field in self.fields}

    @cached_property
    def attributes(self) -> list[str]:
        """
        Get a list of LDAP attribute names for all fields.

        Returns:
            A list of LDAP attribute names.

        """
        return [f.ldap_attribute for f in self.fields]

    @cached_property
    def dates(self) -> dict[str, "Field"]:
        """
        Get the date fields of the model, keyed by lowercase LDAP attribute name.

        Returns:
            A dictionary mapping lowercase LDAP attribute names to date fields.

        """
        return {
            attribute: field
            for attribute, field in self.attribute_to_field_map.items()
            if field.is_date
        }

    def get_field(self, field_name: str) -> "Field":
        """
        Return a field instance given its name.

        Args:
            field_name: The name of the field to retrieve.

        Raises:
            FieldDoesNotExist: If no field with the given name exists.

        Returns:
            The field instance.

        """
        try:
            return self.fields_map[field_name]
        except KeyError as e:
            msg = f"{self.object_name} has no field named '{field_name}'"
            raise FieldDoesNotExist(msg) from e

    def get_field_by_attribute(self, attribute: str) -> "Field | None":
        return self.attribute_to_field_map.get(attribute.lower())

