"""
Model fields.

A field maps one LDAP attribute on a :py:class:`~ldapquery.models.Model` to a
Python value, converting between the list of byte strings python-ldap hands us
and the Python type the field represents.  Date fields also tell the query
builder how to turn a :py:class:`datetime.datetime` into the string the
directory compares against.
"""

import datetime
from typing import TYPE_CHECKING, Any, cast

import pytz
from django.core import exceptions
from django.core import validators as dj_validators
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from django.utils.translation import gettext_lazy as _

if TYPE_CHECKING:
    from .models import Model


class NOT_PROVIDED:  # noqa: N801
    pass


class Field:
    """
    Base field class for LDAP models.

    Keyword Args:
        name: The name of the field; set from the class attribute name if not given.
        db_column: The attribute name in the LDAP schema, if it differs from ``name``.
        default: The default value for the field.
        null: If True, the field is allowed to be empty in the LDAP server.

    """

    #: A list of values that should be considered as empty.
    empty_values: list[Any] = list(dj_validators.EMPTY_VALUES)  # noqa: RUF012
    #: Counter for field creation order, used for sorting fields.
    creation_counter: int = 0
    #: Whether values of this field are dates the query builder may compare against.
    is_date: bool = False
    #: Whether values of this field are raw bytes.
    is_binary: bool = False

    def __init__(
        self,
        name: str | None = None,
        db_column: str | None = None,
        default: Any = NOT_PROVIDED,
        null: bool = True,
    ) -> None:
        self.name = name
        self.db_column = db_column
        self.default = default
        self.null = null
        self.model: type[Model] | None = None
        self.creation_counter = Field.creation_counter
        Field.creation_counter += 1

    def __repr__(self) -> str:
        path = f"{self.__class__.__module__}.{self.__class__.__qualname__}"
        name = getattr(self, "name", None)
        if name is not None:
            return f"<{path}: {name}>"
        return f"<{path}>"

    def __lt__(self, other: "Field") -> bool:
        if isinstance(other, Field):
            return self.creation_counter < other.creation_counter
        return NotImplemented

    @property
    def ldap_attribute(self) -> str:
        """
        Get the LDAP attribute name for this field.

        Returns:
            The LDAP attribute name (db_column if set, otherwise field name).

        """
        return cast("str", self.db_column or self.name)

    def has_default(self) -> bool:
        return self.default is not NOT_PROVIDED

    def get_default(self) -> Any:
        if not self.has_default():
            return None
        if callable(self.default):
            return self.default()
        return self.default

    def to_python(self, value: Any) -> Any:
        return value

    def from_db_value(self, value: list[bytes]) -> Any:
        """
        Convert LDAP data to Python format.

        Take data for one attribute from LDAP and convert it to our internal
        Python format. The value will always be a list of byte strings.

        Subclasses should implement the actual logic for this, but first call
        super().from_db_value(value) to convert the byte strings in the list
        to unicode strings.

        Args:
            value: A list of byte strings from LDAP.

        Returns:
            A list of decoded strings.

        """
        return [b.decode("utf-8") for b in value]

    def to_db_value(self, value: Any) -> dict[str, list[bytes]]:
        """
        Convert Python value to LDAP format.

        Subclasses should cast the value from our internal data type to the
        appropriate value to stuff into LDAP, and then call
        super().to_db_value(value).

        Args:
            value: The Python value to convert.

        Returns:
            A dictionary mapping LDAP attribute name to list of bytes.

        """
        if value is None:
            value = []
        if not isinstance(value, list):
            value = [value] if value not in self.empty_values else []
        # LDAP doesn't like unicode strings; it wants bytes.
        cleaned = []
        for item in value:
            _item = item
            if isinstance(item, str):
                _item = item.encode("utf-8")
            cleaned.append(_item)
        return {self.ldap_attribute: cleaned}

    def to_filter_value(self, value: Any) -> str:
        """
        Convert a Python value to the string a search filter compares against.

        Args:
            value: The Python value to convert.

        Returns:
            The first value :py:meth:`to_db_value` would write, as a string.

        """
        db_value = self.to_db_value(value)[self.ldap_attribute]
        if not db_value:
            return ""
        return db_value[0].decode("utf-8")

    def contribute_to_class(self, cls, name: str) -> None:
        """
        Register the field with the model class it belongs to.

        Args:
            cls: The model class to register with.
            name: The name of the field.

        """
        if self.name is None:
            self.name = name
        self.model = cls
        cls._meta.add_field(self)


class BooleanField(Field):
    """
    A boolean field which stores data internally as bool() but stores the
    strings 'TRUE' and 'FALSE' in LDAP.
    """

    #: The string value used to represent True in LDAP.
    LDAP_TRUE: str = "TRUE"
    #: The string value used to represent False in LDAP.
    LDAP_FALSE: str = "FALSE"

    def to_python(self, value: None | bool | str) -> bool | None:
        """
        Convert the value to a Python boolean.

        Raises:
            ValidationError: If the value cannot be converted to a boolean.

        """
        if value in self.empty_values:
            return None
        if value in (True, False):
            return bool(value)
        if str(value).lower() in ("t", "true", "1"):
            return True
        if str(value).lower() in ("f", "false", "0"):
            return False
        raise exceptions.ValidationError(
            _("'%(value)s' value must be either True or False."),
            code="invalid",
            params={"value": value},
        )

    def from_db_value(self, value: list[bytes]) -> bool | None:  # type: ignore[override]
        db_value = cast("list[str]", super().from_db_value(value))
        if not db_value:
            return None
        return self.to_python(db_value[0])

    def to_db_value(self, value: bool | None) -> dict[str, list[bytes]]:
        db_value: str | None = None
        if value is not None:
            db_value = self.LDAP_TRUE if value else self.LDAP_FALSE
        return super().to_db_value(db_value)


class CharField(Field):
    """
    A field for storing a single-valued string attribute.
    """

    def to_python(self, value: str | None) -> str | None:
        if isinstance(value, str) or value is None:
            return value
        return str(value)

    def from_db_value(self, value: list[bytes]) -> str | None:  # type: ignore[override]
        db_value = cast("list[str]", super().from_db_value(value))
        if db_value == []:
            return None
        return db_value[0]


class CharListField(CharField):
    """
    A field for storing multi-valued string attributes as lists of strings.
    """

    def get_default(self) -> list[str]:
        default = super().get_default()
        return [] if default is None else default

    def from_db_value(self, value):
        """
        Convert LDAP data to Python list.

        This skips :py:meth:`CharField.from_db_value`, which would turn the
        list :py:meth:`Field.from_db_value` returns into a single string.
        """
        return Field.from_db_value(self, value)

    def to_python(self, value: str | list[str] | None) -> list[str]:  # type: ignore[override]
        if not value:
            return []
        if isinstance(value, list):
            return value
        return value.splitlines()


class IntegerField(Field):
    """
    A field for storing integer values.
    """

    def from_db_value(self, value: list[bytes]) -> int | None:  # type: ignore[override]
        db_value = super().from_db_value(value)
        if not db_value:
            return None
        return self.to_python(db_value[0])

    def to_db_value(self, value: int | None) -> dict[str, list[bytes]]:
        db_value: str | None = str(value) if value is not None else None
        return super().to_db_value(db_value)

    def to_python(self, value: str) -> int:
        """
        Convert the value to a Python integer.

        Raises:
            ValidationError: If the value cannot be converted to an integer.

        """
        if value is None:
            return value
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise exceptions.ValidationError(
                _("'%(value)s' value must be an integer."),
                code="invalid",
                params={"value": value},
            ) from e


class DateTimeField(Field):
    """
    A field for storing LDAP generalized time values as timezone-aware
    :py:class:`datetime.datetime` objects.
    """

    is_date = True

    #: List of supported LDAP datetime formats.
    LDAP_DATETIME_FORMATS: list[str] = ["%Y%m%d%H%M%SZ", "%Y%m%d%H%M%S+0000"]  # noqa: RUF012
    #: The default LDAP datetime format for output.
    LDAP_DATETIME_FORMAT: str = "%Y%m%d%H%M%SZ"

    def to_python(
        self, value: str | datetime.datetime | datetime.date | None
    ) -> datetime.datetime | None:
        """
        Convert the value to a Python datetime.

        Args:
            value: The value to convert. Can be string, datetime, date, or None.

        Returns:
            The converted datetime value or None.

        Raises:
            ValidationError: If the value cannot be converted to a datetime.

        """
        if value is None:
            return value
        if isinstance(value, datetime.datetime):
            return value
        if isinstance(value, datetime.date):
            return datetime.datetime(value.year, value.month, value.day, tzinfo=pytz.utc)
        parsed = parse_datetime(value)
        if parsed is not None:
            return parsed
        parsed_date = parse_date(value)
        if parsed_date is not None:
            return datetime.datetime(
                parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=pytz.utc
            )
        raise exceptions.ValidationError(
            _("'%(value)s' value has an invalid date format."),
            code="invalid",
            params={"value": value},
        )

    def from_db_value(self, value: list[bytes]) -> datetime.datetime | None:  # type: ignore[override]
        """
        Convert LDAP data to Python datetime.

        Raises:
            ValidationError: If the LDAP datetime format is not supported.

        """
        db_value = Field.from_db_value(self, value)
        if not db_value:
            return None
        dt_str = db_value[0]
        dt: datetime.datetime | None = None
        for fmt in self.LDAP_DATETIME_FORMATS:
            try:
                dt = datetime.datetime.strptime(dt_str, fmt)
            except ValueError:  # noqa: PERF203
                pass
            else:
                break
        if not isinstance(dt, datetime.datetime):
            raise exceptions.ValidationError(
                _("LDAP datetime '%(value)s' value is not in a supported format"),
                code="invalid_ldap_datetime",
                params={"value": dt_str},
            )
        return pytz.utc.localize(dt)

    def _as_utc(self, value: datetime.datetime | datetime.date) -> datetime.datetime:
        if not isinstance(value, datetime.datetime):
            value = datetime.datetime.combine(value, datetime.time.min)
        if timezone.is_naive(value):
            return timezone.make_aware(value, pytz.utc)
        return value.astimezone(pytz.utc)

    def to_db_value(
        self, value: datetime.datetime | datetime.date | None
    ) -> dict[str, list[bytes]]:
        dt_str = None
        if value:
            dt_str = self._as_utc(value).strftime(self.LDAP_DATETIME_FORMAT)
        return Field.to_db_value(self, dt_str)


class ActiveDirectoryTimestampField(DateTimeField):
    """
    A field for storing Active Directory timestamp values as datetime objects.

    Active Directory timestamps (``accountExpires``, ``lastLogonTimestamp``,
    ``pwdLastSet``) are the number of 100-nanosecond intervals since January
    1, 1601 UTC.  ``0`` and ``9223372036854775807`` both mean "never".
    """

    #: The Active Directory epoch (January 1, 1601 UTC).
    AD_EPOCH: datetime.datetime = datetime.datetime(1601, 1, 1, tzinfo=pytz.UTC)
    #: The number of 100-nanosecond intervals per second.
    INTERVALS_PER_SECOND: int = 10_000_000
    #: Values Active Directory uses to mean "no date".
    NEVER: tuple[int, ...] = (0, 9223372036854775807)

    def from_db_value(self, value: list[bytes]) -> datetime.datetime | None:  # type: ignore[override]
        """
        Convert LDAP data to Python datetime.

        Raises:
            ValidationError: If the LDAP timestamp format is invalid.

        """
        db_value = Field.from_db_value(self, value)
        if not db_value:
            return None
        try:
            timestamp = int(db_value[0])
        except ValueError as e:
            raise exceptions.ValidationError(
                _("'%(value)s' value is not a valid Active Directory timestamp."),
                code="invalid_timestamp",
                params={"value": db_value[0]},
            ) from e
        if timestamp in self.NEVER:
            return None
        return self.AD_EPOCH + datetime.timedelta(
            microseconds=timestamp // 10
        )

    def to_db_value(
        self, value: datetime.datetime | datetime.date | None
    ) -> dict[str, list[bytes]]:
        if value is None:
            return Field.to_db_value(self, None)
        delta = self._as_utc(value) - self.AD_EPOCH
        timestamp = (
            delta.days * 86_400 + delta.seconds
        ) * self.INTERVALS_PER_SECOND + delta.microseconds * 10
        return Field.to_db_value(self, str(timestamp))


class BinaryField(Field):
    """
    A field for storing binary data such as photos or certificates.
    """

    is_binary = True

    def from_db_value(self, value: list[bytes]) -> bytes | None:  # type: ignore[override]
        if not value:
            return None
        return value[0]
