"""
Conversion of directory GUIDs between their string, binary and filter forms.

Active Directory stores ``objectGUID`` as 16 raw bytes whose first three
fields are little-endian, but displays it as the usual dashed hex string.  To
search for a GUID given its display string we have to turn it back into those
bytes and escape every byte as ``\\xx`` for the LDAP filter.
"""

import uuid

from .exceptions import InvalidUsage


class Guid:
    """
    A directory GUID.

    Args:
        value: a GUID string (``"270db4d0-249d-46a7-9cc5-eb695d9af9ac"``, braces
            optional) or the 16 bytes Active Directory stores in ``objectGUID``

    Raises:
        InvalidUsage: ``value`` is neither a valid GUID string nor 16 bytes

    """

    def __init__(self, value: "str | bytes | Guid") -> None:
        if isinstance(value, Guid):
            self.uuid: uuid.UUID = value.uuid
        elif isinstance(value, bytes):
            if len(value) != 16:  # noqa: PLR2004
                msg = f"Binary GUID must be 16 bytes long, got {len(value)}"
                raise InvalidUsage(msg)
            self.uuid = uuid.UUID(bytes_le=value)
        else:
            try:
                self.uuid = uuid.UUID(str(value).strip())
            except ValueError as e:
                msg = f'"{value}" is not a valid GUID'
                raise InvalidUsage(msg) from e

    @staticmethod
    def is_valid(value: str | bytes) -> bool:
        try:
            Guid(value)
        except InvalidUsage:
            return False
        return True

    @property
    def binary(self) -> bytes:
        """
        The GUID in the byte order Active Directory stores it.
        """
        return self.uuid.bytes_le

    @property
    def hex(self) -> str:
        """
        The stored bytes as a plain hex string, e.g. ``d0b40d279d24a7469cc5eb695d9af9ac``.
        """
        return self.binary.hex()

    @property
    def encoded_hex(self) -> str:
        """
        The stored bytes escaped for use in an LDAP filter, e.g.
        ``\\d0\\b4\\0d\\27...``.
        """
        return "".join(f"\\{byte:02x}" for byte in self.binary)

    def __str__(self) -> str:
        return str(self.uuid)

    def __repr__(self) -> str:
        return f"<Guid: {self}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Guid):
            return self.uuid == other.uuid
        if isinstance(other, (str, bytes)):
            return Guid.is_valid(other) and Guid(other).uuid == self.uuid
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.uuid)
