"""
Type aliases shared by the query builders, the manager and the models.
"""

#: One raw search result as python-ldap returns it: ``(dn, {attr: [values]})``
LDAPData = tuple[str, dict[str, list[bytes]]]
#: A modlist entry for ``modify_s``: ``(op, attribute, values)``
ModifyModListEntry = tuple[int, str, list[bytes] | None]
ModifyModList = list[ModifyModListEntry]
