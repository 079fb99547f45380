# mypy: disable-error-code="attr-defined"
# type: ignore
"""
Test suite for has_many relations using python-ldap-faker.

Members point at their teams through ``memberOf``; teams list their members'
DNs in ``member``.  Server refusals that the fake server can't produce are
simulated by patching ``LdapManager`` methods.
"""

import unittest
from unittest.mock import patch

import django
import ldap
from django.conf import settings
from django.test import override_settings
from ldap_faker.unittest import LDAPFakerMixin

from ldapquery.collection import Collection
from ldapquery.exceptions import DirectoryOperationError, ErrorKind, InvalidUsage
from ldapquery.fields import CharField, CharListField
from ldapquery.managers import LdapManager
from ldapquery.models import Model
from ldapquery.query import QueryBuilder
from ldapquery.relations import HasMany, has_many

# Configure Django settings before any model is defined
if not settings.configured:
    settings.configure(
        LDAP_SERVERS={
            "test_server": {
                "basedn": "dc=example,dc=com",
                "directory": "openldap",
                "read": {
                    "url": "ldap://localhost:389",
                    "user": "cn=admin,dc=example,dc=com",
                    "password": "admin",
                    "use_starttls": False,
                    "tls_verify": "never",
                    "timeout": 15.0,
                    "sizelimit": 1000,
                    "follow_referrals": False,
                },
                "write": {
                    "url": "ldap://localhost:389",
                    "user": "cn=admin,dc=example,dc=com",
                    "password": "admin",
                    "use_starttls": False,
                    "tls_verify": "never",
                    "timeout": 15.0,
                    "sizelimit": 1000,
                    "follow_referrals": False,
                },
            }
        },
        CACHES={
            "default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"}
        },
    )
    try:
        django.setup()
    except Exception:
        pass


class Member(Model):
    """Test model for team members."""

    uid = CharField()
    cn = CharField()
    member_of = CharListField(db_column="memberOf")

    class Meta:
        ldap_server = "test_server"
        basedn = "dc=example,dc=com"
        objectclass = "inetOrgPerson"


class Team(Model):
    """Test model for teams."""

    cn = CharField()
    member = CharListField()

    members = has_many("Member", "memberOf")
    subteams = has_many("Team", "memberOf")
    everyone = has_many(["Member", "Team"], "memberOf")

    class Meta:
        ldap_server = "test_server"
        basedn = "dc=example,dc=com"
        objectclass = "groupOfNames"


ALICE = "uid=alice,ou=people,dc=example,dc=com"
BOB = "uid=bob,ou=people,dc=example,dc=com"
CAROL = "uid=carol,ou=people,dc=example,dc=com"
STAFF = "cn=staff,ou=groups,dc=example,dc=com"
DEVS = "cn=devs,ou=groups,dc=example,dc=com"
OPS = "cn=ops,ou=groups,dc=example,dc=com"


def ldap_error(klass, desc, info=""):
    exc = klass({"desc": desc, "info": info, "result": 53})
    return DirectoryOperationError.from_ldap_error(exc, operation="modify")


class TestRelations(LDAPFakerMixin, unittest.TestCase):
    ldap_modules = ["ldapquery"]

    @classmethod
    def setUpClass(cls):
        super().setUpClass()
        cls.test_objects = [
            [
                "cn=admin,dc=example,dc=com",
                {
                    "cn": [b"admin"],
                    "userPassword": [b"admin"],
                    "objectclass": [b"simpleSecurityObject", b"organizationalRole", b"top"],
                },
            ],
            [
                ALICE,
                {
                    "uid": [b"alice"],
                    "cn": [b"Alice"],
                    "memberOf": [STAFF.encode()],
                    "objectclass": [b"inetOrgPerson", b"top"],
                },
            ],
            [
                BOB,
                {
                    "uid": [b"bob"],
                    "cn": [b"Bob"],
                    "memberOf": [STAFF.encode(), DEVS.encode()],
                    "objectclass": [b"inetOrgPerson", b"top"],
                },
            ],
            [
                CAROL,
                {
                    "uid": [b"carol"],
                    "cn": [b"Carol"],
                    "memberOf": [DEVS.encode()],
                    "objectclass": [b"inetOrgPerson", b"top"],
                },
            ],
            [
                STAFF,
                {
                    "cn": [b"staff"],
                    "member": [ALICE.encode(), BOB.encode()],
                    "memberOf": [OPS.encode()],
                    "objectclass": [b"groupOfNames", b"top"],
                },
            ],
            [
                DEVS,
                {
                    "cn": [b"devs"],
                    "member": [BOB.encode(), CAROL.encode()],
                    "memberOf": [STAFF.encode()],
                    "objectclass": [b"groupOfNames", b"top"],
                },
            ],
            [
                OPS,
                {
                    "cn": [b"ops"],
                    "member": [b"cn=nobody"],
                    "memberOf": [DEVS.encode()],
                    "objectclass": [b"groupOfNames", b"top"],
                },
            ],
        ]

    def setUp(self):
        super().setUp()
        if not hasattr(self, "ldap_faker"):
            LDAPFakerMixin.setUp(self)
        # Clear the fake LDAP directory before each test
        self.server_factory.default.raw_objects.clear()
        self.server_factory.default.objects.clear()
        for dn, attrs in self.test_objects:
            self.server_factory.default.register_object((dn, attrs))
        self.staff = Team.objects.get_by_dn(STAFF)
        self.devs = Team.objects.get_by_dn(DEVS)

    def stored(self, dn, attribute):
        return Member.objects.query().without_global_scopes().find(dn).get_attribute(
            attribute
        )

    # ------------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------------

    def test_descriptor(self):
        self.assertIsInstance(Team.members, has_many)
        relation = self.staff.members
        self.assertIsInstance(relation, HasMany)
        self.assertIs(relation.get_parent(), self.staff)
        self.assertIs(relation.get_related(), Member)
        self.assertEqual(relation.page_size, 1000)
        self.assertIn("members", Team._meta.relations)

    def test_get(self):
        members = self.staff.members.get()
        self.assertIsInstance(members, Collection)
        self.assertEqual(members.dns(), [ALICE, BOB])
        self.assertIsInstance(members[0], Member)

    def test_first_exists_count(self):
        self.assertEqual(self.devs.members.first().dn, BOB)
        self.assertTrue(self.devs.members.exists())
        self.assertTrue(self.devs.members.exists([BOB, CAROL]))
        self.assertFalse(self.devs.members.exists(ALICE))
        self.assertEqual(self.devs.members.count(), 2)

    def test_relation_query(self):
        relation = self.staff.members
        query = relation.get_relation_query()
        self.assertEqual(
            query.get_unescaped_query(),
            f"(&(memberOf={STAFF})(objectclass=inetOrgPerson))",
        )

    def test_relation_query_does_not_accumulate(self):
        relation = self.staff.members.using(self.staff, "member")
        relation.get_relation_query()
        query = relation.get_relation_query()
        selects = [s.lower() for s in relation.get_query().get_query().get_selects()]
        self.assertEqual(selects.count("member"), 1)
        self.assertEqual(relation.get_query().get_query().filters, [])
        self.assertEqual(str(query.get_query()).count("memberOf="), 1)

    def test_relation_query_keeps_star_projection(self):
        relation = self.staff.members
        relation.get_query().select(["*"])
        relation.get_relation_query()
        self.assertEqual(
            relation.get_query().get_query().get_selects(), ["*", "entryuuid"]
        )

    def test_relation_key_value_is_escaped(self):
        team = Team(_dn="cn=r&d (west),ou=groups,dc=example,dc=com")
        query = team.members.get_relation_query()
        self.assertIn("(memberOf=cn=r&d \\28west\\29,ou=groups", str(query.get_query()))

    def test_results_are_fetched_with_paged_search(self):
        with patch.object(QueryBuilder, "paginate", autospec=True, return_value=[]) as paginate:
            self.staff.members.get()
        self.assertEqual(paginate.call_args[0][1], 1000)

    def test_paginate_override_does_not_leak(self):
        relation = self.staff.members
        with patch.object(QueryBuilder, "paginate", autospec=True, return_value=[]) as paginate:
            relation.paginate(500)
            relation.get_relation_results()
        self.assertEqual(paginate.call_args_list[0][0][1], 500)
        self.assertEqual(paginate.call_args_list[1][0][1], 1000)
        self.assertEqual(relation.page_size, 1000)

    def test_paginate_restores_page_size_on_error(self):
        relation = self.staff.members
        with patch.object(
            QueryBuilder, "paginate", side_effect=DirectoryOperationError("boom")
        ), self.assertRaises(DirectoryOperationError):
            relation.paginate(500)
        self.assertEqual(relation.page_size, 1000)

    @override_settings(LDAPQUERY_DEFAULT_PAGE_SIZE=250)
    def test_page_size_setting(self):
        self.assertEqual(self.staff.members.page_size, 250)

    def test_multiple_related_models(self):
        everyone = self.staff.everyone.get()
        self.assertEqual(everyone.dns(), [ALICE, BOB, DEVS])
        self.assertIsInstance(everyone[0], Member)
        self.assertIsInstance(everyone[2], Team)

    def test_multiple_related_models_with_columns(self):
        everyone = self.staff.everyone.get(["cn"])
        self.assertEqual(everyone.dns(), [ALICE, BOB, DEVS])
        self.assertIsInstance(everyone[0], Member)
        self.assertIsInstance(everyone[2], Team)
        self.assertEqual(everyone[2].cn, "devs")

    def test_relation_query_without_foreign_value(self):
        relation = HasMany(
            Member.query(), self.staff, [Member], "departmentNumber",
            foreign_key="businessCategory",
        )
        with self.assertRaises(InvalidUsage):
            relation.get_relation_query()

    def test_with_merges_other_relations(self):
        results = self.staff.members.with_("subteams").get()
        self.assertEqual(results.dns(), [ALICE, BOB, DEVS])

    def test_recursive_stops_at_cycles(self):
        # devs is in staff, ops is in devs and staff is in ops
        results = self.staff.subteams.recursive().get()
        self.assertEqual(results.dns(), [DEVS, OPS])

    # ------------------------------------------------------------------------
    # Attaching and detaching
    # ------------------------------------------------------------------------

    def test_attach(self):
        carol = Member.objects.get_by_dn(CAROL)
        self.assertIs(self.staff.members.attach(carol), carol)
        self.assertIn(STAFF, carol.member_of)
        self.assertEqual(self.stored(CAROL, "memberOf"), [DEVS, STAFF])
        self.assertTrue(self.staff.members.exists(carol))

    def test_attach_twice_is_harmless(self):
        carol = Member.objects.get_by_dn(CAROL)
        self.staff.members.attach(carol)
        with self.assertLogs("django-ldapquery", level="INFO") as logs:
            self.assertIs(self.staff.members.attach(carol), carol)
        self.assertIn("ldapquery.relation.attach.bypassed", logs.output[0])
        self.assertEqual(self.stored(CAROL, "memberOf"), [DEVS, STAFF])

    def test_attach_already_linked(self):
        alice = Member.objects.get_by_dn(ALICE)
        self.assertIs(self.staff.members.attach(alice), alice)
        self.assertEqual(self.stored(ALICE, "memberOf"), [STAFF])

    def test_attach_many(self):
        members = Member.objects.query().find([ALICE, CAROL])
        self.staff.members.attach_many(members)
        self.assertEqual(self.staff.members.get().dns(), [ALICE, BOB, CAROL])

    def test_attach_many_accepts_a_generator(self):
        carol = Member.objects.get_by_dn(CAROL)
        attached = self.staff.members.attach_many(m for m in [carol])
        self.assertEqual(attached, [carol])
        self.assertEqual(self.stored(CAROL, "memberOf"), [DEVS, STAFF])

    def test_attach_and_detach_without_foreign_value(self):
        carol = Member.objects.get_by_dn(CAROL)
        relation = HasMany(
            Member.query(), self.staff, [Member], "departmentNumber",
            foreign_key="businessCategory",
        )
        with patch.object(LdapManager, "add_attribute_values") as add, patch.object(
            LdapManager, "delete_attribute_values"
        ) as delete:
            with self.assertRaises(InvalidUsage):
                relation.attach(carol)
            with self.assertRaises(InvalidUsage):
                relation.detach(carol)
        add.assert_not_called()
        delete.assert_not_called()
        self.assertEqual(self.stored(CAROL, "memberOf"), [DEVS])

    def test_attach_using(self):
        carol = Member.objects.get_by_dn(CAROL)
        self.staff.members.using(self.staff, "member").attach(carol)
        self.assertEqual(self.staff.get_attribute("member"), [ALICE, BOB, CAROL])
        self.assertEqual(
            Team.objects.get_by_dn(STAFF).member, [ALICE, BOB, CAROL]
        )
        # The member entry itself is untouched
        self.assertEqual(self.stored(CAROL, "memberOf"), [DEVS])

    def test_attach_propagates_other_errors(self):
        carol = Member.objects.get_by_dn(CAROL)
        error = ldap_error(ldap.INSUFFICIENT_ACCESS, "Insufficient access")
        with patch.object(LdapManager, "add_attribute_values", side_effect=error):
            with self.assertRaises(DirectoryOperationError) as ctx:
                self.staff.members.attach(carol)
        self.assertIs(ctx.exception, error)
        self.assertEqual(ctx.exception.kind, ErrorKind.INSUFFICIENT_ACCESS)

    @override_settings(LDAPQUERY_ATTACH_BYPASS_MESSAGES=["entry is already a member"])
    def test_attach_configured_bypass_message(self):
        carol = Member.objects.get_by_dn(CAROL)
        error = DirectoryOperationError("Other: Entry is already a member of that group")
        with patch.object(LdapManager, "add_attribute_values", side_effect=error):
            self.assertIs(self.staff.members.attach(carol), carol)

    def test_detach(self):
        bob = Member.objects.get_by_dn(BOB)
        self.assertIs(self.staff.members.detach(bob), bob)
        self.assertEqual(bob.member_of, [DEVS])
        self.assertEqual(self.stored(BOB, "memberOf"), [DEVS])
        self.assertEqual(self.staff.members.get().dns(), [ALICE])

    def test_detach_never_attached(self):
        carol = Member.objects.get_by_dn(CAROL)
        error = ldap_error(ldap.UNWILLING_TO_PERFORM, "Server is unwilling to perform")
        with patch.object(LdapManager, "delete_attribute_values", side_effect=error):
            with self.assertLogs("django-ldapquery", level="INFO"):
                self.assertIs(self.staff.members.detach(carol), carol)

    def test_detach_missing_attribute(self):
        carol = Member.objects.get_by_dn(CAROL)
        error = ldap_error(ldap.NO_SUCH_ATTRIBUTE, "No such attribute")
        with patch.object(LdapManager, "delete_attribute_values", side_effect=error):
            self.assertIs(self.staff.members.detach(carol), carol)

    def test_detach_propagates_other_errors(self):
        carol = Member.objects.get_by_dn(CAROL)
        error = ldap_error(ldap.INSUFFICIENT_ACCESS, "Insufficient access")
        with patch.object(LdapManager, "delete_attribute_values", side_effect=error):
            with self.assertRaises(DirectoryOperationError):
                self.staff.members.detach(carol)

    def test_detach_using(self):
        bob = Member.objects.get_by_dn(BOB)
        self.staff.members.using(self.staff, "member").detach(bob)
        self.assertEqual(Team.objects.get_by_dn(STAFF).member, [ALICE])
        self.assertEqual(self.stored(BOB, "memberOf"), [STAFF, DEVS])

    def test_detach_all(self):
        relation = self.staff.members.with_("subteams")
        detached = relation.detach_all()
        self.assertEqual(detached.dns(), [ALICE, BOB])
        self.assertTrue(relation.merging)
        self.assertEqual(self.staff.members.get().dns(), [])
        # Merged relations are left alone
        self.assertEqual(self.staff.subteams.get().dns(), [DEVS])
