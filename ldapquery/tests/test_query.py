# mypy: disable-error-code="attr-defined"
# type: ignore
"""
Tests for the base QueryBuilder: filter composition, projection, search
scopes, caching and error handling.  The manager is a Mock, so nothing here
talks to a directory.
"""

import datetime
import unittest
from unittest.mock import Mock

import django
import ldap
from django.conf import settings

from ldapquery.exceptions import DirectoryOperationError, ErrorKind, InvalidUsage
from ldapquery.query import QueryBuilder, normalize_columns

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


def make_manager(results=None):
    manager = Mock()
    manager.basedn = "ou=people,dc=example,dc=com"
    manager.server_key = "test_server"
    manager.search.return_value = results if results is not None else []
    manager.paged_search.return_value = results if results is not None else []
    return manager


class TestNormalizeColumns(unittest.TestCase):
    def test_none_is_empty(self):
        self.assertEqual(normalize_columns(None), [])

    def test_string_becomes_list(self):
        self.assertEqual(normalize_columns("cn"), ["cn"])

    def test_duplicates_removed_case_insensitively(self):
        self.assertEqual(
            normalize_columns(["cn", "uid", "CN", "mail", "Uid"]), ["cn", "uid", "mail"]
        )


class TestQueryBuilderFilters(unittest.TestCase):
    def setUp(self):
        self.query = QueryBuilder(make_manager())

    def test_no_filters_matches_everything(self):
        self.assertEqual(self.query.get_query(), "(objectclass=*)")

    def test_single_filter_is_not_wrapped(self):
        self.query.where_equals("uid", "alice")
        self.assertEqual(self.query.get_query(), "(uid=alice)")

    def test_filters_are_anded(self):
        self.query.where_equals("uid", "alice").where_has("mail")
        self.assertEqual(self.query.get_query(), "(&(uid=alice)(mail=*))")

    def test_where_shorthand_is_equality(self):
        self.query.where("uid", "alice")
        self.assertEqual(self.query.get_query(), "(uid=alice)")

    def test_where_dict(self):
        self.query.where({"uid": "alice", "sn": "Anderson"})
        self.assertEqual(self.query.get_query(), "(&(uid=alice)(sn=Anderson))")

    def test_not_equals(self):
        self.query.where_not_equals("uid", "alice")
        self.assertEqual(self.query.get_query(), "(!(uid=alice))")

    def test_not_has(self):
        self.query.where_not_has("mail")
        self.assertEqual(self.query.get_query(), "(!(mail=*))")

    def test_substring_operators(self):
        self.query.where_starts_with("cn", "Al").where_ends_with("sn", "son")
        self.query.where_contains("mail", "example")
        self.assertEqual(
            self.query.get_query(),
            "(&(cn=Al*)(sn=*son)(mail=*example*))",
        )

    def test_values_are_escaped(self):
        self.query.where_equals("cn", "a*b(c)")
        self.assertEqual(self.query.get_query(), "(cn=a\\2ab\\28c\\29)")

    def test_where_raw_does_not_escape(self):
        self.query.where_raw("objectguid", "=", "\\d0\\b4")
        self.assertEqual(self.query.get_query(), "(objectguid=\\d0\\b4)")

    def test_where_raw_rejects_substring_operators(self):
        with self.assertRaises(InvalidUsage):
            self.query.where_raw("cn", "contains", "x")

    def test_unknown_operator(self):
        with self.assertRaises(InvalidUsage):
            self.query.where("cn", "like", "x")

    def test_boolean_values(self):
        self.query.where_equals("nsAccountLock", True)
        self.assertEqual(self.query.get_query(), "(nsAccountLock=TRUE)")

    def test_or_filter(self):
        self.query.where_equals("objectclass", "person")
        self.query.or_filter(
            lambda q: q.where_equals("uid", "alice").where_equals("uid", "bob")
        )
        self.assertEqual(
            self.query.get_query(),
            "(&(objectclass=person)(|(uid=alice)(uid=bob)))",
        )

    def test_empty_or_filter_adds_nothing(self):
        self.query.or_filter(lambda q: None)
        self.assertEqual(self.query.filters, [])

    def test_not_filter(self):
        self.query.not_filter(lambda q: q.where_equals("uid", "alice"))
        self.assertEqual(self.query.get_query(), "(!(uid=alice))")

    def test_where_in(self):
        self.query.where_in("uid", ["alice", "bob"])
        self.assertEqual(self.query.get_query(), "(|(uid=alice)(uid=bob))")

    def test_raw_filter(self):
        self.query.raw_filter("memberOf=cn=staff,ou=groups,dc=example,dc=com")
        self.assertEqual(
            self.query.get_query(), "(memberOf=cn=staff,ou=groups,dc=example,dc=com)"
        )

    def test_clear_filters(self):
        self.query.where_equals("uid", "alice").clear_filters()
        self.assertEqual(self.query.get_query(), "(objectclass=*)")

    def test_unescaped_query(self):
        self.query.where_equals("cn", "a*b")
        self.assertEqual(self.query.get_unescaped_query(), "(cn=a*b)")

    def test_escape(self):
        self.assertEqual(self.query.escape("a(b)"), "a\\28b\\29")
        self.assertEqual(self.query.escape(b"\x01\xff"), "\\01\\ff")


class TestQueryBuilderState(unittest.TestCase):
    def setUp(self):
        self.manager = make_manager()
        self.query = QueryBuilder(self.manager)

    def test_get_selects_defaults_to_everything(self):
        self.assertEqual(self.query.get_selects(), ["*"])

    def test_select_and_add_select(self):
        self.query.select(["cn", "uid"]).add_select(["UID", "mail"])
        self.assertEqual(self.query.get_selects(), ["cn", "uid", "mail"])

    def test_dn_falls_back_to_manager_basedn(self):
        self.assertEqual(self.query.get_dn(), "ou=people,dc=example,dc=com")
        self.query.set_dn("uid=alice,ou=people,dc=example,dc=com")
        self.assertEqual(self.query.get_dn(), "uid=alice,ou=people,dc=example,dc=com")
        self.assertEqual(self.query.get_base_dn(), "ou=people,dc=example,dc=com")

    def test_search_types(self):
        self.assertEqual(self.query.get_type(), "search")
        self.assertEqual(self.query.read().get_type(), "read")
        self.assertEqual(self.query.listing().get_type(), "listing")
        self.assertEqual(self.query.listing(False).get_type(), "search")

    def test_clone_is_independent_but_shares_manager(self):
        self.query.where_equals("uid", "alice").select("cn")
        clone = self.query.clone()
        clone.where_has("mail").add_select("mail")
        self.assertEqual(self.query.get_query(), "(uid=alice)")
        self.assertEqual(self.query.get_selects(), ["cn"])
        self.assertIs(clone.manager, self.manager)

    def test_new_instance_keeps_nothing_but_dn(self):
        self.query.set_dn("ou=x,dc=example,dc=com").where_equals("uid", "alice")
        fresh = self.query.new_instance()
        self.assertEqual(fresh.filters, [])
        self.assertEqual(fresh.get_dn(), "ou=x,dc=example,dc=com")

    def test_get_connection(self):
        self.assertIs(self.query.get_connection(), self.manager)


class TestQueryBuilderExecution(unittest.TestCase):
    def setUp(self):
        self.results = [
            ("uid=alice,ou=people,dc=example,dc=com", {"uid": [b"alice"]}),
            ("uid=bob,ou=people,dc=example,dc=com", {"uid": [b"bob"]}),
        ]
        self.manager = make_manager(self.results)
        self.query = QueryBuilder(self.manager)

    def test_get_passes_filter_scope_and_limit(self):
        self.query.where_equals("uid", "alice").select(["uid"]).limit(5)
        self.query.get()
        args, kwargs = self.manager.search.call_args
        self.assertEqual(args, ("(uid=alice)", ["uid"]))
        self.assertEqual(kwargs["sizelimit"], 5)
        self.assertEqual(kwargs["basedn"], "ou=people,dc=example,dc=com")
        self.assertEqual(kwargs["scope"], ldap.SCOPE_SUBTREE)

    def test_get_columns_used_when_nothing_selected(self):
        self.query.get(["cn", "sn"])
        args, _ = self.manager.search.call_args
        self.assertEqual(args[1], ["cn", "sn"])

    def test_read_uses_base_scope(self):
        self.query.set_dn("uid=alice,ou=people,dc=example,dc=com").read().get()
        _, kwargs = self.manager.search.call_args
        self.assertEqual(kwargs["scope"], ldap.SCOPE_BASE)
        self.assertEqual(kwargs["basedn"], "uid=alice,ou=people,dc=example,dc=com")

    def test_results_truncated_to_limit(self):
        self.assertEqual(len(self.query.limit(1).get()), 1)

    def test_first(self):
        self.assertEqual(self.query.first(), self.results[0])
        self.manager.search.return_value = []
        self.assertIsNone(self.query.first())

    def test_read_of_missing_entry_is_empty(self):
        self.manager.search.side_effect = DirectoryOperationError(
            "No such object", kind=ErrorKind.NO_SUCH_OBJECT
        )
        self.query.set_dn("uid=nobody,ou=people,dc=example,dc=com").read()
        self.assertEqual(self.query.get(), [])

    def test_search_of_missing_base_raises(self):
        self.manager.search.side_effect = DirectoryOperationError(
            "No such object", kind=ErrorKind.NO_SUCH_OBJECT
        )
        with self.assertRaises(DirectoryOperationError):
            self.query.get()

    def test_paginate_uses_paged_search(self):
        results = self.query.where_has("uid").paginate(250)
        self.assertEqual(results, self.results)
        _, kwargs = self.manager.paged_search.call_args
        self.assertEqual(kwargs["page_size"], 250)
        self.assertFalse(kwargs["critical"])
        self.manager.search.assert_not_called()

    def test_chunk_stops_when_callback_returns_false(self):
        self.manager.iter_pages.return_value = iter([[self.results[0]], [self.results[1]]])
        pages = []

        def callback(page):
            pages.append(page)
            return False

        self.assertFalse(self.query.chunk(1, callback))
        self.assertEqual(pages, [[self.results[0]]])

    def test_exists(self):
        self.query.where_equals("uid", "alice")
        self.assertTrue(self.query.exists())
        self.assertFalse(self.query.doesnt_exist())
        # exists() works on a copy
        self.assertEqual(self.query.limit_value, 0)
        self.manager.search.return_value = []
        self.assertFalse(self.query.exists())
        self.assertEqual(self.query.exists_or(lambda: "nothing"), "nothing")


class TestQueryBuilderCache(unittest.TestCase):
    def setUp(self):
        from django.core.cache import caches

        caches["default"].clear()
        self.results = [("uid=alice,ou=people,dc=example,dc=com", {"uid": [b"alice"]})]
        self.manager = make_manager(self.results)

    def test_no_cache_by_default(self):
        self.assertIsNone(QueryBuilder(self.manager).get_cache())

    def test_cached_results_are_reused(self):
        QueryBuilder(self.manager).where_equals("uid", "alice").cache(60).get()
        QueryBuilder(self.manager).where_equals("uid", "alice").cache(60).get()
        self.assertEqual(self.manager.search.call_count, 1)

    def test_different_queries_are_cached_separately(self):
        QueryBuilder(self.manager).where_equals("uid", "alice").cache().get()
        QueryBuilder(self.manager).where_equals("uid", "bob").cache().get()
        self.assertEqual(self.manager.search.call_count, 2)

    def test_flush(self):
        QueryBuilder(self.manager).where_equals("uid", "alice").cache().get()
        QueryBuilder(self.manager).where_equals("uid", "alice").cache(flush=True).get()
        self.assertEqual(self.manager.search.call_count, 2)

    def test_until_datetime(self):
        until = datetime.datetime.now(tz=datetime.timezone.utc) + datetime.timedelta(
            minutes=5
        )
        query = QueryBuilder(self.manager).cache(until)
        self.assertTrue(0 < query._cache_timeout() <= 300)
        self.assertEqual(query.get(), self.results)
