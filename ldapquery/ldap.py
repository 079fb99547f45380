# Managers import ``ldap`` from here rather than directly so that
# python-ldap-faker can patch ``ldapquery.ldap.initialize`` in our tests.
import ldap
from ldap import *  # noqa: F403

__version__ = ldap.__version__
