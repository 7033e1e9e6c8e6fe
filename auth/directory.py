"""
auth/directory.py -- LDAP directory client adapter (ldap3).

Two kinds of bind are used and never mixed:
  Service bind: the configured service DN/password. Used for every search
       (uid lookup by email, profile fetch, group membership) and for the
       reachability probe.
  User bind:    the end user's DN and password. Used only by
       verify_credential(); the result of this bind is the sole source of
       truth for password correctness.

Every public operation opens its own connection and unbinds it in a finally
block, success or failure. The directory enforces connection limits, so a
leaked connection eventually locks everybody out. There is no pooling.

Transport failures (socket open/receive errors, timeouts, a rejected service
bind) are raised as DirectoryUnavailable. Raw ldap3 exceptions never leave
this module.

Filter values are escaped with escape_filter_chars() and DN components with
escape_rdn() -- the email and uid come straight from the login form.

Layer rule: no imports from api/, audit/ or core/. Configuration arrives as a
resolved DirectoryConfig; this module never reads settings itself.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from ldap3 import NONE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn

from auth.errors import DirectoryNotFound, DirectoryUnavailable
from auth.models import DirectoryProfile

logger = logging.getLogger("recruitauth.directory")

_PROFILE_ATTRIBUTES = ("givenName", "sn", "memberOf")


@dataclass(frozen=True)
class DirectoryConfig:
    """Resolved directory settings. Built by core.config.Settings.directory_config()."""

    url: str
    base_dn: str
    users_dn: str
    service_dn: str = ""
    service_password: str = ""
    group_match: str = "substring"  # "substring" or "cn"
    object_class: str = "person"
    uid_attribute: str = "uid"
    mail_attribute: str = "mail"
    timeout_seconds: float = 5.0
    probe_timeout_seconds: float = 3.0

    @property
    def configured(self) -> bool:
        return bool(self.url and self.service_dn and self.service_password)


def group_matches(dn: str, group_name: str, mode: str = "substring") -> bool:
    """Return True if the memberOf value dn names group_name.

    substring: the DN contains "cn=<group>" anywhere (case-insensitive). This
        is what FreeIPA compat trees need, where the group RDN is not always
        first.
    cn:        the first RDN of the DN is exactly "cn=<group>".
    """
    needle = f"cn={group_name}".lower()
    value = dn.strip().lower()
    if mode == "cn":
        first_rdn = value.split(",", 1)[0].strip()
        return first_rdn.replace(" ", "") == needle.replace(" ", "")
    return needle in value


def _attribute(attrs: dict, name: str) -> list:
    """Case-insensitive attribute lookup returning a list of values."""
    for key, values in attrs.items():
        if key.lower() == name.lower():
            if isinstance(values, (list, tuple)):
                return list(values)
            return [values]
    return []


def _first(attrs: dict, name: str) -> str | None:
    values = _attribute(attrs, name)
    return str(values[0]) if values else None


def _release(conn: Connection) -> None:
    try:
        conn.unbind()
    except LDAPException:
        logger.debug("Directory unbind failed", exc_info=True)


class DirectoryClient:
    """Adapter over an LDAP server.

    Usage:
        client = DirectoryClient(settings.directory_config())
        uid = client.find_identifier_by_email("anna.muster@sunrise.net")
        if client.verify_credential(uid, password):
            profile = client.fetch_profile(uid)
    """

    def __init__(self, config: DirectoryConfig) -> None:
        self.config = config

    @property
    def configured(self) -> bool:
        return self.config.configured

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _server(self, timeout: float) -> Server:
        return Server(self.config.url, connect_timeout=timeout, get_info=NONE)

    def _connection(self, user: str, password: str, timeout: float) -> Connection:
        return Connection(
            self._server(timeout),
            user=user,
            password=password,
            receive_timeout=timeout,
            read_only=True,
        )

    @contextmanager
    def _service_connection(self, timeout: float | None = None) -> Iterator[Connection]:
        """Yield a connection bound as the service account, always unbinding it."""
        if not self.configured:
            raise DirectoryUnavailable("Directory service is not configured.")
        timeout = timeout or self.config.timeout_seconds
        conn = self._connection(self.config.service_dn, self.config.service_password, timeout)
        try:
            try:
                bound = conn.bind()
            except LDAPException as exc:
                logger.warning("Directory unreachable at %s: %s", self.config.url, exc)
                raise DirectoryUnavailable() from exc
            if not bound:
                # A rejected service bind is a configuration fault, not a user error.
                logger.error("Directory service bind rejected for %s: %s", self.config.service_dn, conn.result)
                raise DirectoryUnavailable()
            try:
                yield conn
            except LDAPException as exc:
                logger.warning("Directory operation failed: %s", exc)
                raise DirectoryUnavailable() from exc
        finally:
            _release(conn)

    def _search_one(self, conn: Connection, search_filter: str, attributes: list[str]) -> dict | None:
        conn.search(
            search_base=self.config.base_dn,
            search_filter=search_filter,
            search_scope=SUBTREE,
            attributes=attributes,
            size_limit=2,
        )
        if not conn.entries:
            return None
        if len(conn.entries) > 1:
            logger.warning("Directory search %s matched more than one entry; using the first", search_filter)
        return conn.entries[0].entry_attributes_as_dict

    def _uid_filter(self, identifier: str) -> str:
        return (
            f"(&(objectClass={self.config.object_class})"
            f"({self.config.uid_attribute}={escape_filter_chars(identifier)}))"
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def find_identifier_by_email(self, email: str) -> str:
        """Return the directory uid for email. Raises DirectoryNotFound if absent."""
        search_filter = (
            f"(&(objectClass={self.config.object_class})"
            f"({self.config.mail_attribute}={escape_filter_chars(email)}))"
        )
        with self._service_connection() as conn:
            attrs = self._search_one(conn, search_filter, [self.config.uid_attribute])
        uid = _first(attrs, self.config.uid_attribute) if attrs is not None else None
        if not uid:
            raise DirectoryNotFound(email)
        return uid

    def verify_credential(self, identifier: str, secret: str) -> bool:
        """Bind as the end user. False on a wrong password, never an exception."""
        if not secret:
            # An empty-password simple bind is an unauthenticated bind and
            # many servers report it as successful.
            return False
        if not self.config.url:
            raise DirectoryUnavailable("Directory service is not configured.")
        user_dn = f"{self.config.uid_attribute}={escape_rdn(identifier)},{self.config.users_dn}"
        conn = self._connection(user_dn, secret, self.config.timeout_seconds)
        try:
            return bool(conn.bind())
        except LDAPException as exc:
            logger.warning("Directory unreachable during credential check: %s", exc)
            raise DirectoryUnavailable() from exc
        finally:
            _release(conn)

    def fetch_profile(self, identifier: str) -> DirectoryProfile:
        """Read the full profile, including group memberships, with the service account."""
        attributes = [self.config.uid_attribute, self.config.mail_attribute, *_PROFILE_ATTRIBUTES]
        with self._service_connection() as conn:
            attrs = self._search_one(conn, self._uid_filter(identifier), attributes)
        if attrs is None:
            raise DirectoryNotFound(identifier)
        return DirectoryProfile(
            directory_id=_first(attrs, self.config.uid_attribute) or identifier,
            email=(_first(attrs, self.config.mail_attribute) or "").lower(),
            given_name=_first(attrs, "givenName"),
            surname=_first(attrs, "sn"),
            groups=frozenset(str(dn) for dn in _attribute(attrs, "memberOf")),
        )

    def is_group_member(self, identifier: str, group_name: str) -> bool:
        """Return True if the entry's memberOf set names group_name under the configured policy."""
        with self._service_connection() as conn:
            attrs = self._search_one(conn, self._uid_filter(identifier), ["memberOf"])
        if attrs is None:
            return False
        return any(group_matches(str(dn), group_name, self.config.group_match) for dn in _attribute(attrs, "memberOf"))

    def is_service_reachable(self) -> bool:
        """Lightweight probe for status display. Never raises, never gates authorization."""
        if not self.configured:
            return False
        try:
            with self._service_connection(self.config.probe_timeout_seconds):
                return True
        except DirectoryUnavailable:
            return False
        except Exception:
            logger.exception("Directory probe failed unexpectedly")
            return False
