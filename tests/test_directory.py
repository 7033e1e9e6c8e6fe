"""Unit tests for auth/directory.py -- the ldap3 adapter.

ldap3's Server and Connection are patched in the auth.directory namespace, so
no LDAP server is needed. Each test hands out pre-built connection mocks in
call order (service bind first, then user bind where relevant).

Covers:
- service bind + search for uid lookup, profile fetch and group membership
- user bind is the only credential check; empty secrets never bind
- every connection is unbound, on success and on failure
- transport errors and rejected service binds -> DirectoryUnavailable
- filter and DN escaping of user input
- reachability probe never raises
- group_matches() substring / cn policies
"""

from unittest.mock import MagicMock, patch

import pytest
from ldap3.core.exceptions import LDAPSocketOpenError, LDAPSocketReceiveError

from auth.directory import DirectoryClient, DirectoryConfig, group_matches
from auth.errors import DirectoryNotFound, DirectoryUnavailable

_CONFIG = DirectoryConfig(
    url="ldap://idm.test",
    base_dn="dc=lab,dc=local",
    users_dn="cn=users,cn=compat,dc=lab,dc=local",
    service_dn="uid=svc,cn=sysaccounts,dc=lab,dc=local",
    service_password="svc-pass",
)


def _entry(attrs: dict) -> MagicMock:
    entry = MagicMock()
    entry.entry_attributes_as_dict = attrs
    return entry


def _conn(bind_result=True, entries=None) -> MagicMock:
    conn = MagicMock()
    if isinstance(bind_result, Exception):
        conn.bind.side_effect = bind_result
    else:
        conn.bind.return_value = bind_result
    conn.entries = entries or []
    conn.result = {"description": "invalidCredentials"}
    return conn


@pytest.fixture
def ldap():
    """Patch Server/Connection; yield the Connection mock for side_effect setup."""
    with patch("auth.directory.Server") as server_cls, patch("auth.directory.Connection") as conn_cls:
        server_cls.return_value = MagicMock()
        yield conn_cls


class TestConfig:
    def test_configured_requires_service_credentials(self) -> None:
        assert _CONFIG.configured is True
        assert DirectoryConfig(url="ldap://x", base_dn="dc=x", users_dn="cn=u").configured is False

    def test_unconfigured_client_is_unavailable(self, ldap) -> None:
        client = DirectoryClient(DirectoryConfig(url="ldap://x", base_dn="dc=x", users_dn="cn=u"))
        with pytest.raises(DirectoryUnavailable):
            client.find_identifier_by_email("anna@sunrise.net")
        assert client.is_service_reachable() is False
        ldap.assert_not_called()


class TestFindIdentifier:
    def test_returns_uid(self, ldap) -> None:
        conn = _conn(entries=[_entry({"uid": ["amuster"]})])
        ldap.side_effect = [conn]
        assert DirectoryClient(_CONFIG).find_identifier_by_email("anna.muster@sunrise.net") == "amuster"
        _, kwargs = ldap.call_args
        assert kwargs["user"] == _CONFIG.service_dn
        assert kwargs["read_only"] is True
        search = conn.search.call_args.kwargs
        assert search["search_base"] == "dc=lab,dc=local"
        assert search["search_filter"] == "(&(objectClass=person)(mail=anna.muster@sunrise.net))"
        conn.unbind.assert_called_once()

    def test_not_found(self, ldap) -> None:
        conn = _conn(entries=[])
        ldap.side_effect = [conn]
        with pytest.raises(DirectoryNotFound):
            DirectoryClient(_CONFIG).find_identifier_by_email("ghost@sunrise.net")
        conn.unbind.assert_called_once()

    def test_filter_input_is_escaped(self, ldap) -> None:
        conn = _conn(entries=[])
        ldap.side_effect = [conn]
        with pytest.raises(DirectoryNotFound):
            DirectoryClient(_CONFIG).find_identifier_by_email("*)(uid=*")
        search_filter = conn.search.call_args.kwargs["search_filter"]
        assert "(uid=*" not in search_filter
        assert "\\2a" in search_filter and "\\28" in search_filter

    def test_socket_error_is_unavailable(self, ldap) -> None:
        conn = _conn(bind_result=LDAPSocketOpenError("refused"))
        ldap.side_effect = [conn]
        with pytest.raises(DirectoryUnavailable):
            DirectoryClient(_CONFIG).find_identifier_by_email("anna.muster@sunrise.net")
        conn.unbind.assert_called_once()

    def test_rejected_service_bind_is_unavailable(self, ldap) -> None:
        conn = _conn(bind_result=False)
        ldap.side_effect = [conn]
        with pytest.raises(DirectoryUnavailable):
            DirectoryClient(_CONFIG).find_identifier_by_email("anna.muster@sunrise.net")
        conn.unbind.assert_called_once()

    def test_search_timeout_is_unavailable(self, ldap) -> None:
        conn = _conn()
        conn.search.side_effect = LDAPSocketReceiveError("timed out")
        ldap.side_effect = [conn]
        with pytest.raises(DirectoryUnavailable):
            DirectoryClient(_CONFIG).find_identifier_by_email("anna.muster@sunrise.net")
        conn.unbind.assert_called_once()


class TestVerifyCredential:
    def test_user_bind_success(self, ldap) -> None:
        conn = _conn(bind_result=True)
        ldap.side_effect = [conn]
        assert DirectoryClient(_CONFIG).verify_credential("amuster", "pw") is True
        _, kwargs = ldap.call_args
        assert kwargs["user"] == "uid=amuster,cn=users,cn=compat,dc=lab,dc=local"
        assert kwargs["password"] == "pw"
        conn.unbind.assert_called_once()

    def test_user_bind_rejected(self, ldap) -> None:
        conn = _conn(bind_result=False)
        ldap.side_effect = [conn]
        assert DirectoryClient(_CONFIG).verify_credential("amuster", "wrong") is False
        conn.unbind.assert_called_once()

    def test_empty_secret_never_binds(self, ldap) -> None:
        assert DirectoryClient(_CONFIG).verify_credential("amuster", "") is False
        ldap.assert_not_called()

    def test_dn_component_is_escaped(self, ldap) -> None:
        ldap.side_effect = [_conn(bind_result=False)]
        DirectoryClient(_CONFIG).verify_credential("evil,cn=admins", "pw")
        _, kwargs = ldap.call_args
        assert kwargs["user"].startswith("uid=evil\\,cn")
        assert kwargs["user"].endswith(",cn=users,cn=compat,dc=lab,dc=local")

    def test_transport_error_is_unavailable(self, ldap) -> None:
        conn = _conn(bind_result=LDAPSocketOpenError("refused"))
        ldap.side_effect = [conn]
        with pytest.raises(DirectoryUnavailable):
            DirectoryClient(_CONFIG).verify_credential("amuster", "pw")
        conn.unbind.assert_called_once()


class TestProfileAndGroups:
    def test_fetch_profile(self, ldap) -> None:
        attrs = {
            "uid": ["amuster"],
            "mail": ["Anna.Muster@Sunrise.net"],
            "givenName": ["Anna"],
            "sn": ["Muster"],
            "memberOf": ["cn=staff,cn=groups,dc=lab,dc=local", "cn=admins,cn=groups,dc=lab,dc=local"],
        }
        ldap.side_effect = [_conn(entries=[_entry(attrs)])]
        profile = DirectoryClient(_CONFIG).fetch_profile("amuster")
        assert profile.directory_id == "amuster"
        assert profile.email == "anna.muster@sunrise.net"
        assert (profile.given_name, profile.surname) == ("Anna", "Muster")
        assert "cn=admins,cn=groups,dc=lab,dc=local" in profile.groups

    def test_fetch_profile_with_missing_attributes(self, ldap) -> None:
        ldap.side_effect = [_conn(entries=[_entry({"uid": ["amuster"]})])]
        profile = DirectoryClient(_CONFIG).fetch_profile("amuster")
        assert profile.email == ""
        assert profile.given_name is None
        assert profile.groups == frozenset()

    def test_fetch_profile_not_found(self, ldap) -> None:
        ldap.side_effect = [_conn(entries=[])]
        with pytest.raises(DirectoryNotFound):
            DirectoryClient(_CONFIG).fetch_profile("ghost")

    def test_is_group_member(self, ldap) -> None:
        attrs = {"memberOf": ["cn=admins,cn=groups,cn=compat,dc=lab,dc=local"]}
        ldap.side_effect = [_conn(entries=[_entry(attrs)]), _conn(entries=[_entry(attrs)])]
        client = DirectoryClient(_CONFIG)
        assert client.is_group_member("bboss", "admins") is True
        assert client.is_group_member("bboss", "auditors") is False

    def test_is_group_member_unknown_user(self, ldap) -> None:
        ldap.side_effect = [_conn(entries=[])]
        assert DirectoryClient(_CONFIG).is_group_member("ghost", "admins") is False


class TestReachability:
    def test_reachable(self, ldap) -> None:
        conn = _conn(bind_result=True)
        ldap.side_effect = [conn]
        assert DirectoryClient(_CONFIG).is_service_reachable() is True
        conn.unbind.assert_called_once()

    def test_unreachable_never_raises(self, ldap) -> None:
        ldap.side_effect = [_conn(bind_result=LDAPSocketOpenError("refused"))]
        assert DirectoryClient(_CONFIG).is_service_reachable() is False

    def test_probe_uses_short_timeout(self, ldap) -> None:
        ldap.side_effect = [_conn(bind_result=True)]
        DirectoryClient(_CONFIG).is_service_reachable()
        _, kwargs = ldap.call_args
        assert kwargs["receive_timeout"] == _CONFIG.probe_timeout_seconds


class TestGroupMatches:
    @pytest.mark.parametrize(
        "dn, mode, expected",
        [
            ("cn=admins,cn=groups,dc=lab,dc=local", "substring", True),
            ("CN=Admins,CN=groups,DC=lab,DC=local", "substring", True),
            ("uid=x,cn=admins,dc=lab", "substring", True),
            ("cn=admins-readonly,cn=groups,dc=lab", "substring", True),
            ("cn=staff,cn=groups,dc=lab", "substring", False),
            ("cn=admins,cn=groups,dc=lab", "cn", True),
            ("uid=x,cn=admins,dc=lab", "cn", False),
            ("cn=admins-readonly,cn=groups,dc=lab", "cn", False),
        ],
    )
    def test_policies(self, dn: str, mode: str, expected: bool) -> None:
        assert group_matches(dn, "admins", mode) is expected
