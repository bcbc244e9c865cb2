#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#

# pylint: disable=redefined-outer-name,missing-docstring

import threading

import pytest
from fakes import CancelEvent, FakeSSOClient, client_error

from ssoharvest.errors import (
    AuthenticationError,
    ConfigurationError,
    HarvestCancelled,
    RemoteError,
)
from ssoharvest.gateway import SSOGateway
from ssoharvest.harvester import (
    ENUMERATE_ONLY,
    FETCH_CREDENTIALS,
    SKIP,
    RoleHarvester,
    chunked,
    default_role_filter,
    regex_role_filter,
    validate_options,
)
from ssoharvest.model import Account, Credential

ROLES = ["AdminAccess", "ReadOnlyAccess", "ContributorAccess", "Billing"]


def make_accounts(n):
    return [Account(f"{i:012d}", f"acct{i}") for i in range(1, n + 1)]


def make_client(accounts, roles=ROLES, **kwargs):
    return FakeSSOClient(
        [[(a.id, a.name) for a in accounts]],
        {a.id: list(roles) for a in accounts},
        **kwargs,
    )


def role_names(account):
    return sorted(r.name for r in account.roles)


@pytest.fixture
def harvester_for(clock):
    def factory(client, mode=FETCH_CREDENTIALS, cancel_event=None, **kwargs):
        gateway = SSOGateway(
            client, "aoaTOKEN", sleep=clock.sleep, cancel_event=cancel_event
        )
        return RoleHarvester(gateway, mode, cancel_event=cancel_event, **kwargs)

    return factory


@pytest.mark.parametrize(
    "name, expected",
    [
        ("ReadOnlyAccess", True),
        ("AWSReadOnly", True),
        ("ContributorAccess", True),
        ("Reader", True),
        ("Read", True),
        # Substring match, so unrelated names containing Read are kept too.
        ("BreadBaker", True),
        ("AdminAccess", False),
        ("Administrator", False),
        ("Billing", False),
        ("readonly", False),
        ("contributor", False),
        ("", False),
    ],
)
def test_default_role_filter(name, expected):
    assert default_role_filter(name) == expected


def test_regex_role_filter():
    role_filter = regex_role_filter(r"^(ReadOnly|View)")
    assert role_filter("ReadOnlyAccess")
    assert role_filter("ViewOnly")
    assert not role_filter("ContributorAccess")
    assert not role_filter("MyReadOnly")


@pytest.mark.parametrize(
    "items, size, expected",
    [
        ([], 4, []),
        ([1, 2, 3], 4, [[1, 2, 3]]),
        ([1, 2, 3, 4], 4, [[1, 2, 3, 4]]),
        ([1, 2, 3, 4, 5], 2, [[1, 2], [3, 4], [5]]),
        ([1, 2, 3], 1, [[1], [2], [3]]),
    ],
)
def test_chunked(items, size, expected):
    assert chunked(items, size) == expected


@pytest.mark.parametrize(
    "kwargs",
    [
        {"mode": "bogus"},
        {"mode": None},
        {"workers": 0},
        {"workers": -1},
        {"workers": 1.5},
        {"workers": "3"},
        {"workers": True},
        {"chunks": 0},
        {"chunks": None},
        {"on_error": "ignore"},
        {"role_filter": "Read"},
    ],
)
def test_invalid_options(harvester_for, kwargs):
    options = {
        "mode": ENUMERATE_ONLY,
        "workers": 1,
        "chunks": 1,
        "role_filter": default_role_filter,
        "on_error": SKIP,
    }
    options.update(kwargs)
    with pytest.raises(ConfigurationError):
        validate_options(**options)
    with pytest.raises(ConfigurationError):
        harvester_for(FakeSSOClient([], {}), **options)


def test_valid_options():
    validate_options(ENUMERATE_ONLY, 12, 4, default_role_filter, SKIP)


def test_gateway_is_required():
    with pytest.raises(ConfigurationError):
        RoleHarvester(None, ENUMERATE_ONLY)


def test_no_accounts(harvester_for):
    client = make_client([])
    snapshot = harvester_for(client).run([])
    assert len(snapshot) == 0
    assert client.calls["ListAccountRoles"] == 0


def test_enumerate_only(harvester_for):
    accounts = make_accounts(1)
    client = make_client(accounts)

    snapshot = harvester_for(client, ENUMERATE_ONLY).run(accounts)

    assert role_names(snapshot[0]) == ["ContributorAccess", "ReadOnlyAccess"]
    assert all(r.credentials is None for r in snapshot.roles())
    assert client.calls["GetRoleCredentials"] == 0


def test_fetch_credentials(harvester_for):
    accounts = make_accounts(1)
    client = make_client(accounts)

    snapshot = harvester_for(client).run(accounts)

    for role in snapshot.roles():
        assert role.credentials == Credential(
            f"AKIA{role.account_id}",
            f"secret-{role.account_id}-{role.name}",
            f"session-{role.account_id}-{role.name}",
        )


def test_account_without_qualifying_roles(harvester_for):
    accounts = make_accounts(2)
    client = make_client(accounts)
    client.roles[accounts[0].id] = ["AdminAccess"]

    snapshot = harvester_for(client).run(accounts)

    assert [a.id for a in snapshot] == [a.id for a in accounts]
    assert snapshot[0].roles == []
    assert role_names(snapshot[1]) == ["ContributorAccess", "ReadOnlyAccess"]


def test_custom_role_filter(harvester_for):
    accounts = make_accounts(1)
    client = make_client(accounts)

    snapshot = harvester_for(client, role_filter=lambda n: n == "Billing").run(accounts)
    assert role_names(snapshot[0]) == ["Billing"]


def test_paginated_roles(harvester_for):
    accounts = make_accounts(2)
    roles = [f"ReadOnly{i}" for i in range(5)]
    client = make_client(accounts, roles=roles, role_page_size=2)

    snapshot = harvester_for(client).run(accounts)

    assert all(role_names(a) == roles for a in snapshot)
    assert client.calls["ListAccountRoles"] == 6


@pytest.mark.parametrize("mode", [ENUMERATE_ONLY, FETCH_CREDENTIALS])
@pytest.mark.parametrize("workers, chunks", [(1, 1), (1, 4), (12, 4), (3, 50), (50, 2)])
def test_concurrent_aggregation(harvester_for, mode, workers, chunks):
    accounts = make_accounts(50)
    client = make_client(accounts)

    snapshot = harvester_for(client, mode, workers=workers, chunks=chunks).run(
        accounts
    )

    assert [a.id for a in snapshot] == [a.id for a in accounts]
    assert sum(len(a.roles) for a in snapshot) == 100
    for role in snapshot.roles():
        assert role.account is snapshot.account(role.account_id)
        assert role in role.account.roles
        assert default_role_filter(role.name)
        if mode == FETCH_CREDENTIALS:
            creds = role.credentials
            assert all(
                (creds.access_key_id, creds.secret_access_key, creds.session_token)
            )
        else:
            assert role.credentials is None

    # Exactly one ListAccountRoles per account and one GetRoleCredentials per
    # kept role, never a duplicate.
    assert client.calls["ListAccountRoles"] == 50
    listed = [c["accountId"] for c in client.call_args["ListAccountRoles"]]
    assert len(set(listed)) == 50

    expected = 100 if mode == FETCH_CREDENTIALS else 0
    assert client.calls["GetRoleCredentials"] == expected
    fetched = {
        (c["accountId"], c["roleName"]) for c in client.call_args["GetRoleCredentials"]
    }
    assert len(fetched) == expected


def test_fifty_accounts_three_roles(harvester_for):
    accounts = make_accounts(50)
    client = make_client(accounts, roles=["ReadOnly", "ReadWriteContributor", "Reader"])

    snapshot = harvester_for(client, workers=12, chunks=4).run(accounts)

    assert len(snapshot) == 50
    assert len(list(snapshot.roles())) == 150
    for account in snapshot:
        assert all(r.account_id == account.id for r in account.roles)


@pytest.mark.parametrize("k", [0, 1, 2, 3])
def test_throttling_recovers_with_identical_output(harvester_for, clock, k):
    accounts = make_accounts(1)
    client = make_client(accounts, roles=["ReadOnly"])
    client.fail("ListAccountRoles", "TooManyRequestsException", times=k)
    client.fail("GetRoleCredentials", "TooManyRequestsException", times=k)

    snapshot = harvester_for(client).run(accounts)

    assert role_names(snapshot[0]) == ["ReadOnly"]
    assert snapshot[0].roles[0].credentials == Credential(
        f"AKIA{accounts[0].id}",
        f"secret-{accounts[0].id}-ReadOnly",
        f"session-{accounts[0].id}-ReadOnly",
    )
    assert clock.total == 2 * sum([10, 5, 1][:k])


def test_throttled_credentials_then_recovered(harvester_for, clock):
    accounts = [Account("111111111111", "alpha")]
    client = make_client(accounts, roles=["ReadOnly"])
    client.fail("GetRoleCredentials", "TooManyRequestsException", times=2)

    snapshot = harvester_for(client).run(accounts)

    assert snapshot.profiles() == ["alpha-ReadOnly"]
    assert clock.sleeps == [10, 5]


def test_abort_on_list_roles_failure(harvester_for):
    accounts = make_accounts(5)
    client = make_client(accounts, role_errors={accounts[1].id: "InternalServerException"})

    with pytest.raises(RemoteError):
        harvester_for(client, chunks=1).run(accounts)

    # No further chunks are launched after the failure.
    assert client.calls["ListAccountRoles"] == 2


def test_abort_on_credentials_failure(harvester_for):
    accounts = make_accounts(3)
    client = make_client(accounts)
    client.fail("GetRoleCredentials", "InternalServerException")

    with pytest.raises(RemoteError):
        harvester_for(client).run(accounts)


def test_abort_on_exhausted_throttling(harvester_for, clock):
    accounts = make_accounts(1)
    client = make_client(accounts, roles=["ReadOnly"])
    client.fail("GetRoleCredentials", "TooManyRequestsException", times=4)

    with pytest.raises(RemoteError):
        harvester_for(client).run(accounts)
    assert clock.sleeps == [10, 5, 1]


def test_skip_list_roles_failure(harvester_for):
    accounts = make_accounts(4)
    bad = accounts[1].id
    client = make_client(accounts, role_errors={bad: "InternalServerException"})

    harvester = harvester_for(client, on_error=SKIP)
    snapshot = harvester.run(accounts)

    assert [a.id for a in snapshot] == [a.id for a in accounts]
    assert snapshot.account(bad).roles == []
    assert list(harvester.failures) == [bad]
    assert isinstance(harvester.failures[bad], RemoteError)
    for account in snapshot:
        if account.id != bad:
            assert role_names(account) == ["ContributorAccess", "ReadOnlyAccess"]


def test_skip_credentials_failure_drops_whole_account(harvester_for):
    accounts = make_accounts(3)
    bad = accounts[2].id
    client = make_client(accounts)

    def fail_for_bad_account(account_id, role_name):  # pylint: disable=unused-argument
        if account_id == bad:
            raise client_error("InternalServerException", "GetRoleCredentials")

    client.on_get_role_credentials = fail_for_bad_account

    harvester = harvester_for(client, on_error=SKIP)
    snapshot = harvester.run(accounts)

    assert snapshot.account(bad).roles == []
    assert set(harvester.failures) == {bad}
    assert len(list(snapshot.roles())) == 4


def test_skip_does_not_apply_to_auth_errors(harvester_for):
    accounts = make_accounts(3)
    client = make_client(accounts, role_errors={accounts[0].id: "UnauthorizedException"})

    with pytest.raises(AuthenticationError):
        harvester_for(client, on_error=SKIP).run(accounts)


def test_failures_reset_between_runs(harvester_for):
    accounts = make_accounts(2)
    client = make_client(accounts, role_errors={accounts[0].id: "InternalServerException"})
    harvester = harvester_for(client, on_error=SKIP)

    harvester.run(accounts)
    assert harvester.failures

    client.role_errors.clear()
    for account in accounts:
        account.clear_roles()
    harvester.run(accounts)
    assert harvester.failures == {}


def test_cancel_before_run(harvester_for):
    cancel = threading.Event()
    cancel.set()
    accounts = make_accounts(3)
    client = make_client(accounts)

    with pytest.raises(HarvestCancelled):
        harvester_for(client, cancel_event=cancel).run(accounts)

    assert client.calls["ListAccountRoles"] == 0
    assert client.calls["GetRoleCredentials"] == 0


def test_cancel_stops_new_requests(harvester_for):
    cancel = CancelEvent()
    accounts = make_accounts(10)
    client = make_client(accounts)
    client.cancel_event = cancel
    client.on_get_role_credentials = lambda *_: cancel.set()

    with pytest.raises(HarvestCancelled):
        harvester_for(client, cancel_event=cancel, workers=1, chunks=1).run(accounts)

    # The single consumer finishes its in-flight request and makes no more.
    assert client.late_calls == []
    assert client.calls["GetRoleCredentials"] == 1
