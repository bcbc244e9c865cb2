#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#

# pylint: disable=redefined-outer-name,missing-docstring

import threading

import pytest
from fakes import FakeSSOClient

from ssoharvest.enumerator import enumerate_accounts
from ssoharvest.errors import AuthenticationError, HarvestCancelled, RemoteError
from ssoharvest.gateway import SSOGateway


def make_gateway(pages, clock, cancel_event=None):
    client = FakeSSOClient(pages, {})
    return client, SSOGateway(
        client, "aoaTOKEN", sleep=clock.sleep, cancel_event=cancel_event
    )


def ids(accounts):
    return [a.id for a in accounts]


def test_single_page(clock):
    _, gateway = make_gateway([[("1", "alpha"), ("2", "beta")]], clock)
    accounts = enumerate_accounts(gateway)
    assert ids(accounts) == ["1", "2"]
    assert [a.name for a in accounts] == ["alpha", "beta"]
    assert all(a.roles == [] for a in accounts)


def test_multiple_pages_preserve_order(clock):
    client, gateway = make_gateway(
        [[("1", "a"), ("2", "b")], [("3", "c")], [("4", "d"), ("5", "e")]], clock
    )
    assert ids(enumerate_accounts(gateway)) == ["1", "2", "3", "4", "5"]
    assert client.calls["ListAccounts"] == 3
    assert [c["nextToken"] for c in client.call_args["ListAccounts"]] == [
        None,
        "1",
        "2",
    ]


def test_no_accounts(clock):
    client, gateway = make_gateway([], clock)
    assert enumerate_accounts(gateway) == []
    assert client.calls["ListAccounts"] == 1


def test_empty_page_with_next_token(clock):
    _, gateway = make_gateway([[], [("1", "a")]], clock)
    assert ids(enumerate_accounts(gateway)) == ["1"]


def test_duplicate_accounts_keep_first(clock):
    _, gateway = make_gateway([[("1", "first"), ("2", "b")], [("1", "again")]], clock)
    accounts = enumerate_accounts(gateway)
    assert ids(accounts) == ["1", "2"]
    assert accounts[0].name == "first"


def test_throttled_page_is_retried(clock):
    client, gateway = make_gateway([[("1", "a")], [("2", "b")]], clock)
    client.fail("ListAccounts", "TooManyRequestsException", times=2)
    assert ids(enumerate_accounts(gateway)) == ["1", "2"]
    assert clock.sleeps == [10, 5]


@pytest.mark.parametrize(
    "code, error",
    [
        ("UnauthorizedException", AuthenticationError),
        ("InternalServerException", RemoteError),
    ],
)
def test_errors_propagate(clock, code, error):
    client, gateway = make_gateway([[("1", "a")]], clock)
    client.fail("ListAccounts", code)
    with pytest.raises(error):
        enumerate_accounts(gateway)


def test_cancelled_before_first_page(clock):
    cancel = threading.Event()
    cancel.set()
    client, gateway = make_gateway([[("1", "a")]], clock)

    with pytest.raises(HarvestCancelled):
        enumerate_accounts(gateway, cancel)
    assert client.calls["ListAccounts"] == 0
