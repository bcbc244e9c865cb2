#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Throttle-aware adapter over the AWS SSO portal API.

## Overview

`SSOGateway` wraps the three AWS SSO portal operations used by ssoharvest:
`ListAccounts`, `ListAccountRoles`, and `GetRoleCredentials`. Each method takes
plain Python arguments, makes a single call via a boto3 `sso` client, and
returns plain Python values. The bearer token is supplied once when the gateway
is constructed:

    >>> client = make_sso_client("eu-west-2")
    >>> gateway = SSOGateway(client, token.access_token)
    >>> accounts, next_token = gateway.list_accounts()
    >>> roles, _ = gateway.list_account_roles("111111111111")
    >>> creds = gateway.get_role_credentials("111111111111", "ReadOnly")

## Retries

The SSO portal API enforces per-endpoint rate limits and answers with a
`TooManyRequestsException` when they are exceeded. A throttled call is retried
up to three times. Before each retry the gateway sleeps for the next entry in
`BACKOFF_SCHEDULE`, i.e. 10, 5, and then 1 second. The longest wait comes first
to give the token bucket time to refill. If the fourth attempt is throttled as
well, a `ssoharvest.errors.RemoteError` is raised.

No other error is retried. An `UnauthorizedException` raises
`ssoharvest.errors.AuthenticationError`, and everything else, including
connection failures and timeouts, raises `ssoharvest.errors.RemoteError`.
botocore's own retry handler is disabled by `make_sso_client` so this policy is
the only one in effect.

## Thread Safety

boto3 clients are thread-safe, and the gateway keeps no per-request state, so a
single gateway is shared by all of the harvester's workers.
"""

import logging
import time

import boto3
import botocore.config
import botocore.exceptions

from ssoharvest.errors import AuthenticationError, HarvestCancelled, RemoteError
from ssoharvest.model import Credential

LOG = logging.getLogger(__name__)

BACKOFF_SCHEDULE = (10, 5, 1)
"""Seconds to sleep before each retry of a throttled call."""

DEFAULT_TIMEOUT = 30
"""Default connect and read timeout in seconds for each request."""

THROTTLING_CODES = ("TooManyRequestsException", "ThrottlingException")
UNAUTHORIZED_CODES = ("UnauthorizedException",)


def make_sso_client(region, timeout=DEFAULT_TIMEOUT):
    """Returns a boto3 `sso` client for `region` with retries disabled.

    `timeout` is used for both the connect and read timeouts, which bounds the
    time any single request can take if AWS stops responding.
    """
    config = botocore.config.Config(
        connect_timeout=timeout,
        read_timeout=timeout,
        retries={"total_max_attempts": 1, "mode": "standard"},
    )
    return boto3.client("sso", region_name=region, config=config)


class SSOGateway:
    """Makes AWS SSO portal calls with the throttling retry policy.

    `client` is a boto3 `sso` client, typically from `make_sso_client`.
    `access_token` is the SSO bearer token.

    `sleep` is the function used to wait between retries. It defaults to
    `time.sleep`, or to the `wait` method of `cancel_event` if one is provided,
    so a cancelled harvest does not sit out a backoff. If `cancel_event`, a
    `threading.Event`, is set, no new attempts are made and
    `ssoharvest.errors.HarvestCancelled` is raised instead.
    """

    def __init__(
        self,
        client,
        access_token,
        backoff_schedule=BACKOFF_SCHEDULE,
        sleep=None,
        cancel_event=None,
    ):
        if not access_token:
            raise AuthenticationError("empty SSO access token")

        self._client = client
        self._token = access_token
        self._backoff_schedule = tuple(backoff_schedule)
        self._cancel_event = cancel_event

        if sleep is not None:
            self._sleep = sleep
        elif cancel_event is not None:
            self._sleep = cancel_event.wait
        else:
            self._sleep = time.sleep

    def list_accounts(self, page_token=None):
        """Returns a tuple of `(accounts, next_page_token)`.

        `accounts` is a list of `(account_id, account_name)` tuples and
        `next_page_token` is `None` on the last page.
        """
        kwargs = {"accessToken": self._token}
        if page_token:
            kwargs["nextToken"] = page_token

        resp = self._call("ListAccounts", self._client.list_accounts, **kwargs)
        accounts = [
            (a["accountId"], a.get("accountName", a["accountId"]))
            for a in resp.get("accountList", [])
        ]
        return accounts, resp.get("nextToken")

    def list_account_roles(self, account_id, page_token=None):
        """Returns a tuple of `(role_names, next_page_token)` for `account_id`."""
        kwargs = {"accessToken": self._token, "accountId": account_id}
        if page_token:
            kwargs["nextToken"] = page_token

        resp = self._call(
            "ListAccountRoles", self._client.list_account_roles, **kwargs
        )
        roles = [r["roleName"] for r in resp.get("roleList", [])]
        return roles, resp.get("nextToken")

    def list_all_account_roles(self, account_id):
        """Returns the names of every role in `account_id`, following pagination."""
        names, page_token = self.list_account_roles(account_id)
        while page_token:
            page, page_token = self.list_account_roles(account_id, page_token)
            names.extend(page)
        return names

    def get_role_credentials(self, account_id, role_name):
        """Returns a `ssoharvest.model.Credential` for the role in the account."""
        resp = self._call(
            "GetRoleCredentials",
            self._client.get_role_credentials,
            accessToken=self._token,
            accountId=account_id,
            roleName=role_name,
        )

        creds = resp.get("roleCredentials") or {}
        fields = ("accessKeyId", "secretAccessKey", "sessionToken")
        if not all(creds.get(f) for f in fields):
            raise RemoteError(
                f"GetRoleCredentials returned incomplete credentials for {account_id}/{role_name}"
            )

        return Credential(*(creds[f] for f in fields))

    def _call(self, operation, method, **kwargs):
        """Invokes `method` with the retry policy described in the module docs."""
        backoffs = iter(self._backoff_schedule)
        attempt = 0

        while True:
            attempt += 1
            self._check_cancelled(operation)

            try:
                return method(**kwargs)

            except botocore.exceptions.ClientError as e:
                code = e.response.get("Error", {}).get("Code", "")

                if code in UNAUTHORIZED_CODES:
                    raise AuthenticationError(
                        f"{operation} was rejected, the SSO session has likely expired"
                    ) from e

                if code not in THROTTLING_CODES:
                    raise RemoteError(f"{operation} failed: {e}") from e

                delay = next(backoffs, None)
                if delay is None:
                    raise RemoteError(
                        f"{operation} still throttled after {attempt} attempts"
                    ) from e

                LOG.info(
                    "backing off %s for %ss (attempt %d of %d)",
                    operation,
                    delay,
                    attempt,
                    len(self._backoff_schedule) + 1,
                )
                self._sleep(delay)

            except botocore.exceptions.BotoCoreError as e:
                raise RemoteError(f"{operation} failed: {e}") from e

    def _check_cancelled(self, operation):
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise HarvestCancelled(f"cancelled before {operation}")
