#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""The in-memory representation of a harvested SSO estate.

A `Snapshot` is an ordered sequence of `Account` objects in the order they were
returned by AWS. Each `Account` owns the `Role` objects that passed the role
filter, and each `Role` may hold a single `Credential` if credentials were
fetched.

Roles refer back to their account for grouping output, but the reference is
weak, so the snapshot remains the sole owner of its accounts:

    >>> acct = Account("111111111111", "alpha")
    >>> role = Role("ReadOnly", acct)
    >>> acct.add_role(role)
    >>> role.account is acct
    True

`Account.add_role` is thread-safe. It is the only way roles are added to an
account, which allows the harvester's workers to append roles concurrently.
"""

import threading
import weakref


class Credential:
    """Short-lived AWS credentials for a single account and role."""

    def __init__(self, access_key_id, secret_access_key, session_token):
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.session_token = session_token

    def __eq__(self, other):
        if not isinstance(other, Credential):
            return NotImplemented
        return (
            self.access_key_id == other.access_key_id
            and self.secret_access_key == other.secret_access_key
            and self.session_token == other.session_token
        )

    def __repr__(self):
        return f"Credential(access_key_id={self.access_key_id!r}, secret_access_key='****', session_token='****')"


class Role:
    """A named role within an account.

    A role is always created without credentials. They may be attached exactly
    once via `Role.set_credentials`.
    """

    def __init__(self, name, account):
        self.name = name
        self.account_id = account.id
        self._account = weakref.ref(account)
        self._credentials = None

    @property
    def account(self):
        """The owning `Account`, or `None` if the account has been released."""
        return self._account()

    @property
    def credentials(self):
        """The `Credential` for this role, or `None` if not fetched."""
        return self._credentials

    def set_credentials(self, credentials):
        if self._credentials is not None:
            raise ValueError(f"credentials already set for {self}")
        self._credentials = credentials

    def clear_credentials(self):
        self._credentials = None

    def __str__(self):
        return f"{self.account_id}/{self.name}"

    def __repr__(self):
        return f"Role(name={self.name!r}, account_id={self.account_id!r}, credentials={self._credentials!r})"


class Account:
    """An AWS account reachable through the SSO portal.

    `roles` starts empty and is appended to via `Account.add_role`. The order of
    roles within an account is not significant.
    """

    def __init__(self, acct_id, name):
        self.id = acct_id
        self.name = name
        self.roles = []
        self._lock = threading.Lock()

    def add_role(self, role):
        if role.account_id != self.id:
            raise ValueError(f"role {role} does not belong to account {self.id}")
        with self._lock:
            self.roles.append(role)

    def clear_roles(self):
        with self._lock:
            self.roles.clear()

    def __str__(self):
        return self.id

    def __repr__(self):
        return f"Account(id={self.id!r}, name={self.name!r}, roles={self.roles!r})"


class Snapshot:
    """The ordered list of accounts produced by one harvest."""

    def __init__(self, accounts):
        self.accounts = list(accounts)
        self._by_id = {a.id: a for a in self.accounts}

    def account(self, acct_id):
        """Returns the `Account` with `acct_id` or raises `KeyError`."""
        return self._by_id[acct_id]

    def roles(self):
        """Yields every `Role` in the snapshot, grouped by account."""
        for account in self.accounts:
            yield from account.roles

    def profiles(self):
        """Returns the profile names, `<account name>-<role name>`, for all roles."""
        return [profile_name(role.account, role) for role in self.roles()]

    def release(self):
        """Drops all credentials held by the snapshot."""
        for role in self.roles():
            role.clear_credentials()

    def __iter__(self):
        return iter(self.accounts)

    def __len__(self):
        return len(self.accounts)

    def __getitem__(self, index):
        return self.accounts[index]

    def __repr__(self):
        return f"Snapshot({self.accounts!r})"


def profile_name(account, role):
    """Returns the AWS profile name used for `role` in `account`."""
    return f"{account.name}-{role.name}"
