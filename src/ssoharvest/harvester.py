#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Concurrently discovers roles, and optionally credentials, for accounts.

## Overview

`RoleHarvester` populates the `roles` of a list of
`ssoharvest.model.Account` objects. It is a two-stage pipeline joined by a
single queue:

1. Producers list the roles of an account via
   `ssoharvest.gateway.SSOGateway.list_all_account_roles`, keep the roles that
   pass the role filter, and put `(account, role_name)` pairs on the queue.
   Accounts are split into consecutive chunks of `chunks` accounts. All
   producers in a chunk run concurrently, and the next chunk is launched once
   the current one has finished. The chunk size is therefore a knob for the
   burstiness of `ListAccountRoles` requests.

2. A fixed pool of `workers` consumers drains the queue. In `fetch_credentials`
   mode a consumer fetches the credentials of each role it receives. In either
   mode it then appends a `ssoharvest.model.Role` to the owning account.

Once every producer has finished, the coordinator closes the queue by putting
one end-of-stream marker per consumer on it. Consumers exit when they receive
their marker, at which point the harvest is complete:

    >>> harvester = RoleHarvester(gateway, FETCH_CREDENTIALS, workers=12, chunks=4)
    >>> snapshot = harvester.run(accounts)

Accounts in the returned `ssoharvest.model.Snapshot` are in the same order as
`accounts`. The order of roles within an account is arbitrary.

## Role Filter

By default, only roles whose name contains `Read` or `Contributor` are kept, as
those are the roles suitable for read-only `terraform plan` runs. The match is
case-sensitive. Any callable that accepts a role name and returns a bool can be
used instead, and `regex_role_filter` builds one from a regular expression.

## Failures

With the default `on_error="abort"`, the first error raised while listing roles
or fetching credentials stops the harvest: no further producers are launched,
consumers discard the remaining queue without making requests, and the error is
raised from `RoleHarvester.run`. A partial snapshot is never returned.

With `on_error="skip"`, an account whose roles or credentials cannot be
obtained is kept in the snapshot with no roles, and the error is recorded in
`RoleHarvester.failures`. Authentication errors and cancellation always abort,
as no other account can succeed either.

If the `cancel_event` is set, producers stop launching, consumers drain the
queue without making requests, and `ssoharvest.errors.HarvestCancelled` is
raised once in-flight requests have finished.
"""

import logging
import queue
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait

from ssoharvest.errors import AuthenticationError, ConfigurationError, HarvestCancelled
from ssoharvest.model import Role, Snapshot, profile_name

LOG = logging.getLogger(__name__)

ENUMERATE_ONLY = "enumerate_only"
FETCH_CREDENTIALS = "fetch_credentials"
MODES = (ENUMERATE_ONLY, FETCH_CREDENTIALS)

ABORT = "abort"
SKIP = "skip"
ERROR_POLICIES = (ABORT, SKIP)

DEFAULT_WORKERS = 12
DEFAULT_CHUNKS = 4

# Marker put on the queue once per consumer to signal end-of-stream.
_CLOSED = object()


def default_role_filter(role_name):
    """Returns `True` if `role_name` contains `Read` or `Contributor`."""
    return "Read" in role_name or "Contributor" in role_name


def regex_role_filter(pattern):
    """Returns a role filter that matches role names via `re.search`."""
    regex = re.compile(pattern)

    def role_filter(role_name):
        return regex.search(role_name) is not None

    return role_filter


def chunked(items, size):
    """Returns `items` split into consecutive lists of at most `size` elements."""
    return [items[i : i + size] for i in range(0, len(items), size)]


def validate_options(mode, workers, chunks, role_filter, on_error):
    """Raises a `ssoharvest.errors.ConfigurationError` if an option is invalid.

    The arguments are those of `RoleHarvester`. Callers can use this to reject
    bad options before any token is read or request is made.
    """
    if mode not in MODES:
        raise ConfigurationError(f"mode must be one of {', '.join(MODES)}: {mode!r}")
    if not _positive_int(workers):
        raise ConfigurationError(f"workers must be a positive integer: {workers!r}")
    if not _positive_int(chunks):
        raise ConfigurationError(f"chunks must be a positive integer: {chunks!r}")
    if on_error not in ERROR_POLICIES:
        raise ConfigurationError(
            f"on_error must be one of {', '.join(ERROR_POLICIES)}: {on_error!r}"
        )
    if not callable(role_filter):
        raise ConfigurationError("role_filter must be callable")


class RoleHarvester:
    """Lists, filters, and fetches credentials for the roles of accounts.

    `gateway` is an `ssoharvest.gateway.SSOGateway` shared by all threads.
    `mode` is either `ENUMERATE_ONLY` or `FETCH_CREDENTIALS`. `workers` is the
    number of consumer threads and `chunks` the number of accounts whose roles
    are listed concurrently. `role_filter` is a predicate on role names,
    `on_error` is either `ABORT` or `SKIP`, and `cancel_event` is an optional
    `threading.Event` used by the caller to cancel the harvest.

    Refer to the module documentation for details on the concurrency model and
    error handling. A `ssoharvest.errors.ConfigurationError` is raised if any of
    the arguments are invalid.
    """

    def __init__(
        self,
        gateway,
        mode,
        workers=DEFAULT_WORKERS,
        chunks=DEFAULT_CHUNKS,
        role_filter=default_role_filter,
        on_error=ABORT,
        cancel_event=None,
    ):
        validate_options(mode, workers, chunks, role_filter, on_error)
        if gateway is None:
            raise ConfigurationError("a gateway is required")

        self.gateway = gateway
        self.mode = mode
        self.workers = workers
        self.chunks = chunks
        self.role_filter = role_filter
        self.on_error = on_error
        self.cancel_event = cancel_event

        self.failures = {}
        """Dict of exceptions keyed by account ID for accounts that were skipped."""

        # Protects failures and _error. The abort event is set on the first
        # fatal error so every thread stops making requests.
        self._lock = threading.Lock()
        self._abort = threading.Event()
        self._error = None

    def run(self, accounts):
        """Populates the roles of `accounts` and returns a `Snapshot` of them.

        This method blocks until all accounts have been processed. Refer to the
        module documentation for the exceptions that may be raised.
        """
        self.failures = {}
        self._error = None
        self._abort.clear()

        LOG.info(
            "getting roles for %d accounts (mode=%s, workers=%d, chunks=%d)",
            len(accounts),
            self.mode,
            self.workers,
            self.chunks,
        )
        start = time.time()
        work = queue.Queue()

        with ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="consumer"
        ) as consumers:
            futures = [consumers.submit(self._consume, work) for _ in range(self.workers)]

            try:
                self._produce(accounts, work)
            except BaseException:
                # Most likely a KeyboardInterrupt in the main thread.
                self._abort.set()
                raise
            finally:
                # All producers have been joined (or abandoned), so close the
                # queue. Each consumer exits upon receiving its own marker.
                for _ in futures:
                    work.put(_CLOSED)

            for future in futures:
                future.result()

        if self._cancelled():
            raise HarvestCancelled("harvest cancelled")
        if self._error is not None:
            raise self._error

        for acct in accounts:
            if acct.id in self.failures:
                acct.clear_roles()

        snapshot = Snapshot(accounts)
        LOG.info(
            "harvested %d roles from %d accounts in %.2fs",
            sum(len(a.roles) for a in snapshot),
            len(snapshot),
            time.time() - start,
        )
        return snapshot

    def _produce(self, accounts, work):
        """Launches producers in chunks and waits for each chunk to finish."""
        with ThreadPoolExecutor(
            max_workers=self.chunks, thread_name_prefix="producer"
        ) as producers:
            for n, chunk in enumerate(chunked(accounts, self.chunks), 1):
                if self._stopping():
                    LOG.info("harvest stopping, not launching remaining producers")
                    break
                LOG.debug("launching producers for chunk-%d (%d accounts)", n, len(chunk))
                wait(
                    [
                        producers.submit(self._guard, acct, self._list_roles, acct, work)
                        for acct in chunk
                    ]
                )

    def _list_roles(self, acct, work):
        if self._stopping():
            return

        names = self.gateway.list_all_account_roles(acct.id)
        kept = [n for n in names if self.role_filter(n)]
        LOG.debug("%s: keeping %d of %d roles", acct, len(kept), len(names))

        # Roles are queued only after all pages were listed, so a failure part
        # way through never leaves a partially queued account.
        for name in kept:
            work.put((acct, name))

    def _consume(self, work):
        while True:
            item = work.get()
            if item is _CLOSED:
                return

            acct, role_name = item
            if self._stopping() or self._failed(acct):
                continue  # drain without making requests

            self._guard(acct, self._resolve, acct, role_name)

    def _resolve(self, acct, role_name):
        role = Role(role_name, acct)
        LOG.info("pulling %s", profile_name(acct, role))

        if self.mode == FETCH_CREDENTIALS:
            role.set_credentials(self.gateway.get_role_credentials(acct.id, role_name))

        acct.add_role(role)

    def _guard(self, acct, fn, *args):
        """Invokes `fn(*args)` and records any exception raised for `acct`."""
        try:
            fn(*args)

        except Exception as e:  # pylint: disable=broad-except
            fatal = isinstance(e, (AuthenticationError, HarvestCancelled))

            if self.on_error == SKIP and not fatal:
                LOG.warning("%s: skipping account: %s", acct, e)
                with self._lock:
                    self.failures.setdefault(acct.id, e)
                return

            LOG.debug("%s: aborting harvest: %s", acct, e, exc_info=True)
            with self._lock:
                if self._error is None:
                    self._error = e
            self._abort.set()

    def _failed(self, acct):
        with self._lock:
            return acct.id in self.failures

    def _cancelled(self):
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _stopping(self):
        return self._abort.is_set() or self._cancelled()


def _positive_int(value):
    return type(value) == int and value >= 1  # noqa: E721
