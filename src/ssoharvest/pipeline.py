#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Runs the complete harvest from a cached SSO token to a `Snapshot`.

`harvest` wires together the token source, gateway, account enumerator, and
role harvester. It is the main entry point for library users:

    from ssoharvest.pipeline import harvest

    snapshot = harvest(Path.home() / ".aws/sso/cache", "enumerate_only")
    print("\\n".join(snapshot.profiles()))

All options are validated before the token is read or any request is made.
"""

import logging

from ssoharvest.enumerator import enumerate_accounts
from ssoharvest.errors import ConfigurationError
from ssoharvest.gateway import DEFAULT_TIMEOUT, SSOGateway, make_sso_client
from ssoharvest.harvester import (
    ABORT,
    DEFAULT_CHUNKS,
    DEFAULT_WORKERS,
    RoleHarvester,
    default_role_filter,
    validate_options,
)
from ssoharvest.token import load_token

LOG = logging.getLogger(__name__)

DEFAULT_REGION = "eu-west-2"
"""SSO region used if neither the caller nor the cached token specify one."""


def harvest(
    cache_dir,
    mode,
    workers=DEFAULT_WORKERS,
    chunks=DEFAULT_CHUNKS,
    role_filter=default_role_filter,
    region=None,
    timeout=DEFAULT_TIMEOUT,
    on_error=ABORT,
    cancel_event=None,
    client=None,
):
    """Returns a `ssoharvest.model.Snapshot` of the SSO estate.

    The SSO token is loaded from `cache_dir`. `mode`, `workers`, `chunks`,
    `role_filter`, `on_error`, and `cancel_event` are passed to the
    `ssoharvest.harvester.RoleHarvester`; refer to it for their meaning.

    The boto3 `sso` client is created for `region`, which defaults to the region
    cached with the token or `DEFAULT_REGION`, with a per-request `timeout` in
    seconds. Alternatively, a pre-built `client` can be supplied.

    Raises a subclass of `ssoharvest.errors.HarvestError` on failure. A partial
    snapshot is never returned.
    """
    if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0:
        raise ConfigurationError(f"timeout must be a positive number: {timeout!r}")

    validate_options(mode, workers, chunks, role_filter, on_error)

    token = load_token(cache_dir)

    if client is None:
        region = region or token.region or DEFAULT_REGION
        LOG.info("using SSO region %s", region)
        client = make_sso_client(region, timeout)

    gateway = SSOGateway(client, token.access_token, cancel_event=cancel_event)
    harvester = RoleHarvester(
        gateway,
        mode,
        workers=workers,
        chunks=chunks,
        role_filter=role_filter,
        on_error=on_error,
        cancel_event=cancel_event,
    )

    accounts = enumerate_accounts(gateway, cancel_event)
    snapshot = harvester.run(accounts)

    for acct_id, error in harvester.failures.items():
        LOG.warning("%s: roles omitted from snapshot: %s", acct_id, error)

    return snapshot
