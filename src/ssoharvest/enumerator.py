#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Builds the list of accounts reachable with an SSO token."""

import logging

from ssoharvest.errors import HarvestCancelled
from ssoharvest.model import Account

LOG = logging.getLogger(__name__)


def enumerate_accounts(gateway, cancel_event=None):
    """Returns a list of `ssoharvest.model.Account` objects without roles.

    Pages of `ListAccounts` are requested sequentially via the `gateway`, an
    `ssoharvest.gateway.SSOGateway`, until no `nextToken` is returned. Accounts
    are returned in the order AWS returned them. Should AWS return the same
    account ID more than once, the first occurrence is kept.

    An empty list is a valid result. Errors raised by the gateway are not
    caught, so an expired SSO session surfaces as an
    `ssoharvest.errors.AuthenticationError` before any roles are examined.
    """
    LOG.info("getting aws accounts")

    accounts = []
    seen = set()
    page_token = None
    page = 0

    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise HarvestCancelled("cancelled while listing accounts")

        page += 1
        entries, page_token = gateway.list_accounts(page_token)
        LOG.debug("page %d returned %d accounts", page, len(entries))

        for acct_id, acct_name in entries:
            if acct_id in seen:
                LOG.debug("skipping duplicate account %s", acct_id)
                continue
            seen.add(acct_id)
            LOG.debug("building account state for %s %s", acct_name, acct_id)
            accounts.append(Account(acct_id, acct_name))

        if not page_token:
            break

    LOG.info("found %d accounts", len(accounts))
    return accounts
