#
# Copyright 2019 FMR LLC <opensource@fmr.com>
#
# SPDX-License-Identifier: MIT
#
"""CLI and library to harvest AWS SSO accounts, roles, and credentials.

## Overview

`ssoharvest` is both a CLI and library that, from a single cached AWS IAM
Identity Center (SSO) login, enumerates every account the user can reach,
discovers the read-capable roles in each, and optionally fetches short-lived
credentials for those roles. The result is an in-memory snapshot of the estate
that can be used to write AWS profiles so local `terraform plan` runs work
against every account without per-account logins.

### CLI Usage

The ssoharvest CLI command is documented on the `ssoharvest.cli` page. It
covers listing the available profiles, refreshing the AWS credentials and
config files, pointing Terraform providers at the profiles, and the syntax of
the configuration file.

### Library Usage

Library users will typically only need `ssoharvest.pipeline.harvest`:

    from ssoharvest.pipeline import harvest

    snapshot = harvest("~/.aws/sso/cache", "fetch_credentials", workers=12, chunks=4)
    for account in snapshot:
        for role in account.roles:
            print(account.id, role.name, role.credentials.access_key_id)

The pipeline is assembled from the following submodules, each of which can be
used on its own:

`ssoharvest.token`
: Locates and parses the SSO bearer token cached by `aws sso login`.

`ssoharvest.gateway`
: A thin adapter over the boto3 `sso` client with throttle-aware retry.

`ssoharvest.enumerator`
: Follows the paginated account listing to build the account list.

`ssoharvest.harvester`
: The worker pool that lists, filters, and fetches credentials for roles.

`ssoharvest.model`
: The `Account`, `Role`, `Credential`, and `Snapshot` types.

`ssoharvest.terraform`
: Rewrites Terraform provider blocks to use the harvested profiles.
"""

name = "ssoharvest"
__version__ = "1.7.0"
