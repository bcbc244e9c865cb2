#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Writes harvested roles to the AWS CLI configuration files.

Terraform's AWS provider reads profiles from the same files as the AWS CLI.
After a harvest, one profile per role is written, named
`<account name>-<role name>`, using one of two approaches:

`write_sso_profiles`
:  Writes `[profile ...]` sections to `~/.aws/config` that point at the SSO
portal. The AWS SDKs then fetch credentials on demand via the cached SSO
token. No secrets are written to disk.

`write_credentials_file`
:  Writes the fetched static credentials to `~/.aws/credentials`. This is
needed on platforms where the SDK in use cannot resolve SSO profiles. In this
case the SSO profiles are flushed with `flush_sso_profiles` so that the
credentials file takes precedence.

Both writers replace the file they write. Files are created with mode 0600.
"""

import configparser
import logging
import os
from pathlib import Path

from ssoharvest.model import profile_name

LOG = logging.getLogger(__name__)

MANAGED_MARKER = "# managed by ssoharvest"


def write_credentials_file(snapshot, path):
    """Writes the credentials of every role in `snapshot` to `path`.

    Roles without credentials are skipped. Returns the number of profiles
    written.
    """
    config = _new_parser()
    for role in snapshot.roles():
        if role.credentials is None:
            LOG.debug("no credentials for %s, skipping", role)
            continue
        config[profile_name(role.account, role)] = {
            "aws_access_key_id": role.credentials.access_key_id,
            "aws_secret_access_key": role.credentials.secret_access_key,
            "aws_session_token": role.credentials.session_token,
        }

    LOG.info("writing %d profiles to credentials file %s", len(config.sections()), path)
    _write(config, path)
    return len(config.sections())


def write_sso_profiles(snapshot, path, start_url, sso_region, region):
    """Writes an SSO profile for every role in `snapshot` to `path`.

    `start_url` is the AWS access portal URL, `sso_region` the region of the
    SSO instance, and `region` the default region of the profiles. Returns the
    number of profiles written.
    """
    config = _new_parser()
    for role in snapshot.roles():
        config[f"profile {profile_name(role.account, role)}"] = {
            "sso_start_url": start_url,
            "sso_region": sso_region,
            "sso_account_id": role.account_id,
            "sso_role_name": role.name,
            "region": region,
            "output": "json",
        }

    LOG.info("writing %d sso profiles to %s", len(config.sections()), path)
    _write(config, path)
    return len(config.sections())


def flush_sso_profiles(path):
    """Truncates the SSO profiles file at `path` if it exists."""
    path = Path(path).expanduser()
    if path.exists():
        LOG.info("flushing sso profiles in %s", path)
        path.write_text("", encoding="utf-8")


def read_profiles(path):
    """Returns the section names of the AWS config or credentials file at `path`."""
    config = _new_parser()
    config.read(Path(path).expanduser(), encoding="utf-8")
    return config.sections()


def _new_parser():
    config = configparser.ConfigParser(interpolation=None)
    config.optionxform = str  # AWS keys are case sensitive
    return config


def _write(config, path):
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    # Mode 0600 at creation, the file never exists with default permissions.
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(MANAGED_MARKER + "\n")
        config.write(f)
