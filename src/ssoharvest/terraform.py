#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Points the AWS providers of a Terraform directory at harvested profiles.

## Overview

Provider blocks in a Terraform root module usually assume roles or name
profiles that only work in CI. To run `terraform plan` locally, `apply` moves
the provider file, `providers.tf` or `provider.tf`, aside to
`providers.tf.overrides` and writes an `overrides.tf` in its place. Every
`provider "aws"` block in it keeps its `region`, `alias`, and `default_tags`,
but uses one of the profiles written by `ssoharvest refresh`:

    provider "aws" {
      region = "eu-west-2"
      alias = "prod"
      profile = "prod-ReadOnly"
      shared_credentials_files = ["/home/user/.aws/credentials"]
      shared_config_files = ["/home/user/.aws/config"]
    }

Other providers are written as empty blocks, keeping only their alias.
`restore` deletes `overrides.tf` and moves the provider file back. `apply`
always restores first, so it can be run repeatedly.

## Choosing Profiles

The profile of a provider is chosen from, in order:

1. The mappings file, `mappings.hcl` by default, if present. It holds one
   `override` block per provider alias. The unaliased provider is looked up
   as `unaliased`, and `default` applies to providers without an entry:

        override "default" {
          profile = "shared-ReadOnly"
        }

        override "prod" {
          profile = "prod-ReadOnly"
        }

2. The account of the provider, taken from its `allowed_account_ids` or the
   role ARN of its `assume_role` block. A role of that account in the harvested
   `ssoharvest.model.Snapshot` is used, preferring roles containing `Read`.

Every chosen profile must exist in the snapshot. A provider whose profile
cannot be determined is a `ssoharvest.errors.ConfigurationError`, in which
case the provider file is left in place and no override file is written.

Values that are expressions, such as `region = local.region`, are copied as
expressions. They still resolve, as `overrides.tf` is part of the same module.
"""

import logging
import re
from pathlib import Path

import hcl2

from ssoharvest.errors import ConfigurationError
from ssoharvest.model import profile_name

LOG = logging.getLogger(__name__)

PROVIDER_FILES = ("providers.tf", "provider.tf")
BACKUP_SUFFIX = ".overrides"
OVERRIDE_FILE = "overrides.tf"
MAPPINGS_FILE = "mappings.hcl"

UNALIASED = "unaliased"
DEFAULT = "default"

_ROLE_ARN = re.compile(r"^arn:aws[\w-]*:iam::(\d{12}):role/")


class ProviderBlock:
    """A `provider` block read from a Terraform file.

    `name` is the provider name, e.g. `aws`. `region` and `default_tags` hold
    the values as parsed, so literals and expressions can be written back
    unchanged. `account_ids` are the accounts the provider is bound to.
    """

    def __init__(self, name, alias=None, region=None, account_ids=(), default_tags=None):
        self.name = name
        self.alias = alias
        self.region = region
        self.account_ids = list(account_ids)
        self.default_tags = default_tags

    @property
    def key(self):
        """The name used to look up this provider in the mappings file."""
        return self.alias or UNALIASED

    def __repr__(self):
        return f"ProviderBlock({self.name!r}, alias={self.alias!r})"


def find_provider_file(directory):
    """Returns the paths of the provider file in `directory` and its backup.

    Either the provider file or its backup must exist, otherwise a
    `ConfigurationError` is raised.
    """
    directory = Path(directory)
    for name in PROVIDER_FILES:
        path = directory / name
        backup = path.with_name(name + BACKUP_SUFFIX)
        if path.is_file() or backup.is_file():
            return path, backup

    raise ConfigurationError(
        f"no {' or '.join(PROVIDER_FILES)} found in {directory.resolve()}"
    )


def read_providers(path):
    """Returns the `ProviderBlock`s of the Terraform file at `path`.

    A `ConfigurationError` is raised if the file cannot be parsed or contains
    a `terraform` block, which would be lost when the file is moved aside.
    """
    doc = _load(path)
    if doc.get("terraform"):
        raise ConfigurationError(
            f"{path} contains a terraform block, move it to a file such as versions.tf"
        )

    providers = []
    for block in doc.get("provider", []):
        for name, body in _block(block).items():
            body = _block(body)
            providers.append(
                ProviderBlock(
                    _literal(name),
                    alias=_literal(body.get("alias")),
                    region=body.get("region"),
                    account_ids=_account_ids(body),
                    default_tags=_block(body.get("default_tags")).get("tags"),
                )
            )
    return providers


def read_mappings(path):
    """Returns a dict of provider alias to profile name from a mappings file.

    A missing file yields an empty dict.
    """
    path = Path(path)
    if not path.is_file():
        LOG.debug("no mappings file at %s", path)
        return {}

    mappings = {}
    for block in _load(path).get("override", []):
        for alias, body in _block(block).items():
            profile = _literal(_block(body).get("profile"))
            if not profile:
                raise ConfigurationError(f"{path}: override {alias} has no profile")
            mappings[_literal(alias)] = profile
    return mappings


def choose_profile(provider, snapshot, mappings):
    """Returns the profile `provider` should use.

    Refer to the module documentation for the order in which sources are
    consulted.
    """
    profile = mappings.get(provider.key, mappings.get(DEFAULT))
    if profile:
        if profile not in snapshot.profiles():
            raise ConfigurationError(
                f"profile {profile} for provider {provider.key} was not harvested"
            )
        return profile

    for acct_id in provider.account_ids:
        try:
            account = snapshot.account(acct_id)
        except KeyError:
            continue
        roles = sorted(account.roles, key=lambda r: ("Read" not in r.name, r.name))
        if roles:
            return profile_name(account, roles[0])

    raise ConfigurationError(
        f"no profile for aws provider {provider.key}, add it to {MAPPINGS_FILE}"
    )


def render_overrides(providers, snapshot, mappings, credentials_file, config_file):
    """Returns the text of an `overrides.tf` replacing `providers`."""
    blocks = []
    for provider in providers:
        if provider.name != "aws":
            lines = [f"  alias = {_quote(provider.alias)}"] if provider.alias else []
            blocks.append(_render_block(f"provider {_quote(provider.name)}", lines))
            continue

        profile = choose_profile(provider, snapshot, mappings)
        LOG.info("provider aws.%s uses profile %s", provider.key, profile)

        lines = []
        if provider.region is not None:
            lines.append(f"  region = {_expression(provider.region)}")
        if provider.alias:
            lines.append(f"  alias = {_quote(provider.alias)}")
        lines.append(f"  profile = {_quote(profile)}")
        lines.append(f"  shared_credentials_files = [{_quote(str(credentials_file))}]")
        lines.append(f"  shared_config_files = [{_quote(str(config_file))}]")
        if provider.default_tags is not None:
            lines.extend(_render_tags(provider.default_tags))
        blocks.append(_render_block('provider "aws"', lines))

    return "\n".join(blocks)


def apply(
    directory,
    snapshot,
    credentials_file,
    config_file,
    mappings_file=None,
    override_file=OVERRIDE_FILE,
):
    """Moves the provider file of `directory` aside and writes the overrides.

    `snapshot` provides the available profiles, and `credentials_file` and
    `config_file` are the AWS files Terraform should read them from.
    `mappings_file` defaults to `mappings.hcl` in `directory`. Returns the path
    of the override file.
    """
    directory = Path(directory)
    path, backup = restore(directory, override_file)

    mappings_file = Path(mappings_file or directory / MAPPINGS_FILE).expanduser()
    mappings = read_mappings(mappings_file)
    providers = read_providers(path)
    text = render_overrides(
        providers,
        snapshot,
        mappings,
        Path(credentials_file).expanduser(),
        Path(config_file).expanduser(),
    )

    LOG.info("backing up %s as %s", path, backup)
    path.rename(backup)

    override = directory / override_file
    LOG.info("writing %d providers to %s", len(providers), override)
    override.write_text(text, encoding="utf-8")
    return override


def restore(directory, override_file=OVERRIDE_FILE):
    """Removes the override file and moves the provider file back.

    Returns the paths of the provider file and its backup.
    """
    directory = Path(directory)
    path, backup = find_provider_file(directory)

    override = directory / override_file
    if override.is_file():
        LOG.info("removing %s", override)
        override.unlink()

    if backup.is_file():
        LOG.info("restoring %s from %s", path, backup)
        backup.replace(path)

    return path, backup


def _load(path):
    try:
        with Path(path).open("r", encoding="utf-8") as f:
            return hcl2.load(f)
    except OSError as e:
        raise ConfigurationError(f"cannot read {path}: {e}") from e
    except Exception as e:  # pylint: disable=broad-except
        raise ConfigurationError(f"cannot parse {path}: {e}") from e


def _block(value):
    # Depending on the version of python-hcl2, a block is a dict or a list of
    # dicts, and may carry metadata keys starting with __.
    if isinstance(value, list):
        value = value[0] if value else {}
    if not isinstance(value, dict):
        return {}
    return {k: v for k, v in value.items() if not k.startswith("__")}


def _literal(value):
    """Returns `value` without the quotes newer python-hcl2 versions keep."""
    if isinstance(value, str) and len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def _account_ids(body):
    ids = [str(_literal(i)) for i in body.get("allowed_account_ids") or []]
    role_arn = _literal(_block(body.get("assume_role")).get("role_arn"))
    if isinstance(role_arn, str):
        match = _ROLE_ARN.match(role_arn)
        if match:
            ids.append(match.group(1))
    return ids


def _quote(value):
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _expression(value):
    """Renders a parsed value as HCL."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, dict):
        items = ", ".join(
            f"{_quote(_literal(k))} = {_expression(v)}" for k, v in _block(value).items()
        )
        return "{" + items + "}"
    if isinstance(value, list):
        return "[" + ", ".join(_expression(v) for v in value) + "]"
    if value.startswith('"') and value.endswith('"') and len(value) >= 2:
        return value
    if value.startswith("${") and value.endswith("}") and "${" not in value[2:]:
        return value[2:-1]
    return _quote(value)


def _render_tags(tags):
    if not isinstance(tags, dict):
        return ["  default_tags {", f"    tags = {_expression(tags)}", "  }"]

    lines = ["  default_tags {", "    tags = {"]
    for key, value in _block(tags).items():
        lines.append(f"      {_quote(_literal(key))} = {_expression(value)}")
    lines.extend(["    }", "  }"])
    return lines


def _render_block(header, lines):
    if not lines:
        return header + " {}\n"
    return header + " {\n" + "\n".join(lines) + "\n}\n"
