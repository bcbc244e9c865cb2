#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""The ssoharvest CLI lists and refreshes AWS SSO profiles for Terraform.

## Overview

Running `terraform plan` locally against an estate of AWS accounts requires a
working AWS profile for every account referenced by the Terraform providers.
With AWS IAM Identity Center (SSO), that means logging in to each account and
role by hand. ssoharvest instead uses the single SSO token cached by

    $ aws sso login --profile <profile>

to discover every account and read-capable role available to the user, and
writes one AWS profile per role, named `<account name>-<role name>`.

## CLI User Guide

    $ ssoharvest [options] {show,refresh,apply,restore,config,version} [ARG ...]

`show`
:  Prints the name of every profile that would be written, one per line.

`refresh`
:  Writes an SSO profile for every role to `~/.aws/config`. With
`--use-credentials-file`, which is the default on Windows, the credentials of
every role are fetched instead and written to `~/.aws/credentials`, and the
SSO profiles in `~/.aws/config` are flushed.

`apply`
:  Prepares the Terraform directory given by `--terraform-dir` (default: the
current directory) for a local plan. The provider file is moved aside to
`providers.tf.overrides` and an `overrides.tf` is written whose AWS providers
use the harvested profiles. A provider is matched to a profile through
`mappings.hcl`, or else through the account in its `allowed_account_ids` or
`assume_role` ARN. Run `refresh` first so the profiles exist.

`restore`
:  Removes `overrides.tf` and moves the provider file back.

`config show`, `config set KEY VALUE`, `config reset`
:  Prints the effective settings, stores one setting in the configuration
file, or moves the configuration file aside so the built-in defaults apply.

`version`
:  Prints the version of ssoharvest.

Accounts and roles are processed concurrently. `--threads` sets the number of
workers fetching credentials (default 12) and `--chunks` the number of accounts
whose roles are listed at the same time (default 4). Lower both if AWS
throttles requests excessively. Roles are kept if their name contains `Read` or
`Contributor`, unless `--role-pattern` provides a regular expression to use
instead. By default, any failure aborts the run. With `--on-error skip`,
accounts whose roles cannot be obtained are left out instead.

If the SSO session has expired, ssoharvest exits with an error telling you to
log in again. Press Ctrl-C to cancel a run. In-flight requests are allowed to
finish, but no new requests are made.

## Configuration

Defaults for all options can be set in the `CLI` section of a YAML file, by
default `~/.ssoharvest.yaml`, or the file named by `SSOHARVEST_CONFIG`:

    CLI:
      cache_dir: ~/.aws/sso/cache
      region: eu-west-2
      start_url: https://example.awsapps.com/start
      threads: 12
      chunks: 4
      timeout: 30
      on_error: abort
      log_level: ERROR
      use_credentials_file: false
      credentials_file: ~/.aws/credentials
      aws_config_file: ~/.aws/config
      profile_region: eu-west-2
      terraform_dir: .

Command line flags take precedence over the configuration file. Set
`SSOHARVEST_TRACE=1` to print a stack trace on error.
"""

import argparse
import logging
import os
import signal
import sys
import threading
import time
import traceback
from datetime import timedelta
from functools import partial
from pathlib import Path

import yaml

from ssoharvest import __version__, terraform
from ssoharvest.config import (
    URL,
    Bool,
    Choice,
    Config,
    Pattern,
    PositiveInt,
    PositiveNumber,
    Str,
    default_config_path,
)
from ssoharvest.errors import ConfigurationError, HarvestCancelled
from ssoharvest.gateway import DEFAULT_TIMEOUT
from ssoharvest.harvester import (
    DEFAULT_CHUNKS,
    DEFAULT_WORKERS,
    ENUMERATE_ONLY,
    ERROR_POLICIES,
    FETCH_CREDENTIALS,
    default_role_filter,
    regex_role_filter,
)
from ssoharvest.pipeline import DEFAULT_REGION, harvest
from ssoharvest.profiles import (
    flush_sso_profiles,
    write_credentials_file,
    write_sso_profiles,
)
from ssoharvest.token import load_token

LOG = logging.getLogger(__name__)

SHORT_DESCRIPTION = """
Harvest AWS SSO accounts and roles from a single cached SSO login and write
AWS profiles for them, so Terraform can plan against every account.
"""

COMMANDS = ("show", "refresh", "apply", "restore", "config", "version")

AWS_DIR = Path.home() / ".aws"

LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")

# Keys of the CLI section of the user configuration. Each is also the dest of
# the command line flag it provides the default for.
SETTINGS = {
    "log_level": Choice(*LOG_LEVELS),
    "cache_dir": Str,
    "region": Str,
    "start_url": URL,
    "threads": PositiveInt,
    "chunks": PositiveInt,
    "timeout": PositiveNumber,
    "on_error": Choice(*ERROR_POLICIES),
    "role_pattern": Pattern,
    "use_credentials_file": Bool,
    "credentials_file": Str,
    "aws_config_file": Str,
    "profile_region": Str,
    "terraform_dir": Str,
    "mappings_file": Str,
}


class RawAndDefaultsFormatter(
    argparse.ArgumentDefaultsHelpFormatter, argparse.RawDescriptionHelpFormatter
):
    """Mixin of ArgumentDefaultsHelpFormatter and RawDescriptionHelpFormatter."""


def main():
    """The main entry point for the `ssoharvest` CLI tool.

    Exits with a `0` status code upon success. Upon error, prints the error
    message to standard error and exits with `1`, or `130` if the run was
    cancelled. A stack trace is only included if the `SSOHARVEST_TRACE`
    environment variable is set.
    """
    try:
        _cli(sys.argv[1:])

    except HarvestCancelled as e:
        print(e, file=sys.stderr)
        sys.exit(130)

    except Exception as e:  # pylint: disable=broad-except
        # Don't print stack traces by default as it can be overwhelming.
        if os.getenv("SSOHARVEST_TRACE"):
            traceback.print_exc(file=sys.stderr)
        print(e, file=sys.stderr)
        sys.exit(1)


def _cli(argv):
    """Parses command line arguments and runs the selected command."""

    # Values from the user configuration file are used as the defaults of the
    # command line flags.
    config_path = default_config_path()
    config = Config.from_file(config_path)
    cfg = partial(config.get, "CLI")

    parser = _build_parser(cfg)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(name)s %(levelname)s [%(threadName)s] %(message)s",
    )

    if args.command == "config":
        _config(args.arguments, parser, config, config_path)
        return

    if args.arguments:
        parser.error(f"{args.command} takes no arguments")

    if args.command == "version":
        print(f"ssoharvest {__version__}")
        return

    if args.command == "restore":
        path, _ = terraform.restore(args.terraform_dir)
        print(f"Restored {path}", file=sys.stderr)
        return

    if args.role_pattern:
        role_filter = regex_role_filter(args.role_pattern)
    else:
        role_filter = default_role_filter

    run = partial(_harvest, args, role_filter=role_filter)

    if args.command == "show":
        snapshot = run(ENUMERATE_ONLY)
        for profile in snapshot.profiles():
            print(profile)
        return

    if args.command == "apply":
        snapshot = run(ENUMERATE_ONLY)
        override = terraform.apply(
            args.terraform_dir,
            snapshot,
            args.credentials_file,
            args.aws_config_file,
            mappings_file=args.mappings_file,
        )
        print(f"Overrides written to {override}", file=sys.stderr)
        return

    _refresh(args, run)


def _refresh(args, run):
    """Fetches the estate and writes the AWS profile files."""
    if args.use_credentials_file:
        snapshot = run(FETCH_CREDENTIALS)
        try:
            write_credentials_file(snapshot, args.credentials_file)
            flush_sso_profiles(args.aws_config_file)
        finally:
            snapshot.release()
        return

    token = load_token(args.cache_dir)
    start_url = args.start_url or token.start_url
    if not start_url:
        raise ConfigurationError(
            "SSO start URL unknown, specify --start-url or start_url in the config"
        )
    sso_region = args.region or token.region or DEFAULT_REGION
    LOG.info("writing sso profiles for %s in %s", start_url, sso_region)

    snapshot = run(ENUMERATE_ONLY)
    write_sso_profiles(
        snapshot,
        args.aws_config_file,
        start_url=start_url,
        sso_region=sso_region,
        region=args.profile_region or sso_region,
    )


def _harvest(args, mode, role_filter):
    """Runs the harvest, cancelling it cleanly if the user presses Ctrl-C."""
    cancel_event = threading.Event()

    def on_interrupt(signum, frame):  # pylint: disable=unused-argument
        cancel_event.set()

    previous = signal.signal(signal.SIGINT, on_interrupt)
    start = time.time()
    try:
        snapshot = harvest(
            args.cache_dir,
            mode,
            workers=args.threads,
            chunks=args.chunks,
            role_filter=role_filter,
            region=args.region,
            timeout=args.timeout,
            on_error=args.on_error,
            cancel_event=cancel_event,
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    count = len(snapshot.profiles())
    elapsed = timedelta(seconds=time.time() - start)
    pluralize = "s" if len(snapshot) != 1 else ""
    print(
        f"Found {count} profiles in {len(snapshot)} account{pluralize} in {elapsed}",
        file=sys.stderr,
    )
    return snapshot


def _config(arguments, parser, config, path):
    """Shows, sets, or resets the settings in the user configuration file."""
    action, *rest = arguments or ["show"]

    if action == "show" and not rest:
        settings = {name: parser.get_default(name) for name in SETTINGS}
        print(f"# {path}")
        print(yaml.safe_dump({"CLI": settings}, default_flow_style=False), end="")

    elif action == "set" and len(rest) == 2:
        name, text = rest
        config.set("CLI", name, value=_parse_setting(name, text))
        config.to_file(path)
        print(f"Set {name} in {path}", file=sys.stderr)

    elif action == "reset" and not rest:
        path = Path(path).expanduser()
        if not path.is_file():
            print(f"No config file at {path}", file=sys.stderr)
            return
        backup = path.with_name(f"{path.name}-{int(time.time())}")
        path.rename(backup)
        print(f"Moved {path} to {backup}", file=sys.stderr)

    else:
        parser.error("usage: config show | config set KEY VALUE | config reset")


def _parse_setting(name, text):
    """Returns the value of setting `name` given as `text` on the command line."""
    if name not in SETTINGS:
        raise ConfigurationError(
            f"unknown setting {name}, choose from: {', '.join(SETTINGS)}"
        )

    # Numbers and booleans are parsed as YAML, but strings like 'no' or '[a-z]'
    # are kept as given if that is what the setting expects.
    try:
        value = yaml.safe_load(text)
    except yaml.YAMLError:
        value = text

    for candidate in (value, text):
        if SETTINGS[name].type_check(candidate):
            return candidate
    raise ConfigurationError(f"{name} must be a {SETTINGS[name]}: {text!r}")


def _build_parser(cfg):
    """Returns the argument parser with defaults taken from `cfg`."""
    parser = argparse.ArgumentParser(
        prog="ssoharvest",
        allow_abbrev=False,
        formatter_class=RawAndDefaultsFormatter,
        description=SHORT_DESCRIPTION,
    )

    parser.add_argument(
        "--version", action="version", version="%(prog)s " + __version__
    )

    parser.add_argument(
        "--log-level",
        default=cfg("log_level", type=SETTINGS["log_level"], default="ERROR"),
        choices=LOG_LEVELS,
        help="set the logging level",
    )

    sso_group = parser.add_argument_group("sso options")
    sso_group.add_argument(
        "--cache-dir",
        metavar="DIR",
        default=cfg(
            "cache_dir", type=SETTINGS["cache_dir"], default=str(AWS_DIR / "sso" / "cache")
        ),
        help="directory containing the cached SSO token",
    )

    sso_group.add_argument(
        "--region",
        default=cfg("region", type=SETTINGS["region"]),
        help="SSO region (defaults to the region cached with the token)",
    )

    sso_group.add_argument(
        "--start-url",
        metavar="URL",
        default=cfg("start_url", type=SETTINGS["start_url"]),
        help="AWS access portal URL used in SSO profiles",
    )

    harvest_group = parser.add_argument_group("harvest options")
    harvest_group.add_argument(
        "--threads",
        metavar="N",
        type=int,
        default=cfg("threads", type=SETTINGS["threads"], default=DEFAULT_WORKERS),
        help="number of workers fetching role credentials",
    )

    harvest_group.add_argument(
        "--chunks",
        metavar="N",
        type=int,
        default=cfg("chunks", type=SETTINGS["chunks"], default=DEFAULT_CHUNKS),
        help="number of accounts whose roles are listed concurrently",
    )

    harvest_group.add_argument(
        "--timeout",
        metavar="SECS",
        type=float,
        default=cfg("timeout", type=SETTINGS["timeout"], default=DEFAULT_TIMEOUT),
        help="timeout for each request to AWS",
    )

    harvest_group.add_argument(
        "--on-error",
        choices=ERROR_POLICIES,
        default=cfg("on_error", type=SETTINGS["on_error"], default="abort"),
        help="abort the run or skip accounts whose roles cannot be obtained",
    )

    harvest_group.add_argument(
        "--role-pattern",
        metavar="REGEX",
        default=cfg("role_pattern", type=SETTINGS["role_pattern"]),
        help="keep roles matching REGEX instead of those containing Read or Contributor",
    )

    file_group = parser.add_argument_group("profile file options")
    file_group.add_argument(
        "--use-credentials-file",
        action="store_true",
        default=cfg(
            "use_credentials_file",
            type=SETTINGS["use_credentials_file"],
            default=sys.platform == "win32",
        ),
        help="write static credentials instead of SSO profiles",
    )

    file_group.add_argument(
        "--credentials-file",
        metavar="FILE",
        default=cfg(
            "credentials_file",
            type=SETTINGS["credentials_file"],
            default=str(AWS_DIR / "credentials"),
        ),
        help="AWS credentials file to write",
    )

    file_group.add_argument(
        "--aws-config-file",
        metavar="FILE",
        default=cfg(
            "aws_config_file",
            type=SETTINGS["aws_config_file"],
            default=str(AWS_DIR / "config"),
        ),
        help="AWS config file to write SSO profiles to",
    )

    file_group.add_argument(
        "--profile-region",
        metavar="REGION",
        default=cfg("profile_region", type=SETTINGS["profile_region"]),
        help="default region of written profiles (defaults to the SSO region)",
    )

    tf_group = parser.add_argument_group("terraform options")
    tf_group.add_argument(
        "--terraform-dir",
        metavar="DIR",
        default=cfg("terraform_dir", type=SETTINGS["terraform_dir"], default="."),
        help="directory containing the Terraform provider file",
    )

    tf_group.add_argument(
        "--mappings-file",
        metavar="FILE",
        default=cfg("mappings_file", type=SETTINGS["mappings_file"]),
        help="provider alias to profile mappings (defaults to mappings.hcl in DIR)",
    )

    parser.add_argument("command", choices=COMMANDS, help="command to execute")
    parser.add_argument(
        "arguments",
        nargs="*",
        metavar="ARG",
        help="arguments of the config command: show, set KEY VALUE, or reset",
    )
    return parser


if __name__ == "__main__":
    main()
