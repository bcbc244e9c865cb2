#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Exceptions raised while harvesting an SSO estate.

All errors raised by the library are subclasses of `HarvestError`, so callers
can catch a single exception type. The subclasses identify the kind of failure
and therefore the remediation:

`ConfigurationError`
:  Raised for invalid options (bad cache directory, worker counts, modes)
before any network I/O takes place.

`AuthenticationError`
:  Raised if the SSO token is missing, malformed, or rejected by AWS. The
message always includes instructions to refresh the SSO session.

`RemoteError`
:  Raised for any other upstream failure, including throttling that persisted
after all retries, network failures, and request timeouts.

`HarvestCancelled`
:  Raised if the caller cancelled the harvest before it completed.
"""

REFRESH_HINT = "refresh your SSO session with 'aws sso login --profile <profile>'"


class HarvestError(Exception):
    """Base class of all ssoharvest errors."""


class ConfigurationError(HarvestError):
    """Raised if an option is invalid."""


class AuthenticationError(HarvestError):
    """Raised if the SSO token is missing, malformed, or rejected."""

    def __init__(self, message):
        super().__init__(f"{message}: {REFRESH_HINT}")


class RemoteError(HarvestError):
    """Raised if an AWS SSO call failed for any reason other than auth."""


class HarvestCancelled(HarvestError):
    """Raised if the harvest was cancelled by the caller."""
