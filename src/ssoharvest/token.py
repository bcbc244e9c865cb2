#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Locate and parse the SSO bearer token cached by the AWS CLI.

## Overview

After a user runs `aws sso login`, the AWS CLI caches several JSON files in
`~/.aws/sso/cache`: the SSO session (which holds the bearer token), the OIDC
client registration, and botocore's own credential cache. Only the first is of
interest to ssoharvest. `load_token` scans the cache directory for files ending
in `.json` whose names do not contain `botocore`, picks the first one in sorted
order, and returns a `CachedToken`:

    >>> token = load_token(Path.home() / ".aws" / "sso" / "cache")
    >>> token
    CachedToken(region='eu-west-2', expires_at=datetime.datetime(2024, ...))
    >>> token.access_token
    'aoaAAAAAGZ...'

The access token is opaque to ssoharvest. It is handed to the
`ssoharvest.gateway.SSOGateway` and never logged.

## Exceptions

`MissingCacheError`
:  Raised if the cache directory does not exist. This is a configuration error.

`NoTokenFileError`
:  Raised if no candidate token file was found in the cache directory.

`MalformedTokenError`
:  Raised if the token file cannot be read, is too large, is not a JSON object,
or does not contain a non-empty `accessToken`.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from ssoharvest.errors import AuthenticationError, ConfigurationError

LOG = logging.getLogger(__name__)

MAX_TOKEN_FILE_SIZE = 8 * 1024
"""Token files larger than this many bytes are rejected."""


class CachedToken:
    """An SSO bearer token along with the metadata cached next to it.

    `access_token` is the opaque bearer string. `region` and `start_url` are the
    SSO region and portal URL the token was issued for, if they were cached.
    `expires_at` is a timezone-aware `datetime` or `None`.
    """

    def __init__(self, access_token, region=None, start_url=None, expires_at=None):
        self.access_token = access_token
        self.region = region
        self.start_url = start_url
        self.expires_at = expires_at

    def is_expired(self):
        """Returns `True` if the cached expiry time has passed."""
        if self.expires_at is None:
            return False
        return datetime.now(timezone.utc) >= self.expires_at

    def __repr__(self):
        # Never include the access token itself.
        return f"CachedToken(region={self.region!r}, expires_at={self.expires_at!r})"


def find_token_file(cache_dir):
    """Returns the `Path` of the token file within `cache_dir`.

    Raises `MissingCacheError` if `cache_dir` is not a directory and
    `NoTokenFileError` if none of its files qualify.
    """
    cache_dir = Path(cache_dir).expanduser()
    if not cache_dir.is_dir():
        raise MissingCacheError(f"SSO cache directory not found: {cache_dir}")

    LOG.info("searching for token in %s", cache_dir)
    for path in sorted(cache_dir.iterdir()):
        LOG.debug("checking %s for token", path.name)
        if not path.name.endswith(".json") or "botocore" in path.name:
            continue
        if not path.is_file():
            continue
        LOG.info("found token file: %s", path)
        return path

    raise NoTokenFileError(f"no token file found in {cache_dir}")


def load_token(cache_dir, max_size=MAX_TOKEN_FILE_SIZE):
    """Returns the `CachedToken` found in `cache_dir`.

    Refer to the module documentation for the exceptions that may be raised.
    """
    path = find_token_file(cache_dir)

    try:
        size = path.stat().st_size
        if size > max_size:
            raise MalformedTokenError(
                f"token file {path} is {size} bytes, larger than the {max_size} byte limit"
            )

        with path.open("r", encoding="utf-8") as f:
            doc = json.load(f)
    except OSError as e:
        raise MalformedTokenError(f"cannot read token file {path}: {e}") from e
    except ValueError as e:
        raise MalformedTokenError(f"cannot decode token file {path}: {e}") from e

    if not isinstance(doc, dict):
        raise MalformedTokenError(f"token file {path} does not contain a JSON object")

    access_token = doc.get("accessToken")
    if not access_token or not isinstance(access_token, str):
        raise MalformedTokenError(f"token file {path} has no accessToken")

    token = CachedToken(
        access_token,
        region=doc.get("region"),
        start_url=doc.get("startUrl"),
        expires_at=_parse_expiry(doc.get("expiresAt")),
    )

    if token.is_expired():
        LOG.warning(
            "SSO token in %s expired at %s, refresh your SSO session",
            path,
            token.expires_at,
        )

    return token


def _parse_expiry(value):
    """Returns a UTC `datetime` from the cached `expiresAt` string or `None`.

    The AWS CLI has written this field as `2024-01-01T00:00:00Z` as well as
    `2024-01-01T00:00:00UTC` over the years.
    """
    if not value or not isinstance(value, str):
        return None

    text = value.strip()
    for suffix in ("Z", "UTC"):
        if text.endswith(suffix):
            text = text[: -len(suffix)] + "+00:00"
            break

    try:
        expiry = datetime.fromisoformat(text)
    except ValueError:
        LOG.debug("ignoring unparseable expiresAt value: %s", value)
        return None

    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return expiry


class MissingCacheError(ConfigurationError):
    """Raised if the SSO cache directory does not exist."""


class NoTokenFileError(AuthenticationError):
    """Raised if no token file can be found in the SSO cache directory."""


class MalformedTokenError(AuthenticationError):
    """Raised if the token file cannot be parsed or lacks an access token."""
