#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#

# pylint: disable=redefined-outer-name,missing-docstring

import json

import pytest
from fakes import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token_cache(tmp_path):
    """Returns an SSO cache directory like the one `aws sso login` writes."""
    cache = tmp_path / "sso" / "cache"
    cache.mkdir(parents=True)

    (cache / "botocore-client-id-us-east-1.json").write_text(
        json.dumps({"clientId": "abc", "clientSecret": "def"})
    )
    (cache / "d033e22ae348aeb5660fc2140aec35850c4da997.json").write_text(
        json.dumps(
            {
                "startUrl": "https://example.awsapps.com/start",
                "region": "us-east-1",
                "accessToken": "aoaTOKEN",
                "expiresAt": "2099-01-01T00:00:00Z",
            }
        )
    )
    return cache
