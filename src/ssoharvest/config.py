#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Provides a YAML/JSON config file reader with type-checked values.

## Overview

`Config` wraps the dict loaded from the ssoharvest user configuration file and
provides default values, mandatory values, and type-checking of values. The
file type is chosen by extension via `Config.from_file`: `.yaml` and `.yml`
files are parsed with PyYAML, `.json` files with the json module.

The user configuration is read from `$SSOHARVEST_CONFIG` if set, otherwise from
`~/.ssoharvest.yaml` (see `default_config_path`). Its `CLI` section provides
defaults for the command line flags:

    CLI:
      cache_dir: ~/.aws/sso/cache
      region: eu-west-2
      threads: 12
      chunks: 4
      on_error: skip
      role_pattern: '(ReadOnly|Contributor)$'

## Reading Values

    c = Config.from_file(default_config_path())
    threads = c.get("CLI", "threads", type=PositiveInt, default=12)
    on_error = c.get("CLI", "on_error", type=Choice("abort", "skip"), default="abort")

If a value does not match the expected type, a `TypeError` naming the key path
is raised. Types are the singletons and classes defined at the bottom of this
module: `Str`, `Int`, `Bool`, `Float`, `PositiveInt`, `PositiveNumber`,
`Choice`, `StrMatch`, `List`, and `Or`.

## Writing Values

`ssoharvest config set` updates the user configuration in place:

    c = Config.from_file(path)
    c.set("CLI", "threads", value=8)
    c.to_file(path)
"""

import json
import logging
import os
import re
from functools import reduce
from pathlib import Path

import yaml

LOG = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SSOHARVEST_CONFIG"
CONFIG_DOTFILE = ".ssoharvest.yaml"

# pylint: disable=unidiomatic-typecheck
#
# Because isinstance(True, int) is true, we do not rely on isinstance for our
# type checking in this module as we want to match exact types. True should not
# type check successfully as a worker count.


def default_config_path():
    """Returns the path to the user configuration file."""
    return Path(os.environ.get(CONFIG_ENV_VAR, Path.home() / CONFIG_DOTFILE))


class Config:
    """A `Config` can read type-checked values from a Python dictionary.

    The class also contains a registry of configuration parsers keyed by file
    extension, so configurations can be loaded with `Config.from_file`.
    """

    _filetypes = {}

    @classmethod
    def register_filetype(cls, config_class, *extensions):
        """Register a parser for files with one of the specified extensions.

        Extensions are specified as '.ext'. Subsequent registrations for the
        same extension override the prior registration.
        """
        for ext in extensions:
            cls._filetypes[ext] = config_class

    @classmethod
    def from_file(cls, filename, must_exist=False):
        """Factory method to load a `Config` from a filename.

        If `must_exist` is true, a `FileNotFoundError` is raised if the file
        does not exist, otherwise an empty `Config` is returned.
        """
        path = Path(filename).expanduser()

        if not path.is_file():
            if must_exist:
                raise FileNotFoundError(f"Config file not found: {filename}")
            LOG.debug("no config file at %s", path)
            return Config({})

        if path.suffix not in cls._filetypes:
            raise ValueError(f"Unregistered file type extension: {path.suffix}")

        LOG.debug("loading config from %s", path)
        with path.open(encoding="utf-8") as f:
            return cls._filetypes[path.suffix](f)

    def __init__(self, d):
        # An empty YAML document loads as None.
        self.conf = d if d is not None else {}

    def get(self, *keys, default=None, type=None, must_exist=False):
        """Return the value at the path of `keys` from the `Config`.

        If the value is not found, `default` is returned unless `must_exist` is
        `True`, in which case a `ValueError` is raised. If a `type` is given and
        the value does not match it, a `TypeError` is raised. For example:

            c.get('CLI', 'threads', type=PositiveInt)
            c.get('CLI', 'region', type=Str, default='eu-west-2')
            c.get('CLI', 'on_error', type=Choice('abort', 'skip'))
        """
        # pylint: disable=redefined-builtin

        # Follow the keys into the nested dicts. A missing key yields {}.
        try:
            value = reduce(lambda a, p: a.get(p, {}), keys, self.conf)
        except AttributeError as e:
            raise ValueError(
                f"Error in config: {'->'.join(keys[:-1])}: not a dictionary"
            ) from e

        if value == {}:
            if must_exist:
                raise ValueError(f"Error in config: {'->'.join(keys)}: must be set")
            value = default

        if value is None or not type:
            return value

        if type.type_check(value):
            return value

        raise TypeError(
            f"Error in config: {'->'.join(keys)}: not a {type}: {repr(value)}"
        )

    def set(self, *keys, value):
        """Sets the value at the path of `keys`, creating sections as needed."""
        conf = self.conf
        for key in keys[:-1]:
            if not isinstance(conf.get(key), dict):
                conf[key] = {}
            conf = conf[key]
        conf[keys[-1]] = value

    def to_file(self, filename):
        """Writes the `Config` to `filename` in the format of its extension."""
        path = Path(filename).expanduser()
        if path.suffix not in self._filetypes:
            raise ValueError(f"Unregistered file type extension: {path.suffix}")

        LOG.debug("saving config to %s", path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            self._filetypes[path.suffix].dump(self.conf, f)

    @staticmethod
    def dump(conf, stream):
        """Serializes the dict `conf` to `stream`."""
        raise NotImplementedError


class YAMLConfig(Config):
    """Loads a YAML configuration from a stream."""

    def __init__(self, stream):
        super().__init__(yaml.safe_load(stream))

    @staticmethod
    def dump(conf, stream):
        yaml.safe_dump(conf, stream, default_flow_style=False)


class JSONConfig(Config):
    """Loads a JSON configuration from a stream."""

    def __init__(self, stream):
        super().__init__(json.load(stream))

    @staticmethod
    def dump(conf, stream):
        json.dump(conf, stream, indent=2)


Config.register_filetype(JSONConfig, ".json")
Config.register_filetype(YAMLConfig, ".yaml", ".yml")


class Type:
    """Represents a type that can be used in type-check comparisons."""

    def type_check(self, obj):
        """Returns true if obj is a type matching this `Type`."""
        raise NotImplementedError

    def __str__(self):
        """Returns a string representing this `Type`."""
        raise NotImplementedError


class Or(Type):
    """Represents a type that is one of the `config_types`."""

    def __init__(self, *config_types):
        self.config_types = config_types

    def type_check(self, obj):
        return any(t.type_check(obj) for t in self.config_types)

    def __str__(self):
        s = " or ".join(str(t) for t in self.config_types)
        return "(" + s + ")"


class Const(Type):
    """Represents a constant value."""

    def __init__(self, const):
        self.const = const

    def type_check(self, obj):
        # True == 1 in python, so the types must be compared first.
        if type(obj) != type(self.const):  # noqa: E721
            return False
        return obj == self.const

    def __str__(self):
        return f"constant '{self.const}'"


class Choice(Or):
    """Represents a choice of constants."""

    def __init__(self, *constants):
        super().__init__(*[Const(c) for c in constants])


class Scalar(Type):
    """Represents a scalar of the builtin Python type `type_`."""

    def __init__(self, type_):
        self.type = type_

    def type_check(self, obj):
        return type(obj) == self.type  # noqa: E721

    def __str__(self):
        return self.type.__name__


class Positive(Type):
    """Represents a number of one of the builtin `types_` greater than zero."""

    def __init__(self, *types_):
        self.types = types_

    def type_check(self, obj):
        return type(obj) in self.types and obj > 0

    def __str__(self):
        return "positive " + " or ".join(t.__name__ for t in self.types)


class StrMatch(Type):
    """Represents a string matching `pattern` via `re.search`."""

    def __init__(self, pattern):
        self.pattern = pattern

    def type_check(self, obj):
        if type(obj) != str:  # noqa: E721
            return False
        return bool(re.search(self.pattern, obj))

    def __str__(self):
        return f"str matching '{self.pattern}'"


class Regex(Type):
    """Represents a string that compiles as a regular expression."""

    def type_check(self, obj):
        if type(obj) != str:  # noqa: E721
            return False
        try:
            re.compile(obj)
            return True
        except re.error:
            return False

    def __str__(self):
        return "regular expression"


class List(Type):
    """Represents a list containing elements of `element_type`."""

    def __init__(self, element_type):
        self.element_type = element_type

    def type_check(self, obj):
        if type(obj) != list:  # noqa: E721
            return False
        return all(self.element_type.type_check(e) for e in obj)

    def __str__(self):
        return f"list of {self.element_type}"


Str = Scalar(str)
"""Singleton representing a str."""

Int = Scalar(int)
"""Singleton representing an int."""

Bool = Scalar(bool)
"""Singleton representing a bool."""

Float = Scalar(float)
"""Singleton representing a float."""

PositiveInt = Positive(int)
"""Singleton representing an int greater than zero."""

PositiveNumber = Positive(int, float)
"""Singleton representing an int or float greater than zero."""

Pattern = Regex()
"""Singleton representing a valid regular expression."""

URL = StrMatch(r"^[^:]+://")
"""Singleton representing a URL in the form of xxxx://."""
