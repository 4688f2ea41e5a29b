#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Provides a YAML/JSON config file reader with type-checked values.

## Overview

`Config` wraps the dict loaded from the user's configuration file, by default
`~/.frugal-aws-setup.yaml`. It provides for default values, mandatory values,
and type-checking of values using type specifications. `Config.from_file`
picks `YAMLConfig` or `JSONConfig` based on the file extension. A missing file
yields an empty `Config`, so the tool runs without any configuration.

## Type Checking

Type checking of values is done via the type objects and classes defined in
this module: `Str`, `Int`, `Bool`, and `AccountId` are pre-defined,
while `StrMatch`, `Choice`, `List`, `Dict`, and `Or` can be instantiated to
build more complex types. For example, the following type matches the list of
managed policies in the `Policies` section:

    List(Dict(Str, Str))

## Reading Values

Assuming the configuration file contains the following YAML:

    CLI:
      profile: management
      region: eu-west-1
      assume_role: OrganizationAccountAccessRole
      additional_accounts:
        - "210987654321"
    Policies:
      managed:
        - arn: arn:aws:iam::aws:policy/job-function/ViewOnlyAccess
          description: Read-only access to most AWS services

`Config.get` is used to read values from it:

    c = Config.from_file('~/.frugal-aws-setup.yaml')

    assert c.get('CLI', 'region', type=Str) == 'eu-west-1'
    assert c.get('CLI', 'force', type=Bool, default=False) is False
    assert c.get('CLI', 'additional_accounts', type=List(AccountId)) == ['210987654321']

If a value does not match the expected type, a `TypeError` is raised naming the
path of keys to the value. Account IDs must be quoted in YAML, otherwise they
are read as ints and fail the type check.
"""

import json
import logging
import re
from functools import reduce
from pathlib import Path

import yaml

LOG = logging.getLogger(__name__)

# pylint: disable=unidiomatic-typecheck
#
# Because isinstance(True, int) is true, we do not rely on isinstance for our
# type checking in this module as we want to match exact types.


class Config:
    """A `Config` can read type-checked values from a Python dictionary.

    The class also keeps a registry of configuration parsers keyed by file
    extension, so users can load configs from files.
    """

    _filetypes = {}

    @classmethod
    def register_filetype(cls, config_class, *extensions):
        """Register a parser for files with one of the specified extensions.

        Extensions should be specified as '.ext'. Subsequent registrations for
        the same extension override the prior registration.
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
            LOG.info("no config file at %s", path)
            return Config({})

        if path.suffix not in cls._filetypes:
            raise ValueError(f"Unregistered file type extension: {path.suffix}")

        LOG.info("loading config from %s", path)
        with path.open(encoding="utf-8") as f:
            return cls._filetypes[path.suffix](f)

    def __init__(self, d):
        self.conf = d or {}

    def get(self, *keys, default=None, type=None, must_exist=False):
        """Return the specified value from the `Config`.

        Specify the value to read by providing the keys required to reach it.
        If no value is found at the key path, `default` is returned unless
        `must_exist` is `True`, in which case a `ValueError` is raised. If
        `type` is given, the value must match it or a `TypeError` is raised:

            c.get('CLI', 'log_level', type=Choice('DEBUG', 'INFO', 'WARN', 'ERROR'))
            c.get('Policies', 'managed', type=List(Dict(Str, Str)), default=[])
        """
        # pylint: disable=redefined-builtin

        try:
            value = reduce(lambda a, p: a.get(p, {}), keys, self.conf)
        except AttributeError as e:
            raise ValueError(
                f"Error in config: {'->'.join(keys[:-1])}: not a dictionary"
            ) from e

        # {} means the key doesn't exist.
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


class YAMLConfig(Config):
    """Loads a YAML configuration from a stream."""

    def __init__(self, stream):
        super().__init__(yaml.safe_load(stream))


class JSONConfig(Config):
    """Loads a JSON configuration from a stream."""

    def __init__(self, stream):
        super().__init__(json.load(stream))


Config.register_filetype(JSONConfig, ".json")
Config.register_filetype(YAMLConfig, ".yaml", ".yml")


class Type:
    """Represents a type that can be used in type-check comparisons."""

    def type_check(self, obj):
        """Returns true if obj is a type matching this `Type`."""
        raise NotImplementedError

    def __str__(self):
        raise NotImplementedError


class Or(Type):
    """Represents a type that is one of the `config_types`."""

    def __init__(self, *config_types):
        self.config_types = config_types

    def type_check(self, obj):
        return any(t.type_check(obj) for t in self.config_types)

    def __str__(self):
        return "(" + " or ".join(str(t) for t in self.config_types) + ")"


class Const(Type):
    """Represents a constant value."""

    def __init__(self, const):
        self.const = const

    def type_check(self, obj):
        # True == 1 in python, so compare types first.
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
    """Represents a type that is a scalar matching the builtin `type_`."""

    def __init__(self, type_):
        self.type = type_

    def type_check(self, obj):
        return type(obj) == self.type  # noqa: E721

    def __str__(self):
        return self.type.__name__


class StrMatch(Type):
    """Represents a string matching `pattern`.

    `pattern` is matched using `re.search` so anchors should be explicit.
    """

    def __init__(self, pattern):
        self.pattern = pattern

    def type_check(self, obj):
        if type(obj) != str:  # noqa: E721
            return False
        return bool(re.search(self.pattern, obj))

    def __str__(self):
        return f"str matching '{self.pattern}'"


Str = Scalar(str)
"""Singleton representing a str."""

Int = Scalar(int)
"""Singleton representing an int."""

Bool = Scalar(bool)
"""Singleton representing a bool."""

AccountId = StrMatch(r"^[0-9]{12}\Z")
"""Singleton representing a 12-digit AWS account ID."""


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


class Dict(Type):
    """Represents a dict with keys of `key_type` and values of `value_type`."""

    def __init__(self, key_type, value_type):
        self.key_type = key_type
        self.value_type = value_type

    def type_check(self, obj):
        if type(obj) != dict:  # noqa: E721
            return False
        return all(self.key_type.type_check(k) for k in obj.keys()) and all(
            self.value_type.type_check(v) for v in obj.values()
        )

    def __str__(self):
        return f"dict with {self.key_type} keys and {self.value_type} values"
