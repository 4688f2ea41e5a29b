#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Provides additional actions and formatters for the builtin argparse module."""

import argparse


class RawAndDefaultsFormatter(
    argparse.ArgumentDefaultsHelpFormatter, argparse.RawDescriptionHelpFormatter
):
    """Mixin of ArgumentDefaultsHelpFormatter and RawDescriptionHelpFormatter.

    Keeps the layout of the CLI description and epilog examples while still
    showing default values in the help of each flag.
    """


class AppendWithoutDefault(argparse.Action):
    """Argparse action to append to a list, replacing the default.

    The defaults of `--additional-accounts` come from the user's configuration
    file. With the builtin `append` action, accounts given on the command line
    would be added to those from the configuration:

        >>> parser = argparse.ArgumentParser()
        >>> parser.add_argument('--additional-accounts', action='append',
        ...                     default=['210987654321'])
        >>> parser.parse_args('--additional-accounts 135792468013'.split())
        Namespace(additional_accounts=['210987654321', '135792468013'])

    This action uses the default only if the flag is not given at all:

        >>> parser = argparse.ArgumentParser()
        >>> parser.add_argument('--additional-accounts', action=AppendWithoutDefault,
        ...                     default=['210987654321'])
        >>> parser.parse_args('--additional-accounts 135792468013'.split())
        Namespace(additional_accounts=['135792468013'])
        >>> parser.parse_args('')
        Namespace(additional_accounts=['210987654321'])
    """

    def __init__(self, *args, **kwargs):
        self.has_been_called = False
        super().__init__(*args, **kwargs)

    def __call__(self, parser, namespace, values, option_string=None):
        current = [] if not self.has_been_called else getattr(namespace, self.dest)
        current.append(values)
        setattr(namespace, self.dest, current)
        self.has_been_called = True
