#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""CLI and library to provision read-only AWS access for Frugal.

## Overview

`frugalaws` creates the IAM principal that the Frugal cost-monitoring product
uses to read billing, metrics, and resource metadata. The principal is
created with the same name in a primary account and, optionally, in any
number of additional accounts of an AWS Organization. The `frugal-aws-setup`
CLI documented in `frugalaws.cli` is the usual way to run it.

### Library Usage

Every step of the CLI is available to Python programs. The submodules, in the
order a run uses them:

`frugalaws.identity`
: Validates the principal name, account IDs, and WIF service account and
resolves them into a `frugalaws.identity.Target`.

`frugalaws.orgs`
: Discovers additional accounts in the organization with a filter and checks
whether the caller is the management account.

`frugalaws.session`
: The `frugalaws.session.CredentialBroker` hands out credentials for the
primary account and scopes assumed roles into additional accounts.

`frugalaws.policies`
: Builds the trust policies and the read-only permission policies.

`frugalaws.provision`
: Creates the principal and attaches policies in one account, idempotently,
and removes them again.

`frugalaws.runner`
: Plans, applies, and undoes a run across all accounts of a target.

`frugalaws.api`
: The IAM, STS, and Organizations calls, behind an interface that can be
replaced by a fake in tests.

### Authentication Modes

With Workload Identity Federation (WIF), the primary principal is a role
trusted by a Google service account, and no long-lived secret exists. Without
WIF, the primary principal is an IAM user whose access key is written to a
local JSON file, see `frugalaws.creds`. In both modes, additional accounts
receive a role of the same name that trusts the primary principal.
"""

name = "frugalaws"
__version__ = "1.0.0"
