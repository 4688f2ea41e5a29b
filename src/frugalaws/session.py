#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Obtain credentials for the primary account and assume roles into others.

## Overview

The setup tool starts with the caller's own credentials, which must belong to
the primary account. Those come from the standard boto3 credential chain: the
environment, the AWS CLI configuration and credential files (optionally a
named profile), or an instance role. Every other account is reached by
assuming a role, by default `OrganizationAccountAccessRole`, from the
primary account.

Credentials are never exported to the process environment. Instead, they are
held by a `CredentialContext`, which knows how to build a boto3 Session, and
the `CredentialBroker` tracks which context is current:

    broker = CredentialBroker(CredentialContext("123456789012", profile="mgmt"))

    with broker.assumed_role("210987654321", "OrganizationAccountAccessRole") as ctx:
        iam = ctx.session().client("iam")
        ...

    # broker.current is the primary context again, whatever happened inside

The temporary credentials obtained for an account only exist inside the
`with` block. On exit, normal or not, the broker restores the context that was
current before the block. Only one assumed-role scope may be open at a time.

## Caching

Temporary credentials are not cached. Each account is visited once per phase of
a run and the credentials are discarded as soon as that visit ends.
"""

import itertools
import logging
import time
from contextlib import contextmanager

import boto3

from frugalaws.api import AWS_ERRORS, boto_api
from frugalaws.policies import role_arn

LOG = logging.getLogger(__name__)

DEFAULT_DURATION = 3600


class CredentialContext:
    """Credentials for one account.

    If `credentials` is `None`, the context represents the caller's ambient
    credentials, resolved by boto3 from `profile` or its default chain.
    Otherwise `credentials` is a `frugalaws.api.TemporaryCredentials` obtained
    by assuming a role.
    """

    def __init__(self, account_id, credentials=None, profile=None, region=None):
        self.account_id = account_id
        self.credentials = credentials
        self.profile = profile
        self.region = region

    @property
    def is_assumed(self):
        return self.credentials is not None

    def session(self):
        """Returns a new boto3 Session loaded with these credentials."""
        if self.credentials is None:
            return boto3.Session(profile_name=self.profile, region_name=self.region)

        return boto3.Session(
            aws_access_key_id=self.credentials.access_key_id,
            aws_secret_access_key=self.credentials.secret_access_key,
            aws_session_token=self.credentials.session_token,
            region_name=self.region,
        )

    def __repr__(self):
        kind = "assumed" if self.is_assumed else "ambient"
        return f"CredentialContext({self.account_id}, {kind})"


class CredentialBroker:
    """Hands out the current credentials and scopes assumed roles.

    `base` is the `CredentialContext` of the primary account. `api_factory` is
    a callable that returns a `frugalaws.api.CloudIdentityAPI` for a context;
    it defaults to the boto3 implementation. Assumed-role credentials last
    `duration` seconds.
    """

    def __init__(self, base, api_factory=boto_api, duration=DEFAULT_DURATION):
        self._base = base
        self._current = base
        self._api_factory = api_factory
        self._duration = duration
        self._counter = itertools.count(1)

    @property
    def base(self):
        return self._base

    @property
    def current(self):
        return self._current

    def api(self, context=None):
        """Returns a `CloudIdentityAPI` for `context`, or the current one."""
        return self._api_factory(context or self._current)

    def session_name(self):
        """Returns a role session name unique within this process."""
        return f"frugal-setup-{int(time.time())}-{next(self._counter)}"

    @contextmanager
    def assumed_role(self, acct_id, role_name):
        """Context manager that makes an assumed role the current context.

        Assumes `role_name` in `acct_id` using the current credentials and
        yields the new `CredentialContext`. The previous context is restored
        when the block exits. Raises `AssumeRoleError` if the role cannot be
        assumed, in which case the current context is left untouched.
        """
        if self._current is not self._base:
            raise RuntimeError("nested assumed-role scopes are not supported")

        arn = role_arn(acct_id, role_name)
        api = self.api()
        LOG.info("assuming role %s", arn)

        try:
            creds = api.assume_role(arn, self.session_name(), self._duration)
        except AWS_ERRORS as e:
            raise AssumeRoleError(arn, self._caller_arn(api), e) from e

        previous = self._current
        self._current = CredentialContext(
            acct_id, creds, region=self._base.region
        )
        try:
            yield self._current
        finally:
            self._current = previous
            LOG.info("restored credentials for %s", previous.account_id)

    def with_assumed_role(self, acct_id, role_name, body):
        """Returns the result of `body(context)` called under an assumed role.

        Functional form of `assumed_role`. Any exception raised by `body`
        propagates after the previous credentials have been restored.
        """
        with self.assumed_role(acct_id, role_name) as context:
            return body(context)

    @staticmethod
    def _caller_arn(api):
        try:
            return api.get_caller_identity()["Arn"]
        except AWS_ERRORS:
            return "current identity"


class AssumeRoleError(Exception):
    """Raised if a role cannot be assumed.

    `role_arn` is the role that was requested and `caller_arn` the identity
    that attempted to assume it. The usual cause is a missing or incorrect
    trust relationship in the target account.
    """

    def __init__(self, role_arn, caller_arn, cause=None):
        self.role_arn = role_arn
        self.caller_arn = caller_arn
        self.cause = cause
        super().__init__(f"Failed to assume role: {role_arn}: {cause}")

    @property
    def hint(self):
        return (
            "Ensure the role exists and trusts this account:\n"
            f"  Role ARN: {self.role_arn}\n"
            f"  Must trust: {self.caller_arn}"
        )
