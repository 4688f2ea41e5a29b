#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""The AWS control plane operations used by the setup tool.

## Overview

`CloudIdentityAPI` lists every IAM, STS, and Organizations call the rest of
the package makes. It is an abstract base class so the provisioning logic can
be exercised without AWS. `BotoIdentityAPI` is the implementation backed by a
boto3 Session:

    session = boto3.Session(profile_name="management")
    api = BotoIdentityAPI(session)

    api.get_caller_account_id()                    # '123456789012'
    api.role_exists("frugal-readonly")             # False
    role = Principal("frugal-readonly", PrincipalKind.ROLE, "123456789012")
    api.list_attached_policies(role)                # []

An instance is bound to one set of credentials, and therefore one account,
for its whole life. To act on another account, obtain credentials for it via
`frugalaws.session.CredentialBroker` and build a new instance.

## Errors

Errors from AWS are raised as `botocore.exceptions.ClientError` so callers can
decide, per operation, what is fatal. Only two conditions are translated:
`createPolicy` of a policy that already exists returns the policy ARN, and
`createAccessKey` beyond the per-user key limit raises
`AccessKeyLimitExceeded`.
"""

import json
import logging
from collections import namedtuple

import botocore.exceptions

from frugalaws.identity import PrincipalKind

LOG = logging.getLogger(__name__)

TemporaryCredentials = namedtuple(
    "TemporaryCredentials",
    ["access_key_id", "secret_access_key", "session_token", "expiration"],
)
TemporaryCredentials.__doc__ = "Credentials returned by sts:AssumeRole."

AccessKey = namedtuple("AccessKey", ["access_key_id", "secret_access_key"])

OrgAccount = namedtuple("OrgAccount", ["id", "name", "status"])


class Principal:
    """An IAM role or user named `name` in `account_id`."""

    __slots__ = ("name", "kind", "account_id")

    def __init__(self, name, kind, account_id):
        self.name = name
        self.kind = kind
        self.account_id = account_id

    @property
    def arn(self):
        return f"arn:aws:iam::{self.account_id}:{self.kind.value}/{self.name}"

    def __eq__(self, other):
        return isinstance(other, Principal) and (
            self.name,
            self.kind,
            self.account_id,
        ) == (other.name, other.kind, other.account_id)

    def __hash__(self):
        return hash((self.name, self.kind, self.account_id))

    def __repr__(self):
        return f"Principal({self.arn})"

    def __str__(self):
        return f"IAM {self.kind.value} '{self.name}'"


class CloudIdentityAPI:
    """Abstract interface to the identity control plane of one account.

    Subclasses must implement every method. Methods that act on a principal
    accept a `Principal` and dispatch to the role or user variant of the
    underlying call.
    """

    def get_caller_identity(self):
        """Returns a dict with the `Account` and `Arn` of the caller."""
        raise NotImplementedError

    def get_caller_account_id(self):
        return self.get_caller_identity()["Account"]

    def role_exists(self, name):
        raise NotImplementedError

    def user_exists(self, name):
        raise NotImplementedError

    def principal_exists(self, principal):
        if principal.kind is PrincipalKind.ROLE:
            return self.role_exists(principal.name)
        return self.user_exists(principal.name)

    def create_role(self, name, trust_policy, description, tags):
        """Creates role `name` with the `trust_policy` JSON document string."""
        raise NotImplementedError

    def create_user(self, name, tags):
        raise NotImplementedError

    def delete_role(self, name):
        raise NotImplementedError

    def delete_user(self, name):
        raise NotImplementedError

    def list_attached_policies(self, principal):
        """Returns the list of managed policy ARNs attached to `principal`."""
        raise NotImplementedError

    def attach_managed_policy(self, principal, policy_arn):
        raise NotImplementedError

    def detach_policy(self, principal, policy_arn):
        raise NotImplementedError

    def policy_exists(self, policy_arn):
        raise NotImplementedError

    def create_policy(self, name, document, description, tags):
        """Creates a customer managed policy and returns its ARN.

        If a policy of that name already exists, its ARN is returned as if it
        had been created.
        """
        raise NotImplementedError

    def delete_policy(self, policy_arn):
        raise NotImplementedError

    def list_inline_policies(self, principal):
        """Returns the list of inline policy names of `principal`."""
        raise NotImplementedError

    def put_inline_policy(self, principal, name, document):
        raise NotImplementedError

    def delete_inline_policy(self, principal, name):
        raise NotImplementedError

    def list_access_keys(self, user_name):
        """Returns the list of access key IDs of the user."""
        raise NotImplementedError

    def create_access_key(self, user_name):
        """Returns a new `AccessKey` for the user.

        Raises `AccessKeyLimitExceeded` if the user already has the maximum
        number of keys.
        """
        raise NotImplementedError

    def delete_access_key(self, user_name, access_key_id):
        raise NotImplementedError

    def assume_role(self, role_arn, session_name, duration):
        """Returns `TemporaryCredentials` for `role_arn`."""
        raise NotImplementedError

    def describe_organization(self):
        """Returns a dict with at least the `MasterAccountId` key."""
        raise NotImplementedError

    def list_organization_accounts(self, parent_id=None):
        """Returns a list of `OrgAccount` in the organization.

        If `parent_id` is given, only the accounts directly under that
        organizational unit are returned.
        """
        raise NotImplementedError


class BotoIdentityAPI(CloudIdentityAPI):
    """A `CloudIdentityAPI` backed by boto3 clients created from `session`."""

    def __init__(self, session):
        self._session = session
        self._clients = {}

    def _client(self, name):
        if name not in self._clients:
            self._clients[name] = self._session.client(name)
        return self._clients[name]

    @property
    def iam(self):
        return self._client("iam")

    def get_caller_identity(self):
        return self._client("sts").get_caller_identity()

    def role_exists(self, name):
        return self._exists(self.iam.get_role, RoleName=name)

    def user_exists(self, name):
        return self._exists(self.iam.get_user, UserName=name)

    def policy_exists(self, policy_arn):
        return self._exists(self.iam.get_policy, PolicyArn=policy_arn)

    def _exists(self, method, **kwargs):
        try:
            method(**kwargs)
            return True
        except self.iam.exceptions.NoSuchEntityException:
            return False

    def create_role(self, name, trust_policy, description, tags):
        resp = self.iam.create_role(
            RoleName=name,
            AssumeRolePolicyDocument=trust_policy,
            Description=description,
            Tags=tags,
        )
        return resp["Role"]["Arn"]

    def create_user(self, name, tags):
        resp = self.iam.create_user(UserName=name, Tags=tags)
        return resp["User"]["Arn"]

    def delete_role(self, name):
        self.iam.delete_role(RoleName=name)

    def delete_user(self, name):
        self.iam.delete_user(UserName=name)

    def list_attached_policies(self, principal):
        if principal.kind is PrincipalKind.ROLE:
            op, kwargs = "list_attached_role_policies", {"RoleName": principal.name}
        else:
            op, kwargs = "list_attached_user_policies", {"UserName": principal.name}

        arns = []
        for page in self.iam.get_paginator(op).paginate(**kwargs):
            arns.extend(p["PolicyArn"] for p in page["AttachedPolicies"])
        return arns

    def attach_managed_policy(self, principal, policy_arn):
        if principal.kind is PrincipalKind.ROLE:
            self.iam.attach_role_policy(RoleName=principal.name, PolicyArn=policy_arn)
        else:
            self.iam.attach_user_policy(UserName=principal.name, PolicyArn=policy_arn)

    def detach_policy(self, principal, policy_arn):
        if principal.kind is PrincipalKind.ROLE:
            self.iam.detach_role_policy(RoleName=principal.name, PolicyArn=policy_arn)
        else:
            self.iam.detach_user_policy(UserName=principal.name, PolicyArn=policy_arn)

    def create_policy(self, name, document, description, tags):
        try:
            resp = self.iam.create_policy(
                PolicyName=name,
                PolicyDocument=json.dumps(document),
                Description=description,
                Tags=tags,
            )
            return resp["Policy"]["Arn"]

        except self.iam.exceptions.EntityAlreadyExistsException:
            account_id = self.get_caller_account_id()
            LOG.info("policy %s already exists in %s", name, account_id)
            return f"arn:aws:iam::{account_id}:policy/{name}"

    def delete_policy(self, policy_arn):
        # Non-default versions must be deleted before the policy itself.
        versions = self.iam.list_policy_versions(PolicyArn=policy_arn)["Versions"]
        for version in versions:
            if not version["IsDefaultVersion"]:
                self.iam.delete_policy_version(
                    PolicyArn=policy_arn, VersionId=version["VersionId"]
                )
        self.iam.delete_policy(PolicyArn=policy_arn)

    def list_inline_policies(self, principal):
        if principal.kind is PrincipalKind.ROLE:
            op, kwargs = "list_role_policies", {"RoleName": principal.name}
        else:
            op, kwargs = "list_user_policies", {"UserName": principal.name}

        names = []
        for page in self.iam.get_paginator(op).paginate(**kwargs):
            names.extend(page["PolicyNames"])
        return names

    def put_inline_policy(self, principal, name, document):
        if principal.kind is PrincipalKind.ROLE:
            self.iam.put_role_policy(
                RoleName=principal.name,
                PolicyName=name,
                PolicyDocument=json.dumps(document),
            )
        else:
            self.iam.put_user_policy(
                UserName=principal.name,
                PolicyName=name,
                PolicyDocument=json.dumps(document),
            )

    def delete_inline_policy(self, principal, name):
        if principal.kind is PrincipalKind.ROLE:
            self.iam.delete_role_policy(RoleName=principal.name, PolicyName=name)
        else:
            self.iam.delete_user_policy(UserName=principal.name, PolicyName=name)

    def list_access_keys(self, user_name):
        keys = []
        for page in self.iam.get_paginator("list_access_keys").paginate(
            UserName=user_name
        ):
            keys.extend(k["AccessKeyId"] for k in page["AccessKeyMetadata"])
        return keys

    def create_access_key(self, user_name):
        try:
            resp = self.iam.create_access_key(UserName=user_name)
        except self.iam.exceptions.LimitExceededException as e:
            raise AccessKeyLimitExceeded(user_name) from e

        key = resp["AccessKey"]
        return AccessKey(key["AccessKeyId"], key["SecretAccessKey"])

    def delete_access_key(self, user_name, access_key_id):
        self.iam.delete_access_key(UserName=user_name, AccessKeyId=access_key_id)

    def assume_role(self, role_arn, session_name, duration):
        resp = self._client("sts").assume_role(
            RoleArn=role_arn,
            RoleSessionName=session_name,
            DurationSeconds=duration,
        )
        creds = resp["Credentials"]
        return TemporaryCredentials(
            creds["AccessKeyId"],
            creds["SecretAccessKey"],
            creds["SessionToken"],
            creds["Expiration"],
        )

    def describe_organization(self):
        return self._client("organizations").describe_organization()["Organization"]

    def list_organization_accounts(self, parent_id=None):
        org = self._client("organizations")
        if parent_id:
            pages = org.get_paginator("list_accounts_for_parent").paginate(
                ParentId=parent_id
            )
        else:
            pages = org.get_paginator("list_accounts").paginate()

        accts = []
        for page in pages:
            accts.extend(
                OrgAccount(a["Id"], a.get("Name", ""), a.get("Status", ""))
                for a in page["Accounts"]
            )
        return accts


def boto_api(context):
    """Returns a `BotoIdentityAPI` for a `frugalaws.session.CredentialContext`."""
    return BotoIdentityAPI(context.session())


# Errors from any AWS API call, whether returned by the service or raised by
# the SDK itself such as connection timeouts or missing credentials.
AWS_ERRORS = (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError)


class AccessKeyLimitExceeded(Exception):
    """Raised if a user already has the maximum number of access keys."""

    def __init__(self, user_name):
        self.user_name = user_name
        super().__init__(
            "Cannot create access key: AWS limit of 2 access keys per user "
            f"already reached for {user_name}"
        )
