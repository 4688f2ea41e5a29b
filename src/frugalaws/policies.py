#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""IAM policy documents used by the setup tool.

## Trust policies

A role's trust policy states who may assume it. Exactly three shapes are
used, one per `TrustPolicy` subclass:

`FederatedOIDC`
:  The primary role in WIF mode. Trusts tokens issued by accounts.google.com
for one Google service account.

`AssumeFromRole`
:  A role in an additional account in WIF mode. Trusts the role of the same
name in the primary account (role chaining).

`AssumeFromUser`
:  A role in an additional account in IAM-user mode. Trusts the IAM user of
the same name in the primary account.

Use `select_trust_policy` to pick the right one for an account. Documents are
built as Python dicts and serialized with `json.dumps`, so account IDs and
email addresses never need escaping.

## Permission policies

`MANAGED_POLICIES` is the default table of AWS managed read-only policies
attached to every principal. Users may replace it in their configuration
file (see `frugalaws.cli`). `custom_policy_document` returns the one
least-privilege policy created in each account, and
`assume_role_anywhere_document` the inline policy that lets the primary
principal assume the role of the same name in any account.
"""

import json
from collections import namedtuple

from frugalaws.identity import AccountRole, Mode

POLICY_VERSION = "2012-10-17"
OIDC_PROVIDER = "accounts.google.com"

CUSTOM_POLICY_NAME = "FrugalExtendedReadOnly"
CUSTOM_POLICY_DESCRIPTION = (
    "Extended read-only permissions for Cost Explorer, billing, and CloudWatch Logs"
)
ASSUME_ROLE_POLICY_NAME = "FrugalCrossAccountAssumeRole"

TAGS = [
    {"Key": "Purpose", "Value": "FrugalIntegration"},
    {"Key": "CreatedBy", "Value": "frugal-aws-setup"},
]


class ManagedPolicy(namedtuple("ManagedPolicy", ["arn", "description"])):
    """An AWS managed policy and a short description for the plan."""

    __slots__ = ()

    @property
    def name(self):
        return self.arn.rsplit("/", 1)[-1]


MANAGED_POLICIES = (
    ManagedPolicy(
        "arn:aws:iam::aws:policy/job-function/ViewOnlyAccess",
        "Read-only access to EC2, S3, RDS, Lambda, CloudWatch, and most AWS services",
    ),
    ManagedPolicy(
        "arn:aws:iam::aws:policy/AmazonBedrockReadOnly",
        "Read-only access to AWS Bedrock AI models, configuration, and diagnostics",
    ),
)


def role_arn(account_id, name):
    return f"arn:aws:iam::{account_id}:role/{name}"


def user_arn(account_id, name):
    return f"arn:aws:iam::{account_id}:user/{name}"


def custom_policy_arn(account_id):
    return f"arn:aws:iam::{account_id}:policy/{CUSTOM_POLICY_NAME}"


class TrustPolicy:
    """Abstract base class for a role trust policy document."""

    description = None

    def statement(self):
        """Returns the single statement dict of the trust policy."""
        raise NotImplementedError

    def document(self):
        return {"Version": POLICY_VERSION, "Statement": [self.statement()]}

    def to_json(self):
        return json.dumps(self.document(), indent=2)

    def __eq__(self, other):
        return type(self) is type(other) and self.document() == other.document()

    def __repr__(self):
        return f"{type(self).__name__}({self.statement()['Principal']})"


class FederatedOIDC(TrustPolicy):
    """Trust tokens from accounts.google.com for one service account.

    Google ID tokens carry the service account email in `aud` for the
    original audience (`oaud` in IAM) while `azp` and `sub` hold the numeric
    subject id, which IAM exposes as `aud` and `sub`.
    """

    description = "Read-only access for Frugal monitoring and cost analysis via WIF"

    def __init__(self, service_account, subject_id, audience=None):
        self.service_account = service_account
        self.subject_id = subject_id
        self.audience = audience or subject_id

    def statement(self):
        return {
            "Effect": "Allow",
            "Principal": {"Federated": OIDC_PROVIDER},
            "Action": "sts:AssumeRoleWithWebIdentity",
            "Condition": {
                "StringEquals": {
                    f"{OIDC_PROVIDER}:oaud": self.service_account,
                    f"{OIDC_PROVIDER}:aud": self.audience,
                    f"{OIDC_PROVIDER}:sub": self.subject_id,
                }
            },
        }


class AssumeFromRole(TrustPolicy):
    """Trust the role named `role_name` in `account_id`."""

    def __init__(self, account_id, role_name):
        self.account_id = account_id
        self.role_name = role_name
        self.description = (
            "Read-only access for Frugal monitoring via role chaining "
            f"from account {account_id}"
        )

    @property
    def principal_arn(self):
        return role_arn(self.account_id, self.role_name)

    def statement(self):
        return {
            "Effect": "Allow",
            "Principal": {"AWS": self.principal_arn},
            "Action": "sts:AssumeRole",
        }


class AssumeFromUser(TrustPolicy):
    """Trust the IAM user named `user_name` in `account_id`."""

    def __init__(self, account_id, user_name):
        self.account_id = account_id
        self.user_name = user_name
        self.description = (
            "Read-only access for Frugal monitoring via IAM user "
            f"from account {account_id}"
        )

    @property
    def principal_arn(self):
        return user_arn(self.account_id, self.user_name)

    def statement(self):
        return {
            "Effect": "Allow",
            "Principal": {"AWS": self.principal_arn},
            "Action": "sts:AssumeRole",
        }


def select_trust_policy(account_role, mode, target):
    """Returns the `TrustPolicy` for a role given its position and the mode.

    The choice depends only on `account_role` (an `AccountRole`) and `mode` (a
    `Mode`); `target` supplies the values placed in the document. Returns
    `None` for the primary account in IAM-user mode, where the principal is a
    user and has no trust policy.
    """
    if account_role is AccountRole.PRIMARY:
        if mode is Mode.WIF:
            return FederatedOIDC(
                target.identity.service_account,
                target.identity.subject_id,
                target.identity.audience,
            )
        return None

    if mode is Mode.WIF:
        return AssumeFromRole(target.primary_account_id, target.principal_name)
    return AssumeFromUser(target.primary_account_id, target.principal_name)


def custom_policy_document():
    return {
        "Version": POLICY_VERSION,
        "Statement": [
            {
                "Sid": "CostExplorerAndBilling",
                "Effect": "Allow",
                "Action": [
                    "ce:Describe*",
                    "ce:Get*",
                    "ce:List*",
                    "account:GetAccountInformation",
                    "billing:Get*",
                    "organizations:Describe*",
                    "organizations:List*",
                ],
                "Resource": "*",
            },
            {
                "Sid": "CloudWatchLogsExtended",
                "Effect": "Allow",
                "Action": ["logs:FilterLogEvents"],
                "Resource": "*",
            },
        ],
    }


def assume_role_anywhere_document(name):
    """Returns a policy allowing sts:AssumeRole on role `name` in any account."""
    return {
        "Version": POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Action": "sts:AssumeRole",
                "Resource": f"arn:aws:iam::*:role/{name}",
            }
        ],
    }


def managed_policies_from_config(entries):
    """Returns a tuple of `ManagedPolicy` from a list of config dicts.

    Each entry must have an `arn` key and may have a `description`. If
    `entries` is empty or `None`, the default `MANAGED_POLICIES` are returned.
    """
    if not entries:
        return MANAGED_POLICIES

    policies = []
    for entry in entries:
        if "arn" not in entry:
            raise ValueError(f"Error in config: Policies->managed: no arn: {entry}")
        policy = ManagedPolicy(entry["arn"], entry.get("description", ""))
        if policy.arn not in [p.arn for p in policies]:
            policies.append(policy)
    return tuple(policies)
