#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#

# pylint: disable=redefined-outer-name,missing-docstring

import json
from collections import defaultdict

import pytest
from botocore.exceptions import ClientError

from frugalaws.api import (
    AccessKey,
    AccessKeyLimitExceeded,
    CloudIdentityAPI,
    OrgAccount,
    TemporaryCredentials,
)
from frugalaws.identity import PrincipalKind
from frugalaws.session import CredentialBroker, CredentialContext

PRIMARY = "123456789012"
OTHER = "210987654321"
THIRD = "135792468013"
NAME = "frugal-readonly"
SA = "sa@proj.iam.gserviceaccount.com"
SUBJECT = "999111222"
WIF = f"{SA}:{SUBJECT}"

VIEW_ONLY = "arn:aws:iam::aws:policy/job-function/ViewOnlyAccess"
BEDROCK = "arn:aws:iam::aws:policy/AmazonBedrockReadOnly"


def client_error(code, operation, message="fake error"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class FakeAccount:
    """IAM state of one account."""

    def __init__(self):
        self.roles = {}
        self.users = {}
        self.policies = {}

    def entity(self, principal):
        store = self.roles if principal.kind is PrincipalKind.ROLE else self.users
        if principal.name not in store:
            raise client_error("NoSuchEntity", "GetEntity", principal.name)
        return store[principal.name]

    def attachments(self):
        for entity in list(self.roles.values()) + list(self.users.values()):
            yield from entity["attached"]


class FakeCloud:
    """In-memory IAM, STS and Organizations across many accounts.

    `deny` holds account IDs where assuming a role fails with AccessDenied.
    `fail` maps `(account_id, method_name)` to an exception raised by that
    call. Every mutating call is appended to `mutations`.
    """

    def __init__(self, caller=PRIMARY):
        self.caller = caller
        self.accounts = defaultdict(FakeAccount)
        self.deny = set()
        self.fail = {}
        self.mutations = []
        self.assumed = []
        self.management_account = caller
        self.org_enabled = True
        self.org_accounts = []

    def api(self, context):
        return FakeIdentityAPI(self, context)

    def add_org_account(self, acct_id, name, status="ACTIVE", ou=None):
        self.org_accounts.append((OrgAccount(acct_id, name, status), ou))

    def account(self, acct_id):
        return self.accounts[acct_id]

    def attached(self, acct_id, name, kind=PrincipalKind.ROLE):
        store = self.accounts[acct_id].roles
        if kind is PrincipalKind.USER:
            store = self.accounts[acct_id].users
        return set(store[name]["attached"]) if name in store else set()


class FakeIdentityAPI(CloudIdentityAPI):
    def __init__(self, cloud, context):
        self.cloud = cloud
        self.context = context
        self.account_id = context.account_id

    @property
    def state(self):
        return self.cloud.accounts[self.account_id]

    def _check(self, method):
        error = self.cloud.fail.get((self.account_id, method))
        if error:
            raise error

    def _mutate(self, method, *args):
        self._check(method)
        self.cloud.mutations.append((self.account_id, method) + args)

    def get_caller_identity(self):
        self._check("get_caller_identity")
        if self.context.is_assumed:
            arn = f"arn:aws:sts::{self.account_id}:assumed-role/Admin/session"
        else:
            arn = f"arn:aws:iam::{self.cloud.caller}:user/admin"
        account = self.account_id if self.context.is_assumed else self.cloud.caller
        return {"Account": account, "Arn": arn}

    def role_exists(self, name):
        self._check("role_exists")
        return name in self.state.roles

    def user_exists(self, name):
        self._check("user_exists")
        return name in self.state.users

    def create_role(self, name, trust_policy, description, tags):
        self._mutate("create_role", name)
        if name in self.state.roles:
            raise client_error("EntityAlreadyExists", "CreateRole")
        self.state.roles[name] = {
            "trust": json.loads(trust_policy),
            "description": description,
            "tags": tags,
            "attached": [],
            "inline": {},
        }
        return f"arn:aws:iam::{self.account_id}:role/{name}"

    def create_user(self, name, tags):
        self._mutate("create_user", name)
        if name in self.state.users:
            raise client_error("EntityAlreadyExists", "CreateUser")
        self.state.users[name] = {
            "tags": tags,
            "attached": [],
            "inline": {},
            "keys": [],
        }
        return f"arn:aws:iam::{self.account_id}:user/{name}"

    def delete_role(self, name):
        self._mutate("delete_role", name)
        role = self.state.roles[name]
        if role["attached"] or role["inline"]:
            raise client_error("DeleteConflict", "DeleteRole")
        del self.state.roles[name]

    def delete_user(self, name):
        self._mutate("delete_user", name)
        user = self.state.users[name]
        if user["attached"] or user["inline"] or user["keys"]:
            raise client_error("DeleteConflict", "DeleteUser")
        del self.state.users[name]

    def list_attached_policies(self, principal):
        self._check("list_attached_policies")
        return list(self.state.entity(principal)["attached"])

    def attach_managed_policy(self, principal, policy_arn):
        self._mutate("attach_managed_policy", principal.name, policy_arn)
        entity = self.state.entity(principal)
        if ":aws:policy/" not in policy_arn and policy_arn not in self.state.policies:
            raise client_error("NoSuchEntity", "AttachPolicy", policy_arn)
        if policy_arn not in entity["attached"]:
            entity["attached"].append(policy_arn)

    def detach_policy(self, principal, policy_arn):
        self._mutate("detach_policy", principal.name, policy_arn)
        self.state.entity(principal)["attached"].remove(policy_arn)

    def policy_exists(self, policy_arn):
        self._check("policy_exists")
        return ":aws:policy/" in policy_arn or policy_arn in self.state.policies

    def create_policy(self, name, document, description, tags):
        self._mutate("create_policy", name)
        arn = f"arn:aws:iam::{self.account_id}:policy/{name}"
        self.state.policies.setdefault(
            arn, {"document": document, "description": description, "tags": tags}
        )
        return arn

    def delete_policy(self, policy_arn):
        self._mutate("delete_policy", policy_arn)
        if policy_arn in self.state.attachments():
            raise client_error("DeleteConflict", "DeletePolicy")
        del self.state.policies[policy_arn]

    def list_inline_policies(self, principal):
        self._check("list_inline_policies")
        return list(self.state.entity(principal)["inline"])

    def put_inline_policy(self, principal, name, document):
        self._mutate("put_inline_policy", principal.name, name)
        self.state.entity(principal)["inline"][name] = document

    def delete_inline_policy(self, principal, name):
        self._mutate("delete_inline_policy", principal.name, name)
        del self.state.entity(principal)["inline"][name]

    def list_access_keys(self, user_name):
        self._check("list_access_keys")
        return [k.access_key_id for k in self.state.users[user_name]["keys"]]

    def create_access_key(self, user_name):
        self._mutate("create_access_key", user_name)
        keys = self.state.users[user_name]["keys"]
        if len(keys) >= 2:
            raise AccessKeyLimitExceeded(user_name)
        key = AccessKey(f"AKIA{len(keys)}{user_name.upper()}", "s3cr3t")
        keys.append(key)
        return key

    def delete_access_key(self, user_name, access_key_id):
        self._mutate("delete_access_key", user_name, access_key_id)
        keys = self.state.users[user_name]["keys"]
        keys[:] = [k for k in keys if k.access_key_id != access_key_id]

    def assume_role(self, role_arn, session_name, duration):
        self._check("assume_role")
        target_acct = role_arn.split(":")[4]
        self.cloud.assumed.append((role_arn, session_name, duration))
        if target_acct in self.cloud.deny:
            raise client_error("AccessDenied", "AssumeRole", f"not trusted: {role_arn}")
        return TemporaryCredentials(
            f"ASIA{target_acct}", "secret", "token", "2030-01-01T00:00:00Z"
        )

    def describe_organization(self):
        if not self.cloud.org_enabled:
            raise client_error("AWSOrganizationsNotInUseException", "Describe")
        return {"MasterAccountId": self.cloud.management_account}

    def list_organization_accounts(self, parent_id=None):
        if not self.cloud.org_enabled:
            raise client_error("AccessDeniedException", "ListAccounts")
        return [
            acct
            for acct, ou in self.cloud.org_accounts
            if parent_id is None or ou == parent_id
        ]


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def broker(cloud):
    return CredentialBroker(CredentialContext(PRIMARY), api_factory=cloud.api)
