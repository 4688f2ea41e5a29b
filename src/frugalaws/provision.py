#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Create, reconcile, and remove the IAM resources in one account.

## Provisioning

A `Provisioner` is bound to a `frugalaws.api.CloudIdentityAPI` for a single
account. Each operation checks what already exists before changing anything,
so running it again is harmless:

    provisioner = Provisioner(api, MANAGED_POLICIES)
    principal = provisioner.ensure_principal(
        "123456789012", "frugal-readonly", PrincipalKind.ROLE, trust)
    provisioner.ensure_managed_policies(principal)  # PolicyReport(added=2, skipped=0)
    arn = provisioner.ensure_custom_policy("123456789012")
    provisioner.attach_custom_policy(principal, arn)

Policies are never detached while provisioning. Failed AWS calls are raised
as `ProvisionError`.

## Teardown

`Teardown` removes what the provisioner created: access keys, managed policy
attachments, inline policies, the principal itself, and the custom policy.
Teardown is best effort. A failed step is recorded as a `TeardownError` in
the returned `TeardownReport` and the remaining steps still run. The custom
policy is kept, without an error, while another principal still uses it.
"""

import logging
from collections import namedtuple

from frugalaws.api import AWS_ERRORS, AccessKeyLimitExceeded, Principal
from frugalaws.identity import PrincipalKind
from frugalaws.policies import (
    ASSUME_ROLE_POLICY_NAME,
    CUSTOM_POLICY_DESCRIPTION,
    CUSTOM_POLICY_NAME,
    TAGS,
    assume_role_anywhere_document,
    custom_policy_arn,
    custom_policy_document,
)

LOG = logging.getLogger(__name__)

PolicyReport = namedtuple("PolicyReport", ["added", "skipped"])


def desired_policy_arns(account_id, managed_policies):
    """Returns every policy ARN a principal in `account_id` should have.

    The managed policies come first, in order, followed by the custom policy.
    Both the plan and the provisioning use this list.
    """
    return [p.arn for p in managed_policies] + [custom_policy_arn(account_id)]


class Provisioner:
    """Idempotently provisions a principal and its policies in one account."""

    def __init__(self, api, managed_policies, tags=None):
        self._api = api
        self._managed_policies = tuple(managed_policies)
        self._tags = TAGS if tags is None else tags

    def ensure_principal(self, account_id, name, kind, trust=None):
        """Returns the `Principal`, creating it if it does not exist.

        `trust` is a `frugalaws.policies.TrustPolicy` and is required for
        roles. An existing principal is left as is, including its trust
        policy.
        """
        principal = Principal(name, kind, account_id)
        try:
            if self._api.principal_exists(principal):
                LOG.info("%s already exists in %s", principal, account_id)
                return principal

            if kind is PrincipalKind.ROLE:
                if trust is None:
                    raise ValueError("a trust policy is required to create a role")
                self._api.create_role(
                    name, trust.to_json(), trust.description, self._tags
                )
            else:
                self._api.create_user(name, self._tags)

        except AWS_ERRORS as e:
            raise ProvisionError(
                f"Failed to create {principal} in {account_id}: {e}",
                permission_hint(
                    principal.arn,
                    iam_action(kind, "Get"),
                    iam_action(kind, "Create"),
                    iam_action(kind, "Tag"),
                ),
            ) from e

        LOG.info("created %s in %s", principal, account_id)
        return principal

    def ensure_managed_policies(self, principal):
        """Attaches the managed policies missing from `principal`.

        Returns a `PolicyReport` with the exact number of policies `added`
        and already attached ones `skipped`.
        """
        attached = set(self._attached(principal))
        added = skipped = 0

        for policy in self._managed_policies:
            if policy.arn in attached:
                LOG.info("policy already attached: %s (skipping)", policy.name)
                skipped += 1
                continue

            LOG.info("attaching policy %s to %s", policy.name, principal.arn)
            try:
                self._api.attach_managed_policy(principal, policy.arn)
            except AWS_ERRORS as e:
                raise ProvisionError(
                    f"Failed to attach policy {policy.name} to {principal.arn}: {e}",
                    permission_hint(
                        principal.arn, iam_action(principal.kind, "Attach", "Policy")
                    ),
                ) from e
            attached.add(policy.arn)
            added += 1

        return PolicyReport(added, skipped)

    def ensure_custom_policy(self, account_id):
        """Returns the ARN of the custom policy, creating it if needed.

        Existence is checked by probing the ARN built from `account_id` and
        the fixed policy name. The policy content is not compared.
        """
        arn = custom_policy_arn(account_id)
        try:
            if self._api.policy_exists(arn):
                LOG.info("custom policy %s already exists", CUSTOM_POLICY_NAME)
                return arn

            LOG.info("creating custom policy %s in %s", CUSTOM_POLICY_NAME, account_id)
            return self._api.create_policy(
                CUSTOM_POLICY_NAME,
                custom_policy_document(),
                CUSTOM_POLICY_DESCRIPTION,
                self._tags,
            )

        except AWS_ERRORS as e:
            raise ProvisionError(
                f"Failed to create custom policy {CUSTOM_POLICY_NAME}: {e}",
                permission_hint(arn, "iam:GetPolicy", "iam:CreatePolicy"),
            ) from e

    def attach_custom_policy(self, principal, policy_arn):
        """Attaches the custom policy unless already attached.

        Returns `True` if the policy was attached by this call.
        """
        if policy_arn in self._attached(principal):
            LOG.info("custom policy already attached: %s (skipping)", policy_arn)
            return False

        try:
            self._api.attach_managed_policy(principal, policy_arn)
        except AWS_ERRORS as e:
            raise ProvisionError(
                f"Failed to attach custom policy {CUSTOM_POLICY_NAME}: {e}",
                permission_hint(
                    principal.arn, iam_action(principal.kind, "Attach", "Policy")
                ),
            ) from e
        return True

    def grant_assume_role_anywhere(self, principal):
        """Lets `principal` assume the role of its own name in any account.

        Returns `True` if the inline policy was added by this call.
        """
        try:
            if ASSUME_ROLE_POLICY_NAME in self._api.list_inline_policies(principal):
                LOG.info("AssumeRole policy already exists on %s", principal.arn)
                return False

            self._api.put_inline_policy(
                principal,
                ASSUME_ROLE_POLICY_NAME,
                assume_role_anywhere_document(principal.name),
            )

        except AWS_ERRORS as e:
            raise ProvisionError(
                f"Failed to add AssumeRole permissions to {principal.arn}: {e}",
                permission_hint(
                    principal.arn,
                    iam_action(principal.kind, "List", "Policies"),
                    iam_action(principal.kind, "Put", "Policy"),
                ),
            ) from e

        LOG.info("added AssumeRole permissions to %s", principal.arn)
        return True

    def issue_access_key(self, principal):
        """Returns a new `frugalaws.api.AccessKey` for the user `principal`."""
        try:
            return self._api.create_access_key(principal.name)

        except AccessKeyLimitExceeded as e:
            raise ProvisionError(
                str(e),
                hint=(
                    "Please delete an existing access key first:\n"
                    f"  aws iam list-access-keys --user-name {principal.name}\n"
                    f"  aws iam delete-access-key --user-name {principal.name} "
                    "--access-key-id <KEY_ID>\n"
                    "Or use the existing credentials file if you have it"
                ),
            ) from e

        except AWS_ERRORS as e:
            raise ProvisionError(
                f"Failed to create access keys: {e}",
                permission_hint(principal.arn, "iam:CreateAccessKey"),
            ) from e

    def _attached(self, principal):
        try:
            return self._api.list_attached_policies(principal)
        except AWS_ERRORS as e:
            raise ProvisionError(
                f"Failed to list policies of {principal.arn}: {e}",
                permission_hint(
                    principal.arn,
                    iam_action(principal.kind, "ListAttached", "Policies"),
                ),
            ) from e


class TeardownReport:
    """What a `Teardown` removed from one account, and what it failed to."""

    def __init__(self, account_id):
        self.account_id = account_id
        self.principals = []
        self.detached = []
        self.inline_deleted = []
        self.keys_deleted = []
        self.policy_deleted = False
        self.errors = []

    @property
    def ok(self):
        return not self.errors

    def __repr__(self):
        return (
            f"TeardownReport({self.account_id}, principals={self.principals}, "
            f"detached={len(self.detached)}, errors={len(self.errors)})"
        )


class Teardown:
    """Removes the principal and its policies from one account."""

    def __init__(self, api):
        self._api = api

    def find_principals(self, account_id, name):
        """Returns the list of existing role and/or user principals."""
        found = []
        for kind in (PrincipalKind.ROLE, PrincipalKind.USER):
            principal = Principal(name, kind, account_id)
            if self._api.principal_exists(principal):
                found.append(principal)
        return found

    def remove(self, account_id, name):
        """Removes every resource created for `name` in `account_id`.

        Access keys, attached policies, and inline policies are removed
        before the principal, which IAM refuses to delete otherwise. Returns a
        `TeardownReport`.
        """
        report = TeardownReport(account_id)

        try:
            principals = self.find_principals(account_id, name)
        except AWS_ERRORS as e:
            report.errors.append(TeardownError(account_id, "look up principal", e))
            return report

        for principal in principals:
            report.principals.append(principal)
            if principal.kind is PrincipalKind.USER:
                self._delete_access_keys(principal, report)
            self._detach_policies(principal, report)
            self._delete_inline_policies(principal, report)
            self._step(
                report,
                f"delete {principal}",
                self._delete_principal,
                principal,
            )

        self._delete_custom_policy(account_id, report)
        return report

    def _delete_access_keys(self, principal, report):
        keys = self._step(
            report, "list access keys", self._api.list_access_keys, principal.name
        )
        if keys is _FAILED:
            return
        for key_id in keys:
            LOG.info("deleting access key %s", key_id)
            if self._step(
                report,
                f"delete access key {key_id}",
                self._api.delete_access_key,
                principal.name,
                key_id,
            ) is not _FAILED:
                report.keys_deleted.append(key_id)

    def _detach_policies(self, principal, report):
        arns = self._step(
            report, "list policies", self._api.list_attached_policies, principal
        )
        if arns is _FAILED:
            return
        for arn in arns:
            LOG.info("detaching policy %s from %s", arn, principal.arn)
            if self._step(
                report, f"detach {arn}", self._api.detach_policy, principal, arn
            ) is not _FAILED:
                report.detached.append(arn)

    def _delete_inline_policies(self, principal, report):
        names = self._step(
            report, "list inline policies", self._api.list_inline_policies, principal
        )
        if names is _FAILED:
            return
        for policy_name in names:
            LOG.info("deleting inline policy %s from %s", policy_name, principal.arn)
            if self._step(
                report,
                f"delete inline policy {policy_name}",
                self._api.delete_inline_policy,
                principal,
                policy_name,
            ) is not _FAILED:
                report.inline_deleted.append(policy_name)

    def _delete_principal(self, principal):
        if principal.kind is PrincipalKind.ROLE:
            self._api.delete_role(principal.name)
        else:
            self._api.delete_user(principal.name)
        LOG.info("deleted %s", principal.arn)

    def _delete_custom_policy(self, account_id, report):
        arn = custom_policy_arn(account_id)
        try:
            if not self._api.policy_exists(arn):
                return
            self._api.delete_policy(arn)
        except AWS_ERRORS as e:
            if _error_code(e) == "DeleteConflict":
                LOG.warning("custom policy %s is still attached, keeping it", arn)
                return
            error = TeardownError(
                account_id, f"delete custom policy {CUSTOM_POLICY_NAME}", e
            )
            LOG.warning("%s", error)
            report.errors.append(error)
            return
        report.policy_deleted = True
        LOG.info("deleted custom policy %s", arn)

    def _step(self, report, action, fn, *args):
        try:
            return fn(*args)
        except AWS_ERRORS as e:
            error = TeardownError(report.account_id, action, e)
            LOG.warning("%s", error)
            report.errors.append(error)
            return _FAILED


_FAILED = object()


def _error_code(error):
    return getattr(error, "response", {}).get("Error", {}).get("Code")


def permission_hint(resource, *actions):
    """Returns the remediation hint for a denied or failed IAM call."""
    return (
        f"The credentials in use need {', '.join(actions)} on {resource}.\n"
        "Grant the missing permissions, or run as an administrator of the "
        "account, then run the setup again"
    )


def iam_action(kind, verb, suffix=""):
    """Returns the IAM action name, such as `iam:AttachRolePolicy`, for `kind`."""
    noun = "Role" if kind is PrincipalKind.ROLE else "User"
    return f"iam:{verb}{noun}{suffix}"


class ProvisionError(Exception):
    """Raised if a principal or policy cannot be created or attached."""

    def __init__(self, message, hint):
        self.hint = hint
        super().__init__(message)


class TeardownError(Exception):
    """Records a failed removal step in `account_id`."""

    def __init__(self, account_id, action, cause=None, hint=None):
        self.account_id = account_id
        self.action = action
        self.cause = cause
        self.hint = hint
        super().__init__(f"{account_id}: failed to {action}: {cause}")
