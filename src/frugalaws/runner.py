#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Plans, applies, and undoes the provisioning of a `Target`.

## Overview

This module defines the two drivers of a run: `SetupRunner` and `UndoRunner`.
Both take a `frugalaws.identity.Target`, which says what to provision and
where, and a `frugalaws.session.CredentialBroker`, which hands out an API for
the primary account and scopes assumed roles into the additional accounts.
Neither prints anything. They return plans and summaries that the caller, such
as `frugalaws.cli`, presents to the user.

## Basic Usage

The following provisions a WIF role in the caller's account and in one
additional account:

    from frugalaws.identity import resolve
    from frugalaws.runner import SetupRunner
    from frugalaws.session import CredentialBroker, CredentialContext

    target = resolve(
        "frugal-readonly",
        "123456789012",
        wif="frugal-sa@proj.iam.gserviceaccount.com:107454444650754356467",
        additional_accounts=["210987654321"],
    )
    broker = CredentialBroker(CredentialContext("123456789012"))

    runner = SetupRunner(target, broker)
    runner.preflight()
    runner.discover()
    plan = runner.plan()
    if runner.confirm(True):
        summary = runner.apply()

## States

A run moves through the states of `State` in order and never goes back.
Steps may be skipped, such as `DISCOVER` when no organization filter was
given, and a run may be `ABORTED` from any state before `DONE`:

    START → VALIDATE → DISCOVER → COMPUTE_PLAN → CONFIRM →
        PROVISION_PRIMARY → PROVISION_ADDITIONAL → SUMMARIZE → DONE

An undo run follows its own sequence:

    START → VALIDATE → DISCOVER → COMPUTE_UNDO_PLAN → CONFIRM →
        TEARDOWN_PRIMARY → TEARDOWN_ADDITIONAL → DELETE_CREDENTIALS → DONE

Calling the methods out of order raises `RuntimeError`.

## Failures

Any failure in the primary account aborts the run, as every other account
depends on the primary principal. A failure in an additional account is
recorded in the summary and the run moves on to the next account. Accounts
whose role could not be assumed are reported as skipped; accounts where
provisioning started but did not complete are reported as failed.
"""

import enum
import logging

from frugalaws.api import AWS_ERRORS, Principal
from frugalaws.creds import DEFAULT_REGION, CredentialsFile
from frugalaws.identity import Mode, PrincipalKind
from frugalaws.orgs import OrganizationDiscovery
from frugalaws.policies import (
    CUSTOM_POLICY_NAME,
    MANAGED_POLICIES,
    custom_policy_arn,
    select_trust_policy,
)
from frugalaws.provision import (
    ProvisionError,
    Provisioner,
    Teardown,
    TeardownError,
    desired_policy_arns,
    iam_action,
    permission_hint,
)
from frugalaws.session import AssumeRoleError

LOG = logging.getLogger(__name__)


class State(enum.Enum):
    START = "start"
    VALIDATE = "validate"
    DISCOVER = "discover"
    COMPUTE_PLAN = "compute-plan"
    COMPUTE_UNDO_PLAN = "compute-undo-plan"
    CONFIRM = "confirm"
    PROVISION_PRIMARY = "provision-primary"
    PROVISION_ADDITIONAL = "provision-additional"
    SUMMARIZE = "summarize"
    TEARDOWN_PRIMARY = "teardown-primary"
    TEARDOWN_ADDITIONAL = "teardown-additional"
    DELETE_CREDENTIALS = "delete-credentials"
    DONE = "done"
    ABORTED = "aborted"


class _Run:
    """Base class of a run over the accounts of `target`.

    Tracks the `State` of the run; subclasses define the `_SEQUENCE` of
    states they go through.
    """

    _SEQUENCE = ()

    def __init__(self, target, broker, confirm):
        self.state = State.START
        self.target = target
        self._broker = broker
        self._confirm = confirm
        self._account_names = {}

    def _advance(self, state):
        if self.state in (State.DONE, State.ABORTED):
            raise RuntimeError(f"run already finished ({self.state.value})")

        if state is not State.ABORTED:
            if self._SEQUENCE.index(state) <= self._SEQUENCE.index(self.state):
                raise RuntimeError(
                    f"cannot go from {self.state.value} to {state.value}"
                )

        LOG.debug("state %s -> %s", self.state.value, state.value)
        self.state = state

    def preflight(self):
        """Checks the caller before anything is planned.

        Raises `PreflightError` if the caller's credentials do not belong to
        the primary account. For multi-account runs, returns the
        `frugalaws.orgs.NotManagementAccount` advisory if the caller is not
        the organization's management account, otherwise `None`.
        """
        self._advance(State.VALIDATE)
        api = self._broker.api()
        _check_caller(api, self.target.primary_account_id)

        if self.target.undo or not self.target.is_multi_account:
            return None
        return OrganizationDiscovery(api).management_check(
            self.target.primary_account_id
        ).warning()

    def discover(self):
        """Adds the accounts selected by the target's organization filter.

        Returns the list of `frugalaws.api.OrgAccount` that were added. Does
        nothing if the target has no filter. Raises
        `frugalaws.orgs.DiscoveryError` if the organization cannot be read.
        """
        if self.target.org_filter is None:
            return []

        self._advance(State.DISCOVER)
        found = OrganizationDiscovery(self._broker.api()).discover(
            self.target.org_filter, self.target.primary_account_id
        )
        self._account_names.update((a.id, a.name) for a in found)

        added = set(self.target.add_discovered([a.id for a in found]))
        if not added:
            LOG.warning("no accounts matched filter %s", self.target.org_filter)
        return [a for a in found if a.id in added]

    def confirm(self, approved):
        """Records the user's answer to the plan. Returns `approved`.

        If not approved, the run is aborted and nothing is changed.
        """
        self._advance(State.CONFIRM)
        if not approved:
            self.abort()
        return approved

    def abort(self):
        self._advance(State.ABORTED)


def _always(prompt):  # pylint: disable=unused-argument
    return True


class PlanEntry:
    """A policy a principal should have and whether it already does."""

    ALREADY_ATTACHED = "✓"
    WILL_ATTACH = "+"

    def __init__(self, policy_arn, name, attached):
        self.policy_arn = policy_arn
        self.name = name
        self.attached = attached

    @property
    def marker(self):
        return self.ALREADY_ATTACHED if self.attached else self.WILL_ATTACH

    def __repr__(self):
        return f"PlanEntry({self.marker} {self.name})"


class AccountPlan:
    """What will be done in one account.

    If the account could not be read, `reachable` is `False`, `error` holds
    the reason, and `entries` is empty. Such an account will be skipped.
    """

    def __init__(self, account, kind, exists=False, entries=None, error=None):
        self.account = account
        self.kind = kind
        self.exists = exists
        self.entries = list(entries or [])
        self.error = error

    @property
    def account_id(self):
        return self.account.account_id

    @property
    def reachable(self):
        return self.error is None

    @property
    def to_attach(self):
        return [e.policy_arn for e in self.entries if not e.attached]

    @property
    def already_attached(self):
        return [e.policy_arn for e in self.entries if e.attached]


class ProvisioningPlan:
    """The read-only result of `SetupRunner.plan`, one `AccountPlan` each."""

    def __init__(self, target, accounts, account_names=None):
        self.target = target
        self.accounts = accounts
        self.account_names = account_names or {}

    @property
    def primary(self):
        return self.accounts[0]

    @property
    def additional(self):
        return self.accounts[1:]

    def account_name(self, account_id):
        return self.account_names.get(account_id, "")

    def predicted(self):
        """Returns a dict of account ID to the set of policy ARNs expected to be
        attached once the plan is applied, for reachable accounts only."""
        return {
            p.account_id: {e.policy_arn for e in p.entries}
            for p in self.accounts
            if p.reachable
        }


class RunSummary:
    """The outcome of `SetupRunner.apply`.

    Every account of the target ends up in exactly one of the `provisioned`,
    `skipped`, or `failed` buckets. `skipped` and `failed` map account IDs to
    the exception that caused it.
    """

    def __init__(self, target):
        self.target = target
        self.primary_principal = None
        self.provisioned = []
        self.skipped = {}
        self.failed = {}
        self.reports = {}
        self.access_key = None
        self.credentials_file = None
        self.credentials_reused = False
        self.attached_policies = None

    @property
    def complete(self):
        return not (self.skipped or self.failed)

    def exit_code(self, strict=False):
        """Returns the process exit code for this outcome.

        A partial success is not fatal and exits 0 unless `strict` is set, in
        which case skipped or failed accounts exit 2.
        """
        if strict and not self.complete:
            return 2
        return 0


class SetupRunner(_Run):
    """Provisions the principal of `target` in every account.

    `managed_policies` is the table of `frugalaws.policies.ManagedPolicy` to
    attach in each account. In IAM-user mode, access keys for the primary user
    are written to the target's credentials file with `region`. `confirm` is
    called with a question and must return a bool; it is asked before an
    existing credentials file is replaced.
    """

    _SEQUENCE = (
        State.START,
        State.VALIDATE,
        State.DISCOVER,
        State.COMPUTE_PLAN,
        State.CONFIRM,
        State.PROVISION_PRIMARY,
        State.PROVISION_ADDITIONAL,
        State.SUMMARIZE,
        State.DONE,
    )

    def __init__(
        self,
        target,
        broker,
        managed_policies=MANAGED_POLICIES,
        region=DEFAULT_REGION,
        confirm=_always,
    ):
        super().__init__(target, broker, confirm)
        self.managed_policies = tuple(managed_policies)
        self.region = region

    def plan(self):
        """Returns the `ProvisioningPlan` without changing anything.

        Accounts are enumerated and the desired policies computed exactly as
        `apply` will. Additional accounts are read under an assumed role; an
        account that cannot be read is planned as unreachable.
        """
        self._advance(State.COMPUTE_PLAN)
        accounts = []

        for acct in self.target.accounts():
            kind = self.target.kind_for(acct)
            if acct.is_primary:
                try:
                    accounts.append(self._plan_account(self._broker.api(), acct, kind))
                except AWS_ERRORS as e:
                    principal = Principal(
                        self.target.principal_name, kind, acct.account_id
                    )
                    raise ProvisionError(
                        f"Failed to read IAM state of primary account "
                        f"{acct.account_id}: {e}",
                        permission_hint(
                            principal.arn,
                            iam_action(kind, "Get"),
                            iam_action(kind, "ListAttached", "Policies"),
                            "iam:GetPolicy",
                        ),
                    ) from e
                continue

            try:
                with self._broker.assumed_role(
                    acct.account_id, self.target.assume_role
                ) as ctx:
                    accounts.append(
                        self._plan_account(self._broker.api(ctx), acct, kind)
                    )
            except (AssumeRoleError,) + AWS_ERRORS as e:
                LOG.warning("cannot plan account %s: %s", acct.account_id, e)
                accounts.append(AccountPlan(acct, kind, error=e))

        return ProvisioningPlan(self.target, accounts, self._names())

    def _plan_account(self, api, acct, kind):
        principal = Principal(self.target.principal_name, kind, acct.account_id)
        exists = api.principal_exists(principal)
        attached = set(api.list_attached_policies(principal)) if exists else set()

        names = {p.arn: p.name for p in self.managed_policies}
        names[custom_policy_arn(acct.account_id)] = CUSTOM_POLICY_NAME

        entries = [
            PlanEntry(arn, names[arn], arn in attached)
            for arn in desired_policy_arns(acct.account_id, self.managed_policies)
        ]
        return AccountPlan(acct, kind, exists, entries)

    def _names(self):
        if not self.target.is_multi_account:
            return {}
        if not self._account_names:
            self._account_names = OrganizationDiscovery(
                self._broker.api()
            ).account_names()
        return self._account_names

    def apply(self):
        """Provisions every account and returns a `RunSummary`.

        The primary account is provisioned first with the caller's
        credentials and any error is raised. Each additional account is then
        provisioned, in order, under an assumed role.
        """
        summary = RunSummary(self.target)

        self._advance(State.PROVISION_PRIMARY)
        primary = self.target.primary()
        api = self._broker.api()
        provisioner = Provisioner(api, self.managed_policies)

        principal = self._provision_account(provisioner, primary, summary)
        summary.primary_principal = principal

        if self.target.additional_accounts:
            provisioner.grant_assume_role_anywhere(principal)

        if self.target.mode is Mode.IAM_USER:
            self._issue_credentials(provisioner, principal, summary)

        summary.provisioned.append(primary.account_id)

        self._advance(State.PROVISION_ADDITIONAL)
        for acct in self.target.accounts()[1:]:
            try:
                with self._broker.assumed_role(
                    acct.account_id, self.target.assume_role
                ) as ctx:
                    self._provision_account(
                        Provisioner(self._broker.api(ctx), self.managed_policies),
                        acct,
                        summary,
                    )

            except AssumeRoleError as e:
                LOG.warning("skipping account %s: %s", acct.account_id, e)
                summary.skipped[acct.account_id] = e

            except (ProvisionError,) + AWS_ERRORS as e:
                LOG.warning("failed to provision account %s: %s", acct.account_id, e)
                summary.failed[acct.account_id] = e

            else:
                summary.provisioned.append(acct.account_id)

        self._advance(State.SUMMARIZE)
        try:
            summary.attached_policies = api.list_attached_policies(principal)
        except AWS_ERRORS as e:
            LOG.warning("cannot read back policies of %s: %s", principal.arn, e)

        self._advance(State.DONE)
        return summary

    def _provision_account(self, provisioner, acct, summary):
        kind = self.target.kind_for(acct)
        trust = None
        if kind is PrincipalKind.ROLE:
            trust = select_trust_policy(acct.role, self.target.mode, self.target)

        principal = provisioner.ensure_principal(
            acct.account_id, self.target.principal_name, kind, trust
        )
        report = provisioner.ensure_managed_policies(principal)

        policy_arn = provisioner.ensure_custom_policy(acct.account_id)
        if provisioner.attach_custom_policy(principal, policy_arn):
            report = report._replace(added=report.added + 1)
        else:
            report = report._replace(skipped=report.skipped + 1)

        summary.reports[acct.account_id] = report
        LOG.info(
            "account %s: %d policies added, %d skipped",
            acct.account_id,
            report.added,
            report.skipped,
        )
        return principal

    def _issue_credentials(self, provisioner, principal, summary):
        creds_file = CredentialsFile(self.target.credentials_file)
        summary.credentials_file = creds_file

        if creds_file.exists() and not self._confirm(
            f"Credentials file {creds_file} already exists. Create new access keys?"
        ):
            LOG.info("keeping existing credentials file %s", creds_file)
            summary.credentials_reused = True
            return

        summary.access_key = provisioner.issue_access_key(principal)
        creds_file.write(
            summary.access_key,
            self.target.primary_account_id,
            principal.name,
            self.region,
        )


class AccountUndoPlan:
    """What will be removed from one account."""

    def __init__(self, account, principals=None, policies=None, keys=None, error=None):
        self.account = account
        self.principals = list(principals or [])
        self.policies = dict(policies or {})
        self.keys = list(keys or [])
        self.error = error

    @property
    def account_id(self):
        return self.account.account_id

    @property
    def reachable(self):
        return self.error is None


class UndoPlan:
    """The read-only result of `UndoRunner.plan`."""

    def __init__(self, target, accounts, credentials_files=None, other_files=None):
        self.target = target
        self.accounts = accounts
        self.credentials_files = list(credentials_files or [])
        self.other_files = list(other_files or [])

    @property
    def primary(self):
        return self.accounts[0]


class UndoSummary:
    """The outcome of `UndoRunner.apply`.

    `reports` maps account IDs to their `frugalaws.provision.TeardownReport`.
    Accounts whose role could not be assumed are in `skipped` instead.
    """

    def __init__(self, target):
        self.target = target
        self.reports = {}
        self.skipped = {}
        self.files_removed = []

    @property
    def errors(self):
        return [e for r in self.reports.values() for e in r.errors]

    @property
    def complete(self):
        return not (self.skipped or self.errors)

    def exit_code(self, strict=False):
        if strict and not self.complete:
            return 2
        return 0


class UndoRunner(_Run):
    """Removes everything `SetupRunner` created for `target`.

    `confirm` is asked before credential files other than the target's own
    are deleted.
    """

    _SEQUENCE = (
        State.START,
        State.VALIDATE,
        State.DISCOVER,
        State.COMPUTE_UNDO_PLAN,
        State.CONFIRM,
        State.TEARDOWN_PRIMARY,
        State.TEARDOWN_ADDITIONAL,
        State.DELETE_CREDENTIALS,
        State.DONE,
    )

    def __init__(self, target, broker, confirm=_always):
        super().__init__(target, broker, confirm)

    def plan(self):
        """Returns the `UndoPlan` without changing anything.

        Raises `TeardownError` if neither a role nor a user of the target's
        name exists in the primary account.
        """
        self._advance(State.COMPUTE_UNDO_PLAN)
        accounts = []

        for acct in self.target.accounts():
            if acct.is_primary:
                try:
                    plan = self._plan_account(self._broker.api(), acct)
                except AWS_ERRORS as e:
                    raise TeardownError(acct.account_id, "read IAM state", e) from e
                if not plan.principals:
                    raise TeardownError(
                        acct.account_id,
                        "find principal",
                        f"no IAM role or user named '{self.target.principal_name}'",
                        hint="Nothing to undo. Check the name and account ID.",
                    )
                accounts.append(plan)
                continue

            try:
                with self._broker.assumed_role(
                    acct.account_id, self.target.assume_role
                ) as ctx:
                    accounts.append(self._plan_account(self._broker.api(ctx), acct))
            except (AssumeRoleError,) + AWS_ERRORS as e:
                LOG.warning("cannot plan undo for account %s: %s", acct.account_id, e)
                accounts.append(AccountUndoPlan(acct, error=e))

        creds, others = self._credential_files()
        return UndoPlan(self.target, accounts, creds, others)

    def _plan_account(self, api, acct):
        teardown = Teardown(api)
        principals = teardown.find_principals(
            acct.account_id, self.target.principal_name
        )
        policies = {p: api.list_attached_policies(p) for p in principals}
        keys = []
        for p in principals:
            if p.kind is PrincipalKind.USER:
                keys.extend(api.list_access_keys(p.name))
        return AccountUndoPlan(acct, principals, policies, keys)

    def _credential_files(self):
        if not self.target.credentials_file:
            return [], []
        creds_file = CredentialsFile(self.target.credentials_file)
        own = [creds_file.path] if creds_file.exists() else []
        return own, creds_file.siblings(self.target.principal_name)

    def apply(self):
        """Removes the resources from every account and returns an
        `UndoSummary`. Teardown is best effort: failed steps are reported,
        not raised."""
        summary = UndoSummary(self.target)

        self._advance(State.TEARDOWN_PRIMARY)
        primary = self.target.primary()
        summary.reports[primary.account_id] = Teardown(self._broker.api()).remove(
            primary.account_id, self.target.principal_name
        )

        self._advance(State.TEARDOWN_ADDITIONAL)
        for acct in self.target.accounts()[1:]:
            try:
                with self._broker.assumed_role(
                    acct.account_id, self.target.assume_role
                ) as ctx:
                    summary.reports[acct.account_id] = Teardown(
                        self._broker.api(ctx)
                    ).remove(acct.account_id, self.target.principal_name)
            except AssumeRoleError as e:
                LOG.warning("skipping undo for account %s: %s", acct.account_id, e)
                summary.skipped[acct.account_id] = e

        self._advance(State.DELETE_CREDENTIALS)
        creds, others = self._credential_files()
        for path in creds:
            if CredentialsFile(path).remove():
                summary.files_removed.append(path)

        if others and self._confirm(
            f"Also delete {len(others)} other credentials file(s)?"
        ):
            for path in others:
                if CredentialsFile(path).remove():
                    summary.files_removed.append(path)

        self._advance(State.DONE)
        return summary


def _check_caller(api, account_id):
    try:
        caller = api.get_caller_account_id()
    except AWS_ERRORS as e:
        raise PreflightError(
            f"Cannot determine current AWS identity: {e}",
            hint="Configure AWS credentials with 'aws configure' or use --profile",
        ) from e

    if caller != account_id:
        raise PreflightError(
            f"Account ID mismatch: credentials are for account {caller}, "
            f"but {account_id} was specified",
            hint=f"Configure the AWS CLI for account {account_id} or use --profile",
        )
    LOG.info("running as account %s", caller)


class PreflightError(Exception):
    """Raised if the caller's credentials are unusable for the run."""

    def __init__(self, message, hint=None):
        self.hint = hint
        super().__init__(message)
