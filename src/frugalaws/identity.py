#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Resolve who and where to provision from the command line arguments.

## Overview

Every run of the setup tool targets a single principal name (an IAM role or
user) that is created with the same literal name in a primary account and,
optionally, in one or more additional accounts. This module turns the raw
values given on the command line into a `Target`, which is fixed for the
lifetime of a run:

    target = resolve(
        principal_name="frugal-readonly",
        account_id="123456789012",
        wif="frugal-sa@proj.iam.gserviceaccount.com:107454444650754356467",
        additional_accounts=["210987654321,135792468013"],
    )

    target.mode                  # Mode.WIF
    target.identity.subject_id   # '107454444650754356467'
    [a.account_id for a in target.accounts()]
    # ['123456789012', '210987654321', '135792468013']

All validation happens here, before any network call is made. Anything that
does not look right raises a subclass of `ValidationError` and the run is
aborted without side effects.

## Modes

The authentication `Mode` is decided exactly once. With `--wif`, the primary
principal is a role trusted by a Google service account through Workload
Identity Federation. Without it, the primary principal is an IAM user with
access keys. In both modes, additional accounts receive a role of the same
name that trusts the primary principal.
"""

import enum
import logging
import re

LOG = logging.getLogger(__name__)

DEFAULT_ASSUME_ROLE = "OrganizationAccountAccessRole"

_ACCOUNT_ID = re.compile(r"[0-9]{12}")
_PRINCIPAL_NAME = re.compile(r"[\w+=,.@-]{1,64}")
_SERVICE_ACCOUNT = r".+@.+\.iam\.gserviceaccount\.com"
_WIF_WITH_SUBJECT = re.compile(rf"({_SERVICE_ACCOUNT}):([0-9]+)")
_WIF_EMAIL_ONLY = re.compile(_SERVICE_ACCOUNT)
_LEGACY_SUBJECT = re.compile(r"^([0-9]+)-")


class Mode(enum.Enum):
    """How the consuming product authenticates to the primary account."""

    WIF = "wif"
    IAM_USER = "iam-user"

    def __str__(self):
        if self is Mode.WIF:
            return "Workload Identity Federation (WIF)"
        return "IAM User with Access Keys"


class AccountRole(enum.Enum):
    """Position of an account within a run."""

    PRIMARY = "primary"
    ADDITIONAL = "additional"


class PrincipalKind(enum.Enum):
    """The kind of IAM principal created in an account."""

    ROLE = "role"
    USER = "user"


class AccountRef:
    """One AWS account under management in a run.

    The primary account is reached with the caller's own credentials. All
    other accounts are only ever reached by assuming a role.
    """

    __slots__ = ("account_id", "is_primary")

    def __init__(self, account_id, is_primary=False):
        self.account_id = account_id
        self.is_primary = is_primary

    @property
    def role(self):
        return AccountRole.PRIMARY if self.is_primary else AccountRole.ADDITIONAL

    def __eq__(self, other):
        return (
            isinstance(other, AccountRef)
            and self.account_id == other.account_id
            and self.is_primary == other.is_primary
        )

    def __hash__(self):
        return hash((self.account_id, self.is_primary))

    def __repr__(self):
        return f"AccountRef({self.account_id!r}, is_primary={self.is_primary})"

    def __str__(self):
        return self.account_id


class WorkloadIdentity:
    """The Google service account trusted through Workload Identity Federation.

    `service_account` is the email address of the service account and
    `subject_id` is its numeric unique id, which is also used as the token
    audience. `legacy` is `True` when the subject id was recovered from the
    email address rather than supplied explicitly.
    """

    def __init__(self, service_account, subject_id, legacy=False):
        self.service_account = service_account
        self.subject_id = subject_id
        self.legacy = legacy

    @property
    def audience(self):
        return self.subject_id

    def __eq__(self, other):
        return isinstance(other, WorkloadIdentity) and (
            self.service_account,
            self.subject_id,
            self.legacy,
        ) == (other.service_account, other.subject_id, other.legacy)

    def __repr__(self):
        return (
            f"WorkloadIdentity({self.service_account!r}, {self.subject_id!r}, "
            f"legacy={self.legacy})"
        )


class Target:
    """Everything a run needs to know about what it provisions.

    Instances are built by `resolve`. The list of additional accounts may be
    extended once, via `add_discovered`, with accounts found through AWS
    Organizations before the plan is computed. After that it does not change.
    """

    def __init__(
        self,
        principal_name,
        primary_account_id,
        mode,
        identity=None,
        additional_accounts=None,
        org_filter=None,
        assume_role=DEFAULT_ASSUME_ROLE,
        credentials_file=None,
        undo=False,
    ):
        self.principal_name = principal_name
        self.primary_account_id = primary_account_id
        self.mode = mode
        self.identity = identity
        self.additional_accounts = list(additional_accounts or [])
        self.org_filter = org_filter
        self.assume_role = assume_role
        self.credentials_file = credentials_file
        self.undo = undo

    @property
    def is_multi_account(self):
        return bool(self.additional_accounts) or self.org_filter is not None

    @property
    def primary_kind(self):
        return PrincipalKind.ROLE if self.mode is Mode.WIF else PrincipalKind.USER

    def kind_for(self, acct):
        """Returns the `PrincipalKind` created in the account `acct`."""
        return self.primary_kind if acct.is_primary else PrincipalKind.ROLE

    def primary(self):
        return AccountRef(self.primary_account_id, is_primary=True)

    def accounts(self):
        """Returns the `AccountRef` list for the run, primary account first.

        Plan, apply and undo all enumerate accounts with this method, so they
        always observe the same accounts in the same order.
        """
        return [self.primary()] + [AccountRef(a) for a in self.additional_accounts]

    def add_discovered(self, account_ids):
        """Merges discovered account IDs into the additional accounts.

        Returns the list of IDs that were actually added. The primary account
        and duplicates are ignored.
        """
        added = []
        for acct_id in account_ids:
            validate_account_id(acct_id)
            if acct_id == self.primary_account_id:
                continue
            if acct_id in self.additional_accounts:
                continue
            self.additional_accounts.append(acct_id)
            added.append(acct_id)
        return added


def validate_account_id(value):
    """Returns `value` if it is a 12-digit AWS account ID.

    Raises `InvalidAccountId` otherwise.
    """
    if not isinstance(value, str) or not _ACCOUNT_ID.fullmatch(value):
        raise InvalidAccountId(value)
    return value


def validate_principal_name(value):
    """Returns `value` if it is a valid IAM role/user name."""
    if not isinstance(value, str) or not _PRINCIPAL_NAME.fullmatch(value):
        raise InvalidPrincipalName(value)
    return value


def parse_account_ids(values, primary_account_id=None):
    """Returns the list of account IDs from comma-separated `values`.

    `values` is a list of strings, each of which may contain one or more
    account IDs separated by commas. Whitespace around IDs is ignored.
    Parsing is all-or-nothing: a single malformed element raises
    `InvalidAccountId` and no partial list is returned. Duplicates, and the
    `primary_account_id` if present, are dropped while preserving order.
    """
    accts = []
    for value in values or []:
        for acct_id in value.split(","):
            acct_id = acct_id.strip()
            if not acct_id:
                continue
            validate_account_id(acct_id)
            if acct_id == primary_account_id:
                LOG.warning("ignoring primary account %s in additional list", acct_id)
                continue
            if acct_id not in accts:
                accts.append(acct_id)
    return accts


def parse_wif(value):
    """Returns a `WorkloadIdentity` parsed from a `--wif` argument.

    The expected form is `service-account-email:subject-id`, for example
    `frugal-sa@proj.iam.gserviceaccount.com:107454444650754356467`.

    For backwards compatibility, an email address alone is also accepted if
    its local part starts with a numeric prefix followed by a dash, such as
    `123456789000-compute@...`. That prefix is taken as the subject id. This
    heuristic is deprecated: it depends on an old naming convention and may
    produce a wrong id for unrelated service account names, so a warning is
    logged whenever it is used. If no numeric prefix is found,
    `InvalidServiceAccountFormat` is raised rather than guessing.
    """
    if not value:
        raise InvalidServiceAccountFormat(value, "a service account is required")

    match = _WIF_WITH_SUBJECT.fullmatch(value)
    if match:
        return WorkloadIdentity(match.group(1), match.group(2))

    if _WIF_EMAIL_ONLY.fullmatch(value):
        legacy = _LEGACY_SUBJECT.match(value)
        if not legacy:
            raise InvalidServiceAccountFormat(
                value, "could not extract the subject id from the email address"
            )
        LOG.warning(
            "deprecated --wif form without subject id, using %s from %s",
            legacy.group(1),
            value,
        )
        return WorkloadIdentity(value, legacy.group(1), legacy=True)

    raise InvalidServiceAccountFormat(value, "not a service account address")


def resolve(
    principal_name,
    account_id,
    wif=None,
    additional_accounts=None,
    org_accounts=None,
    assume_role=DEFAULT_ASSUME_ROLE,
    credentials_file=None,
    undo=False,
):
    """Returns a validated `Target` built from command line values.

    `additional_accounts` is a list of comma-separated strings. At most one of
    `additional_accounts` and `org_accounts` may be given; the latter is an
    organization filter expression (see `frugalaws.orgs.OrgFilter`) whose
    accounts are discovered later and merged into the target. A
    `ValidationError` is raised on any invalid input.
    """
    # Imported here to avoid a circular import as orgs uses this module.
    from frugalaws.orgs import OrgFilter

    validate_principal_name(principal_name)
    validate_account_id(account_id)

    if additional_accounts and org_accounts:
        raise ConflictingAccountSources()

    identity = parse_wif(wif) if wif is not None else None
    mode = Mode.WIF if identity else Mode.IAM_USER
    accts = parse_account_ids(additional_accounts, primary_account_id=account_id)
    org_filter = OrgFilter.parse(org_accounts) if org_accounts else None

    if not assume_role or not _PRINCIPAL_NAME.fullmatch(assume_role):
        raise InvalidPrincipalName(assume_role)

    if credentials_file is None and (mode is Mode.IAM_USER or undo):
        credentials_file = f"{principal_name}-credentials.json"

    return Target(
        principal_name=principal_name,
        primary_account_id=account_id,
        mode=mode,
        identity=identity,
        additional_accounts=accts,
        org_filter=org_filter,
        assume_role=assume_role,
        credentials_file=credentials_file,
        undo=undo,
    )


class ValidationError(Exception):
    """Raised if command line input is invalid. Always fatal, pre-flight."""

    hint = None


class InvalidAccountId(ValidationError):
    """Raised if an account ID is not exactly 12 digits."""

    hint = "Expected format: 123456789012 (12-digit account ID)"

    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid AWS account ID: {value!r}. Must be 12 digits.")


class InvalidPrincipalName(ValidationError):
    """Raised if a role or user name is not a valid IAM name."""

    hint = "Use 1-64 letters, digits, or any of + = , . @ _ -"

    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid IAM name: {value!r}")


class InvalidServiceAccountFormat(ValidationError):
    """Raised if the `--wif` argument is not a usable service account."""

    hint = (
        "Expected format: service-account-email:subject-id\n"
        "Example: frugal-sa@project.iam.gserviceaccount.com:107454444650754356467\n"
        "Get both values from the Frugal UI: Setup -> AWS Integration"
    )

    def __init__(self, value, reason):
        self.value = value
        super().__init__(f"Invalid service account format: {value!r}: {reason}")


class InvalidOrgFilter(ValidationError):
    """Raised if an organization filter expression cannot be parsed."""

    hint = "Valid formats: all, ou:ou-xxxx-yyyyyyyy, Name=pattern, Status=ACTIVE"

    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid organization filter: {value!r}")


class ConflictingAccountSources(ValidationError):
    """Raised if both an explicit account list and an org filter are given."""

    hint = "Use either --additional-accounts or --org-accounts"

    def __init__(self):
        super().__init__("--additional-accounts and --org-accounts are exclusive")
