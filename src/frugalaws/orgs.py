#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Discover additional accounts through AWS Organizations.

## Filters

Instead of listing additional accounts by hand, a user can select them from
the organization with a filter expression passed to `--org-accounts`:

`all`
:  Every ACTIVE account in the organization.

`ou:<id>`
:  ACTIVE accounts directly under the organizational unit `<id>`.

`Name=<glob>`
:  ACTIVE accounts whose name matches `<glob>`. `*` matches any sequence of
characters and the pattern must match the whole name, so `*-prod*` selects
`payments-prod` and `payments-prod-eu` but not `prod-tools`.

`Status=<value>`
:  Accounts whose status is exactly `<value>`, such as `SUSPENDED`.

The caller's own account is never part of the result as it is the primary
account of the run.

## Management account

Consolidated billing data is only visible from the organization's management
account. `OrganizationDiscovery.management_check` reports whether the caller
is that account. It never fails: if the Organizations API cannot be reached,
the caller is assumed not to be the management account.
"""

import logging
import re

from frugalaws.api import AWS_ERRORS
from frugalaws.identity import InvalidOrgFilter

LOG = logging.getLogger(__name__)

ACTIVE = "ACTIVE"


class OrgFilter:
    """A parsed organization filter expression.

    `kind` is one of `all`, `ou`, `name`, or `status` and `value` holds the
    OU id, name pattern, or status respectively (`None` for `all`).
    """

    def __init__(self, kind, value=None):
        self.kind = kind
        self.value = value
        self._regex = _glob_to_regex(value) if kind == "name" else None

    @classmethod
    def parse(cls, text):
        """Returns an `OrgFilter` for `text` or raises `InvalidOrgFilter`."""
        text = (text or "").strip()
        if text == "all":
            return cls("all")

        for prefix, kind in (("ou:", "ou"), ("Name=", "name"), ("Status=", "status")):
            if text.startswith(prefix) and len(text) > len(prefix):
                return cls(kind, text[len(prefix) :])

        raise InvalidOrgFilter(text)

    @property
    def parent_id(self):
        return self.value if self.kind == "ou" else None

    def matches(self, acct):
        """Returns `True` if the `frugalaws.api.OrgAccount` is selected."""
        if self.kind == "status":
            return acct.status == self.value
        if acct.status != ACTIVE:
            return False
        if self.kind == "name":
            return bool(self._regex.fullmatch(acct.name or ""))
        return True

    def __str__(self):
        if self.kind == "all":
            return "all"
        prefix = {"ou": "ou:", "name": "Name=", "status": "Status="}[self.kind]
        return prefix + self.value

    def __repr__(self):
        return f"OrgFilter({str(self)!r})"


def _glob_to_regex(pattern):
    return re.compile(".*".join(re.escape(part) for part in pattern.split("*")))


class ManagementCheck:
    """Result of checking the caller's position in the organization.

    `is_management` is `True` only if the caller is known to be the
    management account. `management_account_id` is `None` if the
    Organizations API could not be reached, in which case `reason` holds the
    error.
    """

    def __init__(self, caller_account_id, management_account_id=None, reason=None):
        self.caller_account_id = caller_account_id
        self.management_account_id = management_account_id
        self.reason = reason

    @property
    def is_management(self):
        return self.management_account_id == self.caller_account_id

    def warning(self):
        """Returns a `NotManagementAccount` warning or `None`."""
        if self.is_management:
            return None
        return NotManagementAccount(
            self.caller_account_id, self.management_account_id, self.reason
        )


class OrganizationDiscovery:
    """Queries AWS Organizations with a `frugalaws.api.CloudIdentityAPI`."""

    def __init__(self, api):
        self._api = api

    def management_check(self, caller_account_id):
        try:
            org = self._api.describe_organization()
        except AWS_ERRORS as e:
            LOG.info("cannot describe organization: %s", e)
            return ManagementCheck(caller_account_id, reason=str(e))

        return ManagementCheck(caller_account_id, org.get("MasterAccountId"))

    def discover(self, org_filter, caller_account_id):
        """Returns the list of `OrgAccount` selected by `org_filter`.

        The caller's account is excluded. Raises `DiscoveryUnavailable` if the
        organization cannot be queried. There is no fallback to an empty list.
        """
        LOG.info("discovering organization accounts with filter %s", org_filter)
        try:
            accts = self._api.list_organization_accounts(org_filter.parent_id)
        except AWS_ERRORS as e:
            raise DiscoveryUnavailable(org_filter, e) from e

        selected = []
        for acct in accts:
            if acct.id == caller_account_id or not org_filter.matches(acct):
                continue
            if acct.id not in [a.id for a in selected]:
                selected.append(acct)

        LOG.info("discovered %d additional accounts", len(selected))
        return selected

    def account_names(self):
        """Returns a dict of account ID to name, or an empty dict on error.

        Used only to decorate output, so failures are not reported.
        """
        try:
            return {a.id: a.name for a in self._api.list_organization_accounts()}
        except AWS_ERRORS as e:
            LOG.info("cannot list organization accounts: %s", e)
            return {}


class NotManagementAccount:
    """Advisory raised when the caller is not the organization's management
    account. Multi-account provisioning can still proceed, but only the
    caller's own costs will be visible to the consuming product.
    """

    def __init__(self, caller_account_id, management_account_id, reason=None):
        self.caller_account_id = caller_account_id
        self.management_account_id = management_account_id
        self.reason = reason

    def __str__(self):
        if self.management_account_id is None:
            return (
                "Cannot access AWS Organizations API. You appear to be running "
                "from a MEMBER account, not the MANAGEMENT account."
            )
        return (
            f"You are NOT in the AWS Organizations management account "
            f"(current: {self.caller_account_id}, "
            f"management: {self.management_account_id})."
        )

    @property
    def hint(self):
        where = self.management_account_id or "the management account"
        return (
            "You can still configure access to multiple accounts, but only THIS "
            "account's costs will be visible to Frugal.\n"
            f"For full organization cost visibility, re-run from {where}."
        )


class DiscoveryError(Exception):
    """Raised if accounts cannot be discovered from the organization."""

    hint = None


class DiscoveryUnavailable(DiscoveryError):
    """Raised if the Organizations API cannot be reached."""

    hint = (
        "Ensure you have organizations:Describe* and organizations:List* "
        "permissions and are running from the management account"
    )

    def __init__(self, org_filter, cause):
        self.org_filter = org_filter
        self.cause = cause
        super().__init__(f"Cannot access AWS Organizations ({org_filter}): {cause}")
