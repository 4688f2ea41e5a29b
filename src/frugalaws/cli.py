#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""The frugal-aws-setup CLI provisions read-only access for Frugal.

## Overview

The CLI creates an IAM principal that the Frugal cost-monitoring product uses
to read billing, metrics, and resource metadata from one or more AWS accounts.
The same principal name is used in every account, so Frugal can reach any of
them by constructing `arn:aws:iam::{ACCOUNT_ID}:role/{NAME}`. This page
contains a [User Guide](#cli-user-guide) and a [Reference
Guide](#cli-reference).

## CLI User Guide

### Usage

    $ frugal-aws-setup [options] NAME ACCOUNT_ID [CREDENTIALS_FILE]

`NAME` is the name of the role or user to create and `ACCOUNT_ID` is the
primary account, which must be the account of the credentials you are running
with. Those credentials are taken from the standard AWS configuration: the
environment, `~/.aws/config`, or the profile given with `--profile`.

### Workload Identity Federation

If Frugal runs in Google Cloud, pass the service account and its numeric
unique id, both shown in the Frugal UI, with `--wif`:

    $ frugal-aws-setup frugal-readonly 123456789012 \\
        --wif frugal-sa@proj.iam.gserviceaccount.com:107454444650754356467

This creates an IAM role whose trust policy accepts tokens issued by
accounts.google.com for that service account only. No long-lived keys are
created.

### IAM user

Without `--wif`, an IAM user is created along with an access key, which is
written to `NAME-credentials.json` or to `CREDENTIALS_FILE` if given. Upload
this file to Frugal and then delete it. The file is readable only by you:

    $ frugal-aws-setup frugal-readonly 123456789012
    ...
    [INFO] Access keys saved to frugal-readonly-credentials.json

### Multiple accounts

Additional accounts receive a role of the same name that trusts the principal
in the primary account. They are reached by assuming
`OrganizationAccountAccessRole`, or the role given with `--assume-role`, in
each account. List them explicitly:

    $ frugal-aws-setup frugal-readonly 123456789012 --wif ... \\
        --additional-accounts 210987654321,135792468013

Or select them from your AWS Organization with a filter:

    $ frugal-aws-setup frugal-readonly 123456789012 --wif ... --org-accounts all
    $ frugal-aws-setup frugal-readonly 123456789012 --wif ... --org-accounts 'Name=*-prod*'
    $ frugal-aws-setup frugal-readonly 123456789012 --wif ... --org-accounts ou:ou-ab12-cd34ef56

Run multi-account setups from the organization's management account, as only
it can see consolidated billing. The CLI warns you if you are not.

If a role cannot be assumed in an additional account, that account is skipped
and the others are still provisioned. The summary lists skipped accounts along
with the trust relationship they are missing.

### Plan and confirmation

Before changing anything, the CLI prints a plan listing, for each account,
the policies already attached (`✓`) and those that will be attached (`+`),
and asks you to confirm. Running the CLI again with the same arguments is
safe: existing principals and policies are left untouched.

### Undo

To remove everything, run the same command with `--undo`:

    $ frugal-aws-setup frugal-readonly 123456789012 --additional-accounts 210987654321 --undo

Access keys, policy attachments, inline policies, the principal, and the
FrugalExtendedReadOnly policy are removed from every account, followed by
the local credentials file.

## CLI Reference

### Options

`--wif SA_EMAIL:SUBJECT_ID`
:  Use Workload Identity Federation. The older form with the email address
only is deprecated: the subject id is then guessed from a numeric prefix of
the address and a warning is logged.

`additional_accounts`, `--additional-accounts ACCTS`
:  Comma-separated list of additional accounts. May be repeated. Exclusive
with `--org-accounts`.

`--org-accounts FILTER`
:  Discover additional accounts with one of the filters `all`, `ou:OU_ID`,
`Name=GLOB`, or `Status=STATUS`.

`assume_role`, `--assume-role NAME`
:  The role assumed in additional accounts. The default is
OrganizationAccountAccessRole.

`duration`, `--duration SECONDS`
:  Lifetime of the assumed-role credentials.

`profile`, `--profile NAME`
:  AWS CLI profile of the primary account.

`region`, `--region NAME`
:  AWS region used for API calls and written to the credentials file.

`--undo`
:  Remove the principal and everything created with it.

`force`, `--force`
:  Do not prompt for confirmation. Existing credential files are replaced.

`strict`, `--strict`
:  Exit with status 2 if any additional account was skipped or failed. By
default a partial success exits 0.

`log_level`, `--log-level`
:  Set the logging level. By default, the value is set to ERROR.

### Configuration

Defaults for the options above can be set in a YAML file loaded from
`$HOME/.frugal-aws-setup.yaml`. Set the `FRUGAL_AWS_SETUP_CONFIG`
environment variable to use an alternate file. Command line flags override
the file:

    CLI:
      additional_accounts:
        - "ACCOUNT_ID"
      assume_role: STRING
      duration: INTEGER
      profile: STRING
      region: STRING
      force: BOOLEAN
      strict: BOOLEAN
      log_level: ("DEBUG" | "INFO" | "WARN" | "ERROR")

    Policies:
      managed:
        - arn: POLICY_ARN
          description: STRING

The `Policies` section replaces the AWS managed policies attached to every
principal, by default ViewOnlyAccess and AmazonBedrockReadOnly.

### Exit status

0 on success or if you decline a confirmation, 1 on any error, and 2 in
`--strict` mode if an additional account was skipped or failed.

### Troubleshooting

Tracebacks are not printed by default. Set the environment variable
`FRUGAL_TRACE` to `1` to print them:

    $ FRUGAL_TRACE=1 frugal-aws-setup frugal-readonly 123456789012
"""

import argparse
import logging
import os
import sys
import traceback
from functools import partial
from pathlib import Path

import colorama
from colorama import Fore, Style

from frugalaws import __version__
from frugalaws.argparse import AppendWithoutDefault, RawAndDefaultsFormatter
from frugalaws.config import AccountId, Bool, Choice, Config, Dict, Int, List, Str
from frugalaws.creds import DEFAULT_REGION
from frugalaws.identity import DEFAULT_ASSUME_ROLE, Mode, resolve
from frugalaws.policies import managed_policies_from_config
from frugalaws.runner import SetupRunner, UndoRunner
from frugalaws.session import DEFAULT_DURATION, CredentialBroker, CredentialContext

LOG = logging.getLogger(__name__)

SHORT_DESCRIPTION = """
Creates a read-only IAM role or user for Frugal in one or more AWS accounts.

With --wif, the primary account gets a role trusted by a Google service
account through Workload Identity Federation. Without it, an IAM user is
created and its access key is written to a credentials file. Additional
accounts get a role of the same name trusting the primary principal.
    """.strip()

CONFIG_ENV_VAR = "FRUGAL_AWS_SETUP_CONFIG"
CONFIG_DOTFILE = ".frugal-aws-setup.yaml"

RULE = "=" * 64


# setup.py establishes this as the entry point for the frugal-aws-setup CLI.
def main():
    """The main entry point for the `frugal-aws-setup` CLI tool.

    Exits with the status returned by the run. Upon error, prints the error
    message and its remediation hint to standard error and exits 1. Set the
    `FRUGAL_TRACE` environment variable to `1` to include the stack trace.
    """
    colorama.init()
    try:
        status = _cli(sys.argv[1:])

    except Exception as e:  # pylint: disable=broad-except
        if os.getenv("FRUGAL_TRACE"):
            traceback.print_exc(file=sys.stderr)

        _error(e)
        hint = getattr(e, "hint", None)
        if hint:
            print(hint, file=sys.stderr)
        sys.exit(1)

    sys.exit(status)


def _cli(argv):
    """Parses command line arguments and runs the setup or undo.

    Returns the exit status. May print to the console and prompt the user.
    """

    # Values from the user configuration file are the defaults of the flags.
    config = Config.from_file(_config_filename())
    cfg = partial(config.get, "CLI")

    parser = argparse.ArgumentParser(
        prog="frugal-aws-setup",
        allow_abbrev=False,
        formatter_class=RawAndDefaultsFormatter,
        description=SHORT_DESCRIPTION,
    )

    parser.add_argument("name", help="name of the IAM role or user to create")
    parser.add_argument("account_id", help="primary AWS account ID")
    parser.add_argument(
        "credentials_file",
        nargs="?",
        help="file to save access keys to in IAM-user mode",
    )

    parser.add_argument(
        "--wif",
        metavar="SA_EMAIL:SUBJECT_ID",
        help="use Workload Identity Federation with this Google service account",
    )

    acct_group = parser.add_argument_group("multi-account options")
    acct_group.add_argument(
        "--additional-accounts",
        metavar="ACCTS",
        action=AppendWithoutDefault,
        default=cfg("additional_accounts", type=List(AccountId), default=[]),
        help="comma-separated list of additional accounts",
    )

    acct_group.add_argument(
        "--org-accounts",
        metavar="FILTER",
        help="discover additional accounts: all, ou:ID, Name=GLOB, Status=STATUS",
    )

    acct_group.add_argument(
        "--assume-role",
        metavar="NAME",
        default=cfg("assume_role", type=Str, default=DEFAULT_ASSUME_ROLE),
        help="role to assume in additional accounts",
    )

    acct_group.add_argument(
        "--duration",
        metavar="SECONDS",
        type=int,
        default=cfg("duration", type=Int, default=DEFAULT_DURATION),
        help="lifetime of assumed-role credentials",
    )

    parser.add_argument(
        "--profile",
        metavar="NAME",
        default=cfg("profile", type=Str),
        help="AWS CLI profile for the primary account",
    )

    parser.add_argument(
        "--region",
        metavar="NAME",
        default=cfg("region", type=Str, default=DEFAULT_REGION),
        help="AWS region for API calls and the credentials file",
    )

    parser.add_argument(
        "--undo",
        action="store_true",
        help="remove the principal and everything created with it",
    )

    parser.add_argument(
        "--force",
        action="store_true",
        default=cfg("force", type=Bool, default=False),
        help="do not prompt for confirmation",
    )

    parser.add_argument(
        "--strict",
        action="store_true",
        default=cfg("strict", type=Bool, default=False),
        help="exit 2 if any additional account was skipped or failed",
    )

    parser.add_argument(
        "--version", action="version", version="%(prog)s " + __version__
    )

    parser.add_argument(
        "--log-level",
        default=cfg(
            "log_level", type=Choice("DEBUG", "INFO", "WARN", "ERROR"), default="ERROR"
        ),
        choices=["DEBUG", "INFO", "WARN", "ERROR"],
        help="set the logging level",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    managed_policies = managed_policies_from_config(
        config.get("Policies", "managed", type=List(Dict(Str, Str)), default=[])
    )

    # Every argument is validated here, before any call to AWS.
    target = resolve(
        args.name,
        args.account_id,
        wif=args.wif,
        additional_accounts=args.additional_accounts,
        org_accounts=args.org_accounts,
        assume_role=args.assume_role,
        credentials_file=args.credentials_file,
        undo=args.undo,
    )

    broker = CredentialBroker(
        CredentialContext(args.account_id, profile=args.profile, region=args.region),
        duration=args.duration,
    )

    confirm = _yes if args.force else _ask_for_confirmation

    if args.undo:
        return _undo(UndoRunner(target, broker, confirm=confirm), confirm, args.strict)

    runner = SetupRunner(
        target, broker, managed_policies, region=args.region, confirm=confirm
    )
    return _setup(runner, confirm, args.strict)


def _setup(runner, confirm, strict):
    target = runner.target

    _info(f"Verifying AWS credentials for account {target.primary_account_id}")
    advisory = runner.preflight()
    if advisory:
        _warning(str(advisory))
        print(advisory.hint, file=sys.stderr)
        if not confirm("Continue with multi-account setup?"):
            runner.abort()
            print("Exiting", file=sys.stderr)
            return 0

    if target.org_filter:
        found = runner.discover()
        _info(f"Discovered {len(found)} account(s) matching {target.org_filter}")
        if not found:
            _warning("No additional accounts found, only the primary is set up")

    plan = runner.plan()
    _print_plan(plan)

    if not runner.confirm(confirm("Proceed with setup?")):
        print("Exiting", file=sys.stderr)
        return 0

    summary = runner.apply()
    _print_summary(summary)
    return summary.exit_code(strict)


def _undo(runner, confirm, strict):
    target = runner.target

    _info(f"Verifying AWS credentials for account {target.primary_account_id}")
    runner.preflight()
    if target.org_filter:
        runner.discover()

    plan = runner.plan()
    _print_undo_plan(plan)

    if not runner.confirm(confirm("Proceed with removal?")):
        print("Exiting", file=sys.stderr)
        return 0

    summary = runner.apply()
    _print_undo_summary(summary)
    return summary.exit_code(strict)


def _print_plan(plan, out=None):
    """Pretty print a `frugalaws.runner.ProvisioningPlan`."""
    target = plan.target

    print(RULE, file=out)
    print("Frugal AWS setup plan", file=out)
    print(RULE, file=out)
    print(f"Primary account:  {target.primary_account_id}", file=out)
    print(f"Principal name:   {target.principal_name}", file=out)
    print(f"Authentication:   {target.mode}", file=out)
    if target.mode is Mode.WIF:
        print(f"Service account:  {target.identity.service_account}", file=out)
        print(f"Subject id:       {target.identity.subject_id}", file=out)
    else:
        print(f"Credentials file: {target.credentials_file}", file=out)

    if plan.additional:
        print(f"Assume role:      {target.assume_role}", file=out)
        print("Additional accounts:", file=out)
        for acct in plan.additional:
            name = plan.account_name(acct.account_id)
            print(f"  - {acct.account_id}" + (f" ({name})" if name else ""), file=out)

    for acct in plan.accounts:
        label = "primary" if acct.account.is_primary else "additional"
        print(f"\nAccount {acct.account_id} ({label})", file=out)

        if not acct.reachable:
            print(f"  {Fore.RED}unreachable, skipping:{Style.RESET_ALL}", file=out)
            print(f"  {acct.error}", file=out)
            continue

        state = "exists" if acct.exists else "will be created"
        print(f"  IAM {acct.kind.value} '{target.principal_name}': {state}", file=out)
        for entry in acct.entries:
            color = Fore.GREEN if entry.attached else Fore.YELLOW
            print(f"  {color}{entry.marker}{Style.RESET_ALL} {entry.name}", file=out)

    if target.mode is Mode.IAM_USER:
        print(f"\nNew access key will be saved to {target.credentials_file}", file=out)
    print(file=out)


def _print_summary(summary, out=None):
    """Pretty print a `frugalaws.runner.RunSummary`."""
    target = summary.target
    principal = summary.primary_principal

    print(RULE, file=out)
    print("Frugal AWS setup complete", file=out)
    print(RULE, file=out)
    print(f"Authentication: {target.mode}", file=out)

    if target.mode is Mode.WIF:
        print(f"Role ARN:       {principal.arn}", file=out)
        print("Enter this role ARN in the Frugal UI.", file=out)
    elif summary.credentials_reused:
        print(f"User ARN:       {principal.arn}", file=out)
        _info(f"Existing credentials file {summary.credentials_file} was kept", out)
    else:
        print(f"User ARN:       {principal.arn}", file=out)
        print(f"Access key id:  {summary.access_key.access_key_id}", file=out)
        _info(f"Access keys saved to {summary.credentials_file}", out)
        print("Upload this file to Frugal, then delete it.", file=out)

    print(f"\nProvisioned ({len(summary.provisioned)}):", file=out)
    for acct_id in summary.provisioned:
        report = summary.reports.get(acct_id)
        detail = f"{report.added} added, {report.skipped} already attached"
        print(f"  {Fore.GREEN}✓{Style.RESET_ALL} {acct_id}: {detail}", file=out)

    if summary.skipped:
        print(f"\nSkipped, assume-role failed ({len(summary.skipped)}):", file=out)
        for acct_id, error in summary.skipped.items():
            print(f"  {Fore.YELLOW}-{Style.RESET_ALL} {acct_id}: {error}", file=out)
            print(_indent(error.hint, 4), file=out)

    if summary.failed:
        print(f"\nFailed ({len(summary.failed)}):", file=out)
        for acct_id, error in summary.failed.items():
            print(f"  {Fore.RED}x{Style.RESET_ALL} {acct_id}: {error}", file=out)
            hint = getattr(error, "hint", None)
            if hint:
                print(_indent(hint, 4), file=out)

    if summary.attached_policies is not None:
        print(f"\nPolicies attached to {principal.arn}:", file=out)
        for arn in summary.attached_policies:
            print(f"  - {arn}", file=out)

    if target.additional_accounts:
        print("\nMulti-account access:", file=out)
        print(
            f"  Frugal assumes arn:aws:iam::{{ACCOUNT_ID}}:role/{target.principal_name}"
            " in each additional account.",
            file=out,
        )
    print(file=out)


def _print_undo_plan(plan, out=None):
    """Pretty print a `frugalaws.runner.UndoPlan`."""
    print(RULE, file=out)
    print("Frugal AWS removal plan", file=out)
    print(RULE, file=out)

    for acct in plan.accounts:
        label = "primary" if acct.account.is_primary else "additional"
        print(f"Account {acct.account_id} ({label})", file=out)

        if not acct.reachable:
            print(f"  unreachable, will be skipped: {acct.error}", file=out)
            continue
        if not acct.principals:
            print("  nothing to remove", file=out)
            continue

        for principal in acct.principals:
            print(f"  {Fore.RED}-{Style.RESET_ALL} {principal.arn}", file=out)
            for arn in acct.policies.get(principal, []):
                print(f"      detach {arn}", file=out)
        for key_id in acct.keys:
            print(f"  {Fore.RED}-{Style.RESET_ALL} access key {key_id}", file=out)

    for path in plan.credentials_files:
        print(f"{Fore.RED}-{Style.RESET_ALL} credentials file {path}", file=out)
    if plan.other_files:
        print("Other credential files found (you will be asked):", file=out)
        for path in plan.other_files:
            print(f"  {path}", file=out)
    print(file=out)


def _print_undo_summary(summary, out=None):
    """Pretty print a `frugalaws.runner.UndoSummary`."""
    print(RULE, file=out)
    print("Frugal AWS removal complete", file=out)
    print(RULE, file=out)

    for acct_id, report in summary.reports.items():
        mark = f"{Fore.GREEN}✓" if report.ok else f"{Fore.YELLOW}!"
        print(
            f"  {mark}{Style.RESET_ALL} {acct_id}: "
            f"{len(report.principals)} principal(s), "
            f"{len(report.detached)} policies detached, "
            f"{len(report.keys_deleted)} access keys deleted",
            file=out,
        )
        for error in report.errors:
            _warning(str(error), out)

    for acct_id, error in summary.skipped.items():
        print(f"  {Fore.YELLOW}-{Style.RESET_ALL} {acct_id} skipped: {error}", file=out)

    for path in summary.files_removed:
        _info(f"Removed {path}", out)
    print(file=out)


def _ask_for_confirmation(question):
    """Prompt user for a yes/no answer, defaulting to no."""
    print(f"{question} (y/N) ", flush=True, end="", file=sys.stderr)
    answer = input()
    return answer.strip().lower() in ["y", "yes"]


def _yes(question):  # pylint: disable=unused-argument
    return True


def _info(msg, out=None):
    print(f"{Fore.GREEN}[INFO]{Style.RESET_ALL} {msg}", file=out or sys.stderr)


def _warning(msg, out=None):
    print(f"{Fore.YELLOW}[WARNING]{Style.RESET_ALL} {msg}", file=out or sys.stderr)


def _error(msg, out=None):
    print(f"{Fore.RED}[ERROR]{Style.RESET_ALL} {msg}", file=out or sys.stderr)


def _indent(text, n):
    return "\n".join(" " * n + line for line in (text or "").splitlines())


def _config_filename():
    """Returns the path to the user configuration."""
    return os.environ.get(CONFIG_ENV_VAR, Path.home() / CONFIG_DOTFILE)


if __name__ == "__main__":
    main()
