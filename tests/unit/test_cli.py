#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#

# pylint: disable=redefined-outer-name,missing-docstring

import sys

import pytest
from conftest import NAME, OTHER, PRIMARY, WIF, client_error

from frugalaws import __version__, cli
from frugalaws.identity import InvalidAccountId
from frugalaws.session import CredentialBroker


@pytest.fixture(autouse=True)
def no_user_config(tmp_path, monkeypatch):
    monkeypatch.setenv(cli.CONFIG_ENV_VAR, str(tmp_path / "absent.yaml"))


@pytest.fixture(autouse=True)
def fake_aws(mocker, cloud):
    def broker(base, duration):
        return CredentialBroker(base, api_factory=cloud.api, duration=duration)

    return mocker.patch("frugalaws.cli.CredentialBroker", side_effect=broker)


@pytest.fixture
def answers(mocker):
    """Patches input() to return the given answers in order."""

    def _answers(*values):
        return mocker.patch("builtins.input", side_effect=list(values))

    return _answers


def test_wif_setup(cloud, capsys):
    status = cli._cli([NAME, PRIMARY, "--wif", WIF, "--force"])

    assert status == 0
    assert NAME in cloud.account(PRIMARY).roles
    out = capsys.readouterr().out
    assert "Frugal AWS setup plan" in out
    assert f"Role ARN:       arn:aws:iam::{PRIMARY}:role/{NAME}" in out
    assert "ViewOnlyAccess" in out


def test_iam_user_setup(tmp_path, cloud, capsys):
    creds = tmp_path / "keys.json"

    status = cli._cli([NAME, PRIMARY, str(creds), "--force", "--region", "eu-west-1"])

    assert status == 0
    assert NAME in cloud.account(PRIMARY).users
    assert creds.exists()
    captured = capsys.readouterr()
    assert f"Access keys saved to {creds}" in captured.err
    assert "Upload this file to Frugal" in captured.out


def test_confirmation_declined(cloud, answers, capsys):
    prompt = answers("n")

    status = cli._cli([NAME, PRIMARY, "--wif", WIF])

    assert status == 0
    assert prompt.call_count == 1
    assert not cloud.mutations
    err = capsys.readouterr().err
    assert "Proceed with setup? (y/N)" in err
    assert "Exiting" in err


@pytest.mark.parametrize("answer", ["y", "YES", " yes "])
def test_confirmation_accepted(cloud, answers, answer):
    answers(answer)
    assert cli._cli([NAME, PRIMARY, "--wif", WIF]) == 0
    assert NAME in cloud.account(PRIMARY).roles


def test_skipped_account_exit_status(cloud, capsys):
    cloud.deny.add(OTHER)
    argv = [NAME, PRIMARY, "--wif", WIF, "--additional-accounts", OTHER, "--force"]

    assert cli._cli(argv) == 0
    out = capsys.readouterr().out
    assert "Skipped, assume-role failed (1):" in out
    assert f"Must trust: arn:aws:iam::{PRIMARY}:user/admin" in out

    assert cli._cli(argv + ["--strict"]) == 2


def test_management_advisory_declined(cloud, answers, capsys):
    cloud.management_account = "999999999999"
    answers("n")

    status = cli._cli([NAME, PRIMARY, "--wif", WIF, "--additional-accounts", OTHER])

    assert status == 0
    assert not cloud.mutations
    err = capsys.readouterr().err
    assert "[WARNING]" in err
    assert "Continue with multi-account setup?" in err


def test_org_accounts(cloud, capsys):
    cloud.add_org_account(PRIMARY, "management")
    cloud.add_org_account(OTHER, "payments-prod")

    status = cli._cli([NAME, PRIMARY, "--wif", WIF, "--org-accounts", "all", "--force"])

    assert status == 0
    assert NAME in cloud.account(OTHER).roles
    assert f"  - {OTHER} (payments-prod)" in capsys.readouterr().out


def test_undo(tmp_path, cloud, capsys):
    creds = tmp_path / "keys.json"
    cli._cli([NAME, PRIMARY, str(creds), "--additional-accounts", OTHER, "--force"])
    capsys.readouterr()

    status = cli._cli(
        [NAME, PRIMARY, str(creds), "--additional-accounts", OTHER, "--undo", "--force"]
    )

    assert status == 0
    assert not cloud.account(PRIMARY).users
    assert not cloud.account(OTHER).roles
    assert not creds.exists()
    out = capsys.readouterr().out
    assert "Frugal AWS removal plan" in out
    assert "Frugal AWS removal complete" in out


def test_config_file_defaults(tmp_path, monkeypatch, cloud, fake_aws):
    conf = tmp_path / "conf.yaml"
    conf.write_text(
        "CLI:\n"
        "  force: true\n"
        "  duration: 900\n"
        f"  additional_accounts: ['{OTHER}']\n"
        "Policies:\n"
        "  managed:\n"
        "    - arn: arn:aws:iam::aws:policy/SecurityAudit\n"
    )
    monkeypatch.setenv(cli.CONFIG_ENV_VAR, str(conf))

    assert cli._cli([NAME, PRIMARY, "--wif", WIF]) == 0

    assert fake_aws.call_args.kwargs["duration"] == 900
    assert cloud.assumed[0][2] == 900
    assert "arn:aws:iam::aws:policy/SecurityAudit" in cloud.attached(OTHER, NAME)
    assert len(cloud.attached(OTHER, NAME)) == 2


def test_bad_config_value(tmp_path, monkeypatch):
    conf = tmp_path / "conf.yaml"
    conf.write_text("CLI:\n  additional_accounts: [210987654321]\n")
    monkeypatch.setenv(cli.CONFIG_ENV_VAR, str(conf))

    with pytest.raises(TypeError):
        cli._cli([NAME, PRIMARY])


def test_validation_before_aws(cloud, fake_aws):
    with pytest.raises(InvalidAccountId):
        cli._cli([NAME, "12345"])
    fake_aws.assert_not_called()


def test_main_reports_errors(mocker, capsys):
    mocker.patch("frugalaws.cli.colorama.init")
    mocker.patch.object(sys, "argv", ["frugal-aws-setup", NAME, PRIMARY, "--wif", "x"])

    with pytest.raises(SystemExit) as e:
        cli.main()

    assert e.value.code == 1
    err = capsys.readouterr().err
    assert "[ERROR]" in err
    assert "Invalid service account format" in err
    assert "Expected format: service-account-email:subject-id" in err
    assert "Traceback" not in err


def test_main_reports_permission_hint(mocker, cloud, capsys):
    mocker.patch("frugalaws.cli.colorama.init")
    cloud.fail[(PRIMARY, "create_role")] = client_error("AccessDenied", "CreateRole")
    mocker.patch.object(
        sys, "argv", ["frugal-aws-setup", NAME, PRIMARY, "--wif", WIF, "--force"]
    )

    with pytest.raises(SystemExit) as e:
        cli.main()

    assert e.value.code == 1
    err = capsys.readouterr().err
    assert "[ERROR]" in err
    assert f"Failed to create IAM role '{NAME}' in {PRIMARY}" in err
    assert "iam:CreateRole" in err
    assert f"arn:aws:iam::{PRIMARY}:role/{NAME}" in err


def test_main_trace(mocker, monkeypatch, capsys):
    mocker.patch("frugalaws.cli.colorama.init")
    monkeypatch.setenv("FRUGAL_TRACE", "1")
    mocker.patch.object(sys, "argv", ["frugal-aws-setup", NAME, "12345"])

    with pytest.raises(SystemExit):
        cli.main()

    assert "Traceback" in capsys.readouterr().err


def test_main_exit_status(mocker, cloud):
    mocker.patch("frugalaws.cli.colorama.init")
    cloud.deny.add(OTHER)
    mocker.patch.object(
        sys,
        "argv",
        [
            "frugal-aws-setup",
            NAME,
            PRIMARY,
            "--wif",
            WIF,
            "--force",
            "--strict",
            "--additional-accounts",
            OTHER,
        ],
    )

    with pytest.raises(SystemExit) as e:
        cli.main()
    assert e.value.code == 2


def test_version(capsys):
    with pytest.raises(SystemExit) as e:
        cli._cli(["--version"])
    assert e.value.code == 0
    assert __version__ in capsys.readouterr().out
