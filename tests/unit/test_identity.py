#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#

# pylint: disable=redefined-outer-name,missing-docstring

import logging

import pytest

from frugalaws.identity import (
    DEFAULT_ASSUME_ROLE,
    AccountRef,
    AccountRole,
    ConflictingAccountSources,
    InvalidAccountId,
    InvalidOrgFilter,
    InvalidPrincipalName,
    InvalidServiceAccountFormat,
    Mode,
    PrincipalKind,
    ValidationError,
    parse_account_ids,
    parse_wif,
    resolve,
    validate_account_id,
)

PRIMARY = "123456789012"
WIF = "frugal-sa@proj.iam.gserviceaccount.com:107454444650754356467"


@pytest.mark.parametrize(
    "values, expected",
    [
        ([], []),
        (None, []),
        (["210987654321"], ["210987654321"]),
        (["210987654321,135792468013"], ["210987654321", "135792468013"]),
        ([" 210987654321 , 135792468013 "], ["210987654321", "135792468013"]),
        (["210987654321", "135792468013"], ["210987654321", "135792468013"]),
        (["210987654321,210987654321"], ["210987654321"]),
        (["210987654321,"], ["210987654321"]),
        ([f"{PRIMARY},210987654321"], ["210987654321"]),
    ],
)
def test_parse_account_ids(values, expected):
    assert parse_account_ids(values, primary_account_id=PRIMARY) == expected


@pytest.mark.parametrize(
    "values",
    [
        ["123456789012,bad,210987654321"],
        ["12345678901"],
        ["1234567890123"],
        ["12345678901a"],
        ["210987654321", "nope"],
    ],
)
def test_parse_account_ids_is_all_or_nothing(values):
    with pytest.raises(InvalidAccountId):
        parse_account_ids(values)


@pytest.mark.parametrize(
    "value", [PRIMARY + "\n", "\n" + PRIMARY, PRIMARY + " ", 123456789012]
)
def test_validate_account_id_is_exact(value):
    with pytest.raises(InvalidAccountId):
        validate_account_id(value)


def test_parse_account_ids_warns_about_primary(caplog):
    with caplog.at_level(logging.WARNING):
        parse_account_ids([PRIMARY], primary_account_id=PRIMARY)
    assert "ignoring primary account" in caplog.text


def test_parse_wif_with_subject():
    ident = parse_wif("frugal-sa@proj.iam.gserviceaccount.com:107454444650754356467")
    assert ident.service_account == "frugal-sa@proj.iam.gserviceaccount.com"
    assert ident.subject_id == "107454444650754356467"
    assert ident.audience == "107454444650754356467"
    assert not ident.legacy


def test_parse_wif_legacy_email_only(caplog):
    with caplog.at_level(logging.WARNING):
        ident = parse_wif("123456789000-compute@proj.iam.gserviceaccount.com")
    assert ident.subject_id == "123456789000"
    assert ident.legacy
    assert "deprecated" in caplog.text


@pytest.mark.parametrize(
    "value",
    [
        "",
        "frugal-sa@proj.iam.gserviceaccount.com",
        "frugal-sa@gmail.com:123",
        "frugal-sa@proj.iam.gserviceaccount.com:abc",
        "not-an-email",
    ],
)
def test_parse_wif_invalid(value):
    with pytest.raises(InvalidServiceAccountFormat) as e:
        parse_wif(value)
    assert "service-account-email:subject-id" in e.value.hint


def test_resolve_wif():
    target = resolve(
        "frugal-readonly",
        PRIMARY,
        wif="sa@proj.iam.gserviceaccount.com:999111222",
        additional_accounts=["210987654321"],
    )
    assert target.mode is Mode.WIF
    assert target.primary_kind is PrincipalKind.ROLE
    assert target.assume_role == DEFAULT_ASSUME_ROLE
    assert target.credentials_file is None
    assert target.is_multi_account
    assert [a.account_id for a in target.accounts()] == [PRIMARY, "210987654321"]


def test_resolve_iam_user_defaults_credentials_file():
    target = resolve("frugal-readonly", PRIMARY)
    assert target.mode is Mode.IAM_USER
    assert target.primary_kind is PrincipalKind.USER
    assert target.credentials_file == "frugal-readonly-credentials.json"
    assert not target.is_multi_account


def test_resolve_explicit_credentials_file():
    target = resolve("frugal-readonly", PRIMARY, credentials_file="/tmp/keys.json")
    assert target.credentials_file == "/tmp/keys.json"


def test_resolve_org_filter_is_multi_account():
    target = resolve("frugal-readonly", PRIMARY, org_accounts="Name=*-prod")
    assert target.is_multi_account
    assert target.additional_accounts == []
    assert str(target.org_filter) == "Name=*-prod"


@pytest.mark.parametrize(
    "kwargs, error",
    [
        ({"account_id": "12345"}, InvalidAccountId),
        ({"account_id": PRIMARY + "\n"}, InvalidAccountId),
        ({"principal_name": "frugal-readonly\n"}, InvalidPrincipalName),
        ({"wif": WIF + "\n"}, InvalidServiceAccountFormat),
        ({"principal_name": "bad name"}, InvalidPrincipalName),
        ({"principal_name": "x" * 65}, InvalidPrincipalName),
        ({"assume_role": ""}, InvalidPrincipalName),
        ({"wif": "nope"}, InvalidServiceAccountFormat),
        ({"org_accounts": "Tag=foo"}, InvalidOrgFilter),
        ({"additional_accounts": ["123456789012,bad"]}, InvalidAccountId),
        (
            {"additional_accounts": ["210987654321"], "org_accounts": "all"},
            ConflictingAccountSources,
        ),
    ],
)
def test_resolve_rejects_invalid_input(kwargs, error):
    args = {"principal_name": "frugal-readonly", "account_id": PRIMARY}
    args.update(kwargs)
    with pytest.raises(error) as e:
        resolve(**args)
    assert isinstance(e.value, ValidationError)
    assert e.value.hint


def test_kind_for_accounts():
    target = resolve("frugal-readonly", PRIMARY, additional_accounts=["210987654321"])
    primary, other = target.accounts()
    assert primary.role is AccountRole.PRIMARY
    assert other.role is AccountRole.ADDITIONAL
    assert target.kind_for(primary) is PrincipalKind.USER
    assert target.kind_for(other) is PrincipalKind.ROLE


def test_add_discovered():
    target = resolve("frugal-readonly", PRIMARY, additional_accounts=["210987654321"])
    added = target.add_discovered([PRIMARY, "210987654321", "135792468013"])
    assert added == ["135792468013"]
    assert target.additional_accounts == ["210987654321", "135792468013"]
    assert target.accounts()[0] == AccountRef(PRIMARY, is_primary=True)


def test_add_discovered_validates():
    target = resolve("frugal-readonly", PRIMARY)
    with pytest.raises(InvalidAccountId):
        target.add_discovered(["abc"])
