#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#

# pylint: disable=redefined-outer-name,missing-docstring,protected-access

from datetime import datetime

import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.stub import Stubber
from conftest import NAME, OTHER, PRIMARY, VIEW_ONLY

from frugalaws.api import (
    AccessKeyLimitExceeded,
    BotoIdentityAPI,
    OrgAccount,
    Principal,
    TemporaryCredentials,
)
from frugalaws.identity import PrincipalKind

ROLE = Principal(NAME, PrincipalKind.ROLE, PRIMARY)
USER = Principal(NAME, PrincipalKind.USER, PRIMARY)
CREATED = datetime(2024, 5, 1)


@pytest.fixture
def api():
    session = boto3.Session(
        aws_access_key_id="AKIDEXAMPLE",
        aws_secret_access_key="secret",
        region_name="us-east-1",
    )
    return BotoIdentityAPI(session)


@pytest.fixture
def stub(api):
    stubbers = []

    def _stub(service):
        stubber = Stubber(api._client(service))
        stubber.activate()
        stubbers.append(stubber)
        return stubber

    yield _stub

    for stubber in stubbers:
        stubber.assert_no_pending_responses()
        stubber.deactivate()


def test_role_exists(api, stub):
    iam = stub("iam")
    iam.add_response(
        "get_role",
        {
            "Role": {
                "Path": "/",
                "RoleName": NAME,
                "RoleId": "AROAEXAMPLEEXAMPLE01",
                "Arn": ROLE.arn,
                "CreateDate": CREATED,
            }
        },
        {"RoleName": NAME},
    )
    iam.add_client_error("get_role", service_error_code="NoSuchEntity")

    assert api.role_exists(NAME)
    assert not api.role_exists(NAME)


def test_principal_exists_dispatches_on_kind(api, stub):
    iam = stub("iam")
    iam.add_client_error(
        "get_user",
        service_error_code="NoSuchEntity",
        expected_params={"UserName": NAME},
    )
    assert not api.principal_exists(USER)


def test_other_errors_propagate(api, stub):
    iam = stub("iam")
    iam.add_client_error("get_role", service_error_code="AccessDenied")
    with pytest.raises(ClientError):
        api.role_exists(NAME)


def test_list_attached_policies_paginates(api, stub):
    iam = stub("iam")
    iam.add_response(
        "list_attached_role_policies",
        {
            "AttachedPolicies": [
                {"PolicyName": "ViewOnlyAccess", "PolicyArn": VIEW_ONLY}
            ],
            "IsTruncated": True,
            "Marker": "page2",
        },
        {"RoleName": NAME},
    )
    iam.add_response(
        "list_attached_role_policies",
        {
            "AttachedPolicies": [
                {"PolicyName": "Custom", "PolicyArn": "arn:aws:iam::1:policy/Custom"}
            ],
            "IsTruncated": False,
        },
        {"RoleName": NAME, "Marker": "page2"},
    )

    assert api.list_attached_policies(ROLE) == [
        VIEW_ONLY,
        "arn:aws:iam::1:policy/Custom",
    ]


def test_create_policy_that_exists(api, stub):
    iam = stub("iam")
    sts = stub("sts")
    iam.add_client_error("create_policy", service_error_code="EntityAlreadyExists")
    sts.add_response(
        "get_caller_identity",
        {"Account": PRIMARY, "Arn": f"arn:aws:iam::{PRIMARY}:user/admin"},
    )

    arn = api.create_policy("FrugalExtendedReadOnly", {"Version": "x"}, "desc", [])
    assert arn == f"arn:aws:iam::{PRIMARY}:policy/FrugalExtendedReadOnly"


def test_create_access_key_limit(api, stub):
    iam = stub("iam")
    iam.add_client_error("create_access_key", service_error_code="LimitExceeded")

    with pytest.raises(AccessKeyLimitExceeded) as e:
        api.create_access_key(NAME)
    assert e.value.user_name == NAME


def test_delete_policy_removes_old_versions(api, stub):
    arn = f"arn:aws:iam::{PRIMARY}:policy/FrugalExtendedReadOnly"
    iam = stub("iam")
    iam.add_response(
        "list_policy_versions",
        {
            "Versions": [
                {"VersionId": "v2", "IsDefaultVersion": True},
                {"VersionId": "v1", "IsDefaultVersion": False},
            ]
        },
        {"PolicyArn": arn},
    )
    iam.add_response("delete_policy_version", {}, {"PolicyArn": arn, "VersionId": "v1"})
    iam.add_response("delete_policy", {}, {"PolicyArn": arn})

    api.delete_policy(arn)


def test_assume_role(api, stub):
    sts = stub("sts")
    role_arn = f"arn:aws:iam::{OTHER}:role/OrganizationAccountAccessRole"
    sts.add_response(
        "assume_role",
        {
            "Credentials": {
                "AccessKeyId": "ASIAEXAMPLEEXAMPLE01",
                "SecretAccessKey": "secret",
                "SessionToken": "token",
                "Expiration": CREATED,
            }
        },
        {"RoleArn": role_arn, "RoleSessionName": "frugal-1", "DurationSeconds": 900},
    )

    creds = api.assume_role(role_arn, "frugal-1", 900)
    assert creds == TemporaryCredentials(
        "ASIAEXAMPLEEXAMPLE01", "secret", "token", CREATED
    )


def test_list_organization_accounts_for_parent(api, stub):
    org = stub("organizations")
    org.add_response(
        "list_accounts_for_parent",
        {"Accounts": [{"Id": OTHER, "Name": "payments-prod", "Status": "ACTIVE"}]},
        {"ParentId": "ou-ab12-prod1234"},
    )

    assert api.list_organization_accounts("ou-ab12-prod1234") == [
        OrgAccount(OTHER, "payments-prod", "ACTIVE")
    ]
