import pytest
from botocore.exceptions import NoCredentialsError
from click.testing import CliRunner

import ekslab
import ekslab.cli
import ekslab.manifest

ROLE_ARN = "arn:aws:iam::111122223333:role/CrossAccountDeveloperRole"


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def fake_session(monkeypatch, session):
    monkeypatch.setattr(ekslab, "aws_session", lambda exe_env=None, region=None: session)
    return session


def _invoke(runner: CliRunner, paths, *args: str):
    return runner.invoke(ekslab.cli.cli, ["--root", str(paths.root), *args])


def test_provision_list_steps(runner, paths) -> None:
    result = _invoke(runner, paths, "provision", "--list-steps")

    assert result.exit_code == 0, result.output
    assert result.output.splitlines()[0] == "cluster-role"
    assert result.output.splitlines()[-1] == "demo-app"


def test_provision_failure_suggests_resume(runner, paths, fake_cloud) -> None:
    fake_cloud.fail("create_role", "AccessDenied")

    result = _invoke(runner, paths, "provision")

    assert result.exit_code == 1
    assert "--start-at cluster-role" in result.output


def test_provision_rejects_unknown_start_step(runner, paths) -> None:
    result = _invoke(runner, paths, "provision", "--start-at", "nope")

    assert result.exit_code == 1
    assert "unknown step 'nope'" in result.output
    assert not paths.manifest.exists()


def test_manifest_show(runner, paths) -> None:
    ekslab.manifest.ResourceManifest(
        cluster_name="lab",
        region="us-west-1",
        node_group_name="lab-nodes",
        vpc_id="vpc-1",
        subnet_ids=("subnet-1", "subnet-2"),
        security_group_id="sg-1",
        internet_gateway_id="igw-1",
        route_table_id="rtb-1",
        account_id="123456789012",
    ).write(paths.manifest)

    result = _invoke(runner, paths, "manifest", "show")

    assert result.exit_code == 0, result.output
    assert "CLUSTER_NAME=lab" in result.output.splitlines()
    assert "SUBNET_IDS=subnet-1,subnet-2" in result.output.splitlines()


def test_manifest_show_missing(runner, paths) -> None:
    result = _invoke(runner, paths, "manifest", "show")

    assert result.exit_code == 1
    assert "ekslab provision" in result.output


def test_teardown_of_nothing_succeeds(runner, paths, fake_cloud) -> None:
    result = _invoke(runner, paths, "teardown")

    assert result.exit_code == 0, result.output
    assert "Teardown complete" in result.output
    assert fake_cloud.is_empty()


def test_teardown_failure_exit_code(runner, paths, fake_cloud) -> None:
    fake_cloud.clusters["dns-test-cluster"] = {"name": "dns-test-cluster"}
    fake_cloud.fail("delete_cluster", "AccessDeniedException")

    result = _invoke(runner, paths, "teardown")

    assert result.exit_code == 1
    assert "1 item(s) failed" in result.output


def test_teardown_cluster_name_override(runner, paths, fake_cloud) -> None:
    result = _invoke(runner, paths, "teardown", "--cluster-name", "other", "--region", "eu-west-1")

    assert result.exit_code == 0, result.output
    assert "Tearing down cluster other in eu-west-1" in result.output


def test_teardown_region_must_match_manifest(runner, paths, fake_cloud) -> None:
    ekslab.manifest.ResourceManifest(
        cluster_name="dns-test-cluster",
        region="us-west-1",
        node_group_name="dns-test-nodes",
        vpc_id="vpc-1",
        subnet_ids=("subnet-1", "subnet-2"),
        security_group_id="sg-1",
        internet_gateway_id="igw-1",
        route_table_id="rtb-1",
        account_id="123456789012",
    ).write(paths.manifest)

    result = _invoke(runner, paths, "teardown", "--region", "eu-west-1")

    assert result.exit_code == 1
    assert "in us-west-1, not eu-west-1" in result.output
    assert paths.manifest.exists()
    assert not any(op.startswith("delete_") for op in fake_cloud.ops())


def test_missing_credentials_are_reported(runner, paths, monkeypatch) -> None:
    def no_credentials(exe_env=None, region=None):
        raise NoCredentialsError()

    monkeypatch.setattr(ekslab, "aws_session", no_credentials)

    for args in (["teardown"], ["cross-account", "test", "--role-arn", ROLE_ARN, "--external-id", "ext-1"]):
        result = _invoke(runner, paths, *args)

        assert result.exit_code == 1
        assert "Unable to locate credentials" in result.output


def test_cross_account_test_ok(runner, paths, fake_cloud, session, monkeypatch) -> None:
    assumed = type(fake_cloud)()
    assumed.caller_arn = "arn:aws:sts::111122223333:assumed-role/CrossAccountDeveloperRole/TestSession-1"
    monkeypatch.setattr(
        ekslab, "aws_session_from_credentials", lambda credentials, region=None: type(session)(assumed)
    )

    result = _invoke(runner, paths, "cross-account", "test", "--role-arn", ROLE_ARN, "--external-id", "ext-1")

    assert result.exit_code == 0, result.output
    assert "Cross-account access works" in result.output


def test_cross_account_test_refused(runner, paths, fake_cloud) -> None:
    fake_cloud.fail("assume_role", "AccessDenied")

    result = _invoke(runner, paths, "cross-account", "test", "--role-arn", ROLE_ARN, "--external-id", "ext-1")

    assert result.exit_code == 1
    assert "AssumeRole failed: AccessDenied" in result.output


def test_cross_account_test_wrong_identity(runner, paths) -> None:
    # the temporary credentials resolve back to the caller, not the role
    result = _invoke(runner, paths, "cross-account", "test", "--role-arn", ROLE_ARN, "--external-id", "ext-1")

    assert result.exit_code == 1
    assert "does not belong to" in result.output


def test_cross_account_setup(runner, paths, fake_cloud) -> None:
    paths.config.write_text(
        """
apiVersion: ekslab/v1
kind: CrossAccountConfig
spec:
  trusting-account: "123456789012"
  role-name: LabRole
"""
    )

    result = _invoke(runner, paths, "cross-account", "setup")

    assert result.exit_code == 0, result.output
    assert "Created arn:aws:iam::123456789012:role/LabRole" in result.output
    assert "LabRole" in fake_cloud.roles
